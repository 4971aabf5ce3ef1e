"""
Shared test helpers.
"""

import pytest


class ScriptedKeys:
    """Key source replaying a fixed sequence, one entry per poll (None = no key)."""

    def __init__(self, keys=None):
        self._keys = list(keys or [])

    def poll(self):
        if self._keys:
            return self._keys.pop(0)
        return None


@pytest.fixture
def scripted_keys():
    """Factory for operator key sources: scripted_keys(['t']) toggles on the first poll."""
    return ScriptedKeys
