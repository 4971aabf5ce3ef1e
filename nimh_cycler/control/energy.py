"""
Energy Integrator

Coulomb/energy counting per reporting interval. Uses the interval's average
current and the latest internal-voltage estimate, so it is an approximation,
not a metrology-grade integral.
"""

import numpy as np
from typing import Sequence

from nimh_cycler.control.session import CellSession


class EnergyIntegrator:

    @staticmethod
    def delta_mah(current_amps: float, elapsed_ms: float) -> float:
        """Charge moved in mAh: A * ms / 3600."""
        return current_amps * elapsed_ms / 3600.0

    def accumulate(self, session: CellSession, current_amps: float, v_internal: float, elapsed_ms: float) -> float:
        """
        Add one interval to the session totals.

        Args:
            session: Session whose mah/mwh are updated
            current_amps: Average signed current over the interval (A)
            v_internal: Latest internal voltage estimate (V)
            elapsed_ms: Measured interval length (ms)

        Returns:
            The mAh added
        """
        d_mah = self.delta_mah(current_amps, elapsed_ms)
        session.mah += d_mah
        session.mwh += v_internal * d_mah
        return d_mah

    def accumulate_samples(
        self,
        session: CellSession,
        current_samples: Sequence[float],
        v_internal: float,
        elapsed_ms: float
    ) -> float:
        """Accumulate using the mean of the per-tick current readings."""
        if len(current_samples) == 0:
            return 0.0
        average_amps = float(np.mean(current_samples))
        return self.accumulate(session, average_amps, v_internal, elapsed_ms)
