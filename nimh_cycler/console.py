"""
Operator console

Non-blocking key input for the control loop. A daemon thread reads stdin
lines and queues their characters; the loop polls one key per tick without
ever blocking on the terminal.
"""

import sys
import threading
import queue
import logging
from typing import Optional, TextIO


class KeyboardMonitor:
    """
    Background stdin reader.

    Keys are delivered after Enter (line-buffered terminals); each character
    of the line is queued separately.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream if stream is not None else sys.stdin
        self._keys = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    def _reader_worker(self):
        while not self._stop_event.is_set():
            try:
                line = self._stream.readline()
            except (OSError, ValueError) as e:
                self._logger.warning(f"Console input closed: {e}")
                break
            if not line:
                break  # EOF
            for key in line.rstrip('\r\n'):
                self._keys.put(key)

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self._logger.warning("Keyboard monitor already running")
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._reader_worker, daemon=True)
            self._thread.start()
            return True

    def stop(self):
        # readline() cannot be interrupted; the daemon thread dies with the process
        self._stop_event.set()

    def push(self, key: str):
        """Inject a key as if typed."""
        self._keys.put(key)

    def poll(self) -> Optional[str]:
        """Return one pending key, or None."""
        try:
            return self._keys.get_nowait()
        except queue.Empty:
            return None


def print_status(line: str, stream: Optional[TextIO] = None):
    """Emit the live status line."""
    stream = stream if stream is not None else sys.stdout
    print(line, file=stream, flush=True)
