"""
Cycle Driver

Instrument bring-up, cell presence detection and the policy for aborted
phases:
- operator toggle while discharging: skip ahead to charging
- operator toggle while charging: end the cycle, next one starts discharging
- open circuit: the cell was removed, drop the session and wait for a new cell
"""

import time
import logging
from typing import Callable, Optional

from nimh_cycler.communication import scpi
from nimh_cycler.control.session import CellSession, Phase, AbortReason


class CycleDriver:
    """
    Parameters:
        source: Source Interface
        actuation: ActuationTranslator
        measurement: MeasurementService
        controller: PhaseController
        config: Full cycler configuration
        clock: Monotonic time source in seconds
        sleep: Sleep function in seconds
    """

    def __init__(
        self,
        source,
        actuation,
        measurement,
        controller,
        config: dict,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._source = source
        self._actuation = actuation
        self._measurement = measurement
        self._controller = controller
        self._rig = config['rig']
        self._cell = config['cell']
        self._reporting = config['reporting']
        self._cycling = config['cycling']
        self._clock = clock
        self._sleep = sleep
        self._logger = logging.getLogger(__name__)

        self.identity = ''
        self.sessions_run = 0
        self.last_session: Optional[CellSession] = None

    def bring_up(self) -> str:
        """
        Reset the supply into remote mode with the 4-wire sense channel enabled.

        Returns:
            The instrument identity string
        """
        flush = getattr(self._source, 'flush_input', None)
        if flush is not None:
            flush()

        self.identity = self._source.query(scpi.IDENTIFY)
        self._logger.info(f"Instrument: {self.identity or '(no response)'}")

        self._source.send(scpi.RESET)
        self._source.send(scpi.REMOTE)
        # P6V only senses the cell voltage
        self._source.send(scpi.apply(self._rig['sense_channel'], self._rig['sense_volts'], self._rig['sense_amps']))
        self._source.send(scpi.OUTPUT_ON)
        return self.identity

    def safe_off(self):
        """Zero both cell channels."""
        self._actuation.apply_target(0.0, 0.0)

    def wait_for_cell(self, timeout_s: Optional[float] = None) -> Optional[CellSession]:
        """
        Block until a cell is present on the sense leads.

        With no cell the sense channel floats up to its ceiling; a reading
        below insert_voltage_v means a cell is loading it.

        Args:
            timeout_s: Give up after this long (None = wait forever)

        Returns:
            A fresh CellSession, or None on timeout
        """
        self._source.send(scpi.display_text("Insert cell"))
        deadline = None if timeout_s is None else self._clock() + timeout_s

        while True:
            v = self._measurement.read_voltage()
            if 0.0 < v < self._rig['insert_voltage_v']:
                break
            if deadline is not None and self._clock() >= deadline:
                return None
            self._sleep(self._rig['insert_poll_s'])

        session = CellSession(
            self._cell['capacity_ah'],
            self._cell['v_max'],
            display_on_secs=self._reporting['initial_display_s']
        )
        session.prev_v_external = self._measurement.read_voltage()
        self._logger.info(f"Cell detected at {session.prev_v_external:.4f} V")
        return session

    def run_cell(self, session: CellSession) -> Optional[AbortReason]:
        """
        Cycle one cell until it is removed or max_cycles is reached.

        Returns:
            OPEN_CIRCUIT if the cell was removed, None if max_cycles ended the run
        """
        max_cycles = self._cycling['max_cycles']
        start = Phase.DISCHARGE
        outcome = None

        while True:
            result = self._controller.run_cycle(session, start)

            if result.completed:
                start = Phase.DISCHARGE
            elif result.reason == AbortReason.OPERATOR_TOGGLE:
                start = Phase.FORM_CHARGE if result.phase.is_discharge else Phase.DISCHARGE
                self._logger.info(f"Toggled, resuming at {start.value}")
                session.abort_reason = None
            else:
                outcome = result.reason
                self._logger.warning("Cell removed, session ended")
                break

            if max_cycles and session.cycles_completed >= max_cycles:
                break

        self.safe_off()
        return outcome

    def run(self, insert_timeout_s: Optional[float] = None):
        """Serve cells until max_cells sessions have run (0 = forever) or no cell shows up in time."""
        max_cells = self._cycling['max_cells']
        while not max_cells or self.sessions_run < max_cells:
            session = self.wait_for_cell(insert_timeout_s)
            if session is None:
                self._logger.info("No cell inserted, stopping")
                return
            self.sessions_run += 1
            self.last_session = session
            self.run_cell(session)
