"""
Reporting/Polling Loop

Drives one reporting interval: one resistance estimate and status line, then
1 s ticks until the interval ends. Each tick re-checks the phase's voltage
termination, detects open circuit, polls the operator key and refreshes the
front-panel display. Energy is integrated only when an interval runs to its
full length.
"""

import time
import logging
from typing import Callable, Optional, List

from nimh_cycler.communication import scpi
from nimh_cycler.console import print_status
from nimh_cycler.control.session import (
    CellSession,
    TickResult,
    AbortReason,
    CONTINUE,
    INTERVAL_COMPLETE,
    TERMINATED,
)


class IntervalState:
    """Bookkeeping for one reporting interval."""

    __slots__ = ('start_s', 'end_s', 'current_samples')

    def __init__(self, start_s: float, minutes: float):
        self.start_s = start_s
        self.end_s = start_s + minutes * 60.0
        self.current_samples: List[float] = []


class ReportingLoop:
    """
    Per-second tick driver.

    Parameters:
        actuation: ActuationTranslator (display commands share its source)
        measurement: MeasurementService
        estimator: ResistanceEstimator
        integrator: EnergyIntegrator
        source: Source Interface used for display commands
        key_source: Object with poll() -> Optional[str] (None = no keyboard)
        comply_ohms: Ceiling headroom per amp above v_max
        open_circuit_a: Current magnitude below which the cell is considered removed
        tick_s: Tick period in seconds
        toggle_key: Key requesting a manual charge/discharge switch
        clock: Monotonic time source in seconds
        sleep: Sleep function in seconds
        status_sink: Callable receiving each status line
    """

    def __init__(
        self,
        actuation,
        measurement,
        estimator,
        integrator,
        source,
        key_source=None,
        comply_ohms: float = 0.2,
        open_circuit_a: float = 0.004,
        tick_s: float = 1.0,
        toggle_key: str = 't',
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        status_sink: Callable[[str], None] = print_status
    ):
        self._actuation = actuation
        self._measurement = measurement
        self._estimator = estimator
        self._integrator = integrator
        self._source = source
        self._key_source = key_source
        self._comply_ohms = comply_ohms
        self._open_circuit_a = open_circuit_a
        self._tick_s = tick_s
        self._toggle_key = toggle_key
        self._clock = clock
        self._sleep = sleep
        self._status_sink = status_sink
        self._logger = logging.getLogger(__name__)

    def comply_voltage(self, session: CellSession) -> float:
        """Charge channel ceiling: v_max plus cable/meter/diode headroom at the commanded current."""
        return session.v_max + session.i_batt * self._comply_ohms

    def apply_session_target(self, session: CellSession):
        self._actuation.apply_target(self.comply_voltage(session), session.i_batt)

    def should_terminate(self, session: CellSession) -> bool:
        """
        Cheap voltage-only termination check.

        Discharging ends at the floor, charging at the ceiling. A 0.0 reading
        is a failed query, not a dead cell, and never terminates.
        """
        v_external = self._measurement.read_voltage()
        if v_external == 0.0:
            self._logger.warning("Voltage read returned nothing, skipping termination check")
            return False

        session.v_external = v_external
        session.v_internal = v_external - session.isr * session.i_batt

        if session.i_batt < 0:
            return v_external <= session.v_floor
        return v_external >= session.v_max

    def start_interval(self, session: CellSession, minutes: float) -> IntervalState:
        """Estimate resistance, emit the status line and open a new interval."""
        state = IntervalState(self._clock(), minutes)

        self._estimator.update_session(session, self.comply_voltage(session))
        line = session.status_line()
        self._logger.debug(f"[{session.phase.value}] {line}")
        self._status_sink(line)
        session.prev_v_external = session.v_external

        return state

    def _update_display(self, session: CellSession):
        if session.display_on_secs > 0:
            self._source.send(scpi.display_text(f"{session.v_external:.4f}V {session.isr * 1000:.0f}mO"))
        elif session.display_on_secs == 0:
            self._source.send(scpi.DISPLAY_OFF)

    def _poll_key(self, session: CellSession) -> Optional[TickResult]:
        if self._key_source is None:
            return None
        key = self._key_source.poll()
        if key is None:
            return None
        if key == self._toggle_key:
            self._logger.info("Operator toggle requested")
            return TickResult.aborted(AbortReason.OPERATOR_TOGGLE)
        if key.isdigit():
            session.display_on_secs = int(key)
        else:
            self._logger.debug(f"Ignoring key {key!r}")
        return None

    def tick(self, session: CellSession, state: IntervalState) -> TickResult:
        """
        One control tick.

        Returns:
            TERMINATED, ABORTED(reason), INTERVAL_COMPLETE or CONTINUE
        """
        if self.should_terminate(session):
            return TERMINATED

        amps = self._measurement.read_current(session.i_batt)
        if abs(amps) < self._open_circuit_a:
            # A dropped reply also reads as 0, confirm before ending the session
            self._logger.debug(f"Low current reading {amps * 1000:.1f} mA, re-reading")
            amps = self._measurement.read_current(session.i_batt)
        if abs(amps) < self._open_circuit_a:
            self._logger.warning(f"Open circuit: {amps * 1000:.1f} mA")
            return TickResult.aborted(AbortReason.OPEN_CIRCUIT)
        state.current_samples.append(amps)

        key_result = self._poll_key(session)
        if key_result is not None:
            return key_result

        self._update_display(session)

        self._sleep(self._tick_s)
        session.display_on_secs -= 1

        now = self._clock()
        if now >= state.end_s:
            elapsed_ms = (now - state.start_s) * 1000.0
            self._integrator.accumulate_samples(
                session, state.current_samples, session.v_internal, elapsed_ms
            )
            return INTERVAL_COMPLETE

        return CONTINUE

    def run_interval(self, session: CellSession, minutes: float) -> TickResult:
        """
        Run one reporting interval.

        Args:
            session: Active cell session
            minutes: Interval length; 0 runs a single settling tick

        Returns:
            The final tick result (never CONTINUE)
        """
        state = self.start_interval(session, minutes)
        while True:
            result = self.tick(session, state)
            if result.is_final:
                return result
