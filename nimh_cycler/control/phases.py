"""
Phase Controller

Sequences one NiMH cycle:

    DISCHARGE -> RECONDITION_DISCHARGE -> FORM_CHARGE -> FAST_CHARGE -> TOP_OFF -> IDLE

Terminal voltage is dominated by IR drop and regulator offsets, so the
slower internal (IR-compensated) voltage gates which charge-termination
heuristics may fire, while the negative-dV signature is still tracked on the
raw terminal voltage where it is measured.

See https://www.powerstream.com/NiMH.htm and
https://lygte-info.dk/info/batteryChargingNiMH%20UK.html for the termination
signatures.
"""

import logging
from enum import Enum
from typing import Optional

from nimh_cycler.control.session import (
    CellSession,
    Phase,
    PhaseResult,
    TickStatus,
    next_phase,
)


class ChargeTermination(Enum):
    """Why fast charge ended."""
    CEILING = "terminal voltage reached v_max"
    INTERNAL_VOLTAGE = "internal voltage limit"
    CAPACITY = "capacity limit"
    NEGATIVE_DELTA_V = "negative delta V"
    PLATEAU = "voltage plateau"


class FastChargeMonitor:
    """
    Fast-charge termination heuristics, evaluated once per reporting interval.

    Parameters:
        capacity_mah: Nominal capacity in mAh
        v_internal_max: Internal voltage limit (V)
        capacity_limit: Fraction of capacity that ends fast charge
        rise_tolerance_v: Rise above the peak that counts as still charging
        drop_v: Drop below the peak that signals full charge
        gate_v_internal: Internal voltage above which inflection checks run
        gate_capacity: Fraction of capacity above which inflection checks run
        plateau_minutes: Minutes without a new peak that end the charge
    """

    def __init__(
        self,
        capacity_mah: float,
        v_internal_max: float = 1.6,
        capacity_limit: float = 1.1,
        rise_tolerance_v: float = 0.0005,
        drop_v: float = 0.001,
        gate_v_internal: float = 1.45,
        gate_capacity: float = 0.7,
        plateau_minutes: float = 20
    ):
        self._capacity_mah = capacity_mah
        self._v_internal_max = v_internal_max
        self._capacity_limit = capacity_limit
        self._rise_tolerance_v = rise_tolerance_v
        self._drop_v = drop_v
        self._gate_v_internal = gate_v_internal
        self._gate_capacity = gate_capacity
        self._plateau_minutes = plateau_minutes

        self.v_peak = 0.0
        self.level_minutes = 0
        self.inflection_checked = False

    @classmethod
    def from_config(cls, capacity_mah: float, fast_config: dict) -> 'FastChargeMonitor':
        return cls(
            capacity_mah,
            v_internal_max=fast_config['v_internal_max'],
            capacity_limit=fast_config['capacity_limit'],
            rise_tolerance_v=fast_config['rise_tolerance_v'],
            drop_v=fast_config['drop_v'],
            gate_v_internal=fast_config['gate_v_internal'],
            gate_capacity=fast_config['gate_capacity'],
            plateau_minutes=fast_config['plateau_minutes']
        )

    def gate_open(self, session: CellSession) -> bool:
        return (session.v_internal > self._gate_v_internal
                and session.mah > self._capacity_mah * self._gate_capacity)

    def check(self, session: CellSession, report_minutes: float) -> Optional[ChargeTermination]:
        """
        Evaluate all terminations in priority order.

        Returns:
            The first termination that fired, or None to keep charging
        """
        self.inflection_checked = False

        if session.v_external >= session.v_max:
            return ChargeTermination.CEILING
        # TODO: v_internal still depends on i_batt through the cell's RC response; scale the limit with current
        if session.v_internal >= self._v_internal_max:
            return ChargeTermination.INTERNAL_VOLTAGE
        if session.mah >= self._capacity_mah * self._capacity_limit:
            return ChargeTermination.CAPACITY

        v_external = session.v_external
        if v_external >= self.v_peak + self._rise_tolerance_v:
            self.v_peak = v_external
            self.level_minutes = 0
        elif v_external > self.v_peak:
            self.v_peak = v_external
        elif self.gate_open(session):
            self.inflection_checked = True
            session.display_on_secs = int(report_minutes * 60)
            if v_external <= self.v_peak - self._drop_v:
                return ChargeTermination.NEGATIVE_DELTA_V
            self.level_minutes += report_minutes
            if self.level_minutes >= self._plateau_minutes:
                return ChargeTermination.PLATEAU

        return None


class PhaseController:
    """
    Runs phases against a ReportingLoop.

    Aborts (open circuit, operator toggle) exit the running phase at once,
    leave the totals untouched and are returned as a PhaseResult carrying the
    reason; deciding what happens next is the caller's job.

    Parameters:
        reporting: ReportingLoop
        actuation: ActuationTranslator (for the idle target)
        config: Full cycler configuration
    """

    def __init__(self, reporting, actuation, config: dict):
        self._reporting = reporting
        self._actuation = actuation
        self._rig = config['rig']
        self._discharge = config['discharge']
        self._recondition = config['recondition']
        self._form = config['form_charge']
        self._fast = config['fast_charge']
        self._top_off = config['top_off']
        self._logger = logging.getLogger(__name__)

        self.last_charge_termination: Optional[ChargeTermination] = None

    def _report(self, session: CellSession, minutes: float):
        return self._reporting.run_interval(session, minutes)

    def _aborted(self, session: CellSession, phase: Phase, result) -> PhaseResult:
        session.abort_reason = result.reason
        self._logger.warning(f"{phase.value} aborted: {result.reason.value}")
        return PhaseResult(phase, result.reason)

    # Discharge side

    def discharge_current(self, session: CellSession, c_divisor: float) -> float:
        return -min(self._rig['i_max'], session.capacity_ah / c_divisor)

    def _run_discharge(self, session: CellSession, phase: Phase, phase_config: dict) -> PhaseResult:
        session.i_batt = self.discharge_current(session, phase_config['c_divisor'])
        session.v_floor = phase_config['v_floor']

        while True:
            result = self._report(session, phase_config['report_minutes'])
            if not result.completed:
                return self._aborted(session, phase, result)
            if session.v_external <= session.v_floor:
                break

        result = self._report(session, 0)
        if not result.completed:
            return self._aborted(session, phase, result)
        return PhaseResult(phase)

    # Charge side

    def fast_charge_current(self, session: CellSession) -> float:
        """Leave room for the ISR bump under the channel limit; dV bump is ~8 mV at C/4."""
        return min(self._rig['i_max'] - self._rig['i_bump'], session.capacity_ah)

    def _run_form_charge(self, session: CellSession) -> PhaseResult:
        session.i_batt = session.capacity_ah / self._form['c_divisor']

        while session.v_internal < self._form['v_internal_min']:
            result = self._report(session, self._form['report_minutes'])
            if not result.completed:
                return self._aborted(session, Phase.FORM_CHARGE, result)
            if result.status == TickStatus.TERMINATED:
                # Already at the ceiling, fast charge will end at once
                break

        return PhaseResult(Phase.FORM_CHARGE)

    def _run_fast_charge(self, session: CellSession) -> PhaseResult:
        session.i_batt = self.fast_charge_current(session)
        minutes = self._fast['report_minutes']
        monitor = FastChargeMonitor.from_config(session.capacity_mah, self._fast)

        while True:
            result = self._report(session, minutes)
            if not result.completed:
                return self._aborted(session, Phase.FAST_CHARGE, result)

            termination = monitor.check(session, minutes)
            if termination is not None:
                self.last_charge_termination = termination
                self._logger.info(f"Fast charge terminated: {termination.value} "
                                  f"({session.mah:.0f} mAh, Vint {session.v_internal:.4f} V)")
                break

        result = self._report(session, 0)
        if not result.completed:
            return self._aborted(session, Phase.FAST_CHARGE, result)
        return PhaseResult(Phase.FAST_CHARGE)

    def _run_top_off(self, session: CellSession) -> PhaseResult:
        session.i_batt = session.capacity_ah / self._top_off['c_divisor']
        minutes = self._top_off['report_minutes']
        limit_mah = session.capacity_mah * self._top_off['capacity_limit']

        if session.v_external < session.v_max:
            for _ in range(int(self._top_off['budget_minutes'] // minutes)):
                result = self._report(session, minutes)
                if not result.completed:
                    return self._aborted(session, Phase.TOP_OFF, result)
                # TODO: compare against the mAh delivered by the preceding discharge
                if session.mah >= limit_mah:
                    break
        else:
            self._logger.info("At ceiling after fast charge, no top-off")

        result = self._report(session, 0)
        if not result.completed:
            return self._aborted(session, Phase.TOP_OFF, result)
        return PhaseResult(Phase.TOP_OFF)

    def _run_idle(self, session: CellSession) -> PhaseResult:
        session.i_batt = 0.0
        self._actuation.apply_target(0.0, 0.0)
        session.cycles_completed += 1
        self._logger.info(f"Cycle {session.cycles_completed} complete: {session.mah:.0f} mAh, {session.mwh:.0f} mWh")
        return PhaseResult(Phase.IDLE)

    def run_phase(self, session: CellSession, phase: Phase) -> PhaseResult:
        """Run a single phase to termination or abort."""
        session.enter_phase(phase)
        self._logger.info(f"Entering {phase.value}")

        if phase == Phase.DISCHARGE:
            session.reset_totals()
            return self._run_discharge(session, phase, self._discharge)
        if phase == Phase.RECONDITION_DISCHARGE:
            # Slow deep discharge to break up crystals
            return self._run_discharge(session, phase, self._recondition)
        if phase == Phase.FORM_CHARGE:
            session.reset_totals()
            return self._run_form_charge(session)
        if phase == Phase.FAST_CHARGE:
            return self._run_fast_charge(session)
        if phase == Phase.TOP_OFF:
            return self._run_top_off(session)
        return self._run_idle(session)

    def run_cycle(self, session: CellSession, start: Phase = Phase.DISCHARGE) -> PhaseResult:
        """
        Run phases from start through IDLE.

        Returns:
            PhaseResult for IDLE if the cycle completed, else the aborted phase's result
        """
        session.abort_reason = None
        phase = start
        result = None
        while phase is not None:
            result = self.run_phase(session, phase)
            if not result.completed:
                return result
            phase = next_phase(phase)
        return result
