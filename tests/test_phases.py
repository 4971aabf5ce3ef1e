"""
Unit tests for fast-charge termination and phase sequencing.
"""

import pytest
from unittest.mock import Mock
from nimh_cycler.config import load_config
from nimh_cycler.control.phases import ChargeTermination, FastChargeMonitor, PhaseController
from nimh_cycler.control.session import (
    AbortReason,
    CellSession,
    Phase,
    PHASE_ORDER,
    TickResult,
    INTERVAL_COMPLETE,
    TERMINATED,
    next_phase,
)


class LinearCell:
    """
    ReportingLoop stand-in: each interval moves the terminal voltage a fixed
    step in the current's direction and books the interval's charge.
    """

    def __init__(self, v_start=1.3, discharge_step_v=0.05, charge_step_v=0.01, scripted=None):
        self.v_start = v_start
        self.discharge_step_v = discharge_step_v
        self.charge_step_v = charge_step_v
        self.scripted = list(scripted or [])
        self.calls = []

    def run_interval(self, session, minutes):
        if not self.calls and session.v_external == 0.0:
            session.v_external = session.v_internal = self.v_start
        self.calls.append((session.phase, session.i_batt, minutes))

        if self.scripted:
            result = self.scripted.pop(0)
            if result is not None:
                return result
        if minutes == 0:
            return TERMINATED

        d_mah = session.i_batt * 1000.0 * minutes / 60.0
        session.mah += d_mah
        session.mwh += d_mah * 1.2

        if session.i_batt < 0:
            session.v_external = round(session.v_external - self.discharge_step_v, 6)
            session.v_internal = session.v_external
            if session.v_external <= session.v_floor:
                return TERMINATED
        else:
            session.v_external = round(session.v_external + self.charge_step_v, 6)
            session.v_internal = session.v_external
            if session.v_external >= session.v_max:
                return TERMINATED
        return INTERVAL_COMPLETE

    def phase_calls(self, phase):
        return [c for c in self.calls if c[0] == phase]


def _controller(plant, overrides=None):
    config = load_config(overrides=overrides)
    actuation = Mock()
    return PhaseController(plant, actuation, config), actuation


class TestPhaseOrder:

    def test_next_phase(self):
        assert next_phase(Phase.DISCHARGE) == Phase.RECONDITION_DISCHARGE
        assert next_phase(Phase.TOP_OFF) == Phase.IDLE
        assert next_phase(Phase.IDLE) is None

    def test_is_discharge(self):
        assert Phase.DISCHARGE.is_discharge
        assert Phase.RECONDITION_DISCHARGE.is_discharge
        assert not Phase.FORM_CHARGE.is_discharge


class TestFastChargeMonitor:
    """Test suite for FastChargeMonitor class."""

    def _session(self, v_external, v_internal, mah):
        session = CellSession(3.5, 1.7)
        session.v_external = v_external
        session.v_internal = v_internal
        session.mah = mah
        return session

    def test_gated_below_thresholds(self):
        """Test Vint 1.3 V at 50% capacity never evaluates inflection checks."""
        monitor = FastChargeMonitor(3500)
        session = self._session(1.50, 1.30, 1750)

        assert monitor.check(session, 1) is None
        for v in (1.45, 1.40, 1.40, 1.35):
            session.v_external = v
            assert monitor.check(session, 1) is None
            assert not monitor.inflection_checked
        for _ in range(30):
            assert monitor.check(session, 1) is None
        assert monitor.level_minutes == 0

    def test_capacity_limit_exact(self):
        """Test mAh == 110% of capacity terminates."""
        monitor = FastChargeMonitor(3500)
        session = self._session(1.45, 1.40, 3500 * 1.1)

        assert monitor.check(session, 1) == ChargeTermination.CAPACITY

    def test_ceiling_first(self):
        monitor = FastChargeMonitor(3500)
        session = self._session(1.70, 1.65, 3900)

        assert monitor.check(session, 1) == ChargeTermination.CEILING

    def test_internal_voltage_limit(self):
        monitor = FastChargeMonitor(3500)
        session = self._session(1.65, 1.60, 1000)

        assert monitor.check(session, 1) == ChargeTermination.INTERNAL_VOLTAGE

    def test_negative_delta_v(self):
        """Test a 1 mV drop below the peak ends the charge once gated."""
        monitor = FastChargeMonitor(3500)
        session = self._session(1.550, 1.50, 3000)

        assert monitor.check(session, 1) is None
        assert monitor.v_peak == 1.550

        session.v_external = 1.5495
        assert monitor.check(session, 1) is None
        assert monitor.inflection_checked

        session.v_external = 1.5488
        assert monitor.check(session, 1) == ChargeTermination.NEGATIVE_DELTA_V

    def test_plateau(self):
        """Test 20 flat reporting minutes end the charge."""
        monitor = FastChargeMonitor(3500)
        session = self._session(1.520, 1.47, 2800)

        assert monitor.check(session, 1) is None
        for _ in range(19):
            assert monitor.check(session, 1) is None
        assert monitor.level_minutes == 19
        assert monitor.check(session, 1) == ChargeTermination.PLATEAU

    def test_small_rise_keeps_level_count(self):
        """Test a sub-tolerance rise moves the peak but not the plateau counter."""
        monitor = FastChargeMonitor(3500)
        session = self._session(1.520, 1.47, 2800)
        monitor.check(session, 1)
        monitor.check(session, 1)
        monitor.check(session, 1)
        assert monitor.level_minutes == 2

        session.v_external = 1.5203
        assert monitor.check(session, 1) is None
        assert monitor.v_peak == 1.5203
        assert monitor.level_minutes == 2

        session.v_external = 1.5210
        monitor.check(session, 1)
        assert monitor.level_minutes == 0

    def test_gated_check_extends_display(self):
        monitor = FastChargeMonitor(3500)
        session = self._session(1.520, 1.47, 2800)
        session.display_on_secs = -5

        monitor.check(session, 1)
        monitor.check(session, 1)

        assert session.display_on_secs == 60


class TestPhaseController:
    """Test suite for PhaseController class."""

    def test_full_cycle_order(self):
        """Test a cycle visits every phase exactly once, in order."""
        plant = LinearCell()
        controller, actuation = _controller(plant)
        session = CellSession(3.5, 1.7)

        result = controller.run_cycle(session)

        assert result.completed
        assert result.phase == Phase.IDLE
        assert session.history == PHASE_ORDER
        assert session.cycles_completed == 1
        assert controller.last_charge_termination == ChargeTermination.INTERNAL_VOLTAGE
        actuation.apply_target.assert_called_with(0.0, 0.0)

    def test_discharge_current_and_floor(self):
        """Test C=3.5 with i_max >= 1.75 discharges at -1.75 A to 1.0 V."""
        plant = LinearCell(v_start=1.3)
        controller, _ = _controller(plant, {'rig': {'i_max': 2.0}})
        session = CellSession(3.5, 1.7)

        result = controller.run_phase(session, Phase.DISCHARGE)

        assert result.completed
        calls = plant.phase_calls(Phase.DISCHARGE)
        assert all(i == pytest.approx(-1.75) for _, i, _ in calls)
        assert [m for _, _, m in calls] == [2] * 6 + [0]
        assert session.v_external == pytest.approx(1.0)
        assert session.v_floor == 1.0

    def test_discharge_limited_by_i_max(self):
        controller, _ = _controller(LinearCell())
        session = CellSession(3.5, 1.7)

        assert controller.discharge_current(session, 2) == pytest.approx(-1.0)
        assert controller.discharge_current(session, 20) == pytest.approx(-0.175)
        assert controller.fast_charge_current(session) == pytest.approx(0.9)

    def test_recondition(self):
        plant = LinearCell(v_start=1.0)
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.mah = -1700.0

        controller.run_phase(session, Phase.RECONDITION_DISCHARGE)

        calls = plant.phase_calls(Phase.RECONDITION_DISCHARGE)
        assert calls[0][1] == pytest.approx(-0.175)
        assert calls[0][2] == 5
        assert session.v_external <= 0.4
        # Totals keep running across both discharge phases
        assert session.mah < -1700.0

    def test_form_charge_skipped_when_ready(self):
        """Test a cell already above 1.0 V internal goes straight on."""
        plant = LinearCell()
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.v_internal = 1.1
        session.mah = -500.0

        result = controller.run_phase(session, Phase.FORM_CHARGE)

        assert result.completed
        assert plant.calls == []
        assert session.mah == 0.0
        assert session.i_batt == pytest.approx(0.35)

    def test_form_charge_stops_at_ceiling(self):
        plant = LinearCell(scripted=[TERMINATED])
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.v_external = session.v_internal = 0.5

        assert controller.run_phase(session, Phase.FORM_CHARGE).completed
        assert len(plant.calls) == 1

    def test_top_off_budget(self):
        """Test top-off runs at most 48 five-minute intervals then settles."""
        plant = LinearCell(charge_step_v=0.0)
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.v_external = session.v_internal = 1.45
        session.mah = -100000.0

        controller.run_phase(session, Phase.TOP_OFF)

        minutes = [m for _, _, m in plant.calls]
        assert minutes == [5] * 48 + [0]
        assert plant.calls[0][1] == pytest.approx(0.35)

    def test_top_off_capacity_limit(self):
        plant = LinearCell(charge_step_v=0.0)
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.v_external = session.v_internal = 1.45
        session.mah = 4200.0 - 29.0

        controller.run_phase(session, Phase.TOP_OFF)

        # 29.2 mAh per interval at C/10
        assert [m for _, _, m in plant.calls] == [5, 0]

    def test_top_off_skipped_at_ceiling(self):
        plant = LinearCell()
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.v_external = 1.71

        controller.run_phase(session, Phase.TOP_OFF)

        assert [m for _, _, m in plant.calls] == [0]

    def test_abort_preserves_totals(self):
        """Test an open circuit mid-discharge exits the cycle with totals intact."""
        aborted = TickResult.aborted(AbortReason.OPEN_CIRCUIT)
        plant = LinearCell(scripted=[None, None, aborted])
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)

        result = controller.run_cycle(session)

        assert not result.completed
        assert result.phase == Phase.DISCHARGE
        assert result.reason == AbortReason.OPEN_CIRCUIT
        assert session.abort_reason == AbortReason.OPEN_CIRCUIT
        assert session.history == [Phase.DISCHARGE]
        assert session.mah == pytest.approx(-1.0 * 1000 * 2 / 60 * 2)
        assert session.cycles_completed == 0

    def test_abort_in_settling_interval(self):
        """Test an abort during the closing report(0) still aborts the phase."""
        toggle = TickResult.aborted(AbortReason.OPERATOR_TOGGLE)
        plant = LinearCell(scripted=[TERMINATED, toggle])
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)
        session.v_external = 0.99
        session.v_floor = 1.0

        result = controller.run_phase(session, Phase.DISCHARGE)

        assert result.reason == AbortReason.OPERATOR_TOGGLE

    def test_start_mid_cycle(self):
        """Test run_cycle can resume at the charge half."""
        plant = LinearCell(v_start=0.5)
        controller, _ = _controller(plant)
        session = CellSession(3.5, 1.7)

        result = controller.run_cycle(session, Phase.FORM_CHARGE)

        assert result.completed
        assert session.history == PHASE_ORDER[2:]
