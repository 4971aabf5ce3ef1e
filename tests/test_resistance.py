"""
Unit tests for the internal-resistance estimator and energy integrator.
"""

import pytest
from unittest.mock import Mock
from nimh_cycler.control.resistance import ResistanceEstimator
from nimh_cycler.control.energy import EnergyIntegrator
from nimh_cycler.control.session import CellSession, ResistanceEstimate
from nimh_cycler.control.reporting import ReportingLoop
from nimh_cycler.control.phases import FastChargeMonitor
from nimh_cycler.plant.simulated_supply import SimulatedClock


class ResistiveCell:
    """
    Ideal cell: v = v_internal + isr * i, with v_internal drifting by a fixed
    step per reading. Serves as both actuation and measurement.
    """

    def __init__(self, v_internal: float, isr: float, drift_v: float = 0.0, dropped=()):
        self.v_internal = v_internal
        self.isr = isr
        self.drift_v = drift_v
        self.dropped = set(dropped)
        self.amps = 0.0
        self.targets = []
        self.reads = 0

    def apply_target(self, volts, amps):
        self.targets.append((volts, amps))
        self.amps = amps

    def read_voltage(self):
        """Readings listed in dropped (0-based) come back as 0.0 like a timed-out query."""
        index = self.reads
        self.reads += 1
        v = self.v_internal + self.isr * self.amps
        self.v_internal += self.drift_v
        return 0.0 if index in self.dropped else v

    def read_current(self, signed_amps_hint):
        return self.amps


class TestResistanceEstimator:
    """Test suite for ResistanceEstimator class."""

    def test_exact_resistive_load(self):
        """Test a pure resistive cell is recovered exactly."""
        cell = ResistiveCell(1.25, 0.05)
        estimator = ResistanceEstimator(cell, cell)

        isr, v_internal, v_external = estimator.estimate(1.8, 0.9)

        assert isr == pytest.approx(0.05)
        assert v_internal == pytest.approx(1.25)
        assert v_external == pytest.approx(1.25 + 0.05 * 0.9)

    def test_drift_cancels(self):
        """Test linear drift between readings does not bias the estimate."""
        cell = ResistiveCell(1.40, 0.03, drift_v=0.002)
        estimator = ResistanceEstimator(cell, cell)

        isr, v_internal, _ = estimator.estimate(1.8, 0.9)

        assert isr == pytest.approx(0.03)
        # v2 is the third reading
        assert v_internal == pytest.approx(1.404)

    def test_discharge(self):
        """Test estimate under sink current."""
        cell = ResistiveCell(1.10, 0.08)
        estimator = ResistanceEstimator(cell, cell)

        isr, v_internal, v_external = estimator.estimate(1.6, -0.5)

        assert isr == pytest.approx(0.08)
        assert v_internal == pytest.approx(1.10)
        assert v_external == pytest.approx(1.06)
        assert cell.targets[1] == pytest.approx((1.6 + 5.0 * 0.1, -0.4))

    def test_perturbation_sequence(self):
        """Test base, bump, base ordering and the raised ceiling."""
        cell = ResistiveCell(1.2, 0.05)
        estimator = ResistanceEstimator(cell, cell, i_bump=0.1, max_expected_ohms=5.0)

        estimator.estimate(1.76, 0.3)

        assert cell.targets == [
            (1.76, 0.3),
            (pytest.approx(2.26), pytest.approx(0.4)),
            (1.76, 0.3),
        ]

    def test_bump_limited_by_current(self):
        """Test the bump never exceeds |i| so a small discharge cannot flip to charge."""
        cell = ResistiveCell(0.9, 0.1)
        estimator = ResistanceEstimator(cell, cell)

        assert estimator.bump_for(-0.015) == pytest.approx(0.015)
        isr, _, _ = estimator.estimate(1.7, -0.015)

        assert cell.targets[1][1] == pytest.approx(0.0)
        assert isr == pytest.approx(0.1)

    def test_zero_current_keeps_previous(self):
        """Test zero base current skips the bump and keeps the previous ISR."""
        cell = ResistiveCell(1.3, 0.05)
        estimator = ResistanceEstimator(cell, cell)

        isr, v_internal, v_external = estimator.estimate(1.7, 0.0, previous=ResistanceEstimate(0.042, 1.2, 1.25))

        assert len(cell.targets) == 1
        assert isr == 0.042
        assert v_internal == pytest.approx(1.3)
        assert v_external == pytest.approx(1.3)

    @pytest.mark.parametrize("dropped_read", [0, 1, 2])
    def test_dropped_reading_keeps_previous(self, dropped_read):
        """Test a 0.0 reading at any of the three points leaves the previous estimate in place."""
        cell = ResistiveCell(1.40, 0.05, dropped=[dropped_read])
        estimator = ResistanceEstimator(cell, cell)
        previous = ResistanceEstimate(0.05, 1.39, 1.435)

        result = estimator.estimate(1.88, 0.9, previous=previous)

        assert tuple(result) == (0.05, 1.39, 1.435)
        # The base target is still restored after the bump
        assert cell.targets[-1] == (1.88, 0.9)

    def test_dropped_reading_zero_current(self):
        cell = ResistiveCell(1.30, 0.05, dropped=[0])
        estimator = ResistanceEstimator(cell, cell)

        result = estimator.estimate(1.7, 0.0, previous=ResistanceEstimate(0.042, 1.2, 1.25))

        assert tuple(result) == (0.042, 1.2, 1.25)

    def test_dropped_reading_does_not_end_fast_charge(self):
        """Test one empty reply during the interval's estimate pass cannot trip the internal-voltage limit."""
        cell = ResistiveCell(1.40, 0.0, dropped=[1])
        estimator = ResistanceEstimator(cell, cell)
        clock = SimulatedClock()
        loop = ReportingLoop(
            cell, cell, estimator, EnergyIntegrator(), Mock(),
            clock=clock, sleep=clock.sleep, status_sink=Mock()
        )
        session = CellSession(3.5, 1.7)
        session.i_batt = 0.9
        session.mah = 1750.0
        monitor = FastChargeMonitor(session.capacity_mah)

        loop.run_interval(session, 1)

        assert session.isr == 0.0
        assert session.v_internal == pytest.approx(1.40)
        assert monitor.check(session, 1) is None

    def test_update_session(self):
        cell = ResistiveCell(1.25, 0.05)
        estimator = ResistanceEstimator(cell, cell)
        session = CellSession(3.5, 1.7)
        session.i_batt = 0.9

        estimator.update_session(session, 1.88)

        assert session.isr == pytest.approx(0.05)
        assert session.v_internal == pytest.approx(1.25)
        assert session.v_external == pytest.approx(1.295)


class TestEnergyIntegrator:
    """Test suite for EnergyIntegrator class."""

    def test_delta_mah(self):
        assert EnergyIntegrator.delta_mah(1.0, 3600 * 1000) == pytest.approx(1000.0)
        assert EnergyIntegrator.delta_mah(-0.5, 60 * 1000) == pytest.approx(-8.3333, rel=1e-4)

    def test_accumulate(self):
        """Test mWh uses the internal voltage, with the current's sign."""
        session = CellSession(3.5, 1.7)
        integrator = EnergyIntegrator()

        d_mah = integrator.accumulate(session, -1.0, 1.2, 3600 * 1000)

        assert d_mah == pytest.approx(-1000.0)
        assert session.mah == pytest.approx(-1000.0)
        assert session.mwh == pytest.approx(-1200.0)

    def test_additive(self):
        """Test splitting an interval gives the same totals."""
        integrator = EnergyIntegrator()
        whole = CellSession(3.5, 1.7)
        split = CellSession(3.5, 1.7)

        integrator.accumulate(whole, 0.9, 1.4, 120000)
        integrator.accumulate(split, 0.9, 1.4, 45000)
        integrator.accumulate(split, 0.9, 1.4, 75000)

        assert split.mah == pytest.approx(whole.mah)
        assert split.mwh == pytest.approx(whole.mwh)

    def test_accumulate_samples(self):
        """Test the interval average current is used."""
        session = CellSession(3.5, 1.7)
        integrator = EnergyIntegrator()

        integrator.accumulate_samples(session, [0.8, 0.9, 1.0], 1.3, 3600 * 1000)

        assert session.mah == pytest.approx(900.0)
        assert session.mwh == pytest.approx(1170.0)

    def test_no_samples(self):
        session = CellSession(3.5, 1.7)

        assert EnergyIntegrator().accumulate_samples(session, [], 1.3, 60000) == 0.0
        assert session.mah == 0.0
