"""
Internal-Resistance Estimator

Three-point perturb/measure protocol separating the cell's internal voltage
from its IR drop:

    v1    at (comply, i)
    vBump at (comply + di * MaxExpectedOhms, i + di)
    v2    at (comply, i)

    isr        = (vBump - (v1 + v2) / 2) / di
    v_internal = v2 - isr * i

Averaging v1 and v2 cancels the linear drift of a cell that is charging or
discharging during the measurement; a two-point estimate would be biased by
it. The order of the three steps matters.
"""

import logging
from typing import Optional

from nimh_cycler.control.session import CellSession, ResistanceEstimate


class ResistanceEstimator:
    """
    Parameters:
        actuation: ActuationTranslator
        measurement: MeasurementService
        i_bump: Perturbation current in A (default: 0.1)
        max_expected_ohms: Ceiling raise per amp of bump (default: 5.0)
    """

    def __init__(self, actuation, measurement, i_bump: float = 0.1, max_expected_ohms: float = 5.0):
        self._actuation = actuation
        self._measurement = measurement
        self._i_bump = i_bump
        self._max_expected_ohms = max_expected_ohms
        self._logger = logging.getLogger(__name__)

    @property
    def i_bump(self) -> float:
        return self._i_bump

    def bump_for(self, current_amps: float) -> float:
        """Perturbation actually used: never larger than |i| so the bump cannot flip current direction."""
        return min(self._i_bump, abs(current_amps))

    def estimate(
        self,
        comply_voltage: float,
        current_amps: float,
        previous: Optional[ResistanceEstimate] = None
    ) -> ResistanceEstimate:
        """
        Run one perturb/measure pass.

        A 0.0 reading is a dropped reply, not a voltage. If any of the three
        readings dropped, the previous estimate is returned unchanged.

        Args:
            comply_voltage: Charge channel ceiling for the base target (V)
            current_amps: Base signed current (A)
            previous: Estimate to keep if no perturbation is possible or a reading dropped

        Returns:
            ResistanceEstimate with v_external = settled v2
        """
        if previous is None:
            previous = ResistanceEstimate(0.0, 0.0, 0.0)
        d_i = self.bump_for(current_amps)

        self._actuation.apply_target(comply_voltage, current_amps)
        v1 = self._measurement.read_voltage()

        if d_i <= 0:
            if v1 == 0.0:
                self._logger.warning("Voltage read returned nothing, keeping previous ISR estimate")
                return previous
            # Zero base current: no bump, keep the stale estimate
            self._logger.debug("Zero base current, ISR estimate not refreshed")
            return ResistanceEstimate(previous.isr, v1 - previous.isr * current_amps, v1)

        self._actuation.apply_target(comply_voltage + self._max_expected_ohms * d_i, current_amps + d_i)
        v_bump = self._measurement.read_voltage()

        self._actuation.apply_target(comply_voltage, current_amps)
        v2 = self._measurement.read_voltage()

        if 0.0 in (v1, v_bump, v2):
            self._logger.warning(
                f"Voltage read returned nothing (v1={v1:.4f}, vBump={v_bump:.4f}, v2={v2:.4f}), "
                f"keeping previous ISR estimate"
            )
            return previous

        isr = (v_bump - (v1 + v2) / 2) / d_i
        v_internal = v2 - isr * current_amps

        return ResistanceEstimate(isr, v_internal, v2)

    def update_session(self, session: CellSession, comply_voltage: float) -> ResistanceEstimate:
        """Estimate at the session's commanded current and store the result on it."""
        previous = ResistanceEstimate(session.isr, session.v_internal, session.v_external)
        result = self.estimate(comply_voltage, session.i_batt, previous=previous)
        session.isr, session.v_internal, session.v_external = result
        return result
