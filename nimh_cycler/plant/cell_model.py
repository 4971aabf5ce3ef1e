"""
NiMH Cell Equivalent Circuit Model (ECM)

Plant model used by the simulated supply:
- OCV-SOC relationship, extended below 0% (deep discharge collapse) and
  above 100% (overcharge roll-off that produces the negative-dV signature)
- Internal resistance R0 as function of SOC
- 1RC network (R1-C1) for the slow polarization that makes a two-point
  resistance estimate drift
- Charge acceptance falling off near full charge
"""

import numpy as np
from typing import Tuple, Optional


class NiMHCell:
    """
    NiMH Cell Equivalent Circuit Model

    ECM Structure:
        OCV(SOC) - R0(SOC) - [R1 || C1] - Terminal

    Sign convention: positive current charges the cell and raises the
    terminal voltage above OCV.

    Parameters:
        capacity_ah: Nominal capacity in Ah (default: 3.5Ah)
        initial_soc: Initial state of charge (0.0 to 1.0, default: 0.5)
        r0_mohm: Series resistance at 50% SOC in mOhm (default: 30)
    """

    # SOC%, OCV(V). Beyond 100% the cell is overcharging: voltage peaks
    # and then drops as the cell heats.
    _OCV_SOC_TABLE = np.array([
        [-10.0, 0.000],
        [-5.0, 0.300],
        [0.0, 0.950],
        [2.0, 1.050],
        [5.0, 1.150],
        [10.0, 1.200],
        [20.0, 1.240],
        [30.0, 1.260],
        [40.0, 1.270],
        [50.0, 1.280],
        [60.0, 1.290],
        [70.0, 1.305],
        [80.0, 1.325],
        [90.0, 1.360],
        [95.0, 1.400],
        [100.0, 1.440],
        [103.0, 1.452],
        [106.0, 1.446],
        [110.0, 1.438],
        [120.0, 1.425],
        [150.0, 1.410],
    ])

    SOC_MIN = -0.10
    SOC_MAX = 1.50

    R1 = 0.015     # Ohm
    C1 = 2000.0    # F, tau = 30 s

    def __init__(
        self,
        capacity_ah: float = 3.5,
        initial_soc: float = 0.5,
        r0_mohm: float = 30.0
    ):
        self._capacity_ah = capacity_ah
        self._soc = float(np.clip(initial_soc, self.SOC_MIN, self.SOC_MAX))
        self._r0_base_ohm = r0_mohm / 1000.0
        self._v_rc1 = 0.0
        self._last_current_a = 0.0

        self._soc_table = self._OCV_SOC_TABLE[:, 0] / 100.0
        self._ocv_table = self._OCV_SOC_TABLE[:, 1]

    @property
    def capacity_ah(self) -> float:
        return self._capacity_ah

    @property
    def soc(self) -> float:
        return self._soc

    def get_ocv(self, soc_pct: Optional[float] = None) -> float:
        """
        Get open circuit voltage in V.

        Args:
            soc_pct: State of charge in percent. If None, use current SOC.
        """
        soc = self._soc if soc_pct is None else soc_pct / 100.0
        return float(np.interp(soc, self._soc_table, self._ocv_table))

    def get_internal_resistance(self, soc_pct: Optional[float] = None) -> float:
        """
        Get series resistance R0 in Ohm.

        1.5x at 0% SOC falling to 0.9x at 100%; rises steeply once the cell
        is driven below empty.
        """
        soc = self._soc if soc_pct is None else soc_pct / 100.0
        if soc < 0.0:
            multiplier = 1.5 + (-soc) * 20.0
        elif soc <= 1.0:
            multiplier = 1.5 - 0.6 * soc
        else:
            multiplier = 0.9
        return self._r0_base_ohm * multiplier

    def charge_acceptance(self) -> float:
        """Fraction of charge current stored (rest goes to heat/gassing)."""
        if self._soc < 0.9:
            return 1.0
        return float(np.clip(1.0 - (self._soc - 0.9), 0.3, 1.0))

    def get_terminal_voltage(self, current_a: Optional[float] = None) -> float:
        """
        Terminal voltage in V at the given current (default: last applied).

        V = OCV + I*R0 + V_RC1, floored at 0.
        """
        if current_a is None:
            current_a = self._last_current_a
        v = self.get_ocv() + current_a * self.get_internal_resistance() + self._v_rc1
        return max(v, 0.0)

    def update(self, current_ma: float, dt_ms: float) -> Tuple[float, float]:
        """
        Update cell state based on current and time step.

        Args:
            current_ma: Current in mA (positive = charge, negative = discharge)
            dt_ms: Time step in milliseconds

        Returns:
            Tuple of (terminal_voltage_mv, soc_pct)
        """
        current_a = current_ma / 1000.0
        self._last_current_a = current_a

        if dt_ms > 0:
            dt_hours = dt_ms / (1000.0 * 3600.0)
            efficiency = self.charge_acceptance() if current_a > 0 else 1.0
            self._soc += efficiency * current_a * dt_hours / self._capacity_ah
            self._soc = float(np.clip(self._soc, self.SOC_MIN, self.SOC_MAX))

            tau1 = self.R1 * self.C1
            exp_factor1 = np.exp(-(dt_ms / 1000.0) / tau1)
            self._v_rc1 = float(self._v_rc1 * exp_factor1 + current_a * self.R1 * (1.0 - exp_factor1))

        return self.get_terminal_voltage(current_a) * 1000.0, self._soc * 100.0

    def get_state(self) -> dict:
        return {
            'soc_pct': self._soc * 100.0,
            'ocv_v': self.get_ocv(),
            'terminal_v': self.get_terminal_voltage(),
            'r0_ohm': self.get_internal_resistance(),
            'rc1_voltage_v': self._v_rc1,
            'current_a': self._last_current_a
        }

    def reset(self, soc_pct: Optional[float] = None):
        """Reset cell state (useful for testing)."""
        if soc_pct is not None:
            self._soc = float(np.clip(soc_pct / 100.0, self.SOC_MIN, self.SOC_MAX))
        self._v_rc1 = 0.0
        self._last_current_a = 0.0
