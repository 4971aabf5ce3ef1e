"""
Cell session state and tagged control results.

A CellSession is threaded explicitly through the estimator, integrator,
reporting loop and phase controller; no component keeps its own copy of the
running totals.
"""

from enum import Enum
from typing import Optional, List


class Phase(Enum):
    """Cycling phases, in the only order they may run within one cycle."""
    DISCHARGE = "discharge"
    RECONDITION_DISCHARGE = "recondition_discharge"
    FORM_CHARGE = "form_charge"
    FAST_CHARGE = "fast_charge"
    TOP_OFF = "top_off"
    IDLE = "idle"

    @property
    def is_discharge(self) -> bool:
        return self in (Phase.DISCHARGE, Phase.RECONDITION_DISCHARGE)


PHASE_ORDER = [
    Phase.DISCHARGE,
    Phase.RECONDITION_DISCHARGE,
    Phase.FORM_CHARGE,
    Phase.FAST_CHARGE,
    Phase.TOP_OFF,
    Phase.IDLE,
]


def next_phase(phase: Phase) -> Optional[Phase]:
    """Successor of phase, None after IDLE."""
    index = PHASE_ORDER.index(phase)
    if index + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[index + 1]
    return None


class TickStatus(Enum):
    CONTINUE = "continue"
    INTERVAL_COMPLETE = "interval_complete"
    TERMINATED = "terminated"
    ABORTED = "aborted"


class AbortReason(Enum):
    OPEN_CIRCUIT = "open_circuit"
    OPERATOR_TOGGLE = "operator_toggle"


class TickResult:
    """Outcome of one reporting tick (or of a whole interval)."""

    __slots__ = ('status', 'reason')

    def __init__(self, status: TickStatus, reason: Optional[AbortReason] = None):
        if (status == TickStatus.ABORTED) != (reason is not None):
            raise ValueError("reason is required for ABORTED and only for ABORTED")
        self.status = status
        self.reason = reason

    @classmethod
    def aborted(cls, reason: AbortReason) -> 'TickResult':
        return cls(TickStatus.ABORTED, reason)

    @property
    def completed(self) -> bool:
        """True when the interval ended normally (full length or terminated)."""
        return self.status in (TickStatus.INTERVAL_COMPLETE, TickStatus.TERMINATED)

    @property
    def is_final(self) -> bool:
        return self.status != TickStatus.CONTINUE

    def __eq__(self, other):
        if not isinstance(other, TickResult):
            return NotImplemented
        return self.status == other.status and self.reason == other.reason

    def __repr__(self):
        if self.reason is not None:
            return f"TickResult({self.status.name}, {self.reason.name})"
        return f"TickResult({self.status.name})"


CONTINUE = TickResult(TickStatus.CONTINUE)
INTERVAL_COMPLETE = TickResult(TickStatus.INTERVAL_COMPLETE)
TERMINATED = TickResult(TickStatus.TERMINATED)


class PhaseResult:
    """Whether a phase ran to its own termination, or was aborted."""

    __slots__ = ('phase', 'reason')

    def __init__(self, phase: Phase, reason: Optional[AbortReason] = None):
        self.phase = phase
        self.reason = reason

    @property
    def completed(self) -> bool:
        return self.reason is None

    def __repr__(self):
        state = "completed" if self.completed else f"aborted ({self.reason.name})"
        return f"PhaseResult({self.phase.name}, {state})"


class ResistanceEstimate:
    """(isr, v_internal, v_external) valid right after one estimator run."""

    __slots__ = ('isr', 'v_internal', 'v_external')

    def __init__(self, isr: float, v_internal: float, v_external: float):
        self.isr = isr
        self.v_internal = v_internal
        self.v_external = v_external

    def __iter__(self):
        return iter((self.isr, self.v_internal, self.v_external))

    def __repr__(self):
        return (f"ResistanceEstimate(isr={self.isr * 1000:.1f} mOhm, "
                f"v_internal={self.v_internal:.4f} V, v_external={self.v_external:.4f} V)")


class CellSession:
    """
    One physical cell from insertion until removal.

    Parameters:
        capacity_ah: Nominal capacity C in Ah
        v_max: Charge ceiling voltage in V
        display_on_secs: Initial front-panel display countdown
    """

    def __init__(self, capacity_ah: float, v_max: float, display_on_secs: int = 10):
        self.capacity_ah = capacity_ah
        self.v_max = v_max

        # Command target
        self.i_batt = 0.0
        self.v_floor = 0.0          # discharge termination voltage

        # Latest estimates
        self.isr = 0.0
        self.v_internal = 0.0
        self.v_external = 0.0
        self.prev_v_external = 0.0

        # Running totals for the current half-cycle
        self.mah = 0.0
        self.mwh = 0.0

        self.display_on_secs = display_on_secs
        self.phase = Phase.IDLE
        self.history: List[Phase] = []
        self.cycles_completed = 0
        self.abort_reason: Optional[AbortReason] = None

    @property
    def capacity_mah(self) -> float:
        return self.capacity_ah * 1000.0

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None

    def reset_totals(self):
        self.mah = 0.0
        self.mwh = 0.0

    def enter_phase(self, phase: Phase):
        self.phase = phase
        self.history.append(phase)

    def status_line(self) -> str:
        """Vext, dVext (mV), ISR (mOhm), Vint, mAh, mWh."""
        return (f"{self.v_external:.4f},{(self.v_external - self.prev_v_external) * 1000:5.1f},"
                f"{self.isr * 1000:4.0f},{self.v_internal:7.4f},{self.mah:5.0f},{self.mwh:5.0f}")

    def get_state(self) -> dict:
        return {
            'phase': self.phase.value,
            'i_batt_a': self.i_batt,
            'v_external_v': self.v_external,
            'v_internal_v': self.v_internal,
            'isr_ohm': self.isr,
            'mah': self.mah,
            'mwh': self.mwh,
            'cycles_completed': self.cycles_completed,
            'abort_reason': self.abort_reason.value if self.abort_reason else None
        }
