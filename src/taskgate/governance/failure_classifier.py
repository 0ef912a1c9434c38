"""Map dispatch outcomes onto the failure classes that trigger stop-loss."""

from __future__ import annotations

from taskgate.governance.models import DispatchOutcome, DispatchState, FailureType

_STATE_FAILURES = {
    DispatchState.REJECTED: FailureType.REJECTED,
    DispatchState.BLOCKED: FailureType.BLOCKED,
    DispatchState.GATED: FailureType.GATED,
}


def classify_dispatch_failure(outcome: DispatchOutcome) -> FailureType | None:
    """Return the failure class of an outcome, or None when execution succeeded.

    ERROR outcomes are faults, not failures, and are never classified here.
    A failed repair always surfaces as REJECTED; REPAIR_FAILED is only
    recorded when an operator passes it to stop-loss directly.
    """

    return _STATE_FAILURES.get(outcome.state)
