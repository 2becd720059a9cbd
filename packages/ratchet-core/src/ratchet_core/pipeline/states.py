"""Allowed transitions of ``PipelineRun.overall_state``.

The orchestrator never assigns ``overall_state`` directly; every change goes
through ``require_transition`` so an illegal edge fails loudly instead of
corrupting a run.

Example:
    >>> can_transition(RunState.TESTING, RunState.AWAITING_APPROVAL)
    True
    >>> can_transition(RunState.TESTING, RunState.PROMOTED)
    False
"""

from __future__ import annotations

from ratchet_core.pipeline.errors import InvalidTransitionError
from ratchet_core.schemas.pipeline import RunState

_ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.QUEUED: frozenset({RunState.CLASSIFYING, RunState.CANCELLED}),
    RunState.CLASSIFYING: frozenset(
        {RunState.BUILDING, RunState.FAILED, RunState.CANCELLED}
    ),
    # COMPLETED covers a promotion path where every environment is skipped.
    RunState.BUILDING: frozenset(
        {RunState.AWAITING_LOCK, RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED}
    ),
    RunState.AWAITING_LOCK: frozenset(
        {RunState.TESTING, RunState.FAILED, RunState.CANCELLED}
    ),
    RunState.TESTING: frozenset(
        {
            RunState.AWAITING_APPROVAL,
            RunState.DEPLOYING,
            RunState.FAILED,
            RunState.ROLLED_BACK,
            RunState.ROLLBACK_FAILED,
            RunState.CANCELLED,
        }
    ),
    RunState.AWAITING_APPROVAL: frozenset(
        {RunState.DEPLOYING, RunState.FAILED, RunState.CANCELLED}
    ),
    RunState.DEPLOYING: frozenset(
        {
            RunState.VERIFYING,
            RunState.FAILED,
            RunState.ROLLED_BACK,
            RunState.ROLLBACK_FAILED,
            RunState.CANCELLED,
        }
    ),
    RunState.VERIFYING: frozenset(
        {
            RunState.PROMOTED,
            RunState.FAILED,
            RunState.ROLLED_BACK,
            RunState.ROLLBACK_FAILED,
            RunState.CANCELLED,
        }
    ),
    RunState.PROMOTED: frozenset(
        {RunState.AWAITING_LOCK, RunState.COMPLETED, RunState.CANCELLED}
    ),
    RunState.COMPLETED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.ROLLED_BACK: frozenset(),
    RunState.ROLLBACK_FAILED: frozenset(),
    RunState.CANCELLED: frozenset(),
}


def allowed_targets(state: RunState) -> frozenset[RunState]:
    """States reachable from ``state`` in one transition."""
    return _ALLOWED_TRANSITIONS[state]


def can_transition(from_state: RunState, to_state: RunState) -> bool:
    """Whether ``from_state -> to_state`` is a legal edge."""
    return to_state in _ALLOWED_TRANSITIONS[from_state]


def require_transition(
    from_state: RunState,
    to_state: RunState,
    run_id: str | None = None,
) -> None:
    """Raise InvalidTransitionError unless the edge is legal."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state.value, to_state.value, run_id=run_id)


__all__ = ["allowed_targets", "can_transition", "require_transition"]
