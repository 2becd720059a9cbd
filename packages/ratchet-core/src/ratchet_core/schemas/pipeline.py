"""Pipeline run schemas.

A PipelineRun is one execution of the orchestrator for one ChangeRequest
across the promotion path. Its ``overall_state`` moves through RunState
values under the transition table in ``ratchet_core.pipeline.states``.

Key Components:
    RunState: Overall run state
    StateTransition: One recorded state change
    PipelineRun: Orchestrator-owned mutable run record
    PipelineRunStatus: Read-only snapshot returned by the query surface
    RollbackRecord: Audit record of a rollback attempt
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ratchet_core.schemas.approval import ApprovalRequest
from ratchet_core.schemas.change import ChangeClassification, ChangeRequest
from ratchet_core.schemas.stage import StageAttemptRecord, StageError, StageExecution


class RunState(str, Enum):
    """Overall state of a PipelineRun.

    Environment-scoped states (awaiting_lock through promoted) carry their
    environment in ``PipelineRun.current_environment``.
    """

    QUEUED = "queued"
    CLASSIFYING = "classifying"
    BUILDING = "building"
    AWAITING_LOCK = "awaiting_lock"
    TESTING = "testing"
    AWAITING_APPROVAL = "awaiting_approval"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    PROMOTED = "promoted"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in TERMINAL_STATES

    @property
    def is_environment_scoped(self) -> bool:
        """Whether the state applies to a specific environment."""
        return self in ENVIRONMENT_STATES


TERMINAL_STATES = frozenset(
    {
        RunState.COMPLETED,
        RunState.FAILED,
        RunState.ROLLED_BACK,
        RunState.ROLLBACK_FAILED,
        RunState.CANCELLED,
    }
)

ENVIRONMENT_STATES = frozenset(
    {
        RunState.AWAITING_LOCK,
        RunState.TESTING,
        RunState.AWAITING_APPROVAL,
        RunState.DEPLOYING,
        RunState.VERIFYING,
        RunState.PROMOTED,
    }
)


class StateTransition(BaseModel):
    """One recorded change of ``overall_state``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_state: RunState
    to_state: RunState
    environment: str | None = None
    at: datetime
    reason: str | None = None


class PipelineRun(BaseModel):
    """One execution of the pipeline for one ChangeRequest.

    Exclusively owned and mutated by PipelineOrchestrator under the run's
    lock. Failed runs keep their stage plan, transitions and last error.

    Attributes:
        id: Run identifier.
        change_request_id: Id of the owned ChangeRequest.
        change_request: The change being promoted.
        classification: Attached after classifying.
        stage_plan: Ordered stages for the whole promotion path.
        overall_state: Current RunState.
        current_environment: Environment of the current scoped state.
        artifact_fingerprint: Built artifact, once registered.
        failed_stage: Stage name (or "approval") that failed the run.
        last_error: Last structured error.
        approval_request_ids: Approval requests raised, in order.
        transitions: Full transition history.
        started_at: Creation time.
        finished_at: Set when a terminal state is reached.
        cancel_requested_by: Operator who requested cancellation.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(..., min_length=1)
    change_request_id: str = Field(..., min_length=1)
    change_request: ChangeRequest
    classification: ChangeClassification | None = None
    stage_plan: list[StageExecution] = Field(default_factory=list)
    overall_state: RunState = Field(default=RunState.QUEUED)
    current_environment: str | None = None
    artifact_fingerprint: str | None = None
    failed_stage: str | None = None
    last_error: StageError | None = None
    approval_request_ids: list[str] = Field(default_factory=list)
    transitions: list[StateTransition] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None
    cancel_requested_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the run reached a terminal state."""
        return self.overall_state.is_terminal

    def get_stage(self, stage_name: str) -> StageExecution:
        """Return a planned stage by name.

        Raises:
            KeyError: If the stage is not part of the plan.
        """
        for stage in self.stage_plan:
            if stage.stage_name == stage_name:
                return stage
        raise KeyError(stage_name)

    def has_stage(self, stage_name: str) -> bool:
        """Whether the plan contains a stage of this name."""
        return any(stage.stage_name == stage_name for stage in self.stage_plan)

    def environments_visited(self) -> list[str]:
        """Environments entered, in order, without repeats."""
        visited: list[str] = []
        for transition in self.transitions:
            env = transition.environment
            if env is not None and transition.to_state.is_environment_scoped:
                if not visited or visited[-1] != env:
                    visited.append(env)
        return visited


class PipelineRunStatus(BaseModel):
    """Read-only snapshot of a run for the query surface."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str
    change_request_id: str
    source_ref: str
    commit: str
    state: RunState
    current_environment: str | None = None
    artifact_fingerprint: str | None = None
    failed_stage: str | None = None
    last_error: StageError | None = None
    classification: ChangeClassification | None = None
    stages: list[StageExecution] = Field(default_factory=list)
    attempts: list[StageAttemptRecord] = Field(default_factory=list)
    approvals: list[ApprovalRequest] = Field(default_factory=list)
    transitions: list[StateTransition] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None


class RollbackRecord(BaseModel):
    """Audit record of a rollback attempt.

    Attributes:
        rollback_id: Unique identifier.
        environment: Environment rolled back.
        from_fingerprint: Fingerprint that was being replaced (may be None when
            a first deploy of a new artifact was interrupted).
        to_fingerprint: Last-known-good fingerprint restored.
        pipeline_run_id: Triggering run, or None for operator requests.
        reason: Why the rollback happened.
        operator: Who or what requested it.
        succeeded: Whether the redeploy stage succeeded.
        rolled_back_at: Completion timestamp.
        trace_id: OpenTelemetry trace id for correlation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rollback_id: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    from_fingerprint: str | None = None
    to_fingerprint: str = Field(..., min_length=1)
    pipeline_run_id: str | None = None
    reason: str = Field(..., min_length=1)
    operator: str = Field(..., min_length=1)
    succeeded: bool
    rolled_back_at: datetime
    trace_id: str = Field(default="")


__all__ = [
    "ENVIRONMENT_STATES",
    "TERMINAL_STATES",
    "PipelineRun",
    "PipelineRunStatus",
    "RollbackRecord",
    "RunState",
    "StateTransition",
]
