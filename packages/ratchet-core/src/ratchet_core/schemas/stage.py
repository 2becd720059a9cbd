"""Stage execution schemas.

A stage is one discrete unit of pipeline work (build, test, infra plan,
deploy, verify, redeploy). These models describe a planned stage, what an
executor reports for one attempt, the append-only attempt log entries, and
the final result StageRunner returns.

Key Components:
    StageKind: What kind of work a stage performs
    StageState: pending, running, succeeded, failed, skipped
    StageContext: Input handed to an executor
    StageOutcome: Executor report for one attempt
    StageError: Structured last error of a stage
    StageExecution: Planned/running stage within a PipelineRun
    StageAttemptRecord: Execution log entry
    StageResult: Outcome of StageRunner.run()
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ratchet_core.schemas.artifact import Artifact
from ratchet_core.schemas.change import ChangeRequest
from ratchet_core.schemas.environment import EnvironmentConfig


class StageKind(str, Enum):
    """Kind of work a stage performs.

    Each kind maps to one injected executor.
    """

    BUILD = "build"
    TEST = "test"
    INFRA_PLAN = "infra_plan"
    DEPLOY = "deploy"
    VERIFY = "verify"
    REDEPLOY = "redeploy"


class StageState(str, Enum):
    """Lifecycle state of a StageExecution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutcomeStatus(str, Enum):
    """Status an executor reports for one attempt.

    Attributes:
        SUCCEEDED: The attempt did its work.
        RETRYABLE: Transient failure; StageRunner may try again.
        NON_RETRYABLE: Permanent failure; the stage fails immediately.
    """

    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


class StageErrorKind(str, Enum):
    """Classification of a stage's last error."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


class StageError(BaseModel):
    """Structured error recorded on a stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: StageErrorKind = Field(..., description="Error classification")
    message: str = Field(..., description="Human-readable description")
    details: dict[str, Any] = Field(default_factory=dict)


class StageContext(BaseModel):
    """Everything an executor may need for one attempt.

    Attributes:
        pipeline_run_id: Run the stage belongs to.
        stage_name: Name of the stage (e.g., "deploy-dev").
        kind: Stage kind.
        attempt: 1-indexed attempt number.
        change_request: The change being promoted.
        environment: Target environment (None for environment-agnostic stages).
        artifact: Artifact being tested/deployed (None before the build).
        inputs: Outputs of earlier stages the executor may consume.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pipeline_run_id: str = Field(..., min_length=1)
    stage_name: str = Field(..., min_length=1)
    kind: StageKind
    attempt: int = Field(default=1, ge=1)
    change_request: ChangeRequest | None = None
    environment: EnvironmentConfig | None = None
    artifact: Artifact | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)


class StageOutcome(BaseModel):
    """Report from an executor for a single attempt.

    Examples:
        >>> StageOutcome.success({"function_version": "12"}).status
        <OutcomeStatus.SUCCEEDED: 'succeeded'>
        >>> StageOutcome.retryable("throttled").error
        'throttled'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: OutcomeStatus = Field(..., description="Attempt status")
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = Field(default=None)

    @classmethod
    def success(cls, details: dict[str, Any] | None = None) -> StageOutcome:
        """Build a successful outcome."""
        return cls(status=OutcomeStatus.SUCCEEDED, details=details or {})

    @classmethod
    def retryable(cls, error: str, details: dict[str, Any] | None = None) -> StageOutcome:
        """Build a transient-failure outcome."""
        return cls(status=OutcomeStatus.RETRYABLE, error=error, details=details or {})

    @classmethod
    def non_retryable(
        cls, error: str, details: dict[str, Any] | None = None
    ) -> StageOutcome:
        """Build a permanent-failure outcome."""
        return cls(status=OutcomeStatus.NON_RETRYABLE, error=error, details=details or {})

    @property
    def succeeded(self) -> bool:
        """Whether the attempt succeeded."""
        return self.status == OutcomeStatus.SUCCEEDED


class StageExecution(BaseModel):
    """One planned stage within a PipelineRun.

    Mutated only by StageRunner while it runs the stage.

    Attributes:
        stage_name: Unique name within the run (e.g., "verify-prod").
        kind: Stage kind, selecting the executor.
        target_environment: Environment name, or None for environment-agnostic stages.
        attempt_count: Attempts made so far.
        max_attempts: Upper bound on executor invocations.
        state: Current stage state.
        last_error: Last structured error, if any.
        outputs: Details reported by the successful attempt.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    stage_name: str = Field(..., min_length=1)
    kind: StageKind
    target_environment: str | None = Field(default=None)
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    state: StageState = Field(default=StageState.PENDING)
    last_error: StageError | None = Field(default=None)
    outputs: dict[str, Any] = Field(default_factory=dict)


class StageAttemptRecord(BaseModel):
    """Append-only execution log entry for one attempt."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pipeline_run_id: str
    stage_name: str
    attempt: int = Field(..., ge=1)
    status: OutcomeStatus
    duration_ms: int = Field(..., ge=0)
    error: str | None = None
    started_at: datetime


class StageResult(BaseModel):
    """Final result of running a stage through StageRunner."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage_name: str
    state: StageState
    attempts: int = Field(..., ge=0)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: StageError | None = None
    duration_ms: int = Field(default=0, ge=0)

    @property
    def succeeded(self) -> bool:
        """Whether the stage ended in SUCCEEDED."""
        return self.state == StageState.SUCCEEDED


__all__ = [
    "OutcomeStatus",
    "StageAttemptRecord",
    "StageContext",
    "StageError",
    "StageErrorKind",
    "StageExecution",
    "StageKind",
    "StageOutcome",
    "StageResult",
    "StageState",
]
