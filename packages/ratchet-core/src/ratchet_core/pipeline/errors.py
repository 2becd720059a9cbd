"""Exception hierarchy for the ratchet pipeline engine.

All exceptions inherit from RatchetError so callers can catch every
pipeline error with a single except clause.

Exception Hierarchy:
    RatchetError (base)
    ├── InvalidInputError             # Malformed trigger or request data
    │   └── EnvironmentNotFoundError  # Unknown environment name
    ├── ConfigurationError            # Pipeline configuration invalid/unreadable
    ├── StageExecutionError           # Raised by executors to signal outcomes
    │   ├── RetryableStageError       # Transient stage failure
    │   └── NonRetryableStageError    # Permanent stage failure
    │       └── BuildFailedError      # Artifact builder failed
    ├── NotFoundError                 # Lookup of a missing record
    │   ├── ArtifactNotFoundError
    │   ├── PipelineRunNotFoundError
    │   └── ApprovalRequestNotFoundError
    ├── AlreadyLockedError            # Environment held by another run
    ├── NotHolderError                # Release by a non-holder
    ├── AlreadyDecidedError           # Approval already has a decision
    ├── InvalidTransitionError        # Illegal state machine transition
    ├── EnvironmentFrozenError        # Automation halted after rollback failure
    └── RollbackFailedError           # Rollback deploy itself failed

Exit Codes:
    0 - Success
    1 - General error (RatchetError, ConfigurationError)
    2 - Invalid input (InvalidInputError)
    3 - Record not found (NotFoundError)
    4 - Contract violation (AlreadyLocked, NotHolder, AlreadyDecided, InvalidTransition)
    5 - Stage failure (StageExecutionError)
    6 - Escalation (RollbackFailedError, EnvironmentFrozenError)

Example:
    >>> from ratchet_core.pipeline.errors import AlreadyLockedError
    >>> raise AlreadyLockedError("prod", holder_run_id="run-123")
    Traceback (most recent call last):
        ...
    AlreadyLockedError: Environment prod is locked by run run-123
"""

from __future__ import annotations

from typing import Any


class RatchetError(Exception):
    """Base exception for all pipeline engine errors.

    Attributes:
        exit_code: Process exit code for this error type (default: 1).
    """

    exit_code: int = 1


class InvalidInputError(RatchetError):
    """Raised when trigger, change or command data is malformed.

    Invalid input is rejected before a PipelineRun is created and is never
    retried.

    Attributes:
        field: Name of the offending field, if known.
        reason: Description of what is wrong.
        exit_code: Process exit code (2).

    Example:
        >>> raise InvalidInputError("diff_summary", "empty diff without override label")
        Traceback (most recent call last):
            ...
        InvalidInputError: Invalid diff_summary: empty diff without override label
    """

    exit_code: int = 2

    def __init__(self, field: str | None, reason: str) -> None:
        """Initialize InvalidInputError.

        Args:
            field: Name of the offending field, or None for whole-object errors.
            reason: Description of what is wrong.
        """
        self.field = field
        self.reason = reason
        if field:
            super().__init__(f"Invalid {field}: {reason}")
        else:
            super().__init__(f"Invalid input: {reason}")


class EnvironmentNotFoundError(InvalidInputError):
    """Raised when an environment name is not part of the configuration.

    Attributes:
        environment: The unknown environment name.
        available: Configured environment names.
    """

    def __init__(self, environment: str, available: list[str] | None = None) -> None:
        self.environment = environment
        self.available = available or []
        reason = f"environment '{environment}' not found"
        if self.available:
            reason += f" (configured: {', '.join(self.available)})"
        super().__init__("environment", reason)


class ConfigurationError(RatchetError):
    """Raised when pipeline configuration cannot be loaded or validated.

    Attributes:
        path: Configuration file path, if loaded from disk.
        reason: Description of the failure.
    """

    def __init__(self, reason: str, path: str | None = None) -> None:
        self.path = path
        self.reason = reason
        msg = f"Invalid pipeline configuration: {reason}"
        if path:
            msg += f" (path: {path})"
        super().__init__(msg)


class StageExecutionError(RatchetError):
    """Base class for errors raised by stage executors.

    Executors may either return a StageOutcome or raise one of the
    subclasses; StageRunner converts both into the same attempt record.

    Attributes:
        reason: Description of the failure.
        details: Executor-specific data about the failure.
        exit_code: Process exit code (5).
    """

    exit_code: int = 5

    def __init__(self, reason: str, details: dict[str, Any] | None = None) -> None:
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


class RetryableStageError(StageExecutionError):
    """Raised by an executor for a transient failure that may succeed on retry."""


class NonRetryableStageError(StageExecutionError):
    """Raised by an executor for a failure that retrying cannot fix."""


class BuildFailedError(NonRetryableStageError):
    """Raised by the artifact builder when a source ref cannot be built.

    Attributes:
        source_ref: The branch or ref that failed to build.
        commit: The commit that failed to build.
    """

    def __init__(self, source_ref: str, commit: str, reason: str) -> None:
        self.source_ref = source_ref
        self.commit = commit
        super().__init__(
            f"Build failed for {source_ref}@{commit}: {reason}",
            details={"source_ref": source_ref, "commit": commit},
        )


class NotFoundError(RatchetError):
    """Base class for lookups of records that do not exist.

    Distinct from InvalidInputError: the request was well formed but
    nothing matches it.

    Attributes:
        kind: Record kind (artifact, pipeline run, approval request).
        key: The key that was looked up.
        exit_code: Process exit code (3).
    """

    exit_code: int = 3

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class ArtifactNotFoundError(NotFoundError):
    """Raised when no artifact is registered under a fingerprint."""

    def __init__(self, fingerprint: str) -> None:
        self.fingerprint = fingerprint
        super().__init__("Artifact", fingerprint)


class PipelineRunNotFoundError(NotFoundError):
    """Raised when a pipeline run id is unknown."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__("Pipeline run", run_id)


class ApprovalRequestNotFoundError(NotFoundError):
    """Raised when an approval request id is unknown."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__("Approval request", request_id)


class AlreadyLockedError(RatchetError):
    """Raised when an environment lock is held or a queue head is waiting.

    Expected during normal operation: the orchestrator queues the run and
    retries when the lock manager notifies it.

    Attributes:
        environment: The contended environment.
        holder_run_id: Run currently holding the lock (None if only queued).
        queue_position: Position of the caller in the wait queue (1 is next).
        exit_code: Process exit code (4).
    """

    exit_code: int = 4

    def __init__(
        self,
        environment: str,
        holder_run_id: str | None = None,
        queue_position: int | None = None,
    ) -> None:
        self.environment = environment
        self.holder_run_id = holder_run_id
        self.queue_position = queue_position

        if holder_run_id:
            msg = f"Environment {environment} is locked by run {holder_run_id}"
        else:
            msg = f"Environment {environment} is reserved for an earlier waiter"
        if queue_position is not None:
            msg += f" (queue position {queue_position})"
        super().__init__(msg)


class NotHolderError(RatchetError):
    """Raised when a lock is released by something that does not hold it.

    This is a programming error: it is logged loudly and fails the current
    operation, and it is never retried.

    Attributes:
        environment: Environment named by the lock.
        run_id: Run that attempted the release.
        holder_run_id: Run that actually holds the lock (None if unlocked).
    """

    exit_code: int = 4

    def __init__(self, environment: str, run_id: str, holder_run_id: str | None) -> None:
        self.environment = environment
        self.run_id = run_id
        self.holder_run_id = holder_run_id
        current = holder_run_id or "nobody"
        super().__init__(
            f"Run {run_id} does not hold the lock on {environment} (held by {current})"
        )


class AlreadyDecidedError(RatchetError):
    """Raised when deciding an approval request that is no longer pending.

    The first decision wins; approvals are not revocable.

    Attributes:
        request_id: The approval request id.
        decision: The decision already recorded.
    """

    exit_code: int = 4

    def __init__(self, request_id: str, decision: str) -> None:
        self.request_id = request_id
        self.decision = decision
        super().__init__(f"Approval request {request_id} already decided: {decision}")


class InvalidTransitionError(RatchetError):
    """Raised when the state machine is asked for an illegal transition.

    Attributes:
        from_state: Current run state.
        to_state: Requested run state.
        run_id: The pipeline run, if known.
    """

    exit_code: int = 4

    def __init__(self, from_state: str, to_state: str, run_id: str | None = None) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.run_id = run_id
        msg = f"Invalid transition {from_state} -> {to_state}"
        if run_id:
            msg += f" for run {run_id}"
        super().__init__(msg)


class EnvironmentFrozenError(RatchetError):
    """Raised when automation reaches an environment frozen after a failed rollback.

    The freeze is cleared only by an explicit administrative call.

    Attributes:
        environment: The frozen environment.
        reason: Why the environment was frozen.
        exit_code: Process exit code (6).
    """

    exit_code: int = 6

    def __init__(self, environment: str, reason: str | None = None) -> None:
        self.environment = environment
        self.reason = reason
        msg = f"Environment {environment} is frozen; automated promotion halted"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class RollbackFailedError(RatchetError):
    """Raised when the rollback deploy itself fails.

    Escalation-class: the environment is frozen and an operator is alerted.
    No rollback of the rollback is attempted.

    Attributes:
        environment: Environment that could not be restored.
        to_fingerprint: Artifact the rollback tried to restore.
        reason: Description of the failure.
        exit_code: Process exit code (6).
    """

    exit_code: int = 6

    def __init__(self, environment: str, to_fingerprint: str, reason: str) -> None:
        self.environment = environment
        self.to_fingerprint = to_fingerprint
        self.reason = reason
        super().__init__(
            f"Rollback of {environment} to {to_fingerprint} failed: {reason}. "
            "Automated promotion is halted until the environment is cleared."
        )


__all__ = [
    "AlreadyDecidedError",
    "AlreadyLockedError",
    "ApprovalRequestNotFoundError",
    "ArtifactNotFoundError",
    "BuildFailedError",
    "ConfigurationError",
    "EnvironmentFrozenError",
    "EnvironmentNotFoundError",
    "InvalidInputError",
    "InvalidTransitionError",
    "NonRetryableStageError",
    "NotFoundError",
    "NotHolderError",
    "PipelineRunNotFoundError",
    "RatchetError",
    "RetryableStageError",
    "RollbackFailedError",
    "StageExecutionError",
]
