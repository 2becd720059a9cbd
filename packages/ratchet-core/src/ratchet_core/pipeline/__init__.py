"""Deployment pipeline engine.

Components:
    ChangeClassifier: Risk scoring and operational/normal categorisation
    ArtifactRegistry: Immutable, content-addressed build outputs
    EnvironmentLockManager: One writer per environment, FIFO waiters
    EnvironmentCatalog: Environment configuration and last known-good artifact
    StageRunner: Bounded-retry execution of a stage against its executor
    ApprovalGate: Human approvals with deadlines
    RollbackController: Restores an environment to a prior artifact
    WebhookNotifier: Outward lifecycle notifications
    PipelineOrchestrator: The run state machine tying everything together

Example:
    >>> from ratchet_core.pipeline import PipelineOrchestrator, load_pipeline_config
    >>> config = load_pipeline_config("pipeline.yaml")
    >>> orchestrator = PipelineOrchestrator(config, executors)
    >>> status = orchestrator.submit(event)
    >>> orchestrator.drive()

See Also:
    - ratchet_core.schemas: Pydantic models used by the engine
    - ratchet_core.pipeline.errors: Exception hierarchy and exit codes
"""

from __future__ import annotations

from ratchet_core.pipeline.approval import ApprovalGate, ApprovalListener
from ratchet_core.pipeline.classifier import ChangeClassifier, matches_any
from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.config import (
    PIPELINE_SECTION,
    load_pipeline_config,
    parse_pipeline_config,
)
from ratchet_core.pipeline.environments import EnvironmentCatalog
from ratchet_core.pipeline.errors import (
    AlreadyDecidedError,
    AlreadyLockedError,
    ApprovalRequestNotFoundError,
    ArtifactNotFoundError,
    BuildFailedError,
    ConfigurationError,
    EnvironmentFrozenError,
    EnvironmentNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    NonRetryableStageError,
    NotFoundError,
    NotHolderError,
    PipelineRunNotFoundError,
    RatchetError,
    RetryableStageError,
    RollbackFailedError,
    StageExecutionError,
)
from ratchet_core.pipeline.locks import EnvironmentLockManager, LockListener
from ratchet_core.pipeline.orchestrator import (
    APPROVAL_STAGE,
    BUILD_STAGE,
    REQUIRED_EXECUTORS,
    PipelineOrchestrator,
    lock_stage_name,
    stage_name,
)
from ratchet_core.pipeline.registry import ArtifactRegistry
from ratchet_core.pipeline.resilience import DEFAULT_RETRYABLE_EXCEPTIONS, RetryPolicy
from ratchet_core.pipeline.rollback import (
    SYSTEM_OPERATOR,
    RollbackController,
    rollback_stage_name,
)
from ratchet_core.pipeline.runner import ExecutionLog, StageExecutor, StageRunner
from ratchet_core.pipeline.states import (
    allowed_targets,
    can_transition,
    require_transition,
)
from ratchet_core.pipeline.webhooks import (
    BACKOFF_BASE_SECONDS,
    WebhookNotificationResult,
    WebhookNotifier,
)

__all__ = [
    # Orchestration
    "APPROVAL_STAGE",
    "BUILD_STAGE",
    "REQUIRED_EXECUTORS",
    "PipelineOrchestrator",
    "lock_stage_name",
    "stage_name",
    "allowed_targets",
    "can_transition",
    "require_transition",
    # Components
    "ApprovalGate",
    "ApprovalListener",
    "ArtifactRegistry",
    "ChangeClassifier",
    "EnvironmentCatalog",
    "EnvironmentLockManager",
    "LockListener",
    "matches_any",
    # Stage execution
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "ExecutionLog",
    "RetryPolicy",
    "StageExecutor",
    "StageRunner",
    # Rollback
    "SYSTEM_OPERATOR",
    "RollbackController",
    "rollback_stage_name",
    # Notifications
    "BACKOFF_BASE_SECONDS",
    "WebhookNotificationResult",
    "WebhookNotifier",
    # Configuration
    "PIPELINE_SECTION",
    "load_pipeline_config",
    "parse_pipeline_config",
    # Time
    "Clock",
    "utc_now",
    # Errors
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
