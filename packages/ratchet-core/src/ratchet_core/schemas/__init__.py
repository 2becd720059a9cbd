"""Schema definitions for the ratchet deployment pipeline.

This module provides Pydantic models for:

- Change intake and classification (TriggerEvent, ChangeRequest)
- Artifacts and environments (Artifact, EnvironmentConfig, EnvironmentState)
- Stage execution (StageExecution, StageOutcome, StageResult)
- Pipeline runs, approvals and rollbacks
- Pipeline configuration loaded from YAML

Example:
    >>> from ratchet_core.schemas import PipelineConfig
    >>> import yaml
    >>> with open("pipeline.yaml") as f:
    ...     data = yaml.safe_load(f)
    >>> config = PipelineConfig.model_validate(data)
"""

from __future__ import annotations

from ratchet_core.schemas.approval import ApprovalDecision, ApprovalRequest
from ratchet_core.schemas.artifact import Artifact, ArtifactStatus
from ratchet_core.schemas.change import (
    OPERATIONAL_CHANGE_LABEL,
    ChangeCategory,
    ChangeClassification,
    ChangeRequest,
    FileChange,
    TriggerEvent,
)
from ratchet_core.schemas.config import (
    VALID_WEBHOOK_EVENTS,
    ClassifierConfig,
    PipelineConfig,
    RetryConfig,
    WebhookConfig,
)
from ratchet_core.schemas.environment import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    EnvironmentConfig,
    EnvironmentLock,
    EnvironmentState,
    EnvironmentStatus,
)
from ratchet_core.schemas.pipeline import (
    PipelineRun,
    PipelineRunStatus,
    RollbackRecord,
    RunState,
    StateTransition,
)
from ratchet_core.schemas.stage import (
    OutcomeStatus,
    StageAttemptRecord,
    StageContext,
    StageError,
    StageErrorKind,
    StageExecution,
    StageKind,
    StageOutcome,
    StageResult,
    StageState,
)

__all__: list[str] = [
    # Change intake
    "OPERATIONAL_CHANGE_LABEL",
    "ChangeCategory",
    "ChangeClassification",
    "ChangeRequest",
    "FileChange",
    "TriggerEvent",
    # Artifacts and environments
    "Artifact",
    "ArtifactStatus",
    "DEFAULT_APPROVAL_TIMEOUT_SECONDS",
    "EnvironmentConfig",
    "EnvironmentLock",
    "EnvironmentState",
    "EnvironmentStatus",
    # Stages
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
    # Runs
    "ApprovalDecision",
    "ApprovalRequest",
    "PipelineRun",
    "PipelineRunStatus",
    "RollbackRecord",
    "RunState",
    "StateTransition",
    # Configuration
    "VALID_WEBHOOK_EVENTS",
    "ClassifierConfig",
    "PipelineConfig",
    "RetryConfig",
    "WebhookConfig",
]
