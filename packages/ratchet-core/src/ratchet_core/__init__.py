"""ratchet-core: Change-driven deployment pipeline engine.

This package provides:
- PipelineOrchestrator: Classifies a change, builds one immutable artifact
  and promotes it environment by environment behind locks and approvals
- ChangeClassifier: Operational vs normal change categorisation
- StageRunner: Bounded, deterministic retries around pluggable executors
- RollbackController: Automatic and operator-requested rollbacks
- Schemas: Pydantic models for configuration and run state (ratchet_core.schemas)
- Telemetry: structlog and OpenTelemetry helpers (ratchet_core.telemetry)

Example:
    >>> from ratchet_core import PipelineOrchestrator, load_pipeline_config
    >>> config = load_pipeline_config("pipeline.yaml")
    >>> orchestrator = PipelineOrchestrator(config, executors)
    >>> status = orchestrator.submit(event)
    >>> orchestrator.drive()
    >>> orchestrator.get_run(status.run_id).state
    <RunState.COMPLETED: 'completed'>

See Also:
    - ratchet_core.pipeline: Engine components
    - ratchet_core.schemas: Data models
    - ratchet_core.telemetry: Logging, tracing and metrics
"""

from __future__ import annotations

__version__ = "0.1.0"

from ratchet_core.pipeline import (
    ApprovalGate,
    ArtifactRegistry,
    ChangeClassifier,
    EnvironmentCatalog,
    EnvironmentLockManager,
    ExecutionLog,
    PipelineOrchestrator,
    RatchetError,
    RollbackController,
    StageExecutor,
    StageRunner,
    WebhookNotifier,
    load_pipeline_config,
)
from ratchet_core.schemas import (
    ApprovalDecision,
    ChangeCategory,
    EnvironmentConfig,
    PipelineConfig,
    PipelineRunStatus,
    RunState,
    StageContext,
    StageKind,
    StageOutcome,
    TriggerEvent,
)
from ratchet_core.telemetry import configure_logging

__all__ = [
    "__version__",
    # Engine
    "ApprovalGate",
    "ArtifactRegistry",
    "ChangeClassifier",
    "EnvironmentCatalog",
    "EnvironmentLockManager",
    "ExecutionLog",
    "PipelineOrchestrator",
    "RollbackController",
    "StageExecutor",
    "StageRunner",
    "WebhookNotifier",
    "load_pipeline_config",
    # Schemas
    "ApprovalDecision",
    "ChangeCategory",
    "EnvironmentConfig",
    "PipelineConfig",
    "PipelineRunStatus",
    "RunState",
    "StageContext",
    "StageKind",
    "StageOutcome",
    "TriggerEvent",
    # Errors and telemetry
    "RatchetError",
    "configure_logging",
]
