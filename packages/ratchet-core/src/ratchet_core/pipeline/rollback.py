"""Rollback of an environment to its last known-good artifact.

RollbackController redeploys a prior artifact through the same StageRunner
abstraction used for forward deployments. The caller must hold the
environment's lock for the whole rollback.

A failed rollback is never retried by rolling back again: the environment
is frozen, a ``rollback_failed`` alert is sent and RollbackFailedError is
raised. Automated promotion into a frozen environment stays halted until
``EnvironmentCatalog.clear_freeze`` is called.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable

import structlog

from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.environments import EnvironmentCatalog
from ratchet_core.pipeline.errors import (
    ArtifactNotFoundError,
    InvalidInputError,
    NotHolderError,
    RollbackFailedError,
)
from ratchet_core.pipeline.registry import ArtifactRegistry
from ratchet_core.pipeline.runner import StageExecutor, StageRunner
from ratchet_core.pipeline.webhooks import WebhookNotifier
from ratchet_core.schemas.change import ChangeRequest
from ratchet_core.schemas.config import RetryConfig
from ratchet_core.schemas.environment import EnvironmentLock
from ratchet_core.schemas.pipeline import RollbackRecord
from ratchet_core.schemas.stage import (
    StageContext,
    StageError,
    StageErrorKind,
    StageExecution,
    StageKind,
    StageResult,
    StageState,
)
from ratchet_core.telemetry.metrics import MetricRecorder
from ratchet_core.telemetry.tracing import create_span, current_trace_id

logger = structlog.get_logger(__name__)

SYSTEM_OPERATOR = "ratchet"
"""Operator name recorded for rollbacks the orchestrator triggers itself."""


def rollback_stage_name(environment: str) -> str:
    """Name of the redeploy stage that rolls ``environment`` back."""
    return f"rollback-{environment}"


class RollbackController:
    """Restores environments to a prior artifact.

    Examples:
        >>> controller = RollbackController(catalog, registry, runner, redeploy_executor)
        >>> result = controller.rollback(
        ...     "prod", "sha256:v5", lock=lock, pipeline_run_id="run-9",
        ...     reason="verify-prod failed",
        ... )
        >>> result.state
        <StageState.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        catalog: EnvironmentCatalog,
        registry: ArtifactRegistry,
        runner: StageRunner,
        executor: StageExecutor,
        *,
        retry: RetryConfig | None = None,
        notifier: WebhookNotifier | None = None,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        metrics: MetricRecorder | None = None,
    ) -> None:
        """Initialize RollbackController.

        Args:
            catalog: Environment catalog receiving the restored fingerprint.
            registry: Registry resolving fingerprints to artifacts.
            runner: StageRunner executing the redeploy stage.
            executor: Redeploy executor (or the deploy executor).
            retry: Retry policy of the redeploy stage.
            notifier: Webhook notifier for ``rollback_failed`` alerts.
            clock: Source of timestamps.
            id_factory: Rollback id generator.
            metrics: Metric recorder.
        """
        self._catalog = catalog
        self._registry = registry
        self._runner = runner
        self._executor = executor
        self._retry = retry or RetryConfig()
        self._notifier = notifier
        self._clock = clock or utc_now
        self._id_factory = id_factory or (lambda: f"rbk-{uuid.uuid4().hex[:12]}")
        self._metrics = metrics or MetricRecorder()
        self._history: list[RollbackRecord] = []
        self._lock = threading.Lock()

    def rollback(
        self,
        environment: str,
        to_fingerprint: str,
        *,
        lock: EnvironmentLock,
        reason: str,
        pipeline_run_id: str | None = None,
        operator: str = SYSTEM_OPERATOR,
        from_fingerprint: str | None = None,
        change_request: ChangeRequest | None = None,
        stage: StageExecution | None = None,
    ) -> StageResult:
        """Redeploy ``to_fingerprint`` into ``environment``.

        Args:
            environment: Environment to restore.
            to_fingerprint: Last known-good fingerprint.
            lock: Caller's lock on the environment.
            reason: Why the rollback happens.
            pipeline_run_id: Triggering run, or None for operator requests.
            operator: Who requested the rollback.
            from_fingerprint: Artifact being replaced, for the audit record.
            change_request: Change of the triggering run, passed to the executor.
            stage: Pre-planned redeploy stage; a fresh one is created if None.

        Returns:
            Successful StageResult of the redeploy stage.

        Raises:
            NotHolderError: If ``lock`` is not held on ``environment``.
            EnvironmentFrozenError: If the environment is already frozen.
            RollbackFailedError: If the redeploy failed; the environment is
                frozen and an alert has been sent.
        """
        if not reason:
            raise InvalidInputError("reason", "must not be empty")
        if lock.environment_name != environment or not self._catalog.lock_manager.is_held(lock):
            logger.error(
                "rollback_without_lock",
                environment=environment,
                pipeline_run_id=pipeline_run_id,
            )
            raise NotHolderError(environment, lock.holder_pipeline_run_id, None)
        self._catalog.ensure_not_frozen(environment)

        rollback_id = self._id_factory()
        log = logger.bind(
            rollback_id=rollback_id,
            environment=environment,
            to_fingerprint=to_fingerprint,
            pipeline_run_id=pipeline_run_id,
        )
        if stage is None:
            stage = StageExecution(
                stage_name=rollback_stage_name(environment),
                kind=StageKind.REDEPLOY,
                target_environment=environment,
                max_attempts=self._retry.max_attempts,
            )

        with create_span(
            "ratchet.rollback",
            {
                "ratchet.environment": environment,
                "ratchet.run_id": pipeline_run_id,
                "ratchet.rollback.to_fingerprint": to_fingerprint,
                "ratchet.rollback.operator": operator,
            },
        ) as span:
            log.warning("rollback_started", reason=reason, operator=operator)
            trace_id = current_trace_id()

            try:
                artifact = self._registry.lookup(to_fingerprint)
            except ArtifactNotFoundError as e:
                stage.state = StageState.FAILED
                stage.last_error = StageError(kind=StageErrorKind.NOT_FOUND, message=str(e))
                result = StageResult(
                    stage_name=stage.stage_name,
                    state=StageState.FAILED,
                    attempts=0,
                    error=stage.last_error,
                )
            else:
                context = StageContext(
                    pipeline_run_id=pipeline_run_id or rollback_id,
                    stage_name=stage.stage_name,
                    kind=StageKind.REDEPLOY,
                    change_request=change_request,
                    environment=self._catalog.config(environment),
                    artifact=artifact,
                    inputs={"from_fingerprint": from_fingerprint, "reason": reason},
                )
                result = self._runner.run(stage, self._executor, context, retry=self._retry)

            span.set_attribute("ratchet.rollback.succeeded", result.succeeded)
            self._metrics.increment(
                "ratchet.rollbacks",
                labels={"environment": environment, "succeeded": result.succeeded},
            )

            if result.succeeded:
                self._catalog.record_deployment(
                    environment,
                    to_fingerprint,
                    lock=lock,
                    pipeline_run_id=pipeline_run_id or rollback_id,
                )
            record = RollbackRecord(
                rollback_id=rollback_id,
                environment=environment,
                from_fingerprint=from_fingerprint,
                to_fingerprint=to_fingerprint,
                pipeline_run_id=pipeline_run_id,
                reason=reason,
                operator=operator,
                succeeded=result.succeeded,
                rolled_back_at=self._clock(),
                trace_id=trace_id,
            )
            with self._lock:
                self._history.append(record)

            if result.succeeded:
                log.info("rollback_completed", attempts=result.attempts)
                return result

            error_message = result.error.message if result.error else "redeploy failed"
            self._catalog.freeze(
                environment,
                f"rollback to {to_fingerprint} failed: {error_message}",
            )
            log.critical("rollback_failed", error=error_message, attempts=result.attempts)
            if self._notifier is not None:
                self._notifier.send(
                    "rollback_failed",
                    {
                        "rollback_id": rollback_id,
                        "environment": environment,
                        "to_fingerprint": to_fingerprint,
                        "from_fingerprint": from_fingerprint,
                        "pipeline_run_id": pipeline_run_id,
                        "error": error_message,
                        "timestamp": record.rolled_back_at.isoformat(),
                    },
                )
            raise RollbackFailedError(environment, to_fingerprint, error_message)

    def history(self, environment: str | None = None) -> list[RollbackRecord]:
        """Rollback records, oldest first, optionally for one environment."""
        with self._lock:
            records = list(self._history)
        if environment is None:
            return records
        return [r for r in records if r.environment == environment]


__all__ = ["SYSTEM_OPERATOR", "RollbackController", "rollback_stage_name"]
