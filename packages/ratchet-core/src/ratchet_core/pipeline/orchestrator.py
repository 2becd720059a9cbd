"""Pipeline orchestrator: the deployment state machine.

PipelineOrchestrator accepts trigger events, classifies the change, builds
the artifact and promotes it through the environments in ascending
``promotion_order``. Per environment it takes the environment lock, runs the
test (and infra plan) stages, waits for approval when the classification or
the environment requires it, deploys, verifies and finally records the new
known-good fingerprint before releasing the lock.

State machine (``PipelineRun.overall_state``)::

    queued -> classifying -> building -> awaiting_lock(env) -> testing(env)
        -> [awaiting_approval(env)] -> deploying(env) -> verifying(env)
        -> promoted(env) -> awaiting_lock(next env) ... -> completed

    testing/deploying/verifying --failure--> failed | rolled_back | rollback_failed
    awaiting_approval --rejected/expired--> failed
    any non-terminal --cancel--> cancelled

Driving model:
    A run is advanced by ``advance(run_id)`` until it blocks (waiting for a
    lock or a decision) or terminates. Blocked runs are woken through the
    lock manager's and approval gate's listeners, which push them onto a
    ready queue. ``tick()`` drains that queue on the calling thread;
    ``drive()`` drains it on a thread pool. Transitions of one run are
    serialised by a per-run re-entrant lock.

Example:
    >>> orchestrator = PipelineOrchestrator(config, executors)
    >>> status = orchestrator.submit(event)
    >>> orchestrator.tick()
    >>> orchestrator.get_run(status.run_id).state
    <RunState.AWAITING_APPROVAL: 'awaiting_approval'>
    >>> orchestrator.decide(status.approvals[-1].id, ApprovalDecision.APPROVED, "alice")
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any

import structlog

from ratchet_core.pipeline.approval import ApprovalGate
from ratchet_core.pipeline.classifier import ChangeClassifier
from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.environments import EnvironmentCatalog
from ratchet_core.pipeline.errors import (
    AlreadyLockedError,
    ConfigurationError,
    EnvironmentFrozenError,
    InvalidInputError,
    InvalidTransitionError,
    PipelineRunNotFoundError,
    RatchetError,
    RollbackFailedError,
)
from ratchet_core.pipeline.locks import EnvironmentLockManager
from ratchet_core.pipeline.registry import ArtifactRegistry
from ratchet_core.pipeline.rollback import (
    SYSTEM_OPERATOR,
    RollbackController,
    rollback_stage_name,
)
from ratchet_core.pipeline.runner import ExecutionLog, StageExecutor, StageRunner
from ratchet_core.pipeline.states import require_transition
from ratchet_core.pipeline.webhooks import WebhookNotifier
from ratchet_core.schemas.approval import ApprovalDecision, ApprovalRequest
from ratchet_core.schemas.artifact import Artifact
from ratchet_core.schemas.change import ChangeRequest, TriggerEvent
from ratchet_core.schemas.config import PipelineConfig
from ratchet_core.schemas.environment import EnvironmentLock, EnvironmentStatus
from ratchet_core.schemas.pipeline import (
    PipelineRun,
    PipelineRunStatus,
    RollbackRecord,
    RunState,
    StateTransition,
)
from ratchet_core.schemas.stage import (
    StageAttemptRecord,
    StageContext,
    StageError,
    StageErrorKind,
    StageExecution,
    StageKind,
    StageResult,
    StageState,
)
from ratchet_core.telemetry.metrics import MetricRecorder
from ratchet_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

REQUIRED_EXECUTORS = (StageKind.BUILD, StageKind.TEST, StageKind.DEPLOY, StageKind.VERIFY)
"""Stage kinds every pipeline needs an executor for."""

BUILD_STAGE = "build"
APPROVAL_STAGE = "approval"

_STAGE_PREFIXES: dict[StageKind, str] = {
    StageKind.TEST: "test",
    StageKind.INFRA_PLAN: "plan",
    StageKind.DEPLOY: "deploy",
    StageKind.VERIFY: "verify",
}

_TERMINAL_EVENTS: dict[RunState, str] = {
    RunState.COMPLETED: "completed",
    RunState.FAILED: "failed",
    RunState.ROLLED_BACK: "rolled_back",
    RunState.CANCELLED: "cancelled",
}
"""Webhook event per terminal state; rollback_failed is alerted by RollbackController."""


def stage_name(kind: StageKind, environment: str) -> str:
    """Name of an environment-scoped stage, e.g. ``deploy-prod``."""
    return f"{_STAGE_PREFIXES[kind]}-{environment}"


def lock_stage_name(environment: str) -> str:
    """Pseudo stage recorded as ``failed_stage`` when an environment refuses promotion."""
    return f"lock-{environment}"


class PipelineOrchestrator:
    """Drives pipeline runs through the promotion state machine.

    All collaborators are injected or built from ``config``; nothing is
    process-global.

    Attributes:
        config: Pipeline configuration.
        classifier: Change classifier.
        registry: Artifact registry.
        lock_manager: Environment lock manager.
        catalog: Environment catalog.
        approval_gate: Approval gate.
        runner: Stage runner (owns the execution log).
        rollback_controller: Rollback controller.
    """

    def __init__(
        self,
        config: PipelineConfig,
        executors: Mapping[StageKind, StageExecutor],
        *,
        classifier: ChangeClassifier | None = None,
        registry: ArtifactRegistry | None = None,
        lock_manager: EnvironmentLockManager | None = None,
        catalog: EnvironmentCatalog | None = None,
        approval_gate: ApprovalGate | None = None,
        runner: StageRunner | None = None,
        rollback_controller: RollbackController | None = None,
        notifier: WebhookNotifier | None = None,
        current_fingerprints: dict[str, str] | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
        id_factory: Callable[[], str] | None = None,
        metrics: MetricRecorder | None = None,
    ) -> None:
        """Initialize the PipelineOrchestrator.

        Args:
            config: Pipeline configuration.
            executors: Executor per stage kind. BUILD, TEST, DEPLOY and VERIFY
                are required; INFRA_PLAN adds ``plan-<env>`` stages; REDEPLOY
                is used for rollbacks and falls back to DEPLOY.
            classifier: Change classifier. Built from ``config.classifier`` if None.
            registry: Artifact registry.
            lock_manager: Lock manager for ``config.application``.
            catalog: Environment catalog. Built from ``config.environments`` if None.
            approval_gate: Approval gate.
            runner: Stage runner.
            rollback_controller: Rollback controller.
            notifier: Webhook notifier. Built from ``config.webhooks`` if None.
            current_fingerprints: Artifacts already deployed, by environment.
                Only used when ``catalog`` is None.
            clock: Time source for timestamps and approval deadlines.
            sleep: Backoff wait function for stage retries.
            id_factory: Generates the unique suffix of run and change ids.
            metrics: Metric recorder.

        Raises:
            ConfigurationError: If a required executor is missing or an
                injected collaborator belongs to another application.
        """
        missing = [kind.value for kind in REQUIRED_EXECUTORS if kind not in executors]
        if missing:
            raise ConfigurationError(f"missing executors for stage kinds: {missing}")

        self.config = config
        self._executors: dict[StageKind, StageExecutor] = dict(executors)
        self._clock = clock or utc_now
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:12])
        self._metrics = metrics or MetricRecorder()

        self.classifier = classifier or ChangeClassifier(config.classifier)
        self.registry = registry or ArtifactRegistry(clock=self._clock)
        self.lock_manager = lock_manager or EnvironmentLockManager(
            config.application, clock=self._clock, metrics=self._metrics
        )
        if self.lock_manager.application != config.application:
            raise ConfigurationError(
                f"lock manager belongs to {self.lock_manager.application!r}, "
                f"pipeline is {config.application!r}"
            )
        self.catalog = catalog or EnvironmentCatalog(
            config.environments,
            self.lock_manager,
            current_fingerprints=current_fingerprints,
            clock=self._clock,
        )
        self.approval_gate = approval_gate or ApprovalGate(
            clock=self._clock, metrics=self._metrics
        )
        self.runner = runner or StageRunner(
            ExecutionLog(), clock=self._clock, sleep=sleep, metrics=self._metrics
        )
        if notifier is None and config.webhooks:
            notifier = WebhookNotifier(config.webhooks)
        self._notifier = notifier
        self.rollback_controller = rollback_controller or RollbackController(
            self.catalog,
            self.registry,
            self.runner,
            self._executors.get(StageKind.REDEPLOY, self._executors[StageKind.DEPLOY]),
            retry=config.retry_for(StageKind.REDEPLOY),
            notifier=self._notifier,
            clock=self._clock,
            metrics=self._metrics,
        )

        self._runs: dict[str, PipelineRun] = {}
        self._published: dict[str, PipelineRun] = {}
        self._run_locks: dict[str, threading.RLock] = {}
        self._dedup: dict[tuple[str, str], str] = {}
        self._cancel_requests: dict[str, str] = {}
        self._advancing: set[str] = set()
        self._held_locks: dict[str, EnvironmentLock] = {}
        self._ready: deque[str] = deque()
        self._ready_set: set[str] = set()
        self._state_lock = threading.Lock()

        self.lock_manager.add_listener(self._on_lock_available)
        self.approval_gate.add_listener(self._on_approval_decided)

        self._log = logger.bind(
            application=config.application,
            environments=[env.name for env in self.catalog.promotion_path()],
        )
        self._log.info(
            "orchestrator_initialized",
            has_infra_plan=StageKind.INFRA_PLAN in self._executors,
            has_webhooks=self._notifier is not None,
        )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit(self, event: TriggerEvent) -> PipelineRunStatus:
        """Accept a trigger event and create a queued run.

        Delivery is at-least-once: an event whose ``(source_ref, commit)``
        was already accepted returns the existing run instead of creating a
        new one.

        Args:
            event: Trigger delivery.

        Returns:
            Status of the new (or existing) run.

        Raises:
            InvalidInputError: If the change cannot be classified. No run is
                created.
        """
        with create_span(
            "ratchet.pipeline.submit",
            {
                "ratchet.source_ref": event.source_ref,
                "ratchet.commit": event.commit,
                "ratchet.delivery_id": event.delivery_id,
            },
        ) as span:
            with self._state_lock:
                existing = self._dedup.get(event.dedup_key)
            if existing is not None:
                return self._duplicate(event, existing, span)

            suffix = self._id_factory()
            change = ChangeRequest.from_trigger(f"chg-{suffix}", event)
            self.classifier.validate(change)
            run = PipelineRun(
                id=f"run-{suffix}",
                change_request_id=change.id,
                change_request=change,
                started_at=self._clock(),
            )

            with self._state_lock:
                existing = self._dedup.get(event.dedup_key)
                if existing is None:
                    self._dedup[event.dedup_key] = run.id
                    self._runs[run.id] = run
                    self._run_locks[run.id] = threading.RLock()
                    self._published[run.id] = run.model_copy(deep=True)
                    self._enqueue_ready(run.id)
            if existing is not None:
                return self._duplicate(event, existing, span)

            span.set_attribute("ratchet.run_id", run.id)
            self._metrics.increment("ratchet.runs.submitted")
            self._log.info(
                "pipeline_run_created",
                pipeline_run_id=run.id,
                change_request_id=change.id,
                source_ref=event.source_ref,
                commit=event.commit,
                files=len(change.diff_summary),
            )
            return self.get_run(run.id)

    def _duplicate(self, event: TriggerEvent, run_id: str, span: Any) -> PipelineRunStatus:
        span.set_attribute("ratchet.run_id", run_id)
        span.set_attribute("ratchet.duplicate", True)
        self._metrics.increment("ratchet.triggers.duplicate")
        self._log.info(
            "duplicate_trigger_ignored",
            pipeline_run_id=run_id,
            source_ref=event.source_ref,
            commit=event.commit,
            delivery_id=event.delivery_id,
        )
        return self.get_run(run_id)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def advance(self, run_id: str) -> PipelineRunStatus:
        """Step a run until it blocks or reaches a terminal state.

        Args:
            run_id: Run to advance.

        Returns:
            Status after advancing.

        Raises:
            PipelineRunNotFoundError: If the run is unknown.
            RatchetError: On contract violations (e.g., NotHolderError); the
                run keeps its last consistent state.
        """
        run, run_lock = self._internal(run_id)
        with run_lock:
            with self._state_lock:
                self._advancing.add(run_id)
            try:
                with create_span(
                    "ratchet.pipeline.advance",
                    {
                        "ratchet.run_id": run_id,
                        "ratchet.state.initial": run.overall_state.value,
                    },
                ) as span:
                    log = self._log.bind(pipeline_run_id=run_id)
                    while not run.is_terminal:
                        progressed = self._step(run, log)
                        self._publish(run)
                        if not progressed:
                            break
                    span.set_attribute("ratchet.state.final", run.overall_state.value)
            finally:
                self._publish(run)
                with self._state_lock:
                    self._advancing.discard(run_id)
                    # A cancel deferred while this run was blocking needs another pass.
                    if run_id in self._cancel_requests and not run.is_terminal:
                        self._enqueue_ready(run_id)
        return self.get_run(run_id)

    def tick(self) -> list[str]:
        """Evaluate approval expiry and advance every runnable run.

        Runs woken while the tick is in progress (e.g., by a lock release)
        are advanced in the same tick.

        Returns:
            Ids of the runs advanced, in order.
        """
        advanced: list[str] = []
        self._expire_overdue_approvals()
        while True:
            batch = self._drain_ready()
            if not batch:
                return advanced
            for run_id in batch:
                self._advance_reporting_errors(run_id)
                advanced.append(run_id)

    def drive(self, max_workers: int = 4) -> int:
        """Advance runnable runs concurrently until none is runnable.

        Args:
            max_workers: Worker threads.

        Returns:
            Number of advance calls made.
        """
        if max_workers < 1:
            raise InvalidInputError("max_workers", "must be at least 1")
        total = 0
        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ratchet-driver"
        ) as pool:
            while True:
                self._expire_overdue_approvals()
                batch = self._drain_ready()
                if not batch:
                    return total
                futures = [pool.submit(self._advance_reporting_errors, rid) for rid in batch]
                for future in futures:
                    future.result()
                total += len(batch)

    def _advance_reporting_errors(self, run_id: str) -> None:
        try:
            self.advance(run_id)
        except RatchetError as e:
            # Contract violations fail this advance only; other runs keep going.
            self._log.error(
                "run_advance_failed",
                pipeline_run_id=run_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _expire_overdue_approvals(self) -> None:
        for request in self.approval_gate.pending():
            self.approval_gate.check_expired(request.id)

    def _enqueue_ready(self, run_id: str) -> None:
        """Queue a run for advancing; caller holds the state lock."""
        if run_id not in self._ready_set:
            self._ready_set.add(run_id)
            self._ready.append(run_id)

    def _mark_ready(self, run_id: str) -> None:
        with self._state_lock:
            if run_id in self._runs:
                self._enqueue_ready(run_id)

    def _drain_ready(self) -> list[str]:
        with self._state_lock:
            batch = list(self._ready)
            self._ready.clear()
            self._ready_set.clear()
        return batch

    def _on_lock_available(self, environment: str, run_id: str) -> None:
        self._mark_ready(run_id)

    def _on_approval_decided(self, request: ApprovalRequest) -> None:
        self._mark_ready(request.pipeline_run_id)

    # ------------------------------------------------------------------
    # State machine steps
    # ------------------------------------------------------------------

    def _step(self, run: PipelineRun, log: Any) -> bool:
        """Perform one step; return False when the run is blocked."""
        if self._cancel_operator(run.id) is not None:
            return self._honor_cancel(run, log)
        handler: Callable[[PipelineRun, Any], bool] = {
            RunState.QUEUED: self._step_queued,
            RunState.CLASSIFYING: self._step_classifying,
            RunState.BUILDING: self._step_building,
            RunState.AWAITING_LOCK: self._step_awaiting_lock,
            RunState.TESTING: self._step_testing,
            RunState.AWAITING_APPROVAL: self._step_awaiting_approval,
            RunState.DEPLOYING: self._step_deploying,
            RunState.VERIFYING: self._step_verifying,
            RunState.PROMOTED: self._step_promoted,
        }[run.overall_state]
        return handler(run, log)

    def _step_queued(self, run: PipelineRun, log: Any) -> bool:
        self._transition(run, RunState.CLASSIFYING, log)
        return True

    def _step_classifying(self, run: PipelineRun, log: Any) -> bool:
        try:
            classification = self.classifier.classify(run.change_request)
        except InvalidInputError as e:
            self._fail(
                run,
                "classify",
                StageError(kind=StageErrorKind.NON_RETRYABLE, message=str(e)),
                log,
            )
            return True
        run.classification = classification
        run.stage_plan = self._build_stage_plan()
        self._transition(
            run,
            RunState.BUILDING,
            log,
            reason=f"{classification.category.value} change, risk {classification.risk_score}",
        )
        return True

    def _step_building(self, run: PipelineRun, log: Any) -> bool:
        result = self._run_stage(run, BUILD_STAGE)
        if not result.succeeded:
            return self._handle_stage_failure(run, BUILD_STAGE, result, log)

        fingerprint = result.outputs.get("fingerprint")
        storage_location = result.outputs.get("storage_location")
        if not fingerprint or not storage_location:
            self._fail(
                run,
                BUILD_STAGE,
                StageError(
                    kind=StageErrorKind.NON_RETRYABLE,
                    message="build executor did not report fingerprint and storage_location",
                    details=dict(result.outputs),
                ),
                log,
            )
            return True

        artifact = self.registry.register(
            Artifact(
                fingerprint=str(fingerprint),
                storage_location=str(storage_location),
                source_change_id=run.change_request_id,
                built_at=self._clock(),
            )
        )
        run.artifact_fingerprint = artifact.fingerprint
        log.info("artifact_built", fingerprint=artifact.fingerprint)
        if self._cancel_operator(run.id) is not None:
            return self._honor_cancel(run, log)
        return self._enter_next_environment(run, None, log)

    def _step_awaiting_lock(self, run: PipelineRun, log: Any) -> bool:
        env = self._current_environment(run)
        try:
            lock = self.lock_manager.try_acquire(env, run.id)
        except AlreadyLockedError as e:
            log.debug(
                "awaiting_lock",
                environment=env,
                holder_run_id=e.holder_run_id,
                queue_position=e.queue_position,
            )
            return False
        self._held_locks[run.id] = lock

        # Checked under the lock: only a lock holder can freeze an environment.
        try:
            self.catalog.ensure_not_frozen(env)
        except EnvironmentFrozenError as e:
            self._release_lock(run)
            self._fail(
                run,
                lock_stage_name(env),
                StageError(
                    kind=StageErrorKind.NON_RETRYABLE,
                    message=str(e),
                    details={"environment": env},
                ),
                log,
            )
            return True

        self._transition(run, RunState.TESTING, log, environment=env)
        return True

    def _step_testing(self, run: PipelineRun, log: Any) -> bool:
        env = self._current_environment(run)
        gating = [stage_name(StageKind.TEST, env)]
        plan_stage = stage_name(StageKind.INFRA_PLAN, env)
        if run.has_stage(plan_stage):
            gating.append(plan_stage)

        for name in gating:
            result = self._run_stage(run, name)
            if not result.succeeded:
                return self._handle_stage_failure(run, name, result, log)
            if self._cancel_operator(run.id) is not None:
                return self._honor_cancel(run, log)

        env_config = self.catalog.config(env)
        assert run.classification is not None
        if not run.classification.requires_approval(env_config):
            self._transition(
                run, RunState.DEPLOYING, log, environment=env, reason="approval not required"
            )
            return True

        deadline = self._clock() + timedelta(seconds=env_config.approval_timeout_seconds)
        request = self.approval_gate.request_approval(
            run.id, env, deadline, context=self._approval_context(run, env)
        )
        run.approval_request_ids = [*run.approval_request_ids, request.id]
        self._transition(run, RunState.AWAITING_APPROVAL, log, environment=env)
        self._notify(
            "approval_requested",
            {
                "approval_request_id": request.id,
                "pipeline_run_id": run.id,
                "environment": env,
                "deadline": request.deadline.isoformat(),
                **request.context,
            },
        )
        return True

    def _step_awaiting_approval(self, run: PipelineRun, log: Any) -> bool:
        env = self._current_environment(run)
        request_id = run.approval_request_ids[-1]
        self.approval_gate.check_expired(request_id)
        request = self.approval_gate.get(request_id)
        if request.is_pending:
            return False

        if request.decision == ApprovalDecision.APPROVED:
            self._transition(
                run,
                RunState.DEPLOYING,
                log,
                environment=env,
                reason=f"approved by {request.decided_by}",
            )
            return True

        self._release_lock(run)
        self._fail(
            run,
            APPROVAL_STAGE,
            StageError(
                kind=StageErrorKind.NON_RETRYABLE,
                message=f"approval {request.decision.value}",
                details={
                    "approval_request_id": request.id,
                    "decision": request.decision.value,
                    "decided_by": request.decided_by,
                },
            ),
            log,
        )
        return True

    def _step_deploying(self, run: PipelineRun, log: Any) -> bool:
        env = self._current_environment(run)
        name = stage_name(StageKind.DEPLOY, env)
        result = self._run_stage(run, name)
        if not result.succeeded:
            return self._handle_stage_failure(run, name, result, log)
        if self._cancel_operator(run.id) is not None:
            return self._honor_cancel(run, log)
        self._transition(run, RunState.VERIFYING, log, environment=env)
        return True

    def _step_verifying(self, run: PipelineRun, log: Any) -> bool:
        env = self._current_environment(run)
        name = stage_name(StageKind.VERIFY, env)
        result = self._run_stage(run, name)
        if not result.succeeded:
            return self._handle_stage_failure(run, name, result, log)

        fingerprint = self._artifact_fingerprint(run)
        self.catalog.record_deployment(
            env, fingerprint, lock=self._held_locks[run.id], pipeline_run_id=run.id
        )
        self.registry.mark_promoted(fingerprint, env)
        self._transition(run, RunState.PROMOTED, log, environment=env)
        self._release_lock(run)
        self._notify(
            "promoted",
            {
                "pipeline_run_id": run.id,
                "environment": env,
                "artifact_fingerprint": fingerprint,
                "timestamp": run.transitions[-1].at.isoformat(),
            },
        )
        return True

    def _step_promoted(self, run: PipelineRun, log: Any) -> bool:
        return self._enter_next_environment(run, run.current_environment, log)

    def _enter_next_environment(
        self, run: PipelineRun, after: str | None, log: Any
    ) -> bool:
        next_env = self.catalog.next_environment(after)
        if next_env is None:
            self._transition(run, RunState.COMPLETED, log)
        else:
            self._transition(run, RunState.AWAITING_LOCK, log, environment=next_env.name)
        return True

    # ------------------------------------------------------------------
    # Failure, rollback and cancellation
    # ------------------------------------------------------------------

    def _handle_stage_failure(
        self,
        run: PipelineRun,
        failed: str,
        result: StageResult,
        log: Any,
    ) -> bool:
        """Settle a run whose stage failed after retries.

        The lock is always released. When the failing stage targeted an
        environment (test, plan, deploy or verify) and that environment has a
        prior fingerprint, the fingerprint is restored first.
        """
        error = result.error or StageError(
            kind=StageErrorKind.NON_RETRYABLE, message=f"{failed} failed"
        )
        if error.kind == StageErrorKind.CANCELLED:
            return self._honor_cancel(run, log)

        kind = run.get_stage(failed).kind
        run.failed_stage = failed
        run.last_error = error
        target = RunState.FAILED
        env = run.current_environment
        if env is not None and kind != StageKind.BUILD:
            prior = self.catalog.current_fingerprint(env)
            if prior is not None:
                target = self._rollback_run(
                    run,
                    env,
                    prior,
                    reason=f"{failed} failed: {error.message}",
                    operator=SYSTEM_OPERATOR,
                    log=log,
                )
        self._release_lock(run)
        self._transition(run, target, log, reason=error.message)
        return True

    def _rollback_run(
        self,
        run: PipelineRun,
        env: str,
        prior: str,
        *,
        reason: str,
        operator: str,
        log: Any,
    ) -> RunState:
        """Restore ``prior`` in ``env`` on behalf of a run holding its lock."""
        retry = self.config.retry_for(StageKind.REDEPLOY)
        rb_stage = StageExecution(
            stage_name=rollback_stage_name(env),
            kind=StageKind.REDEPLOY,
            target_environment=env,
            max_attempts=retry.max_attempts,
        )
        run.stage_plan = [*run.stage_plan, rb_stage]
        log.warning("rollback_requested", environment=env, to_fingerprint=prior, reason=reason)
        try:
            self.rollback_controller.rollback(
                env,
                prior,
                lock=self._held_locks[run.id],
                reason=reason,
                pipeline_run_id=run.id,
                operator=operator,
                from_fingerprint=run.artifact_fingerprint,
                change_request=run.change_request,
                stage=run.get_stage(rb_stage.stage_name),
            )
        except RollbackFailedError as e:
            run.last_error = StageError(
                kind=StageErrorKind.NON_RETRYABLE,
                message=str(e),
                details={"environment": env, "to_fingerprint": prior},
            )
            return RunState.ROLLBACK_FAILED
        return RunState.ROLLED_BACK

    def _fail(self, run: PipelineRun, failed: str, error: StageError, log: Any) -> None:
        run.failed_stage = failed
        run.last_error = error
        self._transition(run, RunState.FAILED, log, reason=error.message)

    def _honor_cancel(self, run: PipelineRun, log: Any) -> bool:
        """Move a run to CANCELLED from whatever state it is in.

        Only called between attempts, never while an executor is running.
        """
        operator = self._cancel_operator(run.id) or SYSTEM_OPERATOR
        state = run.overall_state
        env = run.current_environment
        target = RunState.CANCELLED

        if state == RunState.AWAITING_LOCK and env is not None:
            self.lock_manager.withdraw(env, run.id)
        elif state == RunState.AWAITING_APPROVAL:
            request = self.approval_gate.get(run.approval_request_ids[-1])
            if request.is_pending:
                self.approval_gate.cancel(request.id, operator)
        elif state in (RunState.DEPLOYING, RunState.VERIFYING) and env is not None:
            deploy = run.get_stage(stage_name(StageKind.DEPLOY, env))
            prior = self.catalog.current_fingerprint(env)
            if deploy.state != StageState.PENDING and prior is not None:
                target = self._rollback_run(
                    run,
                    env,
                    prior,
                    reason=f"run cancelled by {operator}",
                    operator=operator,
                    log=log,
                )
                if target == RunState.ROLLED_BACK:
                    target = RunState.CANCELLED

        self._release_lock(run)
        run.cancel_requested_by = operator
        self._transition(run, target, log, reason=f"cancelled by {operator}")
        return True

    def _release_lock(self, run: PipelineRun) -> None:
        lock = self._held_locks.pop(run.id, None)
        if lock is not None:
            self.lock_manager.release(lock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        run: PipelineRun,
        to_state: RunState,
        log: Any,
        *,
        environment: str | None = None,
        reason: str | None = None,
    ) -> None:
        """Apply a legal transition and record it."""
        from_state = run.overall_state
        require_transition(from_state, to_state, run.id)

        if to_state.is_environment_scoped:
            if environment is None:
                raise InvalidTransitionError(from_state.value, to_state.value, run_id=run.id)
            run.current_environment = environment
        elif not to_state.is_terminal or to_state == RunState.COMPLETED:
            run.current_environment = None
        # Failure states keep the environment they failed in.

        at = self._clock()
        run.transitions = [
            *run.transitions,
            StateTransition(
                from_state=from_state,
                to_state=to_state,
                environment=run.current_environment,
                at=at,
                reason=reason,
            ),
        ]
        run.overall_state = to_state
        log.info(
            "run_state_changed",
            from_state=from_state.value,
            to_state=to_state.value,
            environment=run.current_environment,
            reason=reason,
        )

        if to_state.is_terminal:
            run.finished_at = at
            self._metrics.increment("ratchet.runs", labels={"state": to_state.value})
            event = _TERMINAL_EVENTS.get(to_state)
            if event is not None:
                self._notify(
                    event,
                    {
                        "pipeline_run_id": run.id,
                        "state": to_state.value,
                        "environment": run.current_environment,
                        "source_ref": run.change_request.source_ref,
                        "commit": run.change_request.commit,
                        "artifact_fingerprint": run.artifact_fingerprint,
                        "failed_stage": run.failed_stage,
                        "error": run.last_error.message if run.last_error else None,
                        "timestamp": at.isoformat(),
                    },
                )

    def _build_stage_plan(self) -> list[StageExecution]:
        """Plan every stage of the promotion path; skipped environments are marked skipped."""
        plan = [
            StageExecution(
                stage_name=BUILD_STAGE,
                kind=StageKind.BUILD,
                max_attempts=self.config.retry_for(StageKind.BUILD).max_attempts,
            )
        ]
        kinds = [StageKind.TEST, StageKind.DEPLOY, StageKind.VERIFY]
        if StageKind.INFRA_PLAN in self._executors:
            kinds.insert(1, StageKind.INFRA_PLAN)
        for env in self.catalog.all_environments():
            for kind in kinds:
                plan.append(
                    StageExecution(
                        stage_name=stage_name(kind, env.name),
                        kind=kind,
                        target_environment=env.name,
                        max_attempts=self.config.retry_for(kind).max_attempts,
                        state=StageState.SKIPPED if env.skip else StageState.PENDING,
                    )
                )
        return plan

    def _run_stage(self, run: PipelineRun, name: str) -> StageResult:
        stage = run.get_stage(name)
        environment = (
            self.catalog.config(stage.target_environment)
            if stage.target_environment is not None
            else None
        )
        artifact = (
            self.registry.lookup(run.artifact_fingerprint)
            if run.artifact_fingerprint is not None
            else None
        )
        context = StageContext(
            pipeline_run_id=run.id,
            stage_name=stage.stage_name,
            kind=stage.kind,
            change_request=run.change_request,
            environment=environment,
            artifact=artifact,
            inputs={
                s.stage_name: dict(s.outputs)
                for s in run.stage_plan
                if s.state == StageState.SUCCEEDED
            },
        )
        result = self.runner.run(
            stage,
            self._executors[stage.kind],
            context,
            retry=self.config.retry_for(stage.kind),
            should_stop=lambda: self._cancel_operator(run.id) is not None,
        )
        self._publish(run)
        return result

    def _approval_context(self, run: PipelineRun, env: str) -> dict[str, Any]:
        assert run.classification is not None
        context: dict[str, Any] = {
            "source_ref": run.change_request.source_ref,
            "commit": run.change_request.commit,
            "artifact_fingerprint": run.artifact_fingerprint,
            "category": run.classification.category.value,
            "risk_score": run.classification.risk_score,
            "reasons": list(run.classification.reasons),
            "current_fingerprint": self.catalog.current_fingerprint(env),
        }
        plan_stage = stage_name(StageKind.INFRA_PLAN, env)
        if run.has_stage(plan_stage):
            context["infra_plan"] = dict(run.get_stage(plan_stage).outputs)
        return context

    def _current_environment(self, run: PipelineRun) -> str:
        if run.current_environment is None:
            raise InvalidTransitionError(
                run.overall_state.value, run.overall_state.value, run_id=run.id
            )
        return run.current_environment

    def _artifact_fingerprint(self, run: PipelineRun) -> str:
        if run.artifact_fingerprint is None:
            raise InvalidTransitionError(
                run.overall_state.value, RunState.PROMOTED.value, run_id=run.id
            )
        return run.artifact_fingerprint

    def _cancel_operator(self, run_id: str) -> str | None:
        with self._state_lock:
            return self._cancel_requests.get(run_id)

    def _internal(self, run_id: str) -> tuple[PipelineRun, threading.RLock]:
        with self._state_lock:
            run = self._runs.get(run_id)
            run_lock = self._run_locks.get(run_id)
        if run is None or run_lock is None:
            raise PipelineRunNotFoundError(run_id)
        return run, run_lock

    def _publish(self, run: PipelineRun) -> None:
        """Expose a consistent copy of the run to the query surface."""
        snapshot = run.model_copy(deep=True)
        with self._state_lock:
            self._published[run.id] = snapshot

    def _notify(self, event: str, data: dict[str, Any]) -> None:
        if self._notifier is not None:
            self._notifier.send(event, data)

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> PipelineRunStatus:
        """Status of a run: state, environment, stage history, attempts, approvals.

        Raises:
            PipelineRunNotFoundError: If the run is unknown.
        """
        with self._state_lock:
            run = self._published.get(run_id)
        if run is None:
            raise PipelineRunNotFoundError(run_id)
        return PipelineRunStatus(
            run_id=run.id,
            change_request_id=run.change_request_id,
            source_ref=run.change_request.source_ref,
            commit=run.change_request.commit,
            state=run.overall_state,
            current_environment=run.current_environment,
            artifact_fingerprint=run.artifact_fingerprint,
            failed_stage=run.failed_stage,
            last_error=run.last_error,
            classification=run.classification,
            stages=run.stage_plan,
            attempts=self.runner.execution_log.for_run(run.id),
            approvals=[self.approval_gate.get(rid) for rid in run.approval_request_ids],
            transitions=run.transitions,
            started_at=run.started_at,
            finished_at=run.finished_at,
        )

    def list_runs(self, state: RunState | None = None) -> list[PipelineRunStatus]:
        """Status of every run, oldest first, optionally filtered by state."""
        with self._state_lock:
            runs = sorted(self._published.values(), key=lambda r: r.started_at)
        return [
            self.get_run(run.id)
            for run in runs
            if state is None or run.overall_state == state
        ]

    def environment_status(self, name: str) -> EnvironmentStatus:
        """Current artifact, freeze flag and lock queue of an environment.

        Raises:
            EnvironmentNotFoundError: If the environment is unknown.
        """
        config = self.catalog.config(name)
        state = self.catalog.state(name)
        holder = self.lock_manager.holder(name)
        return EnvironmentStatus(
            name=name,
            promotion_order=config.promotion_order,
            requires_approval=config.requires_approval,
            skip=config.skip,
            current_artifact_fingerprint=state.current_artifact_fingerprint,
            deployed_by_run_id=state.deployed_by_run_id,
            deployed_at=state.deployed_at,
            frozen=state.frozen,
            frozen_reason=state.frozen_reason,
            lock_holder_run_id=holder.holder_pipeline_run_id if holder else None,
            waiting_run_ids=self.lock_manager.waiters(name),
        )

    def execution_log(self, run_id: str) -> list[StageAttemptRecord]:
        """Every stage attempt of a run, in execution order.

        Raises:
            PipelineRunNotFoundError: If the run is unknown.
        """
        self._internal(run_id)
        return self.runner.execution_log.for_run(run_id)

    # ------------------------------------------------------------------
    # Command surface
    # ------------------------------------------------------------------

    def cancel(self, run_id: str, operator: str) -> bool:
        """Request cancellation of a run.

        Waiting runs (queued, awaiting a lock or an approval) are cancelled
        immediately. A run that is executing a stage is cancelled once the
        in-flight attempt completes; when its deploy had started, the prior
        artifact is restored first.

        Args:
            run_id: Run to cancel.
            operator: Who requests the cancellation.

        Returns:
            True if the run is cancelled when the call returns, False if
            cancellation was deferred to the in-flight attempt.

        Raises:
            InvalidInputError: If ``operator`` is empty.
            PipelineRunNotFoundError: If the run is unknown.
            InvalidTransitionError: If the run already reached a terminal state.
        """
        if not operator:
            raise InvalidInputError("operator", "must not be empty")
        run, run_lock = self._internal(run_id)
        with self._state_lock:
            published = self._published[run_id]
            if published.is_terminal:
                raise InvalidTransitionError(
                    published.overall_state.value, RunState.CANCELLED.value, run_id=run_id
                )
            self._cancel_requests.setdefault(run_id, operator)
            deferred = run_id in self._advancing

        log = self._log.bind(pipeline_run_id=run_id)
        log.info("cancel_requested", operator=operator, deferred=deferred)
        if deferred:
            return False

        with run_lock:
            if not run.is_terminal:
                self._honor_cancel(run, log)
                self._publish(run)
            return run.overall_state == RunState.CANCELLED

    def decide(
        self,
        approval_request_id: str,
        decision: ApprovalDecision,
        decided_by: str,
    ) -> ApprovalRequest:
        """Record an approver's decision; the waiting run becomes runnable.

        Raises:
            ApprovalRequestNotFoundError: If the request is unknown.
            AlreadyDecidedError: If the request was already decided or expired.
            InvalidInputError: If the decision is not approved/rejected.
        """
        return self.approval_gate.decide(approval_request_id, decision, decided_by)

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def request_rollback(
        self,
        environment: str,
        to_fingerprint: str,
        operator: str,
        reason: str,
    ) -> RollbackRecord:
        """Roll an environment back on operator request.

        The environment lock is taken for the duration of the rollback; if
        a run holds it (or runs are queued for it), the request is refused
        rather than queued.

        Returns:
            The rollback record.

        Raises:
            InvalidInputError: If ``operator`` or ``reason`` is empty.
            EnvironmentNotFoundError: If the environment is unknown.
            AlreadyLockedError: If the environment is busy.
            ArtifactNotFoundError: If ``to_fingerprint`` was never registered.
            EnvironmentFrozenError: If the environment is frozen.
            RollbackFailedError: If the redeploy failed; the environment is now frozen.
        """
        if not operator:
            raise InvalidInputError("operator", "must not be empty")
        self.catalog.config(environment)
        self.registry.lookup(to_fingerprint)

        holder_id = f"rollback-{self._id_factory()}"
        try:
            lock = self.lock_manager.try_acquire(environment, holder_id)
        except AlreadyLockedError:
            self.lock_manager.withdraw(environment, holder_id)
            raise

        try:
            self.rollback_controller.rollback(
                environment,
                to_fingerprint,
                lock=lock,
                reason=reason,
                operator=operator,
                from_fingerprint=self.catalog.current_fingerprint(environment),
            )
        finally:
            self.lock_manager.release(lock)

        record = self.rollback_controller.history(environment)[-1]
        self._notify(
            "rolled_back",
            {
                "rollback_id": record.rollback_id,
                "environment": environment,
                "from_fingerprint": record.from_fingerprint,
                "to_fingerprint": to_fingerprint,
                "operator": operator,
                "reason": reason,
                "timestamp": record.rolled_back_at.isoformat(),
            },
        )
        return record

    def clear_freeze(self, environment: str, operator: str, reason: str) -> EnvironmentStatus:
        """Resume automated promotion into an environment frozen by a failed rollback."""
        self.catalog.clear_freeze(environment, operator, reason)
        return self.environment_status(environment)


__all__ = [
    "APPROVAL_STAGE",
    "BUILD_STAGE",
    "REQUIRED_EXECUTORS",
    "PipelineOrchestrator",
    "lock_stage_name",
    "stage_name",
]
