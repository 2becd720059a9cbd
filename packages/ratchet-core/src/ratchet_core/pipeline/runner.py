"""Stage execution with bounded retries.

StageRunner sequences the attempts of one stage against an executor. It
knows nothing about what the stage does: the executor reports an outcome,
the runner decides whether to try again, records every attempt in the
append-only ExecutionLog and settles the stage's final state.

Outcome handling:
    - ``succeeded``: stage SUCCEEDED, outputs kept.
    - ``retryable`` (or a transient exception): retried until
      ``max_attempts`` invocations have happened, then FAILED.
    - ``non_retryable`` (or any other exception): FAILED immediately.

Example:
    >>> runner = StageRunner(ExecutionLog(), sleep=lambda _: None)
    >>> stage = StageExecution(stage_name="test-dev", kind=StageKind.TEST, max_attempts=3)
    >>> result = runner.run(stage, executor, context)
    >>> result.state
    <StageState.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

import structlog

from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.errors import InvalidInputError, StageExecutionError
from ratchet_core.pipeline.resilience import RetryPolicy
from ratchet_core.schemas.config import RetryConfig
from ratchet_core.schemas.stage import (
    OutcomeStatus,
    StageAttemptRecord,
    StageContext,
    StageError,
    StageErrorKind,
    StageExecution,
    StageOutcome,
    StageResult,
    StageState,
)
from ratchet_core.telemetry.metrics import MetricRecorder
from ratchet_core.telemetry.sanitization import sanitize_error_message
from ratchet_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


@runtime_checkable
class StageExecutor(Protocol):
    """Capability performing the real work of a stage.

    Implementations wrap the external collaborators (artifact builder, test
    harness, infrastructure provisioner, deploy mechanism). Returning a
    ``retryable`` outcome or raising a transient exception asks for another
    attempt.
    """

    def execute(self, context: StageContext) -> StageOutcome:
        """Perform one attempt of the stage."""
        ...


class ExecutionLog:
    """Append-only, thread-safe log of stage attempts.

    Entries are never rewritten or removed.

    Examples:
        >>> log = ExecutionLog()
        >>> log.append(record)
        >>> len(log.for_run("run-1"))
        1
    """

    def __init__(self) -> None:
        self._records: list[StageAttemptRecord] = []
        self._lock = threading.Lock()

    def append(self, record: StageAttemptRecord) -> None:
        """Append one attempt record."""
        with self._lock:
            self._records.append(record)

    def records(self) -> list[StageAttemptRecord]:
        """Every record in append order."""
        with self._lock:
            return list(self._records)

    def for_run(self, pipeline_run_id: str) -> list[StageAttemptRecord]:
        """Records belonging to one run, in append order."""
        with self._lock:
            return [r for r in self._records if r.pipeline_run_id == pipeline_run_id]

    def for_stage(self, pipeline_run_id: str, stage_name: str) -> list[StageAttemptRecord]:
        """Records of one stage within one run."""
        return [r for r in self.for_run(pipeline_run_id) if r.stage_name == stage_name]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class StageRunner:
    """Runs a stage against an executor under a retry policy.

    Attributes:
        execution_log: Log receiving one record per attempt.
    """

    def __init__(
        self,
        execution_log: ExecutionLog | None = None,
        *,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        metrics: MetricRecorder | None = None,
    ) -> None:
        """Initialize StageRunner.

        Args:
            execution_log: Attempt log. A fresh one is created if None.
            clock: Source of attempt timestamps.
            sleep: Backoff wait function (seconds). Defaults to time.sleep.
            retryable_exceptions: Executor exceptions treated as transient.
            metrics: Metric recorder for attempt counters and durations.
        """
        self.execution_log = execution_log if execution_log is not None else ExecutionLog()
        self._clock = clock or utc_now
        self._sleep = sleep or time.sleep
        self._retryable_exceptions = retryable_exceptions
        self._metrics = metrics or MetricRecorder()

    def _policy(self, retry: RetryConfig | None) -> RetryPolicy:
        return RetryPolicy(retry, self._retryable_exceptions, sleep=self._sleep)

    def _invoke(
        self,
        executor: StageExecutor,
        context: StageContext,
        policy: RetryPolicy,
    ) -> StageOutcome:
        """Call the executor once, mapping raised errors to outcomes."""
        try:
            outcome = executor.execute(context)
        except Exception as e:
            details = e.details if isinstance(e, StageExecutionError) else {}
            message = sanitize_error_message(str(e) or type(e).__name__)
            if policy.should_retry(e):
                return StageOutcome.retryable(message, details)
            return StageOutcome.non_retryable(message, details)
        if not isinstance(outcome, StageOutcome):
            return StageOutcome.non_retryable(
                f"executor returned {type(outcome).__name__}, expected StageOutcome"
            )
        return outcome

    def run(
        self,
        stage: StageExecution,
        executor: StageExecutor,
        context: StageContext,
        *,
        retry: RetryConfig | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> StageResult:
        """Run ``stage`` until it succeeds, fails permanently or runs out of attempts.

        ``stage`` is mutated in place (state, attempt_count, last_error,
        outputs). ``should_stop`` is consulted only between attempts, so an
        attempt in flight always completes.

        Args:
            stage: Planned stage; must be PENDING.
            executor: Capability performing the work.
            context: Executor input; ``attempt`` is filled in per attempt.
            retry: Backoff parameters. The attempt bound is ``stage.max_attempts``.
            should_stop: Cancellation probe.

        Returns:
            StageResult describing the final state.

        Raises:
            InvalidInputError: If the stage is not PENDING.
        """
        if stage.state != StageState.PENDING:
            raise InvalidInputError(
                "stage",
                f"stage {stage.stage_name} is {stage.state.value}, expected pending",
            )

        policy = self._policy(retry)
        log = logger.bind(
            pipeline_run_id=context.pipeline_run_id,
            stage_name=stage.stage_name,
            stage_kind=stage.kind.value,
        )
        run_started = time.monotonic()
        stage.state = StageState.RUNNING

        while stage.attempt_count < stage.max_attempts:
            attempt = stage.attempt_count + 1
            stage.attempt_count = attempt
            started_at = self._clock()
            attempt_started = time.monotonic()

            with create_span(
                f"ratchet.stage.{stage.kind.value}",
                {
                    "ratchet.run_id": context.pipeline_run_id,
                    "ratchet.stage": stage.stage_name,
                    "ratchet.environment": stage.target_environment,
                    "ratchet.attempt": attempt,
                },
            ) as span:
                outcome = self._invoke(
                    executor, context.model_copy(update={"attempt": attempt}), policy
                )
                span.set_attribute("ratchet.stage.status", outcome.status.value)

            duration_ms = int((time.monotonic() - attempt_started) * 1000)
            self.execution_log.append(
                StageAttemptRecord(
                    pipeline_run_id=context.pipeline_run_id,
                    stage_name=stage.stage_name,
                    attempt=attempt,
                    status=outcome.status,
                    duration_ms=duration_ms,
                    error=outcome.error,
                    started_at=started_at,
                )
            )
            self._metrics.increment(
                "ratchet.stage.attempts",
                labels={"stage_kind": stage.kind.value, "status": outcome.status.value},
            )

            if outcome.status == OutcomeStatus.SUCCEEDED:
                stage.outputs = dict(outcome.details)
                stage.last_error = None
                stage.state = StageState.SUCCEEDED
                log.info("stage_succeeded", attempt=attempt, duration_ms=duration_ms)
                break

            if outcome.status == OutcomeStatus.NON_RETRYABLE:
                stage.last_error = StageError(
                    kind=StageErrorKind.NON_RETRYABLE,
                    message=outcome.error or "non-retryable failure",
                    details=dict(outcome.details),
                )
                log.error("stage_failed", attempt=attempt, error=outcome.error, retryable=False)
                break

            stage.last_error = StageError(
                kind=StageErrorKind.RETRYABLE,
                message=outcome.error or "retryable failure",
                details=dict(outcome.details),
            )
            if stage.attempt_count >= stage.max_attempts:
                log.error(
                    "stage_retries_exhausted",
                    attempts=stage.attempt_count,
                    error=outcome.error,
                )
                break
            if should_stop is not None and should_stop():
                stage.last_error = StageError(
                    kind=StageErrorKind.CANCELLED,
                    message="cancelled between attempts",
                    details={"after_attempt": attempt, "last_error": outcome.error},
                )
                log.info("stage_cancelled", attempt=attempt)
                break
            log.warning(
                "stage_attempt_failed",
                attempt=attempt,
                max_attempts=stage.max_attempts,
                error=outcome.error,
            )
            policy.wait(attempt - 1)

        if stage.state != StageState.SUCCEEDED:
            stage.state = StageState.FAILED

        total_ms = int((time.monotonic() - run_started) * 1000)
        self._metrics.record(
            "ratchet.stage.duration",
            total_ms,
            labels={"stage_kind": stage.kind.value, "state": stage.state.value},
        )
        return StageResult(
            stage_name=stage.stage_name,
            state=stage.state,
            attempts=stage.attempt_count,
            outputs=dict(stage.outputs),
            error=stage.last_error,
            duration_ms=total_ms,
        )


__all__ = ["ExecutionLog", "StageExecutor", "StageRunner"]
