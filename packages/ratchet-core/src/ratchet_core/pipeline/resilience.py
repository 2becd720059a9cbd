"""Retry policy for stage execution.

Backoff is a pure function of the attempt number so the schedule can be
asserted without real time passing; the actual wait goes through an
injected ``sleep`` callable.

Retry timeline (default RetryConfig):
    - Attempt 1: immediate
    - Attempt 2: after 1s
    - Attempt 3: after 2s

Example:
    >>> policy = RetryPolicy(RetryConfig(max_attempts=4, initial_delay_ms=500))
    >>> [policy.calculate_delay(n) for n in range(3)]
    [0.5, 1.0, 2.0]
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from ratchet_core.pipeline.errors import RetryableStageError
from ratchet_core.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)

DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    RetryableStageError,
    ConnectionError,
    TimeoutError,
)
"""Exceptions raised by executors that count as transient failures."""


class RetryPolicy:
    """Exponential backoff without jitter.

    Attributes:
        config: RetryConfig with attempt bound and delay parameters.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types treated as transient.
                Defaults to (RetryableStageError, ConnectionError, TimeoutError).
            sleep: Wait function taking seconds. Defaults to time.sleep.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or DEFAULT_RETRYABLE_EXCEPTIONS
        self._sleep = sleep or time.sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before the attempt following ``attempt``.

        ``delay = min(initial_delay_ms * multiplier ** attempt, max_delay_ms)``

        Args:
            attempt: Number of attempts already made minus one (0-indexed).

        Returns:
            Delay in seconds.
        """
        delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )
        return delay_ms / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Whether an exception raised by an executor is transient."""
        return isinstance(exception, self._retryable_exceptions)

    def wait(self, attempt: int) -> float:
        """Sleep for the backoff following 0-indexed ``attempt``; return the delay."""
        delay = self.calculate_delay(attempt)
        logger.debug("retry_wait", attempt=attempt + 1, delay_seconds=delay)
        if delay > 0:
            self._sleep(delay)
        return delay


__all__ = ["DEFAULT_RETRYABLE_EXCEPTIONS", "RetryPolicy"]
