"""Unit tests for RetryPolicy."""

from __future__ import annotations

import pytest

from ratchet_core.pipeline.errors import NonRetryableStageError, RetryableStageError
from ratchet_core.pipeline.resilience import RetryPolicy
from ratchet_core.schemas.config import RetryConfig


class TestCalculateDelay:
    """Tests for the backoff schedule."""

    def test_default_schedule(self) -> None:
        """Defaults double from one second."""
        policy = RetryPolicy()
        assert [policy.calculate_delay(n) for n in range(3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self) -> None:
        """The cap applies once the exponential exceeds it."""
        policy = RetryPolicy(RetryConfig(initial_delay_ms=500, max_delay_ms=1500))
        assert [policy.calculate_delay(n) for n in range(4)] == [0.5, 1.0, 1.5, 1.5]

    def test_custom_multiplier(self) -> None:
        """The multiplier shapes the curve."""
        policy = RetryPolicy(
            RetryConfig(initial_delay_ms=100, backoff_multiplier=3.0, max_delay_ms=10000)
        )
        assert policy.calculate_delay(2) == pytest.approx(0.9)


class TestShouldRetry:
    """Tests for transient exception detection."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (RetryableStageError("throttled"), True),
            (ConnectionError("reset"), True),
            (TimeoutError("slow"), True),
            (NonRetryableStageError("bad manifest"), False),
            (ValueError("nope"), False),
        ],
    )
    def test_default_exceptions(self, error: Exception, expected: bool) -> None:
        """Only transient error types are retried by default."""
        assert RetryPolicy().should_retry(error) is expected

    def test_custom_exceptions(self) -> None:
        """Callers can supply their own transient types."""
        policy = RetryPolicy(retryable_exceptions=(KeyError,))
        assert policy.should_retry(KeyError("x"))
        assert not policy.should_retry(ConnectionError("reset"))


class TestWait:
    """Tests for wait() and the attempt bound."""

    def test_wait_uses_injected_sleep(self) -> None:
        """wait() sleeps through the injected callable."""
        slept: list[float] = []
        policy = RetryPolicy(
            RetryConfig(initial_delay_ms=250, max_delay_ms=1000), sleep=slept.append
        )

        assert policy.wait(0) == 0.25
        assert policy.wait(1) == 0.5
        assert slept == [0.25, 0.5]
