"""Unit tests for EnvironmentLockManager.

Covers mutual exclusion, FIFO hand-over, release by non-holders and
withdrawal from the wait queue.
"""

from __future__ import annotations

import threading

import pytest

from ratchet_core.pipeline.errors import (
    AlreadyLockedError,
    InvalidInputError,
    NotHolderError,
)
from ratchet_core.pipeline.locks import EnvironmentLockManager


@pytest.fixture
def manager() -> EnvironmentLockManager:
    """Lock manager for one application."""
    return EnvironmentLockManager("orders-api")


class TestAcquire:
    """Tests for try_acquire()."""

    def test_acquire_free_environment(self, manager: EnvironmentLockManager) -> None:
        """A free environment is granted immediately."""
        lock = manager.try_acquire("dev", "run-a")

        assert lock.application == "orders-api"
        assert lock.environment_name == "dev"
        assert lock.holder_pipeline_run_id == "run-a"
        assert manager.is_held(lock)

    def test_second_run_is_refused_and_queued(self, manager: EnvironmentLockManager) -> None:
        """A busy environment raises AlreadyLocked with the queue position."""
        manager.try_acquire("dev", "run-a")

        with pytest.raises(AlreadyLockedError) as exc_info:
            manager.try_acquire("dev", "run-b")

        assert exc_info.value.holder_run_id == "run-a"
        assert exc_info.value.queue_position == 1
        assert exc_info.value.exit_code == 4
        assert manager.waiters("dev") == ["run-b"]

    def test_reacquire_by_holder_returns_same_lock(self, manager: EnvironmentLockManager) -> None:
        """The holder gets its existing lock back."""
        lock = manager.try_acquire("dev", "run-a")
        assert manager.try_acquire("dev", "run-a") == lock

    def test_retry_does_not_requeue(self, manager: EnvironmentLockManager) -> None:
        """A waiter retrying keeps its place."""
        manager.try_acquire("dev", "run-a")
        for _ in range(3):
            with pytest.raises(AlreadyLockedError):
                manager.try_acquire("dev", "run-b")
        assert manager.waiters("dev") == ["run-b"]

    def test_environments_are_independent(self, manager: EnvironmentLockManager) -> None:
        """Locks on different environments do not interfere."""
        manager.try_acquire("dev", "run-a")
        lock = manager.try_acquire("qa", "run-b")
        assert lock.holder_pipeline_run_id == "run-b"

    @pytest.mark.parametrize(("environment", "run_id"), [("", "run-a"), ("dev", "")])
    def test_empty_arguments_rejected(
        self, manager: EnvironmentLockManager, environment: str, run_id: str
    ) -> None:
        """Empty names are invalid input."""
        with pytest.raises(InvalidInputError):
            manager.try_acquire(environment, run_id)

    def test_empty_application_rejected(self) -> None:
        """Locks are keyed by application; it must be named."""
        with pytest.raises(InvalidInputError):
            EnvironmentLockManager("")


class TestFifoHandOver:
    """Tests for queue ordering across release."""

    def test_queued_runs_acquire_in_order(self, manager: EnvironmentLockManager) -> None:
        """B queued before C acquires first, and C cannot jump ahead."""
        lock_a = manager.try_acquire("dev", "run-a")
        for run_id in ("run-b", "run-c"):
            with pytest.raises(AlreadyLockedError):
                manager.try_acquire("dev", run_id)

        manager.release(lock_a)

        # The lock is free but C is not at the head.
        with pytest.raises(AlreadyLockedError) as exc_info:
            manager.try_acquire("dev", "run-c")
        assert exc_info.value.holder_run_id is None
        assert exc_info.value.queue_position == 2

        lock_b = manager.try_acquire("dev", "run-b")
        assert manager.waiters("dev") == ["run-c"]
        manager.release(lock_b)
        assert manager.try_acquire("dev", "run-c").holder_pipeline_run_id == "run-c"
        assert manager.waiters("dev") == []

    def test_release_announces_queue_head(self, manager: EnvironmentLockManager) -> None:
        """Listeners hear about the next run when the lock is released."""
        announced: list[tuple[str, str]] = []
        manager.add_listener(lambda env, run_id: announced.append((env, run_id)))
        lock = manager.try_acquire("dev", "run-a")
        with pytest.raises(AlreadyLockedError):
            manager.try_acquire("dev", "run-b")

        manager.release(lock)

        assert announced == [("dev", "run-b")]

    def test_release_without_waiters_announces_nothing(
        self, manager: EnvironmentLockManager
    ) -> None:
        """No listener call when nobody waits."""
        announced: list[tuple[str, str]] = []
        manager.add_listener(lambda env, run_id: announced.append((env, run_id)))
        manager.release(manager.try_acquire("dev", "run-a"))
        assert announced == []
        assert manager.holder("dev") is None


class TestRelease:
    """Tests for release() by the wrong caller."""

    def test_release_by_non_holder(self, manager: EnvironmentLockManager) -> None:
        """A stale lock cannot release the current holder's lock."""
        stale = manager.try_acquire("dev", "run-a")
        manager.release(stale)
        current = manager.try_acquire("dev", "run-b")

        with pytest.raises(NotHolderError) as exc_info:
            manager.release(stale)

        assert exc_info.value.holder_run_id == "run-b"
        assert manager.is_held(current)

    def test_double_release(self, manager: EnvironmentLockManager) -> None:
        """Releasing twice is a contract violation."""
        lock = manager.try_acquire("dev", "run-a")
        manager.release(lock)
        with pytest.raises(NotHolderError):
            manager.release(lock)


class TestWithdraw:
    """Tests for withdraw()."""

    def test_withdraw_removes_waiter(self, manager: EnvironmentLockManager) -> None:
        """A cancelled waiter leaves the queue."""
        manager.try_acquire("dev", "run-a")
        with pytest.raises(AlreadyLockedError):
            manager.try_acquire("dev", "run-b")

        assert manager.withdraw("dev", "run-b") is True
        assert manager.waiters("dev") == []
        assert manager.withdraw("dev", "run-b") is False

    def test_withdrawn_head_hands_over_free_lock(self, manager: EnvironmentLockManager) -> None:
        """When the head withdraws from a free lock, the next waiter is announced."""
        announced: list[str] = []
        manager.add_listener(lambda _env, run_id: announced.append(run_id))
        lock = manager.try_acquire("dev", "run-a")
        for run_id in ("run-b", "run-c"):
            with pytest.raises(AlreadyLockedError):
                manager.try_acquire("dev", run_id)
        manager.release(lock)

        manager.withdraw("dev", "run-b")

        assert announced == ["run-b", "run-c"]
        assert manager.try_acquire("dev", "run-c").holder_pipeline_run_id == "run-c"


class TestConcurrency:
    """Mutual exclusion under concurrent callers."""

    def test_only_one_thread_acquires(self, manager: EnvironmentLockManager) -> None:
        """Exactly one of many concurrent callers wins."""
        winners: list[str] = []
        barrier = threading.Barrier(8)

        def contend(run_id: str) -> None:
            barrier.wait()
            try:
                manager.try_acquire("prod", run_id)
            except AlreadyLockedError:
                return
            winners.append(run_id)

        threads = [threading.Thread(target=contend, args=(f"run-{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(manager.waiters("prod")) == 7
        assert manager.holder("prod").holder_pipeline_run_id == winners[0]
