"""Per-environment deployment locks with FIFO hand-over.

EnvironmentLockManager guarantees at most one in-flight deployment per
(application, environment). Acquisition never blocks: a caller that cannot
acquire gets AlreadyLockedError and is placed in the environment's FIFO
queue. While a queue exists, only its head may acquire, even when the lock
is momentarily free, so no run can jump the queue.

On release the head of the queue is announced to registered listeners,
which is how the orchestrator wakes a waiting run without polling.

Example:
    >>> manager = EnvironmentLockManager("orders-api")
    >>> lock = manager.try_acquire("dev", "run-a")
    >>> manager.try_acquire("dev", "run-b")
    Traceback (most recent call last):
        ...
    AlreadyLockedError: Environment dev is locked by run run-a (queue position 1)
    >>> manager.release(lock)
    >>> manager.try_acquire("dev", "run-b").holder_pipeline_run_id
    'run-b'
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable

import structlog

from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.errors import AlreadyLockedError, InvalidInputError, NotHolderError
from ratchet_core.schemas.environment import EnvironmentLock
from ratchet_core.telemetry.metrics import MetricRecorder

logger = structlog.get_logger(__name__)

LockListener = Callable[[str, str], None]
"""Called with ``(environment, next_run_id)`` when a queued run may acquire."""


class EnvironmentLockManager:
    """Non-blocking, FIFO-fair environment locks for one application.

    Attributes:
        application: Application the locks belong to.
    """

    def __init__(
        self,
        application: str,
        *,
        clock: Clock | None = None,
        metrics: MetricRecorder | None = None,
    ) -> None:
        if not application:
            raise InvalidInputError("application", "must not be empty")
        self.application = application
        self._clock = clock or utc_now
        self._metrics = metrics or MetricRecorder()
        self._holders: dict[tuple[str, str], EnvironmentLock] = {}
        self._queues: dict[tuple[str, str], deque[str]] = {}
        self._listeners: list[LockListener] = []
        self._lock = threading.Lock()

    def _key(self, environment: str) -> tuple[str, str]:
        return (self.application, environment)

    def add_listener(self, listener: LockListener) -> None:
        """Register a callback for queue hand-over notifications."""
        with self._lock:
            self._listeners.append(listener)

    def try_acquire(self, environment: str, pipeline_run_id: str) -> EnvironmentLock:
        """Acquire the lock on ``environment`` for a run, without blocking.

        A run that already holds the lock gets its existing lock back.

        Args:
            environment: Environment name.
            pipeline_run_id: Requesting run.

        Returns:
            The new (or already held) EnvironmentLock.

        Raises:
            InvalidInputError: If an argument is empty.
            AlreadyLockedError: If another run holds the lock or is ahead in
                the queue. The caller is queued (once) in FIFO order.
        """
        if not environment:
            raise InvalidInputError("environment", "must not be empty")
        if not pipeline_run_id:
            raise InvalidInputError("pipeline_run_id", "must not be empty")

        key = self._key(environment)
        with self._lock:
            holder = self._holders.get(key)
            if holder is not None and holder.holder_pipeline_run_id == pipeline_run_id:
                return holder

            queue = self._queues.setdefault(key, deque())
            if holder is None and (not queue or queue[0] == pipeline_run_id):
                if queue:
                    queue.popleft()
                lock = EnvironmentLock(
                    application=self.application,
                    environment_name=environment,
                    holder_pipeline_run_id=pipeline_run_id,
                    acquired_at=self._clock(),
                    token=uuid.uuid4().hex,
                )
                self._holders[key] = lock
                if not queue:
                    del self._queues[key]
                logger.info(
                    "lock_acquired",
                    application=self.application,
                    environment=environment,
                    pipeline_run_id=pipeline_run_id,
                )
                return lock

            if pipeline_run_id not in queue:
                queue.append(pipeline_run_id)
            position = queue.index(pipeline_run_id) + 1
            holder_run_id = holder.holder_pipeline_run_id if holder is not None else None

        self._metrics.increment(
            "ratchet.lock.contention", labels={"environment": environment}
        )
        logger.debug(
            "lock_contended",
            environment=environment,
            pipeline_run_id=pipeline_run_id,
            holder_run_id=holder_run_id,
            queue_position=position,
        )
        raise AlreadyLockedError(
            environment, holder_run_id=holder_run_id, queue_position=position
        )

    def release(self, lock: EnvironmentLock) -> None:
        """Release a held lock and announce the next queued run.

        Raises:
            NotHolderError: If ``lock`` is not the lock currently held on its
                environment. This is a programming error and is logged loudly.
        """
        key = (lock.application, lock.environment_name)
        with self._lock:
            current = self._holders.get(key)
            if current is None or current.token != lock.token:
                holder_run_id = current.holder_pipeline_run_id if current else None
                logger.error(
                    "lock_release_by_non_holder",
                    environment=lock.environment_name,
                    pipeline_run_id=lock.holder_pipeline_run_id,
                    holder_run_id=holder_run_id,
                )
                raise NotHolderError(
                    lock.environment_name, lock.holder_pipeline_run_id, holder_run_id
                )
            del self._holders[key]
            queue = self._queues.get(key)
            next_run_id = queue[0] if queue else None
            listeners = list(self._listeners)

        logger.info(
            "lock_released",
            environment=lock.environment_name,
            pipeline_run_id=lock.holder_pipeline_run_id,
            next_run_id=next_run_id,
        )
        if next_run_id is not None:
            for listener in listeners:
                listener(lock.environment_name, next_run_id)

    def withdraw(self, environment: str, pipeline_run_id: str) -> bool:
        """Remove a run from the wait queue (e.g., on cancellation).

        When the withdrawn run was the head and the lock is free, the new head
        is announced.

        Returns:
            True if the run was queued.
        """
        key = self._key(environment)
        with self._lock:
            queue = self._queues.get(key)
            if not queue or pipeline_run_id not in queue:
                return False
            was_head = queue[0] == pipeline_run_id
            queue.remove(pipeline_run_id)
            if not queue:
                del self._queues[key]
            next_run_id = None
            if was_head and queue and key not in self._holders:
                next_run_id = queue[0]
            listeners = list(self._listeners)

        logger.info("lock_wait_withdrawn", environment=environment, pipeline_run_id=pipeline_run_id)
        if next_run_id is not None:
            for listener in listeners:
                listener(environment, next_run_id)
        return True

    def holder(self, environment: str) -> EnvironmentLock | None:
        """Current lock on ``environment``, if any."""
        with self._lock:
            return self._holders.get(self._key(environment))

    def waiters(self, environment: str) -> list[str]:
        """Queued run ids in grant order."""
        with self._lock:
            return list(self._queues.get(self._key(environment), ()))

    def is_held(self, lock: EnvironmentLock) -> bool:
        """Whether ``lock`` is the lock currently held on its environment."""
        with self._lock:
            current = self._holders.get((lock.application, lock.environment_name))
            return current is not None and current.token == lock.token

    def held_locks(self) -> list[EnvironmentLock]:
        """Every currently held lock."""
        with self._lock:
            return list(self._holders.values())


__all__ = ["EnvironmentLockManager", "LockListener"]
