"""Environment catalog: static configuration plus last known-good artifact.

The catalog is the only writer of ``EnvironmentState.current_artifact_fingerprint``
and refuses writes from callers that do not hold the environment's lock.
It also records the freeze set after a failed rollback, which halts
automated promotion into the environment until an operator clears it.
"""

from __future__ import annotations

import threading

import structlog

from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.errors import (
    EnvironmentFrozenError,
    EnvironmentNotFoundError,
    InvalidInputError,
    NotHolderError,
)
from ratchet_core.pipeline.locks import EnvironmentLockManager
from ratchet_core.schemas.environment import (
    EnvironmentConfig,
    EnvironmentLock,
    EnvironmentState,
)

logger = structlog.get_logger(__name__)


class EnvironmentCatalog:
    """Configured environments and their runtime state.

    Attributes:
        lock_manager: Lock manager consulted before every fingerprint write.

    Examples:
        >>> catalog = EnvironmentCatalog(environments, lock_manager)
        >>> [env.name for env in catalog.promotion_path()]
        ['dev', 'qa', 'prod']
        >>> catalog.current_fingerprint("prod") is None
        True
    """

    def __init__(
        self,
        environments: list[EnvironmentConfig],
        lock_manager: EnvironmentLockManager,
        *,
        current_fingerprints: dict[str, str] | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize EnvironmentCatalog.

        Args:
            environments: Static environment configuration.
            lock_manager: Lock manager guarding fingerprint writes.
            current_fingerprints: Fingerprints already deployed before the
                engine started, by environment name.
            clock: Source of deployment timestamps.

        Raises:
            InvalidInputError: If no environments are given.
            EnvironmentNotFoundError: If ``current_fingerprints`` names an
                unknown environment.
        """
        if not environments:
            raise InvalidInputError("environments", "at least one environment is required")
        self.lock_manager = lock_manager
        self._clock = clock or utc_now
        self._configs = {env.name: env for env in environments}
        self._states = {env.name: EnvironmentState(name=env.name) for env in environments}
        self._lock = threading.Lock()
        for name, fingerprint in (current_fingerprints or {}).items():
            self._require(name).current_artifact_fingerprint = fingerprint

    def _require(self, name: str) -> EnvironmentState:
        state = self._states.get(name)
        if state is None:
            raise EnvironmentNotFoundError(name, sorted(self._configs))
        return state

    def config(self, name: str) -> EnvironmentConfig:
        """Static configuration of an environment.

        Raises:
            EnvironmentNotFoundError: If the environment is unknown.
        """
        self._require(name)
        return self._configs[name]

    def all_environments(self) -> list[EnvironmentConfig]:
        """Every environment, skipped ones included, in promotion order."""
        return sorted(self._configs.values(), key=lambda env: env.promotion_order)

    def promotion_path(self) -> list[EnvironmentConfig]:
        """Environments a run visits, in ascending promotion order."""
        return [env for env in self.all_environments() if not env.skip]

    def next_environment(self, after: str | None) -> EnvironmentConfig | None:
        """The environment following ``after`` on the promotion path.

        Args:
            after: Last environment promoted, or None to get the first one.
        """
        path = self.promotion_path()
        if after is None:
            return path[0] if path else None
        floor = self.config(after).promotion_order
        for env in path:
            if env.promotion_order > floor:
                return env
        return None

    def state(self, name: str) -> EnvironmentState:
        """Copy of the runtime state of an environment."""
        with self._lock:
            return self._require(name).model_copy()

    def current_fingerprint(self, name: str) -> str | None:
        """Last known-good artifact fingerprint of an environment."""
        with self._lock:
            return self._require(name).current_artifact_fingerprint

    def is_frozen(self, name: str) -> bool:
        """Whether automated promotion into the environment is halted."""
        with self._lock:
            return self._require(name).frozen

    def ensure_not_frozen(self, name: str) -> None:
        """Raise EnvironmentFrozenError if the environment is frozen."""
        with self._lock:
            state = self._require(name)
            if state.frozen:
                raise EnvironmentFrozenError(name, state.frozen_reason)

    def record_deployment(
        self,
        name: str,
        fingerprint: str,
        *,
        lock: EnvironmentLock,
        pipeline_run_id: str,
    ) -> EnvironmentState:
        """Set the current fingerprint of an environment.

        Args:
            name: Environment name.
            fingerprint: Newly deployed and verified artifact.
            lock: Caller's lock on the environment.
            pipeline_run_id: Run (or rollback) performing the deployment.

        Returns:
            Copy of the updated state.

        Raises:
            NotHolderError: If ``lock`` is not the current lock on ``name``.
        """
        if lock.environment_name != name or not self.lock_manager.is_held(lock):
            holder = self.lock_manager.holder(name)
            logger.error(
                "fingerprint_write_without_lock",
                environment=name,
                pipeline_run_id=pipeline_run_id,
                holder_run_id=holder.holder_pipeline_run_id if holder else None,
            )
            raise NotHolderError(
                name,
                lock.holder_pipeline_run_id,
                holder.holder_pipeline_run_id if holder else None,
            )
        with self._lock:
            state = self._require(name)
            previous = state.current_artifact_fingerprint
            state.current_artifact_fingerprint = fingerprint
            state.deployed_by_run_id = pipeline_run_id
            state.deployed_at = self._clock()
            snapshot = state.model_copy()
        logger.info(
            "environment_fingerprint_updated",
            environment=name,
            previous_fingerprint=previous,
            fingerprint=fingerprint,
            pipeline_run_id=pipeline_run_id,
        )
        return snapshot

    def freeze(self, name: str, reason: str) -> None:
        """Halt automated promotion into an environment."""
        with self._lock:
            state = self._require(name)
            state.frozen = True
            state.frozen_reason = reason
        logger.critical("environment_frozen", environment=name, reason=reason)

    def clear_freeze(self, name: str, operator: str, reason: str) -> EnvironmentState:
        """Resume automated promotion after manual intervention.

        Raises:
            InvalidInputError: If ``operator`` is empty.
        """
        if not operator:
            raise InvalidInputError("operator", "must not be empty")
        with self._lock:
            state = self._require(name)
            was_frozen = state.frozen
            state.frozen = False
            state.frozen_reason = None
            snapshot = state.model_copy()
        logger.warning(
            "environment_freeze_cleared",
            environment=name,
            operator=operator,
            reason=reason,
            was_frozen=was_frozen,
        )
        return snapshot


__all__ = ["EnvironmentCatalog"]
