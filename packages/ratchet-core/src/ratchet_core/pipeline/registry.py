"""Content-addressed artifact registry.

Maps an artifact fingerprint to its storage location and build metadata.
Registration is idempotent: the first registration of a fingerprint wins
and later ones return the stored record without failing.
"""

from __future__ import annotations

import threading

import structlog

from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.errors import ArtifactNotFoundError, InvalidInputError
from ratchet_core.schemas.artifact import Artifact, ArtifactStatus

logger = structlog.get_logger(__name__)


class ArtifactRegistry:
    """Thread-safe in-memory registry of built artifacts.

    Examples:
        >>> registry = ArtifactRegistry()
        >>> stored = registry.register(artifact)
        >>> registry.register(artifact) is stored
        True
        >>> registry.lookup(artifact.fingerprint).storage_location
        's3://builds/handler-9f2c.zip'
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._artifacts: dict[str, Artifact] = {}
        self._status: dict[str, ArtifactStatus] = {}
        self._lock = threading.Lock()
        self._clock = clock or utc_now

    def register(self, artifact: Artifact) -> Artifact:
        """Register an artifact, or return the one already stored.

        Args:
            artifact: Build output to register.

        Returns:
            The stored artifact for ``artifact.fingerprint``.
        """
        with self._lock:
            existing = self._artifacts.get(artifact.fingerprint)
            if existing is not None:
                if existing.storage_location != artifact.storage_location:
                    logger.warning(
                        "artifact_reregistered_with_different_location",
                        fingerprint=artifact.fingerprint,
                        stored_location=existing.storage_location,
                        offered_location=artifact.storage_location,
                    )
                return existing
            self._artifacts[artifact.fingerprint] = artifact
            self._status[artifact.fingerprint] = ArtifactStatus(fingerprint=artifact.fingerprint)

        logger.info(
            "artifact_registered",
            fingerprint=artifact.fingerprint,
            source_change_id=artifact.source_change_id,
        )
        return artifact

    def lookup(self, fingerprint: str) -> Artifact:
        """Return the artifact registered under ``fingerprint``.

        Raises:
            InvalidInputError: If ``fingerprint`` is empty.
            ArtifactNotFoundError: If nothing is registered under it.
        """
        if not fingerprint or not fingerprint.strip():
            raise InvalidInputError("fingerprint", "must not be empty")
        with self._lock:
            artifact = self._artifacts.get(fingerprint)
        if artifact is None:
            raise ArtifactNotFoundError(fingerprint)
        return artifact

    def status(self, fingerprint: str) -> ArtifactStatus:
        """Return a copy of the promotion status of an artifact.

        Raises:
            ArtifactNotFoundError: If the fingerprint is unknown.
        """
        self.lookup(fingerprint)
        with self._lock:
            return self._status[fingerprint].model_copy(deep=True)

    def mark_promoted(self, fingerprint: str, environment: str) -> ArtifactStatus:
        """Record that an artifact reached ``environment``.

        Re-promotion to an environment already listed only refreshes the
        timestamp.

        Raises:
            ArtifactNotFoundError: If the fingerprint is unknown.
        """
        self.lookup(fingerprint)
        with self._lock:
            status = self._status[fingerprint]
            if environment not in status.promoted_environments:
                status.promoted_environments = [*status.promoted_environments, environment]
            status.last_promoted_at = self._clock()
            snapshot = status.model_copy(deep=True)
        logger.info("artifact_promoted", fingerprint=fingerprint, environment=environment)
        return snapshot

    def find_by_change(self, change_id: str) -> list[Artifact]:
        """Artifacts built from one change, oldest first."""
        with self._lock:
            found = [a for a in self._artifacts.values() if a.source_change_id == change_id]
        return sorted(found, key=lambda a: a.built_at)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._artifacts

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)


__all__ = ["ArtifactRegistry"]
