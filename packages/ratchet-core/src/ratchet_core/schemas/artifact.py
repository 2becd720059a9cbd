"""Artifact schemas.

An Artifact is a deployable build output identified by the content hash of
its package. Artifacts are registered once and never mutated; promotion
status is tracked beside them in ArtifactStatus.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """A deployable build output.

    Attributes:
        fingerprint: Content hash, unique key.
        storage_location: Opaque URI of the stored package.
        source_change_id: ChangeRequest the artifact was built from.
        built_at: Build completion timestamp.

    Examples:
        >>> from datetime import datetime, timezone
        >>> artifact = Artifact(
        ...     fingerprint="sha256:9f2c",
        ...     storage_location="s3://builds/handler-9f2c.zip",
        ...     source_change_id="chg-1",
        ...     built_at=datetime.now(timezone.utc),
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    fingerprint: str = Field(..., min_length=1, description="Content hash")
    storage_location: str = Field(..., min_length=1, description="Package URI")
    source_change_id: str = Field(..., min_length=1, description="Originating change")
    built_at: datetime = Field(..., description="Build completion timestamp")


class ArtifactStatus(BaseModel):
    """Promotion status of a registered artifact."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    fingerprint: str = Field(..., min_length=1)
    promoted_environments: list[str] = Field(
        default_factory=list,
        description="Environments the artifact reached, in promotion order",
    )
    last_promoted_at: datetime | None = Field(default=None)


__all__ = ["Artifact", "ArtifactStatus"]
