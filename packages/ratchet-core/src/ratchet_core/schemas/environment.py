"""Environment schemas.

Defines the static per-environment configuration, the runtime state holding
the last known-good artifact, and the ephemeral lock record that guards it.

Key Components:
    EnvironmentConfig: Static promotion target configuration
    EnvironmentState: Current artifact and freeze status
    EnvironmentLock: At most one per (application, environment)
    EnvironmentStatus: Query view combining state and lock queue
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 86400
"""Default approval deadline: 24 hours after the request."""


class EnvironmentConfig(BaseModel):
    """Static configuration of a deployment target.

    Attributes:
        name: Environment name (e.g., "dev", "qa", "prod").
        promotion_order: Lower values promote first; unique per pipeline.
        requires_approval: Whether every change needs approval here.
        skip: Statically exclude this environment from the promotion path.
        approval_timeout_seconds: Time an approver has before the request expires.

    Examples:
        >>> prod = EnvironmentConfig(name="prod", promotion_order=30, requires_approval=True)
        >>> prod.skip
        False
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=r"^[a-z][a-z0-9_-]*$",
        description="Environment name (lowercase, alphanumeric with hyphens/underscores)",
    )
    promotion_order: int = Field(
        ...,
        ge=0,
        description="Position in the promotion path (lower promotes first)",
    )
    requires_approval: bool = Field(
        default=False,
        description="Require human approval for every change",
    )
    skip: bool = Field(
        default=False,
        description="Exclude from the promotion path",
    )
    approval_timeout_seconds: int = Field(
        default=DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        ge=1,
        description="Seconds before a pending approval expires",
    )


class EnvironmentState(BaseModel):
    """Runtime state of an environment.

    ``current_artifact_fingerprint`` is the last successfully deployed and
    verified artifact. It is written only through EnvironmentCatalog, which
    checks that the writer holds the environment lock.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    name: str = Field(..., min_length=1)
    current_artifact_fingerprint: str | None = Field(default=None)
    deployed_by_run_id: str | None = Field(default=None)
    deployed_at: datetime | None = Field(default=None)
    frozen: bool = Field(
        default=False,
        description="Automation halted after a failed rollback",
    )
    frozen_reason: str | None = Field(default=None)


class EnvironmentLock(BaseModel):
    """Ownership record for an in-flight deployment.

    Created on acquisition and discarded on release. The ``token`` makes a
    stale lock object from an earlier acquisition distinguishable from the
    current one.

    Examples:
        >>> from datetime import datetime, timezone
        >>> lock = EnvironmentLock(
        ...     application="orders-api",
        ...     environment_name="dev",
        ...     holder_pipeline_run_id="run-1",
        ...     acquired_at=datetime.now(timezone.utc),
        ...     token="b3d1",
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    application: str = Field(..., min_length=1)
    environment_name: str = Field(..., min_length=1)
    holder_pipeline_run_id: str = Field(..., min_length=1)
    acquired_at: datetime = Field(...)
    token: str = Field(..., min_length=1)


class EnvironmentStatus(BaseModel):
    """Read-only view of an environment for the query surface."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    promotion_order: int
    requires_approval: bool
    skip: bool
    current_artifact_fingerprint: str | None = None
    deployed_by_run_id: str | None = None
    deployed_at: datetime | None = None
    frozen: bool = False
    frozen_reason: str | None = None
    lock_holder_run_id: str | None = None
    waiting_run_ids: list[str] = Field(default_factory=list)


__all__ = [
    "DEFAULT_APPROVAL_TIMEOUT_SECONDS",
    "EnvironmentConfig",
    "EnvironmentLock",
    "EnvironmentState",
    "EnvironmentStatus",
]
