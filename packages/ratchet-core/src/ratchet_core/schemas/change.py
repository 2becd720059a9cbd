"""Change intake and classification schemas.

This module defines the Pydantic v2 models describing a proposed code change
as delivered by a trigger source, the immutable ChangeRequest created from
it, and the ChangeClassification derived from it.

Key Components:
    FileChange: One changed path with line deltas
    TriggerEvent: Raw delivery from the source-control webhook sender
    ChangeRequest: Immutable change owned by a single pipeline run
    ChangeCategory: normal (full review) or operational (expedited)
    ChangeClassification: Category, risk score and ordered reasons
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from ratchet_core.schemas.environment import EnvironmentConfig

OPERATIONAL_CHANGE_LABEL = "operational-change"
"""Author label asking for the expedited (operational) classification."""


class ChangeCategory(str, Enum):
    """Classification category for a change.

    Attributes:
        NORMAL: Full review; every environment requires approval.
        OPERATIONAL: Expedited; approval only where the environment demands it.

    Examples:
        >>> ChangeCategory.OPERATIONAL.value
        'operational'
    """

    NORMAL = "normal"
    OPERATIONAL = "operational"


class FileChange(BaseModel):
    """A single changed path within a diff summary.

    Examples:
        >>> change = FileChange(path="terraform/lambda.tf", lines_added=4)
        >>> change.lines_changed
        4
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(
        ...,
        min_length=1,
        description="Repository-relative path of the changed file",
    )
    lines_added: int = Field(
        default=0,
        ge=0,
        description="Lines added to the file",
    )
    lines_removed: int = Field(
        default=0,
        ge=0,
        description="Lines removed from the file",
    )

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        """Normalise separators and strip a leading './'."""
        v = v.replace("\\", "/")
        while v.startswith("./"):
            v = v[2:]
        if not v:
            raise ValueError("path must not be empty")
        return v

    @property
    def lines_changed(self) -> int:
        """Total lines touched by this change."""
        return self.lines_added + self.lines_removed


class TriggerEvent(BaseModel):
    """A trigger delivered by the source-control host.

    Delivery is at-least-once; the orchestrator deduplicates on
    ``(source_ref, commit)``.

    Attributes:
        source_ref: Branch or ref name.
        commit: Commit identifier.
        diff_summary: Changed paths and line deltas.
        author_labels: Labels applied by the author.
        submitted_at: When the change was submitted.
        delivery_id: Optional transport-level delivery identifier (for logs).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_ref: str = Field(..., min_length=1, description="Branch or ref name")
    commit: str = Field(..., min_length=1, description="Commit identifier")
    diff_summary: list[FileChange] = Field(
        default_factory=list,
        description="Changed paths and line deltas",
    )
    author_labels: frozenset[str] = Field(
        default_factory=frozenset,
        description="Labels applied by the author",
    )
    submitted_at: datetime = Field(..., description="Submission timestamp")
    delivery_id: str | None = Field(
        default=None,
        description="Transport-level delivery identifier",
    )

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Key used to collapse duplicate deliveries."""
        return (self.source_ref, self.commit)


class ChangeRequest(BaseModel):
    """Immutable proposed code change.

    Created when a trigger event is accepted and owned exclusively by one
    PipelineRun for its whole lifetime.

    Examples:
        >>> from datetime import datetime, timezone
        >>> request = ChangeRequest(
        ...     id="chg-1",
        ...     source_ref="main",
        ...     commit="a1b2c3d",
        ...     diff_summary=[FileChange(path="src/handler.py", lines_added=3)],
        ...     submitted_at=datetime.now(timezone.utc),
        ... )
        >>> request.dedup_key
        ('main', 'a1b2c3d')
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Opaque change identifier")
    source_ref: str = Field(..., min_length=1, description="Branch or ref name")
    commit: str = Field(..., min_length=1, description="Commit identifier")
    diff_summary: list[FileChange] = Field(
        default_factory=list,
        description="Changed paths and line deltas",
    )
    author_labels: frozenset[str] = Field(
        default_factory=frozenset,
        description="Labels applied by the author",
    )
    submitted_at: datetime = Field(..., description="Submission timestamp")

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Key identifying this change across duplicate deliveries."""
        return (self.source_ref, self.commit)

    @property
    def paths(self) -> list[str]:
        """Changed paths in diff order."""
        return [change.path for change in self.diff_summary]

    @property
    def total_lines_changed(self) -> int:
        """Sum of added and removed lines across the diff."""
        return sum(change.lines_changed for change in self.diff_summary)

    @classmethod
    def from_trigger(cls, change_id: str, event: TriggerEvent) -> ChangeRequest:
        """Create a ChangeRequest from a trigger delivery."""
        return cls(
            id=change_id,
            source_ref=event.source_ref,
            commit=event.commit,
            diff_summary=list(event.diff_summary),
            author_labels=event.author_labels,
            submitted_at=event.submitted_at,
        )


class ChangeClassification(BaseModel):
    """Result of classifying a ChangeRequest.

    Computed once per change, attached to its PipelineRun, never persisted on
    its own.

    Attributes:
        category: normal or operational.
        risk_score: Integer risk score in 0..100.
        reasons: Ordered explanations of how the score was reached.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    category: ChangeCategory = Field(..., description="Change category")
    risk_score: int = Field(..., ge=0, le=100, description="Risk score 0-100")
    reasons: list[str] = Field(
        default_factory=list,
        description="Ordered explanations for the score and category",
    )

    def requires_approval(self, environment: EnvironmentConfig) -> bool:
        """Whether promotion into ``environment`` needs a human decision.

        Normal changes always need approval; operational changes only where
        the environment itself requires it.
        """
        return self.category == ChangeCategory.NORMAL or environment.requires_approval


__all__ = [
    "OPERATIONAL_CHANGE_LABEL",
    "ChangeCategory",
    "ChangeClassification",
    "ChangeRequest",
    "FileChange",
    "TriggerEvent",
]
