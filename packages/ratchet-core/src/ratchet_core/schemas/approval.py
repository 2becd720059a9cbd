"""Approval gate schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ApprovalDecision(str, Enum):
    """Decision state of an approval request.

    ``expired`` and ``rejected`` have the same effect on a run; they are kept
    apart for the audit trail.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalRequest(BaseModel):
    """A pending or decided human approval.

    Frozen: a decision replaces the pending record with a decided copy
    exactly once.

    Examples:
        >>> from datetime import datetime, timedelta, timezone
        >>> now = datetime.now(timezone.utc)
        >>> request = ApprovalRequest(
        ...     id="apr-1",
        ...     pipeline_run_id="run-1",
        ...     environment="prod",
        ...     requested_at=now,
        ...     deadline=now + timedelta(hours=4),
        ... )
        >>> request.is_pending
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    pipeline_run_id: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    requested_at: datetime
    deadline: datetime
    decision: ApprovalDecision = Field(default=ApprovalDecision.PENDING)
    decided_by: str | None = None
    decided_at: datetime | None = None
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Information shown to approvers (e.g., infra plan summary)",
    )

    @property
    def is_pending(self) -> bool:
        """Whether no decision has been recorded yet."""
        return self.decision == ApprovalDecision.PENDING


__all__ = ["ApprovalDecision", "ApprovalRequest"]
