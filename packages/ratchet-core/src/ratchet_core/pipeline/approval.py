"""Human approval gate.

ApprovalGate tracks approval requests and their single decision. Expiry is
never driven by a timer: the orchestrator's scheduling loop calls
``check_expired``, which compares the deadline with the injected clock.

Decision rules:
    - The first decision wins; deciding a non-pending request raises
      AlreadyDecidedError.
    - A pending request whose deadline has passed is marked ``expired``
      before any decision is considered.
    - ``expired`` and ``rejected`` are recorded distinctly for audit.

Example:
    >>> gate = ApprovalGate(clock=fake_clock)
    >>> request = gate.request_approval("run-1", "prod", deadline)
    >>> gate.decide(request.id, ApprovalDecision.APPROVED, "alice").decision
    <ApprovalDecision.APPROVED: 'approved'>
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from ratchet_core.pipeline.clock import Clock, utc_now
from ratchet_core.pipeline.errors import (
    AlreadyDecidedError,
    ApprovalRequestNotFoundError,
    InvalidInputError,
)
from ratchet_core.schemas.approval import ApprovalDecision, ApprovalRequest
from ratchet_core.telemetry.metrics import MetricRecorder

logger = structlog.get_logger(__name__)

ApprovalListener = Callable[[ApprovalRequest], None]
"""Called with the decided request after every decision (including expiry)."""

_HUMAN_DECISIONS = frozenset({ApprovalDecision.APPROVED, ApprovalDecision.REJECTED})


class ApprovalGate:
    """Pending and decided approval requests."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        metrics: MetricRecorder | None = None,
    ) -> None:
        self._clock = clock or utc_now
        self._id_factory = id_factory or (lambda: f"apr-{uuid.uuid4().hex[:12]}")
        self._metrics = metrics or MetricRecorder()
        self._requests: dict[str, ApprovalRequest] = {}
        self._listeners: list[ApprovalListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: ApprovalListener) -> None:
        """Register a callback invoked after each decision."""
        with self._lock:
            self._listeners.append(listener)

    def request_approval(
        self,
        pipeline_run_id: str,
        environment: str,
        deadline: datetime,
        context: dict[str, Any] | None = None,
    ) -> ApprovalRequest:
        """Open a pending approval request.

        Args:
            pipeline_run_id: Run waiting for the decision.
            environment: Environment the run wants to deploy to.
            deadline: Moment after which the request expires.
            context: Information for approvers (plan summary, risk, ...).

        Returns:
            The pending request.

        Raises:
            InvalidInputError: If the deadline is not after the request time.
        """
        now = self._clock()
        if deadline <= now:
            raise InvalidInputError("deadline", f"{deadline.isoformat()} is not in the future")
        request = ApprovalRequest(
            id=self._id_factory(),
            pipeline_run_id=pipeline_run_id,
            environment=environment,
            requested_at=now,
            deadline=deadline,
            context=dict(context or {}),
        )
        with self._lock:
            self._requests[request.id] = request
        logger.info(
            "approval_requested",
            approval_request_id=request.id,
            pipeline_run_id=pipeline_run_id,
            environment=environment,
            deadline=deadline.isoformat(),
        )
        return request

    def get(self, request_id: str) -> ApprovalRequest:
        """Return a request by id.

        Raises:
            ApprovalRequestNotFoundError: If the id is unknown.
        """
        with self._lock:
            request = self._requests.get(request_id)
        if request is None:
            raise ApprovalRequestNotFoundError(request_id)
        return request

    def pending(self) -> list[ApprovalRequest]:
        """Requests still awaiting a decision, oldest first."""
        with self._lock:
            found = [r for r in self._requests.values() if r.is_pending]
        return sorted(found, key=lambda r: r.requested_at)

    def for_run(self, pipeline_run_id: str) -> list[ApprovalRequest]:
        """Every request raised by one run, oldest first."""
        with self._lock:
            found = [r for r in self._requests.values() if r.pipeline_run_id == pipeline_run_id]
        return sorted(found, key=lambda r: r.requested_at)

    def _settle(
        self,
        request_id: str,
        decision: ApprovalDecision,
        decided_by: str | None,
    ) -> ApprovalRequest:
        """Replace a pending request with its decided copy; caller holds the lock."""
        current = self._requests.get(request_id)
        if current is None:
            raise ApprovalRequestNotFoundError(request_id)
        if not current.is_pending:
            raise AlreadyDecidedError(request_id, current.decision.value)
        decided = current.model_copy(
            update={
                "decision": decision,
                "decided_by": decided_by,
                "decided_at": self._clock(),
            }
        )
        self._requests[request_id] = decided
        return decided

    def _expire_if_due(self, request_id: str) -> ApprovalRequest | None:
        """Mark a pending, overdue request expired; caller holds the lock."""
        current = self._requests.get(request_id)
        if current is None:
            raise ApprovalRequestNotFoundError(request_id)
        if current.is_pending and self._clock() >= current.deadline:
            return self._settle(request_id, ApprovalDecision.EXPIRED, None)
        return None

    def _announce(self, request: ApprovalRequest) -> None:
        self._metrics.increment("ratchet.approvals", labels={"decision": request.decision.value})
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(request)

    def decide(
        self,
        request_id: str,
        decision: ApprovalDecision,
        decided_by: str,
    ) -> ApprovalRequest:
        """Record a human decision.

        Args:
            request_id: Request to decide.
            decision: APPROVED or REJECTED.
            decided_by: Identity of the approver.

        Returns:
            The decided request.

        Raises:
            InvalidInputError: If the decision is not approved/rejected or
                ``decided_by`` is empty.
            ApprovalRequestNotFoundError: If the id is unknown.
            AlreadyDecidedError: If the request is no longer pending, including
                when it has just expired.
        """
        decision = ApprovalDecision(decision)
        if decision not in _HUMAN_DECISIONS:
            raise InvalidInputError(
                "decision", f"must be approved or rejected, got {decision.value}"
            )
        if not decided_by:
            raise InvalidInputError("decided_by", "must not be empty")

        with self._lock:
            expired = self._expire_if_due(request_id)
            decided = (
                None if expired is not None else self._settle(request_id, decision, decided_by)
            )

        if expired is not None:
            logger.warning(
                "approval_expired",
                approval_request_id=request_id,
                pipeline_run_id=expired.pipeline_run_id,
                late_decision=decision.value,
                decided_by=decided_by,
            )
            self._announce(expired)
            raise AlreadyDecidedError(request_id, expired.decision.value)

        assert decided is not None
        logger.info(
            "approval_decided",
            approval_request_id=request_id,
            pipeline_run_id=decided.pipeline_run_id,
            environment=decided.environment,
            decision=decision.value,
            decided_by=decided_by,
        )
        self._announce(decided)
        return decided

    def check_expired(self, request_id: str) -> bool:
        """Expire the request if its deadline has passed.

        Returns:
            True if the request is (now) expired.

        Raises:
            ApprovalRequestNotFoundError: If the id is unknown.
        """
        with self._lock:
            expired = self._expire_if_due(request_id)
            decision = self._requests[request_id].decision
        if expired is not None:
            logger.warning(
                "approval_expired",
                approval_request_id=request_id,
                pipeline_run_id=expired.pipeline_run_id,
                environment=expired.environment,
            )
            self._announce(expired)
        return decision == ApprovalDecision.EXPIRED

    def cancel(self, request_id: str, decided_by: str) -> ApprovalRequest:
        """Reject a pending request because its run was cancelled.

        Raises:
            AlreadyDecidedError: If the request is no longer pending.
        """
        with self._lock:
            rejected = self._settle(request_id, ApprovalDecision.REJECTED, decided_by)
        logger.info(
            "approval_cancelled",
            approval_request_id=request_id,
            pipeline_run_id=rejected.pipeline_run_id,
            decided_by=decided_by,
        )
        self._announce(rejected)
        return rejected


__all__ = ["ApprovalGate", "ApprovalListener"]
