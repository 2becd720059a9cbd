"""Unit tests for run, stage and approval schemas."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from ratchet_core.schemas.approval import ApprovalDecision, ApprovalRequest
from ratchet_core.schemas.change import ChangeRequest
from ratchet_core.schemas.pipeline import (
    ENVIRONMENT_STATES,
    TERMINAL_STATES,
    PipelineRun,
    RunState,
    StateTransition,
)
from ratchet_core.schemas.stage import (
    OutcomeStatus,
    StageExecution,
    StageKind,
    StageOutcome,
    StageState,
)

NOW = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


def _transition(from_state: RunState, to_state: RunState, environment: str) -> StateTransition:
    return StateTransition(
        from_state=from_state, to_state=to_state, environment=environment, at=NOW
    )


@pytest.fixture
def run() -> PipelineRun:
    """A queued run with a two-stage plan."""
    change = ChangeRequest(id="chg-1", source_ref="main", commit="abc", submitted_at=NOW)
    return PipelineRun(
        id="run-1",
        change_request_id=change.id,
        change_request=change,
        stage_plan=[
            StageExecution(stage_name="build", kind=StageKind.BUILD),
            StageExecution(stage_name="test-dev", kind=StageKind.TEST, target_environment="dev"),
        ],
        started_at=NOW,
    )


class TestRunState:
    """Tests for RunState classification."""

    def test_terminal_states(self) -> None:
        """Exactly five states are terminal."""
        assert {s for s in RunState if s.is_terminal} == TERMINAL_STATES
        assert RunState.ROLLBACK_FAILED.is_terminal
        assert not RunState.PROMOTED.is_terminal

    def test_environment_scoped_states(self) -> None:
        """Lock, test, approval, deploy, verify and promoted carry an environment."""
        assert {s for s in RunState if s.is_environment_scoped} == ENVIRONMENT_STATES
        assert not RunState.BUILDING.is_environment_scoped


class TestPipelineRun:
    """Tests for PipelineRun."""

    def test_defaults_to_queued(self, run: PipelineRun) -> None:
        """A new run is queued and not terminal."""
        assert run.overall_state == RunState.QUEUED
        assert not run.is_terminal

    def test_get_stage(self, run: PipelineRun) -> None:
        """get_stage returns the planned stage or raises KeyError."""
        assert run.get_stage("test-dev").target_environment == "dev"
        assert run.has_stage("build")
        with pytest.raises(KeyError):
            run.get_stage("deploy-prod")

    def test_environments_visited_collapses_repeats(self, run: PipelineRun) -> None:
        """Consecutive transitions in one environment count once."""
        run.transitions = [
            _transition(RunState.BUILDING, RunState.AWAITING_LOCK, "dev"),
            _transition(RunState.AWAITING_LOCK, RunState.TESTING, "dev"),
            _transition(RunState.PROMOTED, RunState.AWAITING_LOCK, "prod"),
            _transition(RunState.AWAITING_LOCK, RunState.FAILED, "prod"),
        ]
        assert run.environments_visited() == ["dev", "prod"]

    def test_validate_assignment(self, run: PipelineRun) -> None:
        """Assignments are validated."""
        with pytest.raises(ValidationError):
            run.overall_state = "exploded"  # type: ignore[assignment]


class TestStageModels:
    """Tests for stage outcome helpers."""

    def test_outcome_constructors(self) -> None:
        """Helpers set the matching status."""
        assert StageOutcome.success({"v": 1}).succeeded
        assert StageOutcome.retryable("throttled").status == OutcomeStatus.RETRYABLE
        failure = StageOutcome.non_retryable("bad manifest", {"line": 3})
        assert failure.status == OutcomeStatus.NON_RETRYABLE
        assert failure.details == {"line": 3}

    def test_stage_execution_defaults(self) -> None:
        """A planned stage starts pending with no attempts."""
        stage = StageExecution(stage_name="deploy-dev", kind=StageKind.DEPLOY)
        assert stage.state == StageState.PENDING
        assert stage.attempt_count == 0
        assert stage.max_attempts == 3


class TestApprovalRequest:
    """Tests for ApprovalRequest."""

    def test_pending_by_default(self) -> None:
        """A new request is pending."""
        request = ApprovalRequest(
            id="apr-1",
            pipeline_run_id="run-1",
            environment="prod",
            requested_at=NOW,
            deadline=NOW + timedelta(hours=1),
        )
        assert request.is_pending
        assert request.decision == ApprovalDecision.PENDING

    def test_is_frozen(self) -> None:
        """Decisions produce copies; the model itself is immutable."""
        request = ApprovalRequest(
            id="apr-1",
            pipeline_run_id="run-1",
            environment="prod",
            requested_at=NOW,
            deadline=NOW + timedelta(hours=1),
        )
        with pytest.raises(ValidationError):
            request.decision = ApprovalDecision.APPROVED  # type: ignore[misc]
