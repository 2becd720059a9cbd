"""Unit tests for PipelineOrchestrator failure handling.

Covers retries exhausted inside a run, automatic rollback after test, deploy or
verify failures, failed rollbacks freezing the environment, and the build
contract.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from ratchet_core.pipeline.errors import NonRetryableStageError
from ratchet_core.schemas.pipeline import RunState
from ratchet_core.schemas.stage import StageErrorKind, StageKind, StageOutcome, StageState

if TYPE_CHECKING:
    from collections.abc import Callable

    from ratchet_core.pipeline.orchestrator import PipelineOrchestrator

TERRAFORM = ("terraform/main.tf",)


@pytest.fixture
def prod_orchestrator(
    make_orchestrator: Callable[..., PipelineOrchestrator],
    make_config: Callable[..., Any],
    known_good_registry: Callable[..., Any],
) -> PipelineOrchestrator:
    """Single prod environment, no approval, currently running sha256:v5."""
    return make_orchestrator(
        config=make_config(("prod", False)),
        registry=known_good_registry("sha256:v5"),
        current_fingerprints={"prod": "sha256:v5"},
    )


class TestStageFailures:
    """Stage failures after retries are exhausted."""

    def test_retryable_test_failure_exhausts_attempts(
        self,
        make_orchestrator: Callable[..., PipelineOrchestrator],
        make_config: Callable[..., Any],
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
        sleeps: list[float],
    ) -> None:
        """Three invocations, then the run fails at the test stage."""
        executors[StageKind.TEST].script(
            "test-dev", *[StageOutcome.retryable("db not ready")] * 3
        )
        orchestrator = make_orchestrator(config=make_config(("dev", False)))
        run_id = orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        orchestrator.tick()

        status = orchestrator.get_run(run_id)
        assert status.state == RunState.FAILED
        assert status.failed_stage == "test-dev"
        assert status.current_environment == "dev"
        assert status.last_error is not None
        assert status.last_error.kind == StageErrorKind.RETRYABLE
        assert len(executors[StageKind.TEST].calls) == 3
        assert sleeps == [0.1, 0.2]
        assert executors[StageKind.DEPLOY].calls == []
        assert orchestrator.environment_status("dev").lock_holder_run_id is None

    def test_test_failure_rolls_back(
        self,
        prod_orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A failing test in an environment with a prior artifact restores it."""
        executors[StageKind.TEST].script("test-prod", StageOutcome.non_retryable("assertion"))
        run_id = prod_orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        prod_orchestrator.tick()

        status = prod_orchestrator.get_run(run_id)
        assert status.state == RunState.ROLLED_BACK
        assert status.failed_stage == "test-prod"
        assert executors[StageKind.DEPLOY].calls == []
        assert executors[StageKind.REDEPLOY].stage_names() == ["rollback-prod"]
        assert prod_orchestrator.catalog.current_fingerprint("prod") == "sha256:v5"
        assert prod_orchestrator.environment_status("prod").lock_holder_run_id is None
        (record,) = prod_orchestrator.rollback_controller.history("prod")
        assert record.pipeline_run_id == run_id
        assert record.to_fingerprint == "sha256:v5"

    def test_test_failure_with_failed_rollback_freezes(
        self,
        prod_orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A restore that fails after a test failure ends rollback_failed."""
        executors[StageKind.TEST].script("test-prod", StageOutcome.non_retryable("assertion"))
        executors[StageKind.REDEPLOY].script(
            "rollback-prod", StageOutcome.non_retryable("access denied")
        )
        run_id = prod_orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        prod_orchestrator.tick()

        status = prod_orchestrator.get_run(run_id)
        assert status.state == RunState.ROLLBACK_FAILED
        assert status.failed_stage == "test-prod"
        assert prod_orchestrator.environment_status("prod").frozen

    def test_verify_failure_without_prior_artifact(
        self,
        make_orchestrator: Callable[..., PipelineOrchestrator],
        make_config: Callable[..., Any],
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A first deployment has nothing to roll back to."""
        executors[StageKind.VERIFY].script("verify-dev", StageOutcome.non_retryable("5xx rate"))
        orchestrator = make_orchestrator(config=make_config(("dev", False)))
        run_id = orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        orchestrator.tick()

        status = orchestrator.get_run(run_id)
        assert status.state == RunState.FAILED
        assert status.failed_stage == "verify-dev"
        assert executors[StageKind.REDEPLOY].calls == []
        assert orchestrator.catalog.current_fingerprint("dev") is None

    def test_failure_stops_promotion(
        self,
        orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
        sent_events: Callable[[], list[str]],
    ) -> None:
        """A failure in qa never reaches prod."""
        executors[StageKind.TEST].script("test-qa", StageOutcome.non_retryable("contract broken"))
        run_id = orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        orchestrator.tick()

        assert orchestrator.get_run(run_id).failed_stage == "test-qa"
        assert "test-prod" not in executors[StageKind.TEST].stage_names()
        assert orchestrator.catalog.current_fingerprint("dev") == "sha256:a1b2c3d"
        assert orchestrator.catalog.current_fingerprint("qa") is None
        assert sent_events() == ["promoted", "failed"]


class TestBuildContract:
    """Tests for the build stage."""

    def test_build_failure(
        self,
        orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A failing build fails the run before any environment."""
        executors[StageKind.BUILD].script("build", NonRetryableStageError("compile error"))
        run_id = orchestrator.submit(make_event()).run_id
        orchestrator.tick()

        status = orchestrator.get_run(run_id)
        assert status.state == RunState.FAILED
        assert status.failed_stage == "build"
        assert status.current_environment is None
        assert status.artifact_fingerprint is None

    def test_build_without_fingerprint(
        self,
        orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A build that does not identify its artifact cannot be promoted."""
        executors[StageKind.BUILD].script("build", StageOutcome.success({"log": "ok"}))
        run_id = orchestrator.submit(make_event()).run_id
        orchestrator.tick()

        status = orchestrator.get_run(run_id)
        assert status.state == RunState.FAILED
        assert status.failed_stage == "build"
        assert status.last_error is not None
        assert "fingerprint" in status.last_error.message
        assert executors[StageKind.TEST].calls == []


class TestAutomaticRollback:
    """Deploy and verify failures restore the last known-good artifact."""

    def test_deploy_failure_rolls_back(
        self,
        prod_orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
        sent_events: Callable[[], list[str]],
    ) -> None:
        """prod ends on v5 and the run is rolled_back."""
        executors[StageKind.DEPLOY].script(
            "deploy-prod", StageOutcome.non_retryable("stack update failed")
        )
        run_id = prod_orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        prod_orchestrator.tick()

        status = prod_orchestrator.get_run(run_id)
        assert status.state == RunState.ROLLED_BACK
        assert status.failed_stage == "deploy-prod"
        assert prod_orchestrator.catalog.current_fingerprint("prod") == "sha256:v5"
        assert executors[StageKind.REDEPLOY].stage_names() == ["rollback-prod"]
        redeploy = executors[StageKind.REDEPLOY].calls[0]
        assert redeploy.artifact is not None
        assert redeploy.artifact.fingerprint == "sha256:v5"
        stages = {s.stage_name: s for s in status.stages}
        assert stages["rollback-prod"].state == StageState.SUCCEEDED
        assert prod_orchestrator.environment_status("prod").lock_holder_run_id is None
        assert sent_events() == ["rolled_back"]

        (record,) = prod_orchestrator.rollback_controller.history("prod")
        assert record.pipeline_run_id == run_id
        assert record.from_fingerprint == "sha256:a1b2c3d"
        assert record.operator == "ratchet"

    def test_verify_failure_rolls_back(
        self,
        prod_orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A deployed but unhealthy artifact is replaced by the prior one."""
        executors[StageKind.VERIFY].script(
            "verify-prod", *[StageOutcome.retryable("health check 503")] * 3
        )
        run_id = prod_orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        prod_orchestrator.tick()

        assert prod_orchestrator.get_run(run_id).state == RunState.ROLLED_BACK
        assert len(executors[StageKind.VERIFY].calls) == 3
        assert prod_orchestrator.catalog.current_fingerprint("prod") == "sha256:v5"

    def test_redeploy_falls_back_to_deploy_executor(
        self,
        make_orchestrator: Callable[..., PipelineOrchestrator],
        make_config: Callable[..., Any],
        make_event: Callable[..., Any],
        known_good_registry: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """Without a redeploy executor the deploy executor restores the artifact."""
        deploy = executors[StageKind.DEPLOY]
        deploy.script("deploy-prod", StageOutcome.non_retryable("bad config"))
        without_redeploy = {k: v for k, v in executors.items() if k != StageKind.REDEPLOY}
        orchestrator = make_orchestrator(
            config=make_config(("prod", False)),
            executors=without_redeploy,
            registry=known_good_registry("sha256:v5"),
            current_fingerprints={"prod": "sha256:v5"},
        )
        run_id = orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        orchestrator.tick()

        assert orchestrator.get_run(run_id).state == RunState.ROLLED_BACK
        assert deploy.stage_names() == ["deploy-prod", "rollback-prod"]


class TestRollbackFailure:
    """A failed rollback escalates and freezes the environment."""

    @pytest.fixture
    def failed_rollback(
        self,
        prod_orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> str:
        """Run whose deploy and rollback both failed; returns its id."""
        executors[StageKind.DEPLOY].script("deploy-prod", StageOutcome.non_retryable("boom"))
        executors[StageKind.REDEPLOY].script(
            "rollback-prod", StageOutcome.non_retryable("still boom")
        )
        run_id = prod_orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        prod_orchestrator.tick()
        return run_id

    def test_run_ends_rollback_failed(
        self,
        prod_orchestrator: PipelineOrchestrator,
        failed_rollback: str,
        sent_events: Callable[[], list[str]],
        executors: dict[StageKind, Any],
    ) -> None:
        """The environment is frozen and an alert is sent once."""
        status = prod_orchestrator.get_run(failed_rollback)
        assert status.state == RunState.ROLLBACK_FAILED
        assert status.failed_stage == "deploy-prod"
        assert status.last_error is not None
        assert "Rollback of prod to sha256:v5 failed" in status.last_error.message
        assert len(executors[StageKind.REDEPLOY].calls) == 1

        env = prod_orchestrator.environment_status("prod")
        assert env.frozen
        assert env.lock_holder_run_id is None
        assert sent_events() == ["rollback_failed"]

    def test_frozen_environment_halts_next_run(
        self,
        prod_orchestrator: PipelineOrchestrator,
        failed_rollback: str,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """The next run fails at the lock without deploying."""
        next_id = prod_orchestrator.submit(make_event(commit="e4f5a6b", paths=TERRAFORM)).run_id
        prod_orchestrator.tick()

        status = prod_orchestrator.get_run(next_id)
        assert status.state == RunState.FAILED
        assert status.failed_stage == "lock-prod"
        assert executors[StageKind.DEPLOY].run_ids("deploy-prod") == [failed_rollback]
        assert executors[StageKind.TEST].run_ids("test-prod") == [failed_rollback]

    def test_clear_freeze_resumes_promotion(
        self,
        prod_orchestrator: PipelineOrchestrator,
        failed_rollback: str,
        make_event: Callable[..., Any],
    ) -> None:
        """After an operator clears the freeze, runs promote again."""
        status = prod_orchestrator.clear_freeze("prod", "oncall", "restored v5 by hand")
        assert not status.frozen

        next_id = prod_orchestrator.submit(make_event(commit="e4f5a6b", paths=TERRAFORM)).run_id
        prod_orchestrator.tick()

        assert prod_orchestrator.get_run(next_id).state == RunState.COMPLETED
        assert prod_orchestrator.catalog.current_fingerprint("prod") == "sha256:e4f5a6b"


class TestFrozenEnvironment:
    """Tests for environments frozen before a run reaches them."""

    def test_fails_fast_at_lock(
        self,
        orchestrator: PipelineOrchestrator,
        make_event: Callable[..., Any],
        executors: dict[StageKind, Any],
    ) -> None:
        """A frozen qa stops the run after dev."""
        orchestrator.catalog.freeze("qa", "manual hold")
        run_id = orchestrator.submit(make_event(paths=TERRAFORM)).run_id
        orchestrator.tick()

        status = orchestrator.get_run(run_id)
        assert status.state == RunState.FAILED
        assert status.failed_stage == "lock-qa"
        assert status.current_environment == "qa"
        assert status.last_error is not None
        assert "manual hold" in status.last_error.message
        assert executors[StageKind.TEST].stage_names() == ["test-dev"]
        assert orchestrator.environment_status("qa").lock_holder_run_id is None
