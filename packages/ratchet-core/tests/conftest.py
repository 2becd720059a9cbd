"""Shared pytest fixtures for ratchet-core tests.

This module provides fakes and factories used across all test tiers
(unit, contract). Time is always a FakeClock and backoff never sleeps.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
import structlog

from ratchet_core.pipeline.orchestrator import PipelineOrchestrator
from ratchet_core.pipeline.registry import ArtifactRegistry
from ratchet_core.pipeline.webhooks import WebhookNotifier
from ratchet_core.schemas.approval import ApprovalDecision
from ratchet_core.schemas.artifact import Artifact
from ratchet_core.schemas.change import FileChange, TriggerEvent
from ratchet_core.schemas.config import PipelineConfig, RetryConfig
from ratchet_core.schemas.environment import EnvironmentConfig
from ratchet_core.schemas.stage import StageContext, StageKind, StageOutcome
from ratchet_core.telemetry.tracing import reset_tracer

if TYPE_CHECKING:
    from collections.abc import Generator

EPOCH = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward by a timedelta expressed as keyword arguments."""
        with self._lock:
            self.now += timedelta(**kwargs)
            return self.now


Step = StageOutcome | Exception


class RecordingExecutor:
    """Stage executor replaying scripted outcomes per stage name.

    Each call pops the next scripted step for the stage; when the script is
    exhausted, ``default`` decides the outcome. Raised steps are raised.
    ``on_execute`` runs before the outcome is produced.
    """

    def __init__(
        self,
        default: Callable[[StageContext], StageOutcome] | None = None,
        script: dict[str, Iterable[Step]] | None = None,
    ) -> None:
        self.calls: list[StageContext] = []
        self.on_execute: Callable[[StageContext], None] | None = None
        self._default = default or (lambda _ctx: StageOutcome.success())
        self._script = {name: list(steps) for name, steps in (script or {}).items()}
        self._lock = threading.Lock()

    def script(self, stage_name: str, *steps: Step) -> None:
        """Append scripted steps for a stage."""
        with self._lock:
            self._script.setdefault(stage_name, []).extend(steps)

    def execute(self, context: StageContext) -> StageOutcome:
        with self._lock:
            self.calls.append(context)
            queue = self._script.get(context.stage_name)
            step = queue.pop(0) if queue else None
        if self.on_execute is not None:
            self.on_execute(context)
        if step is None:
            return self._default(context)
        if isinstance(step, Exception):
            raise step
        return step

    def stage_names(self, run_id: str | None = None) -> list[str]:
        """Stage names executed, in call order."""
        with self._lock:
            return [
                c.stage_name
                for c in self.calls
                if run_id is None or c.pipeline_run_id == run_id
            ]

    def run_ids(self, stage_name: str) -> list[str]:
        """Runs that executed ``stage_name``, in call order."""
        with self._lock:
            return [c.pipeline_run_id for c in self.calls if c.stage_name == stage_name]


def fingerprint_for(commit: str) -> str:
    """Fingerprint the fake builder reports for a commit."""
    return f"sha256:{commit}"


def build_outcome(context: StageContext) -> StageOutcome:
    """Successful build output for the change in ``context``."""
    assert context.change_request is not None
    commit = context.change_request.commit
    return StageOutcome.success(
        {
            "fingerprint": fingerprint_for(commit),
            "storage_location": f"s3://builds/orders-api/{commit}.zip",
        }
    )


@pytest.fixture(autouse=True)
def reset_telemetry() -> Generator[None, None, None]:
    """Reset cached tracers and structlog configuration around each test."""
    reset_tracer()
    yield
    reset_tracer()
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    """Provide a FakeClock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Collect backoff delays instead of sleeping."""
    return []


@pytest.fixture
def make_event(clock: FakeClock) -> Callable[..., TriggerEvent]:
    """Factory fixture for trigger events.

    Usage:
        def test_x(make_event: Callable[..., TriggerEvent]) -> None:
            event = make_event(commit="c0ffee", paths=["terraform/main.tf"])
    """

    def _make(
        commit: str = "a1b2c3d",
        paths: Iterable[str] = ("src/handler.py",),
        labels: Iterable[str] = (),
        source_ref: str = "main",
        lines_per_file: int = 10,
        delivery_id: str | None = None,
    ) -> TriggerEvent:
        return TriggerEvent(
            source_ref=source_ref,
            commit=commit,
            diff_summary=[
                FileChange(path=path, lines_added=lines_per_file) for path in paths
            ],
            author_labels=frozenset(labels),
            submitted_at=clock(),
            delivery_id=delivery_id,
        )

    return _make


@pytest.fixture
def make_config() -> Callable[..., PipelineConfig]:
    """Factory fixture for pipeline configurations.

    Environments are given as ``(name, requires_approval)`` pairs or
    EnvironmentConfig instances; promotion order follows argument order.
    """

    def _make(*environments: tuple[str, bool] | EnvironmentConfig, **kwargs: Any) -> PipelineConfig:
        envs: list[EnvironmentConfig] = []
        for index, env in enumerate(environments or (("dev", False),)):
            if isinstance(env, EnvironmentConfig):
                envs.append(env)
            else:
                name, requires_approval = env
                envs.append(
                    EnvironmentConfig(
                        name=name,
                        promotion_order=(index + 1) * 10,
                        requires_approval=requires_approval,
                    )
                )
        kwargs.setdefault(
            "retry", RetryConfig(max_attempts=3, initial_delay_ms=100, max_delay_ms=1000)
        )
        return PipelineConfig(application="orders-api", environments=envs, **kwargs)

    return _make


@pytest.fixture
def pipeline_config(make_config: Callable[..., PipelineConfig]) -> PipelineConfig:
    """dev -> qa -> prod, with approval required in prod."""
    return make_config(("dev", False), ("qa", False), ("prod", True))


@pytest.fixture
def executors() -> dict[StageKind, RecordingExecutor]:
    """One recording executor per required stage kind plus redeploy."""
    return {
        StageKind.BUILD: RecordingExecutor(default=build_outcome),
        StageKind.TEST: RecordingExecutor(),
        StageKind.DEPLOY: RecordingExecutor(),
        StageKind.VERIFY: RecordingExecutor(),
        StageKind.REDEPLOY: RecordingExecutor(),
    }


@pytest.fixture
def notifier() -> MagicMock:
    """WebhookNotifier double recording sent events."""
    mock = MagicMock(spec=WebhookNotifier)
    mock.send.return_value = []
    return mock


@pytest.fixture
def make_orchestrator(
    pipeline_config: PipelineConfig,
    executors: dict[StageKind, RecordingExecutor],
    clock: FakeClock,
    sleeps: list[float],
    notifier: MagicMock,
) -> Callable[..., PipelineOrchestrator]:
    """Factory fixture building an orchestrator wired to the fakes."""

    def _make(**overrides: Any) -> PipelineOrchestrator:
        counter = itertools.count(1)
        kwargs: dict[str, Any] = {
            "clock": clock,
            "sleep": sleeps.append,
            "notifier": notifier,
            "id_factory": lambda: f"{next(counter):04d}",
        }
        kwargs.update(overrides)
        config = kwargs.pop("config", pipeline_config)
        stage_executors = kwargs.pop("executors", executors)
        return PipelineOrchestrator(config, stage_executors, **kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., PipelineOrchestrator]) -> PipelineOrchestrator:
    """Orchestrator over dev -> qa -> prod with recording executors."""
    return make_orchestrator()


@pytest.fixture
def make_executor() -> Callable[..., RecordingExecutor]:
    """Factory fixture for RecordingExecutor instances."""
    return RecordingExecutor


@pytest.fixture
def sent_events(notifier: MagicMock) -> Callable[[], list[str]]:
    """Return a function listing event types passed to ``notifier.send``, in order."""

    def _events() -> list[str]:
        return [c.args[0] for c in notifier.send.call_args_list]

    return _events


@pytest.fixture
def known_good_registry(clock: FakeClock) -> Callable[..., ArtifactRegistry]:
    """Factory fixture for a registry already holding earlier releases.

    Usage:
        registry = known_good_registry("sha256:v5")
    """

    def _make(*fingerprints: str) -> ArtifactRegistry:
        registry = ArtifactRegistry(clock=clock)
        for fingerprint in fingerprints:
            release = fingerprint.split(":", 1)[-1]
            registry.register(
                Artifact(
                    fingerprint=fingerprint,
                    storage_location=f"s3://builds/orders-api/{release}.zip",
                    source_change_id=f"chg-{release}",
                    built_at=clock(),
                )
            )
        return registry

    return _make


@pytest.fixture
def approve_all() -> Callable[[PipelineOrchestrator], int]:
    """Return a function approving every pending request and ticking until none is left."""

    def _approve(orchestrator: PipelineOrchestrator, approver: str = "alice") -> int:
        approved = 0
        orchestrator.tick()
        while pending := orchestrator.approval_gate.pending():
            for request in pending:
                orchestrator.decide(request.id, ApprovalDecision.APPROVED, approver)
                approved += 1
            orchestrator.tick()
        return approved

    return _approve
