"""Counters and histograms for pipeline activity.

Instrument names:
    ratchet.runs: Runs reaching a terminal state, by ``state``.
    ratchet.runs.submitted: Runs created from trigger events.
    ratchet.triggers.duplicate: Duplicate trigger deliveries collapsed into an existing run.
    ratchet.stage.attempts: Executor invocations, by ``stage_kind``/``status``.
    ratchet.stage.duration: Stage durations in milliseconds.
    ratchet.lock.contention: Failed lock acquisitions, by ``environment``.
    ratchet.approvals: Approval decisions, by ``decision``.
    ratchet.rollbacks: Rollback attempts, by ``environment``/``succeeded``.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

from opentelemetry import metrics

if TYPE_CHECKING:
    from opentelemetry.metrics import Counter, Histogram, Meter


class MetricRecorder:
    """Caches OpenTelemetry instruments and records values against them.

    Without a configured SDK the global meter is a no-op, so recording is
    always safe.

    Examples:
        >>> recorder = MetricRecorder()
        >>> recorder.increment("ratchet.runs", labels={"state": "completed"})
        >>> recorder.record("ratchet.stage.duration", 1250, labels={"stage_kind": "deploy"})
    """

    def __init__(self, name: str = "ratchet_core", version: str = "0.1.0") -> None:
        self._meter: Meter = metrics.get_meter(name, version)
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def increment(
        self,
        name: str,
        value: int = 1,
        *,
        labels: dict[str, Any] | None = None,
    ) -> None:
        """Add ``value`` to the counter ``name``."""
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                counter = self._meter.create_counter(name, unit="1")
                self._counters[name] = counter
        counter.add(value, attributes=labels or {})

    def record(
        self,
        name: str,
        value: float,
        *,
        labels: dict[str, Any] | None = None,
    ) -> None:
        """Record a millisecond measurement on the histogram ``name``."""
        with self._lock:
            histogram = self._histograms.get(name)
            if histogram is None:
                histogram = self._meter.create_histogram(name, unit="ms")
                self._histograms[name] = histogram
        histogram.record(value, attributes=labels or {})


__all__ = ["MetricRecorder"]
