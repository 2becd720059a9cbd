"""Unit tests for tracing helpers.

Spans are captured with the OpenTelemetry SDK's in-memory exporter.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from ratchet_core.telemetry.tracing import (
    create_span,
    current_trace_id,
    get_tracer,
    set_tracer,
    traced,
)

if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture
def exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Install an SDK tracer exporting to memory."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    set_tracer(provider.get_tracer("test"))
    yield exporter
    exporter.clear()


class TestCreateSpan:
    """Tests for create_span()."""

    def test_span_name_and_attributes(self, exporter: InMemorySpanExporter) -> None:
        """Attributes are set and None values are dropped."""
        with create_span(
            "ratchet.stage.deploy",
            {"ratchet.environment": "dev", "ratchet.run_id": None, "ratchet.attempt": 2},
        ):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "ratchet.stage.deploy"
        assert span.attributes["ratchet.environment"] == "dev"
        assert span.attributes["ratchet.attempt"] == 2
        assert "ratchet.run_id" not in span.attributes

    def test_error_is_recorded_sanitized_and_reraised(
        self, exporter: InMemorySpanExporter
    ) -> None:
        """Failures mark the span as errored without leaking secrets."""
        with pytest.raises(RuntimeError):
            with create_span("ratchet.rollback"):
                raise RuntimeError("redeploy failed: token=abc123")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes["exception.type"] == "RuntimeError"
        assert span.attributes["exception.message"] == "redeploy failed: token=<REDACTED>"

    def test_nested_spans_share_trace(self, exporter: InMemorySpanExporter) -> None:
        """Child spans belong to the parent's trace."""
        with create_span("ratchet.pipeline.advance"):
            with create_span("ratchet.stage.test"):
                pass

        child, parent = exporter.get_finished_spans()
        assert child.parent is not None
        assert child.parent.span_id == parent.context.span_id
        assert child.context.trace_id == parent.context.trace_id


class TestTraced:
    """Tests for the @traced decorator."""

    def test_wraps_calls_in_span(self, exporter: InMemorySpanExporter) -> None:
        """Each call produces a span and the return value passes through."""

        @traced(name="ratchet.classify", attributes={"ratchet.component": "classifier"})
        def classify(x: int) -> int:
            return x * 2

        assert classify(21) == 42
        (span,) = exporter.get_finished_spans()
        assert span.name == "ratchet.classify"
        assert span.attributes["ratchet.component"] == "classifier"

    def test_default_name_is_qualname(self, exporter: InMemorySpanExporter) -> None:
        """Without a name the function's qualified name is used."""

        @traced()
        def build() -> None:
            return None

        build()
        assert exporter.get_finished_spans()[0].name.endswith("build")


class TestTraceIds:
    """Tests for current_trace_id() and the tracer cache."""

    def test_trace_id_inside_span(self, exporter: InMemorySpanExporter) -> None:
        """Inside a span the id is 32 hex characters."""
        with create_span("ratchet.pipeline.submit") as span:
            trace_id = current_trace_id()
            assert trace_id == format(span.get_span_context().trace_id, "032x")
        assert len(trace_id) == 32

    def test_trace_id_outside_span(self) -> None:
        """Outside a span there is no trace id."""
        assert current_trace_id() == ""

    def test_tracer_is_cached(self) -> None:
        """The same tracer instance is returned on each call."""
        assert get_tracer() is get_tracer()
