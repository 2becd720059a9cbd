"""Telemetry for the ratchet pipeline engine.

Tracing, log correlation and metrics built on the OpenTelemetry API and
structlog. Without an OpenTelemetry SDK configured by the host application
every helper here degrades to a no-op.

Example:
    >>> from ratchet_core.telemetry import configure_logging, create_span
    >>> configure_logging(log_level="INFO")
    >>> with create_span("ratchet.pipeline.advance", {"ratchet.run_id": "run-1"}):
    ...     pass
"""

from __future__ import annotations

from ratchet_core.telemetry.logging import add_trace_context, configure_logging
from ratchet_core.telemetry.metrics import MetricRecorder
from ratchet_core.telemetry.sanitization import sanitize_error_message
from ratchet_core.telemetry.tracing import (
    create_span,
    current_trace_id,
    get_tracer,
    reset_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "MetricRecorder",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "current_trace_id",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
