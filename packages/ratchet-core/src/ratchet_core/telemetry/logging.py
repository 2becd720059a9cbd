"""Structured logging setup with OpenTelemetry trace correlation.

Every module logs through ``structlog.get_logger(__name__)``. Applications
embedding the engine call ``configure_logging`` once at start-up; log lines
emitted inside a span then carry ``trace_id`` and ``span_id``.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

EventDict = MutableMapping[str, Any]

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def add_trace_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor adding the active span's trace and span ids.

    Args:
        logger: Unused, required by the processor protocol.
        method_name: Unused, required by the processor protocol.
        event_dict: Event being logged.

    Returns:
        The event dict, with ``trace_id``/``span_id`` when a span is active.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id != INVALID_TRACE_ID and ctx.span_id != INVALID_SPAN_ID:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
) -> None:
    """Configure structlog with trace correlation.

    Args:
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Render JSON lines when True, console output otherwise.

    Raises:
        ValueError: If ``log_level`` is not a known level name.

    Examples:
        >>> configure_logging(log_level="DEBUG", json_output=False)
        >>> structlog.get_logger("ratchet_core").info("configured")
    """
    level_name = log_level.upper()
    if level_name not in _VALID_LEVELS:
        raise ValueError(
            f"Invalid log level {log_level!r}. Valid levels: {sorted(_VALID_LEVELS)}"
        )

    renderer: structlog.typing.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_trace_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        cache_logger_on_first_use=False,
    )


__all__ = ["add_trace_context", "configure_logging"]
