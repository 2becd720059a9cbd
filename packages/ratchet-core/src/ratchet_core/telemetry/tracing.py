"""OpenTelemetry tracing helpers for the pipeline engine.

Provides a thread-safe tracer cache, the ``create_span`` context manager and
the ``@traced`` decorator. Failures inside a span mark it as errored with a
sanitized message and are re-raised unchanged.

Span names used by the engine:
    ratchet.pipeline.submit, ratchet.pipeline.advance, ratchet.classify,
    ratchet.stage.<kind>, ratchet.rollback, ratchet.webhook.notify

Example:
    >>> with create_span("ratchet.stage.deploy", {"ratchet.environment": "dev"}) as span:
    ...     span.set_attribute("ratchet.attempt", 1)
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.trace import INVALID_TRACE_ID, Status, StatusCode

from ratchet_core.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span, Tracer

P = ParamSpec("P")
R = TypeVar("R")

TRACER_NAME = "ratchet_core"

_tracers: dict[str, Tracer] = {}
_lock = threading.Lock()


def get_tracer(name: str = TRACER_NAME) -> Tracer:
    """Return the cached tracer for ``name``, creating it on first use.

    Args:
        name: Instrumentation scope name.

    Returns:
        OpenTelemetry Tracer (a no-op tracer when no SDK is configured).
    """
    tracer = _tracers.get(name)
    if tracer is not None:
        return tracer
    with _lock:
        if name not in _tracers:
            _tracers[name] = trace.get_tracer(name)
        return _tracers[name]


def set_tracer(tracer: Tracer | None, name: str = TRACER_NAME) -> None:
    """Inject a tracer (tests), or drop the cached one when ``tracer`` is None."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear every cached tracer.

    Example:
        >>> @pytest.fixture(autouse=True)
        ... def clean_tracers():
        ...     reset_tracer()
        ...     yield
        ...     reset_tracer()
    """
    with _lock:
        _tracers.clear()


def _record_error(span: Span, error: Exception) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Open a span as a context manager.

    Attributes whose value is None are dropped, since OpenTelemetry rejects
    them.

    Args:
        name: Span name.
        attributes: Optional span attributes.

    Yields:
        The active span.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


def traced(
    name: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator wrapping each call of a function in a span.

    Args:
        name: Span name, defaults to the function's qualified name.
        attributes: Static attributes set on every span.

    Examples:
        >>> @traced(name="ratchet.classify")
        ... def classify(change):
        ...     ...
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name or fn.__qualname__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with create_span(span_name, attributes):
                return fn(*args, **kwargs)

        return wrapper

    return decorator


def current_trace_id() -> str:
    """Return the active trace id as 32 hex characters, or "" outside a span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID:
        return ""
    return format(ctx.trace_id, "032x")


__all__ = [
    "TRACER_NAME",
    "create_span",
    "current_trace_id",
    "get_tracer",
    "reset_tracer",
    "set_tracer",
    "traced",
]
