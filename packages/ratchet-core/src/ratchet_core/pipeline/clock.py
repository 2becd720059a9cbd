"""Time source shared by the pipeline components.

Components take a ``clock`` callable instead of reading the wall clock so
deadlines and timestamps are controllable in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]
"""Callable returning the current timezone-aware datetime."""


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


__all__ = ["Clock", "utc_now"]
