"""
Latency metrics.

One measured block = one METRIC_TIMER event via observability.logger.
Nothing is aggregated in-process.

Durations use monotonic time; the event's ts_ms is wall-clock.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


def _outcome(exc: BaseException | None) -> str:
    if exc is None:
        return "ok"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    return "error"


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Measure the enclosed block and emit exactly one METRIC_TIMER event.

    The event carries the outcome (ok | timeout | cancelled | error).
    Exceptions are re-raised unchanged.

    Usage:
        with timed("ai_request_todo", session_id=session_id):
            result = await asyncio.wait_for(backend.analyze(request), timeout)
    """
    start_ns = time.monotonic_ns()
    failure: BaseException | None = None
    try:
        yield
    except BaseException as exc:
        failure = exc
        raise
    finally:
        log_event({
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": (time.monotonic_ns() - start_ns) // 1_000_000,
            "outcome": _outcome(failure),
            "session_id": session_id,
            "details": details or {},
        })
