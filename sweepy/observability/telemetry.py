"""
In-process telemetry for the categorization pipeline.

Nothing is shipped externally: events go to the log, counters and latencies
stay in memory so tests and the caller can read them back. Worker threads
of the LLM tier update these concurrently, so every mutation is locked.
"""

from __future__ import annotations

import contextlib
import threading
import time
from collections.abc import Iterator
from typing import Any

from sweepy.observability.logging import get_logger

logger = get_logger("sweepy.telemetry")

_LOCK = threading.Lock()
_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Callers redact subjects and addresses first.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and return its new value.

    ``counter(name, 0)`` reads a counter without changing it.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    if increment:
        logger.debug("counter=%s value=%s", name, value)
    return value


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time the enclosed block and record the elapsed milliseconds.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        name = metric_name if metric_name.endswith("_ms") else f"{metric_name}_ms"
        logger.debug("timing=%s ms=%.3f", name, elapsed_ms)
        with _LOCK:
            _LATENCIES.setdefault(name, []).append(elapsed_ms)


def get_latencies(metric_name: str) -> list[float]:
    name = metric_name if metric_name.endswith("_ms") else f"{metric_name}_ms"
    with _LOCK:
        return list(_LATENCIES.get(name, []))


def reset() -> None:
    """
    Clear counters and latencies (used by tests).

    Side Effects:
        - Clears _COUNTERS and _LATENCIES
    """
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
