"""
In-process telemetry for the automation engine.

Nothing is shipped externally; counters and latencies stay in memory so that
operators can read them from the CLI and tests can assert instrumentation.
Suggestion timers fire on their own threads, so every mutation holds a lock.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("opspilot.telemetry")

_LOCK = threading.Lock()
_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Callers pass identifiers, never raw event payloads.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and emit a debug log.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    with _LOCK:
        return _COUNTERS.get(name, 0)


def snapshot() -> dict[str, int]:
    """Copy of all counters, sorted by name."""
    with _LOCK:
        return dict(sorted(_COUNTERS.items()))


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time the enclosed block and record the latency in milliseconds.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        with _LOCK:
            _LATENCIES.setdefault(metric_name, []).append(elapsed_ms)
        logger.debug("timing=%s ms=%.3f", metric_name, elapsed_ms)


def get_p95(metric_name: str) -> float:
    """P95 latency (ms) for a metric, 0.0 when nothing was recorded."""
    with _LOCK:
        samples = sorted(_LATENCIES.get(metric_name, []))
    if not samples:
        return 0.0
    idx = int(len(samples) * 0.95)
    return samples[min(idx, len(samples) - 1)]


def reset() -> None:
    """
    Clear counters and latencies (useful for tests).

    Side Effects:
        - Clears _COUNTERS and _LATENCIES
    """
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
