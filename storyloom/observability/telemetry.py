"""
In-process telemetry for the generation pipeline.

Events go to the structured log; counters and latencies are kept in memory so
tests (and the /health endpoint) can read them back.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("storyloom.telemetry")

_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}
_LOCK = threading.Lock()


def _latency_key(metric_name: str) -> str:
    if metric_name.endswith("_ms"):
        return metric_name
    if metric_name.endswith(".latency"):
        return f"{metric_name}_ms"
    return metric_name


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Prompts and generated content must not be passed
    as fields, only ids, counts and statuses.
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """Increment an in-memory counter and return its new value."""
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    return _COUNTERS.get(name, 0)


def snapshot_counters() -> dict[str, int]:
    with _LOCK:
        return dict(_COUNTERS)


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time the wrapped block and record the elapsed seconds under metric_name.

    Names ending in ".latency" are stored with an "_ms" suffix so dashboards
    can group them with the other latency series.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        key = _latency_key(metric_name)
        logger.debug("timing=%s seconds=%.6f", key, elapsed)
        with _LOCK:
            _LATENCIES.setdefault(key, []).append(elapsed)


def get_latency_stats(metric_name: str) -> dict[str, float]:
    samples = sorted(_LATENCIES.get(_latency_key(metric_name), []))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p95": 0.0}

    count = len(samples)
    p95_index = min(int(count * 0.95), count - 1)
    return {
        "count": count,
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / count,
        "p95": samples[p95_index],
    }


def reset_telemetry() -> None:
    """Clear counters and latencies (tests only)."""
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
