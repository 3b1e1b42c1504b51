"""In-process metrics for the watcher.

Counters, gauges and histograms held in memory behind a lock; the
CLI ``status`` command prints a snapshot.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Iterator

_MAX_POINTS = 5_000


def _percentile(sorted_data: list[float], pct: float) -> float:
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    lo = math.floor(k)
    hi = math.ceil(k)
    if lo == hi:
        return sorted_data[int(k)]
    return sorted_data[int(lo)] * (hi - k) + sorted_data[int(hi)] * (k - lo)


def _summarize(values: list[float]) -> dict[str, Any]:
    if not values:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}
    s = sorted(values)
    return {
        "count": len(s),
        "min": s[0],
        "max": s[-1],
        "avg": sum(s) / len(s),
        "p50": _percentile(s, 50),
        "p95": _percentile(s, 95),
    }


@dataclass
class MetricPoint:
    name: str
    value: float
    tags: dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class MetricsCollector:
    """Thread-safe collector shared by the event loop and ledger worker threads."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = defaultdict(list)
        self._points: list[MetricPoint] = []

    def _record(self, name: str, value: float, tags: dict[str, str]) -> None:
        self._points.append(MetricPoint(name=name, value=value, tags=tags))
        if len(self._points) > _MAX_POINTS:
            self._points = self._points[-(_MAX_POINTS // 2):]

    def incr(self, name: str, value: float = 1.0, **tags: str) -> None:
        with self._lock:
            self._counters[name] += value
            self._record(name, value, tags)

    def gauge(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._gauges[name] = value
            self._record(name, value, tags)

    def histogram(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._histograms[name].append(value)
            self._record(name, value, tags)

    @contextmanager
    def timer(self, name: str, **tags: str) -> Iterator[None]:
        """Record the wall-clock duration of a block in milliseconds."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.histogram(name, (time.monotonic() - start) * 1000.0, **tags)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {
                    k: _summarize(v) for k, v in self._histograms.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._points.clear()


metrics = MetricsCollector()
