from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Mapping


class MetricRegistry:
    """Process-local counters and gauges, exported as a flat snapshot."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set(self, name: str, labels: Mapping[str, str] | None = None, value: float = 0.0) -> None:
        key = _metric_key(name, labels)
        with self._lock:
            self._gauges[key] = float(value)

    def get(self, name: str, labels: Mapping[str, str] | None = None) -> float | int:
        key = _metric_key(name, labels)
        with self._lock:
            if key in self._gauges:
                return self._gauges[key]
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, float | int]:
        with self._lock:
            merged: dict[str, float | int] = dict(self._counters)
            merged.update(self._gauges)
            return merged

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()


def _metric_key(name: str, labels: Mapping[str, str] | None) -> str:
    if not labels:
        return name
    parts = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}{{{parts}}}"


metrics = MetricRegistry()
