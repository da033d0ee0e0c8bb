from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 1000.0


@dataclass
class OperationStats:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def add(self, duration_ms: float) -> None:
        self.min_ms = duration_ms if self.count == 0 else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.total_ms += duration_ms
        self.count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "avg_duration_ms": round(self.avg_ms, 2),
            "min_duration_ms": round(self.min_ms, 2),
            "max_duration_ms": round(self.max_ms, 2),
            "total_duration_ms": round(self.total_ms, 2),
        }


class PerformanceMonitor:
    """Collects wall-clock durations per named operation.

    Every measurement is logged; operations slower than ``slow_threshold_ms``
    are logged as warnings.
    """

    def __init__(
        self,
        *,
        timer: Callable[[], float] = perf_counter,
        slow_threshold_ms: float = SLOW_OPERATION_MS,
    ) -> None:
        self._timer = timer
        self.slow_threshold_ms = slow_threshold_ms
        self._operations: dict[str, OperationStats] = {}
        self._lock = Lock()

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        started = self._timer()
        try:
            yield
        finally:
            self.record(operation, (self._timer() - started) * 1000)

    def record(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self._operations.setdefault(operation, OperationStats()).add(duration_ms)

        level = logging.WARNING if duration_ms > self.slow_threshold_ms else logging.DEBUG
        logger.log(level, "Performance: %s took %.2fms", operation, duration_ms)

    def stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {operation: stats.to_dict() for operation, stats in sorted(self._operations.items())}

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()


__all__ = ["OperationStats", "PerformanceMonitor", "SLOW_OPERATION_MS"]
