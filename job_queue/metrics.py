"""
Lightweight in-process worker metrics: processed/failed counters,
processing time, and throughput over a rolling window.

One instance per Scheduler; nothing here is shared across processes.
"""
from __future__ import annotations

import time
from collections import deque
from typing import Any, Callable

MAX_DURATION_SAMPLES = 500  # Rolling window
THROUGHPUT_WINDOW_SECONDS = 60.0


class PerformanceMetrics:

    def __init__(
        self,
        window_seconds: float = THROUGHPUT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self.processed = 0
        self.failed = 0
        self._durations: deque[float] = deque(maxlen=MAX_DURATION_SAMPLES)
        self._finished_at: deque[float] = deque()

    def _trim(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._finished_at and self._finished_at[0] < cutoff:
            self._finished_at.popleft()

    def record_success(self, elapsed_ms: float) -> None:
        now = self._clock()
        self.processed += 1
        self._durations.append(elapsed_ms)
        self._finished_at.append(now)
        self._trim(now)

    def record_failure(self) -> None:
        self.failed += 1

    @property
    def average_processing_ms(self) -> float:
        if not self._durations:
            return 0.0
        return round(sum(self._durations) / len(self._durations), 2)

    def jobs_per_second(self) -> float:
        """Successful jobs per second over the rolling window."""
        self._trim(self._clock())
        return round(len(self._finished_at) / self.window_seconds, 3)

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_processed": self.processed,
            "total_failed": self.failed,
            "average_processing_ms": self.average_processing_ms,
            "jobs_per_second": self.jobs_per_second(),
        }

    def reset(self) -> None:
        self.processed = 0
        self.failed = 0
        self._durations.clear()
        self._finished_at.clear()


def load_percentage(pending: int, processing: int, max_workers: int) -> float:
    """Backlog relative to twice the worker capacity, as a percentage."""
    capacity = max(max_workers * 2, 1)
    return round((pending + processing) / capacity * 100, 1)
