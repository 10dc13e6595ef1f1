"""
Metrics utilities - latency timing, delivery stat and percentile helpers.
"""
import math
import time
from typing import Optional, Sequence


class Timer:
    """Simple timer for measuring operation latency."""

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Timer":
        self._start = time.monotonic()
        return self

    def stop(self) -> int:
        """Stop timer and return elapsed milliseconds."""
        self._end = time.monotonic()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> int:
        """Return elapsed time in milliseconds."""
        if self._start is None:
            return 0
        end = self._end or time.monotonic()
        return int((end - self._start) * 1000)


def success_rate(successful: int, total: int) -> float:
    """Percentage of successful deliveries, rounded to two places."""
    if total <= 0:
        return 0.0
    return round(successful / total * 100, 2)


def error_rate(failed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(failed / total * 100, 2)


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for no samples."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(math.ceil(pct / 100 * len(ordered)), 1)
    return float(ordered[min(rank, len(ordered)) - 1])
