"""
Bounded-sample latency quantiles.

Measurements are kept per key (``operation`` or ``operation:exchange``) in a
bounded deque; order statistics are computed on demand with linear
interpolation between closest ranks (index ``p/100 * (n - 1)``).  Samples
older than the retention window are dropped by ``cleanup()``.
"""

from __future__ import annotations

import math
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional, TypeVar

from .logging_utils import get_logger

log = get_logger("quantiles")

T = TypeVar("T")


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class Measurement:
    timestamp: float
    value: float
    success: bool = True


def percentile(sorted_values: List[float], p: float) -> float:
    """Linear-interpolated percentile of an already sorted list."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    idx = (p / 100.0) * (len(sorted_values) - 1)
    lo = math.floor(idx)
    hi = math.ceil(idx)
    if lo == hi:
        return float(sorted_values[lo])
    frac = idx - lo
    return sorted_values[lo] + (sorted_values[hi] - sorted_values[lo]) * frac


def _key(operation: str, exchange: Optional[str] = None) -> str:
    return f"{operation}:{exchange}" if exchange else operation


class Quantiles:
    def __init__(
        self,
        max_samples: int = 10_000,
        retention_hours: float = 24,
        clock: Callable[[], float] = _now_ms,
    ):
        self.max_samples = max_samples
        self.retention_ms = retention_hours * 3_600_000
        self._clock = clock
        self._samples: Dict[str, Deque[Measurement]] = {}

    def record(
        self,
        operation: str,
        value_ms: float,
        success: bool = True,
        exchange: Optional[str] = None,
    ) -> None:
        key = _key(operation, exchange)
        bucket = self._samples.get(key)
        if bucket is None:
            bucket = deque(maxlen=self.max_samples)
            self._samples[key] = bucket
        bucket.append(Measurement(self._clock(), float(value_ms), success))

    async def measure(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        exchange: Optional[str] = None,
    ) -> T:
        """Await ``fn()`` and record its duration; failures are recorded too."""
        start = time.perf_counter()
        try:
            result = await fn()
        except Exception:
            self.record(
                operation, (time.perf_counter() - start) * 1000.0, False, exchange
            )
            raise
        self.record(operation, (time.perf_counter() - start) * 1000.0, True, exchange)
        return result

    @contextmanager
    def measure_sync(self, operation: str, exchange: Optional[str] = None) -> Iterator[None]:
        start = time.perf_counter()
        success = False
        try:
            yield
            success = True
        finally:
            self.record(
                operation, (time.perf_counter() - start) * 1000.0, success, exchange
            )

    def get_stats(
        self,
        operation: str,
        exchange: Optional[str] = None,
        time_window_ms: Optional[float] = None,
    ) -> Optional[Dict[str, float]]:
        """Stats over successful samples, or None when there are none."""
        bucket = self._samples.get(_key(operation, exchange))
        if not bucket:
            return None
        cutoff = self._clock() - time_window_ms if time_window_ms else None
        values = sorted(
            m.value
            for m in bucket
            if m.success and (cutoff is None or m.timestamp >= cutoff)
        )
        if not values:
            return None
        n = len(values)
        mean = sum(values) / n
        variance = sum((v - mean) ** 2 for v in values) / n
        p50 = percentile(values, 50)
        return {
            "count": n,
            "min": values[0],
            "max": values[-1],
            "mean": mean,
            "median": p50,
            "p50": p50,
            "p90": percentile(values, 90),
            "p95": percentile(values, 95),
            "p99": percentile(values, 99),
            "std_dev": math.sqrt(variance),
        }

    def get_global_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        for key in list(self._samples):
            operation, _, exchange = key.partition(":")
            s = self.get_stats(operation, exchange or None)
            if s is not None:
                stats[key] = s
        return stats

    def keys(self) -> List[str]:
        return list(self._samples)

    def cleanup(self) -> int:
        """Drop samples past retention; returns how many were removed."""
        cutoff = self._clock() - self.retention_ms
        removed = 0
        for key in list(self._samples):
            bucket = self._samples[key]
            while bucket and bucket[0].timestamp < cutoff:
                bucket.popleft()
                removed += 1
            if not bucket:
                del self._samples[key]
        if removed:
            log.debug("quantiles_cleanup removed=%d", removed)
        return removed

    def reset(self) -> None:
        self._samples.clear()
