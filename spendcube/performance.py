"""Per-operation counters for pipeline stages.

One ``PerformanceTracker`` is constructed per process (or per test) and
passed to the batch executor; there is no module-level instance.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class OperationMetrics:
    """Counters for one run of one operation type (e.g. a classification batch)."""

    operation_type: str
    item_count: int
    started_at: float
    ended_at: float | None = None
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    retries: int = 0
    wait_s: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def duration_ms(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at) * 1000.0

    def record_success(self) -> None:
        with self._lock:
            self.success_count += 1

    def record_error(self) -> None:
        with self._lock:
            self.error_count += 1

    def record_skipped(self, count: int = 1) -> None:
        with self._lock:
            self.skipped_count += count

    def record_cache_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def record_cache_miss(self) -> None:
        with self._lock:
            self.cache_misses += 1

    def record_retries(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self.retries += count

    def record_wait(self, seconds: float) -> None:
        with self._lock:
            self.wait_s += max(0.0, seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_type": self.operation_type,
            "item_count": self.item_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "retries": self.retries,
            "wait_s": round(self.wait_s, 4),
            "duration_ms": round(self.duration_ms, 2),
        }


class PerformanceTracker:
    def __init__(self, *, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._completed: list[OperationMetrics] = []
        self._lock = threading.Lock()

    def start(self, operation_type: str, item_count: int) -> OperationMetrics:
        return OperationMetrics(
            operation_type=operation_type,
            item_count=max(0, int(item_count)),
            started_at=self._clock(),
        )

    def end(self, metrics: OperationMetrics) -> OperationMetrics:
        metrics.ended_at = self._clock()
        with self._lock:
            self._completed.append(metrics)
        return metrics

    def metrics(self) -> list[OperationMetrics]:
        with self._lock:
            return list(self._completed)

    def clear(self) -> None:
        with self._lock:
            self._completed.clear()

    def summary(self) -> dict[str, Any]:
        completed = self.metrics()
        if not completed:
            return {
                "total_operations": 0,
                "total_duration_ms": 0.0,
                "average_duration_ms": 0.0,
                "total_items": 0,
                "success_rate": 0.0,
                "cache_hit_rate": 0.0,
                "total_retries": 0,
                "by_operation_type": {},
            }

        total_duration = sum(m.duration_ms for m in completed)
        total_items = sum(m.item_count for m in completed)
        total_success = sum(m.success_count for m in completed)
        total_hits = sum(m.cache_hits for m in completed)
        total_lookups = sum(m.cache_hits + m.cache_misses for m in completed)

        grouped: dict[str, list[OperationMetrics]] = {}
        for m in completed:
            grouped.setdefault(m.operation_type, []).append(m)

        by_type: dict[str, dict[str, Any]] = {}
        for op_type, rows in grouped.items():
            items = sum(m.item_count for m in rows)
            by_type[op_type] = {
                "count": len(rows),
                "average_duration_ms": round(sum(m.duration_ms for m in rows) / len(rows), 2),
                "success_rate": round(sum(m.success_count for m in rows) / items * 100, 2) if items else 0.0,
                "error_count": sum(m.error_count for m in rows),
                "retries": sum(m.retries for m in rows),
            }

        return {
            "total_operations": len(completed),
            "total_duration_ms": round(total_duration, 2),
            "average_duration_ms": round(total_duration / len(completed), 2),
            "total_items": total_items,
            "success_rate": round(total_success / total_items * 100, 2) if total_items else 0.0,
            "cache_hit_rate": round(total_hits / total_lookups * 100, 2) if total_lookups else 0.0,
            "total_retries": sum(m.retries for m in completed),
            "by_operation_type": by_type,
        }
