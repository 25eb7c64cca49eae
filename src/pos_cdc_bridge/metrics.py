"""Prometheus counters and rolling timing statistics for the CDC pipeline."""

from __future__ import annotations

import logging
import math
import statistics
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Callable, Deque, Dict, Iterator, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

DB_QUERY = "db_query"
PUBLISH = "publish"
PROCESSING = "processing"
CYCLE = "cycle"


class PipelineMetrics:
    """Wraps Prometheus counters and mirrors them in a plain snapshot for tests."""

    def __init__(
        self,
        namespace: str = "pos_cdc_bridge",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._rows = Counter(
            f"{namespace}_rows_total",
            "Rows reaching a terminal state",
            ["table", "outcome"],
            registry=self.registry,
        )
        self._scan_errors = Counter(
            f"{namespace}_scan_errors_total",
            "Change-source scans that failed",
            ["table"],
            registry=self.registry,
        )
        self._writeback_errors = Counter(
            f"{namespace}_writeback_errors_total",
            "Outcome write-backs that failed",
            ["table"],
            registry=self.registry,
        )
        self._cycles = Counter(
            f"{namespace}_cycles_total", "Polling cycles run", registry=self.registry
        )
        self._cycle_errors = Counter(
            f"{namespace}_cycle_errors_total",
            "Polling cycles abandoned on error",
            registry=self.registry,
        )
        self._interval = Gauge(
            f"{namespace}_poll_interval_seconds",
            "Current polling interval",
            registry=self.registry,
        )
        self._dedup_evictions = Gauge(
            f"{namespace}_dedup_evictions",
            "Capacity evictions from the dedup cache",
            ["table"],
            registry=self.registry,
        )
        self._lock = Lock()
        self._snapshot: Dict[str, float] = defaultdict(float)

    def inc_rows(self, table: str, outcome: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._rows.labels(table=table, outcome=outcome).inc(amount)
        with self._lock:
            self._snapshot[f"rows_total:{table}:{outcome}"] += amount

    def inc_scan_errors(self, table: str) -> None:
        self._scan_errors.labels(table=table).inc()
        with self._lock:
            self._snapshot[f"scan_errors_total:{table}"] += 1

    def inc_writeback_errors(self, table: str) -> None:
        self._writeback_errors.labels(table=table).inc()
        with self._lock:
            self._snapshot[f"writeback_errors_total:{table}"] += 1

    def inc_cycles(self) -> None:
        self._cycles.inc()
        with self._lock:
            self._snapshot["cycles_total"] += 1

    def inc_cycle_errors(self) -> None:
        self._cycle_errors.inc()
        with self._lock:
            self._snapshot["cycle_errors_total"] += 1

    def set_poll_interval(self, seconds: float) -> None:
        self._interval.set(seconds)
        with self._lock:
            self._snapshot["poll_interval_seconds"] = seconds

    def set_dedup_evictions(self, table: str, value: int) -> None:
        self._dedup_evictions.labels(table=table).set(value)
        with self._lock:
            self._snapshot[f"dedup_evictions:{table}"] = value

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._snapshot)

    def serve(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
        logger.info("metrics exposed on port %d", port)


def _percentile(ordered, fraction: float) -> float:
    rank = max(1, math.ceil(fraction * len(ordered)))
    return ordered[rank - 1]


class PerformanceStats:
    """Bounded duration samples (ms) per category with periodic summaries."""

    def __init__(
        self,
        *,
        max_samples: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_samples = max_samples
        self._clock = clock
        self._lock = Lock()
        self._samples: Dict[str, Deque[float]] = {}
        self._last_report = clock()

    def record(self, category: str, millis: float) -> None:
        with self._lock:
            bucket = self._samples.get(category)
            if bucket is None:
                bucket = deque(maxlen=self._max_samples)
                self._samples[category] = bucket
            bucket.append(float(millis))

    @contextmanager
    def measure(self, category: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(category, (time.perf_counter() - started) * 1000.0)

    def summary(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            samples = {name: list(bucket) for name, bucket in self._samples.items()}
        result: Dict[str, Dict[str, float]] = {}
        for name, values in samples.items():
            if not values:
                continue
            ordered = sorted(values)
            result[name] = {
                "count": float(len(ordered)),
                "avg": statistics.fmean(ordered),
                "min": ordered[0],
                "max": ordered[-1],
                "median": statistics.median(ordered),
                "p95": _percentile(ordered, 0.95),
            }
        return result

    def report_if_due(self, interval_seconds: float) -> Optional[Dict[str, Dict[str, float]]]:
        """Log and clear the summary once ``interval_seconds`` have elapsed."""
        if interval_seconds <= 0:
            return None
        now = self._clock()
        if now - self._last_report < interval_seconds:
            return None
        self._last_report = now
        summary = self.summary()
        with self._lock:
            self._samples.clear()
        if not summary:
            logger.info("performance report: no samples collected")
            return summary
        for name, stats in sorted(summary.items()):
            logger.info(
                "performance %s: n=%d avg=%.1fms min=%.1fms max=%.1fms median=%.1fms p95=%.1fms",
                name,
                int(stats["count"]),
                stats["avg"],
                stats["min"],
                stats["max"],
                stats["median"],
                stats["p95"],
            )
        return summary


__all__ = [
    "CYCLE",
    "DB_QUERY",
    "PROCESSING",
    "PUBLISH",
    "PerformanceStats",
    "PipelineMetrics",
]
