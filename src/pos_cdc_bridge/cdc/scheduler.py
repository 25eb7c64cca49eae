"""Adaptive polling loop driving every table processor once per cycle."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..metrics import CYCLE, PerformanceStats, PipelineMetrics
from .processor import ProcessorResult, TableProcessor
from .state import PipelineState

logger = logging.getLogger(__name__)


class CycleError(Exception):
    """Raised when one or more processors failed outside row scope."""

    def __init__(self, failures: Sequence[Tuple[str, BaseException]]):
        self.failures = list(failures)
        summary = "; ".join(f"{table}: {exc}" for table, exc in self.failures)
        super().__init__(f"cycle failed for {len(self.failures)} table(s): {summary}")


class PollingInterval:
    """Interval with hysteresis.

    Work resets to ``minimum`` immediately. Empty cycles only back off once
    ``empty_cycles_before_backoff`` of them occur in a row, then by ``step``
    per further empty cycle up to ``maximum``.
    """

    def __init__(
        self,
        *,
        minimum: float = 5.0,
        maximum: float = 60.0,
        step: float = 5.0,
        empty_cycles_before_backoff: int = 2,
    ) -> None:
        if minimum <= 0 or maximum < minimum:
            raise ValueError("interval bounds must satisfy 0 < minimum <= maximum")
        self.minimum = float(minimum)
        self.maximum = float(maximum)
        self.step = float(step)
        self._threshold = max(1, empty_cycles_before_backoff)
        self._current = self.minimum
        self._empty_streak = 0

    @property
    def current(self) -> float:
        return self._current

    def observe(self, found_work: bool) -> float:
        if found_work:
            self._empty_streak = 0
            self._current = self.minimum
            return self._current
        self._empty_streak += 1
        if self._empty_streak >= self._threshold:
            self._current = min(self._current + self.step, self.maximum)
        return self._current

    def force_maximum(self) -> float:
        """Delay to use after a failed cycle; the stored interval is unchanged."""
        return self.maximum


class AdaptiveScheduler:
    """Single control loop; never starts a cycle before the previous one ends."""

    def __init__(
        self,
        processors: Sequence[TableProcessor],
        *,
        interval: Optional[PollingInterval] = None,
        state: Optional[PipelineState] = None,
        metrics: Optional[PipelineMetrics] = None,
        performance: Optional[PerformanceStats] = None,
        sweep_every_cycles: int = 20,
        performance_report_seconds: float = 900.0,
        idle_hook: Optional[Callable[[], None]] = None,
        idle_tick_seconds: float = 10.0,
        stop_event: Optional[Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._processors = list(processors)
        self._interval = interval or PollingInterval()
        self._state = state
        self._metrics = metrics or PipelineMetrics()
        self._performance = performance or PerformanceStats()
        self._sweep_every = max(1, sweep_every_cycles)
        self._report_seconds = performance_report_seconds
        self._idle_hook = idle_hook
        self._idle_tick = max(0.1, idle_tick_seconds)
        self._stop_event = stop_event or Event()
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self._processors)), thread_name_prefix="cdc-table"
        )
        self._cycles = 0
        self._metrics.set_poll_interval(self._interval.current)

    @property
    def interval(self) -> PollingInterval:
        return self._interval

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def run_cycle(self) -> Dict[str, ProcessorResult]:
        """Run every processor concurrently and wait for all of them."""
        self._cycles += 1
        self._metrics.inc_cycles()
        with self._performance.measure(CYCLE):
            futures = [
                (processor.name, self._executor.submit(processor.run_once))
                for processor in self._processors
            ]
            results: Dict[str, ProcessorResult] = {}
            failures: List[Tuple[str, BaseException]] = []
            for name, future in futures:
                try:
                    results[name] = future.result()
                except Exception as exc:  # noqa: BLE001 - collected into CycleError
                    logger.error("processing %s failed: %s", name, exc)
                    failures.append((name, exc))
        if failures:
            raise CycleError(failures)
        return results

    def tick(self) -> float:
        """Run one cycle plus housekeeping and return the next delay."""
        try:
            results = self.run_cycle()
        except CycleError as exc:
            self._metrics.inc_cycle_errors()
            delay = self._interval.force_maximum()
            logger.warning("%s; next poll in %.0fs", exc, delay)
        except Exception:  # noqa: BLE001 - the loop must keep running
            self._metrics.inc_cycle_errors()
            delay = self._interval.force_maximum()
            logger.exception("unexpected cycle failure; next poll in %.0fs", delay)
        else:
            previous = self._interval.current
            found_work = any(result.found_work for result in results.values())
            delay = self._interval.observe(found_work)
            if delay != previous:
                logger.info("polling interval changed %.0fs -> %.0fs", previous, delay)
        self._metrics.set_poll_interval(delay)
        self._housekeeping()
        return delay

    def run_forever(self) -> None:
        logger.info(
            "polling %d tables every %.0f-%.0fs",
            len(self._processors),
            self._interval.minimum,
            self._interval.maximum,
        )
        while not self._stop_event.is_set():
            delay = self.tick()
            self._wait(delay)
        logger.info("scheduler stopped after %d cycles", self._cycles)

    def _housekeeping(self) -> None:
        if self._state is not None:
            if self._cycles % self._sweep_every == 0:
                self._state.sweep()
            for table in self._state.tables():
                self._metrics.set_dedup_evictions(table, self._state.dedup(table).evictions)
        self._performance.report_if_due(self._report_seconds)

    def _wait(self, delay: float) -> None:
        deadline = self._clock() + delay
        while not self._stop_event.is_set():
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            if self._stop_event.wait(min(remaining, self._idle_tick)):
                return
            if self._idle_hook is not None:
                try:
                    self._idle_hook()
                except Exception:  # noqa: BLE001 - idle work is best effort
                    logger.exception("idle hook failed")


__all__ = ["AdaptiveScheduler", "CycleError", "PollingInterval"]
