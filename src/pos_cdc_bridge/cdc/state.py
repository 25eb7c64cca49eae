"""Process-local pipeline state shared by every table processor."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, Optional

from .checkpoint import InMemoryWatermarkStore, WatermarkStore
from .closure import ShiftClosureRegistry
from .dedup import DedupCache
from .splits import SplitOperationTracker

logger = logging.getLogger(__name__)


class PipelineState:
    """Watermarks, dedup caches, split operations and shift closures.

    Caches and trackers live only in this process: two instances pointed at
    the same database each keep their own copy and will both publish the
    same rows unless the table uses claim-then-release. ``reset`` drops the
    in-memory caches but keeps watermarks.
    """

    def __init__(
        self,
        tables: Iterable[str],
        *,
        watermarks: Optional[WatermarkStore] = None,
        dedup_size: int = 1000,
        dedup_ttl_seconds: float = 1800.0,
        split_timeout_seconds: float = 600.0,
        closure_ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.watermarks: WatermarkStore = watermarks or InMemoryWatermarkStore()
        self._dedup: Dict[str, DedupCache] = {
            table: DedupCache(
                max_entries=dedup_size,
                ttl_seconds=dedup_ttl_seconds,
                clock=clock,
                name=table,
            )
            for table in tables
        }
        self.splits = SplitOperationTracker(timeout_seconds=split_timeout_seconds, clock=clock)
        self.closures = ShiftClosureRegistry(ttl_seconds=closure_ttl_seconds, clock=clock)

    def dedup(self, table: str) -> DedupCache:
        return self._dedup[table]

    def tables(self):
        return list(self._dedup)

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        current = self._clock() if now is None else now
        removed = {
            f"dedup:{table}": cache.sweep(current) for table, cache in self._dedup.items()
        }
        removed["splits"] = self.splits.sweep(current)
        removed["closures"] = self.closures.sweep(current)
        return removed

    def reset(self) -> None:
        for cache in self._dedup.values():
            cache.clear()
        self.splits.clear()
        self.closures.clear()
        logger.info("pipeline caches reset")


__all__ = ["PipelineState"]
