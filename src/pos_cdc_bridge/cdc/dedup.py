"""Bounded per-table deduplication cache of recently handled record fingerprints."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def fingerprint(row_id: object, classification: object, bill: object, *extra: object) -> str:
    """Build the dedup key ``id-classification-bill[-extra...]``."""
    parts = [row_id, classification, bill, *extra]
    return "-".join("" if part is None else str(part) for part in parts)


class DedupCache:
    """Insertion-ordered ring of fingerprints with a time-to-live.

    Capacity overflow evicts the oldest entries one at a time rather than
    clearing the cache, so a burst never causes a wave of misses for keys that
    were just recorded. Expired entries are swept at most every ``ttl / 2``.
    """

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        ttl_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._max_entries = max_entries
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._name = name
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = Lock()
        self._last_sweep = clock()
        self.evictions = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            return self._live(key, now)

    def check_and_add(self, key: str) -> bool:
        """Return True when ``key`` was already recorded; record it otherwise."""
        now = self._clock()
        with self._lock:
            self._maybe_sweep_locked(now)
            if self._live(key, now):
                return True
            self._insert_locked(key, now)
            return False

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: Optional[float] = None) -> int:
        current = self._clock() if now is None else now
        with self._lock:
            return self._sweep_locked(current)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._last_sweep = self._clock()

    def _live(self, key: str, now: float) -> bool:
        inserted = self._entries.get(key)
        if inserted is None:
            return False
        if now - inserted >= self._ttl:
            del self._entries[key]
            return False
        return True

    def _insert_locked(self, key: str, now: float) -> None:
        self._entries.pop(key, None)
        self._entries[key] = now
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("dedup cache %s full; evicted %s", self._name, evicted)

    def _maybe_sweep_locked(self, now: float) -> None:
        if now - self._last_sweep >= self._ttl / 2:
            self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        removed = 0
        # Entries are in insertion order, so the oldest expire first.
        while self._entries:
            key, inserted = next(iter(self._entries.items()))
            if now - inserted < self._ttl:
                break
            del self._entries[key]
            removed += 1
        if removed:
            logger.debug("dedup cache %s swept %d expired entries", self._name, removed)
        return removed


__all__ = ["DedupCache", "fingerprint"]
