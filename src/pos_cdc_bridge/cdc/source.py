"""Watermark-driven scanner over the versioned change log."""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence

from ..db.registry import TableSpec
from .checkpoint import WatermarkStore
from .records import ChangeRecord

logger = logging.getLogger(__name__)


class ChangeLogReader(Protocol):
    def current_version(self) -> int: ...

    def fetch_changes(self, spec: TableSpec, watermark: int, limit: int) -> List[dict]: ...

    def claim(self, spec: TableSpec, row_ids: Sequence[int], marker: str) -> List[int]: ...


class ChangeSource:
    """Returns pending rows above each table's watermark, oldest version first.

    The reader may also return recently logged rows below the watermark that
    committed late; they never move the watermark backwards.

    ``fetch`` has no side effects; callers advance the watermark explicitly
    once a batch has been observed, so a failed scan retries the same range.
    """

    def __init__(
        self,
        reader: ChangeLogReader,
        watermarks: WatermarkStore,
        *,
        batch_size: int = 20,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._reader = reader
        self._watermarks = watermarks
        self._batch_size = batch_size

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def watermark(self, spec: TableSpec) -> int:
        """Stored watermark, seeding from the log's current version on first use."""
        current = self._watermarks.load(spec.name)
        if current is not None:
            return current
        seeded = self._reader.current_version()
        self._watermarks.save(spec.name, seeded)
        logger.info("seeded %s watermark at change version %d", spec.name, seeded)
        return seeded

    def fetch(self, spec: TableSpec) -> List[ChangeRecord]:
        watermark = self.watermark(spec)
        rows = self._reader.fetch_changes(spec, watermark, self._batch_size)
        records = [ChangeRecord.from_row(spec.name, row) for row in rows]
        records.sort(key=lambda record: record.version)
        if records:
            logger.info(
                "found %d %s changes at watermark %d", len(records), spec.name, watermark
            )
        return records

    def claim(
        self, spec: TableSpec, records: Sequence[ChangeRecord], instance_id: str
    ) -> List[ChangeRecord]:
        """Keep only the records this instance managed to mark in-progress."""
        if not records:
            return []
        won = set(
            self._reader.claim(
                spec, [record.row_id for record in records], f"IN_PROGRESS:{instance_id}"
            )
        )
        skipped = len(records) - len(won)
        if skipped:
            logger.info("%d %s rows already claimed elsewhere", skipped, spec.name)
        return [record for record in records if record.row_id in won]

    def advance(self, spec: TableSpec, records: Sequence[ChangeRecord]) -> Optional[int]:
        """Move the watermark to the highest version observed; never backwards."""
        if not records:
            return None
        previous = self.watermark(spec)
        highest = max(record.version for record in records)
        if highest <= previous:
            return previous
        self._watermarks.save(spec.name, highest)
        logger.info("updated %s watermark to %d", spec.name, highest)
        return highest


__all__ = ["ChangeLogReader", "ChangeSource"]
