"""Per-table orchestration: scan, classify, deduplicate, publish and write back."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

from ..broker.publisher import PublishError, PublishResult
from ..db.registry import KIND_PRODUCT, KIND_SHIFT, KIND_TICKET, TableSpec
from ..db.repository import TransientQueryError
from ..metrics import DB_QUERY, PROCESSING, PUBLISH, PerformanceStats, PipelineMetrics
from .closure import ShiftClosureFilter
from .dedup import fingerprint
from .messages import build_message
from .records import ChangeRecord, RowOutcome, RowState
from .source import ChangeSource
from .splits import SplitOperation, split_participants
from .state import PipelineState

logger = logging.getLogger(__name__)

RESPONSE_DUPLICATE = "Skipped - duplicate event"
RESPONSE_SHIFT_NOTIFICATION = "Shift closure notification processed"
SHIFT_CLOSURE_MARKER = "SHIFT_CLOSURE"
_MAX_RESPONSE_LENGTH = 1000


class OutcomeWriter(Protocol):
    def write_outcome(
        self, spec: TableSpec, row_id: int, response: str, *, success: bool
    ) -> None: ...


class Publisher(Protocol):
    def publish(self, event_type: str, body) -> PublishResult: ...


@dataclass
class ProcessorResult:
    table: str
    fetched: int = 0
    claimed: int = 0
    watermark: Optional[int] = None
    outcomes: List[RowOutcome] = field(default_factory=list)

    @property
    def found_work(self) -> bool:
        return self.fetched > 0

    def count(self, state: RowState) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state is state)


def _truncate(text: str) -> str:
    if len(text) <= _MAX_RESPONSE_LENGTH:
        return text
    return text[: _MAX_RESPONSE_LENGTH - 3] + "..."


class TableProcessor:
    """Runs one batch for a single tracked table.

    Every row ends in exactly one terminal state and gets its own write-back;
    an exception while handling a row is recorded on that row only. A scan or
    claim failure raises :class:`TransientQueryError` without advancing the
    watermark.
    """

    def __init__(
        self,
        spec: TableSpec,
        *,
        source: ChangeSource,
        writer: OutcomeWriter,
        publisher: Publisher,
        state: PipelineState,
        closure_filter: ShiftClosureFilter,
        venue_id: str,
        instance_id: str = "",
        metrics: Optional[PipelineMetrics] = None,
        performance: Optional[PerformanceStats] = None,
    ) -> None:
        self.spec = spec
        self._source = source
        self._writer = writer
        self._publisher = publisher
        self._state = state
        self._filter = closure_filter
        self._venue_id = venue_id
        self._instance_id = instance_id
        self._metrics = metrics or PipelineMetrics()
        self._performance = performance or PerformanceStats()

    @property
    def name(self) -> str:
        return self.spec.name

    def run_once(self) -> ProcessorResult:
        result = ProcessorResult(table=self.spec.name)
        try:
            with self._performance.measure(DB_QUERY):
                records = self._source.fetch(self.spec)
                result.fetched = len(records)
                if records and self.spec.claim_rows:
                    to_process = self._source.claim(self.spec, records, self._instance_id)
                else:
                    to_process = records
        except TransientQueryError:
            self._metrics.inc_scan_errors(self.spec.name)
            raise
        result.claimed = len(to_process)
        if not records:
            return result

        for record in to_process:
            with self._performance.measure(PROCESSING):
                outcome = self._process_row(record)
            self._write_back(outcome)
            result.outcomes.append(outcome)

        result.watermark = self._source.advance(self.spec, records)
        published = result.count(RowState.PUBLISHED)
        logger.info(
            "processed %s batch: %d fetched, %d handled, %d published",
            self.spec.name,
            result.fetched,
            len(result.outcomes),
            published,
        )
        return result

    # ------------------------------------------------------------------

    def _process_row(self, record: ChangeRecord) -> RowOutcome:
        key: Optional[str] = None
        dedup = self._state.dedup(self.spec.name)
        try:
            notification = self._track_shift_closure(record)
            if notification is not None:
                return notification

            split_operation, reallocated = self._correlate_split(record)
            verdict = self._filter.classify(record, self.spec, split_operation)
            logger.debug(
                "%s row %s %s: %s",
                self.spec.name,
                record.row_id,
                RowState.EVALUATED.value,
                verdict.reason,
            )
            if verdict.noise:
                return RowOutcome(
                    record,
                    RowState.SKIPPED_NOISE,
                    verdict.reason,
                    details={"signals": list(verdict.signals)},
                )

            key = self._fingerprint(record, split_operation)
            if dedup.check_and_add(key):
                # Deletes outside a split operation are always re-published.
                if not self.spec.is_delete(record.payload) or split_operation is not None:
                    key = None
                    return RowOutcome(record, RowState.SKIPPED_DUPLICATE, RESPONSE_DUPLICATE)
                # Already cached; a failed re-publish must not evict it.
                key = None
                logger.debug("re-publishing delete %s despite dedup hit", record.row_id)

            details = {}
            suffix = ""
            if reallocated:
                details = {"split": split_operation.key, "reallocated": True}
                suffix = f"; reallocated within split {split_operation.key}"
                logger.info(
                    "product %s reallocated within split operation %s",
                    record.get("id_producto"),
                    split_operation.key,
                )
            body = build_message(self.spec.kind, record.payload, self._venue_id)
            with self._performance.measure(PUBLISH):
                published = self._publisher.publish(self.spec.name, body)
            if published.ok:
                key = None
                return RowOutcome(
                    record,
                    RowState.PUBLISHED,
                    f"Published to {self.spec.queue} ({published.message_id}){suffix}",
                    message_id=published.message_id,
                    details=details,
                )
            return RowOutcome(
                record,
                RowState.PUBLISH_FAILED,
                f"Failed to publish: {published.error}",
                message_id=published.message_id,
            )
        except PublishError as exc:
            logger.error(
                "publish failed for %s row %s: %s", self.spec.name, record.row_id, exc
            )
            return RowOutcome(record, RowState.PUBLISH_FAILED, f"Failed to publish: {exc}")
        except Exception as exc:  # noqa: BLE001 - one bad row must not stop the batch
            logger.exception("error processing %s row %s", self.spec.name, record.row_id)
            return RowOutcome(record, RowState.PROCESSING_ERROR, f"Error: {exc}")
        finally:
            # A fingerprint only stays cached once its row was handled.
            if key is not None:
                dedup.discard(key)

    def _track_shift_closure(self, record: ChangeRecord) -> Optional[RowOutcome]:
        payload = record.payload
        if self.spec.kind == KIND_SHIFT:
            if (
                payload.get("status") == "TURNO_UPDATED"
                and payload.get("operation_type") == "UPDATE"
                and payload.get("cierre") is not None
            ):
                self._state.closures.register(payload.get("id_turno"))
            return None
        if (
            self.spec.kind == KIND_TICKET
            and payload.get("event_type") == SHIFT_CLOSURE_MARKER
            and payload.get("operation_type") == SHIFT_CLOSURE_MARKER
        ):
            self._state.closures.register(payload.get("shift_id"))
            return RowOutcome(record, RowState.SKIPPED_NOISE, RESPONSE_SHIFT_NOTIFICATION)
        return None

    def _correlate_split(
        self, record: ChangeRecord
    ) -> Tuple[Optional[SplitOperation], bool]:
        """Resolve the row's split operation and whether its product was seen there before."""
        if self.spec.bill_column is None:
            return None, False
        bills = split_participants(
            record.payload,
            flag_column=self.spec.split_flag_column,
            bill_column=self.spec.bill_column,
        )
        tracker = self._state.splits
        operation = tracker.observe(bills) if bills else None
        bill = record.get(self.spec.bill_column)
        if operation is None:
            operation = tracker.find(bill)
        reallocated = False
        if operation is not None and self.spec.kind == KIND_PRODUCT:
            product = record.get("id_producto")
            reallocated = product is not None and not tracker.mark_product(bill, product)
        return operation, reallocated

    def _fingerprint(
        self, record: ChangeRecord, split_operation: Optional[SplitOperation]
    ) -> str:
        if split_operation is not None:
            bill = split_operation.key
        elif self.spec.bill_column is not None:
            bill = record.get(self.spec.bill_column)
        else:
            bill = None
        extra = [record.get(column) for column in self.spec.fingerprint_columns]
        return fingerprint(
            record.row_id, record.get(self.spec.classification_column), bill, *extra
        )

    def _write_back(self, outcome: RowOutcome) -> None:
        self._metrics.inc_rows(self.spec.name, outcome.state.value)
        try:
            self._writer.write_outcome(
                self.spec,
                outcome.record.row_id,
                _truncate(outcome.response),
                success=outcome.state.successful,
            )
        except TransientQueryError as exc:
            self._metrics.inc_writeback_errors(self.spec.name)
            logger.error(
                "failed to record outcome %s for %s row %s: %s",
                outcome.state.value,
                self.spec.name,
                outcome.record.row_id,
                exc,
            )


__all__ = ["ProcessorResult", "TableProcessor"]
