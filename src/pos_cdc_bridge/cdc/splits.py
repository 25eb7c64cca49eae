"""Correlates rows of a split bill into one logical split operation."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[,;\s]+")


def _normalize_bill(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _bill_sort_key(bill: str) -> Tuple[int, object]:
    return (0, int(bill)) if bill.isdigit() else (1, bill)


def correlation_key(bills: Iterable[object]) -> str:
    """Sorted, de-duplicated union of bill ids joined by commas."""
    normalized = {b for b in (_normalize_bill(v) for v in bills) if b is not None}
    return ",".join(sorted(normalized, key=_bill_sort_key))


def parse_bill_list(raw: object) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items: Iterable[object] = raw
    else:
        items = _SEPARATORS.split(str(raw))
    return [b for b in (_normalize_bill(item) for item in items) if b is not None]


def split_participants(
    payload: Mapping[str, object],
    *,
    flag_column: Optional[str],
    bill_column: Optional[str],
) -> List[str]:
    """Bills a row declares as part of a split; empty when not a participant.

    Parent/child rows contribute their own bill, the declared parent and the
    declared children; explicit split markers contribute only their own bill.
    """
    if flag_column is None or bill_column is None or not payload.get(flag_column):
        return []
    own = _normalize_bill(payload.get(bill_column))
    bills = [own] if own is not None else []
    if payload.get("split_role") is not None or "split_folios" in payload:
        parent = _normalize_bill(payload.get("parent_folio"))
        if parent is not None:
            bills.append(parent)
        bills.extend(parse_bill_list(payload.get("split_folios")))
    return bills


@dataclass
class SplitOperation:
    key: str
    started_at: float
    last_seen: float
    bills: Set[str] = field(default_factory=set)
    processed_products: Set[str] = field(default_factory=set)


class SplitOperationTracker:
    """Keeps live split operations and resolves bills to them.

    Shared by every table processor; an operation created from one table
    absorbs matching rows from any other table until it goes inactive.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = float(timeout_seconds)
        self._clock = clock
        self._lock = Lock()
        self._operations: Dict[str, SplitOperation] = {}
        self._by_bill: Dict[str, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    def observe(self, bills: Iterable[object]) -> Optional[SplitOperation]:
        """Record a split participant and return the operation it belongs to."""
        normalized = {b for b in (_normalize_bill(v) for v in bills) if b is not None}
        if not normalized:
            return None
        now = self._clock()
        with self._lock:
            matches = self._live_matches(normalized, now)
            if not matches:
                key = correlation_key(normalized)
                operation = SplitOperation(
                    key=key, started_at=now, last_seen=now, bills=set(normalized)
                )
                self._operations[key] = operation
                logger.info("split operation %s started", key)
            else:
                operation = matches[0]
                for other in matches[1:]:
                    operation.bills |= other.bills
                    operation.processed_products |= other.processed_products
                    del self._operations[other.key]
                    logger.info("split operation %s merged into %s", other.key, operation.key)
                operation.bills |= normalized
                operation.last_seen = now
            for bill in operation.bills:
                self._by_bill[bill] = operation.key
            return operation

    def find(self, bill: object) -> Optional[SplitOperation]:
        normalized = _normalize_bill(bill)
        if normalized is None:
            return None
        now = self._clock()
        with self._lock:
            key = self._by_bill.get(normalized)
            if key is None:
                return None
            operation = self._operations.get(key)
            if operation is None or self._expired(operation, now):
                return None
            return operation

    def mark_product(self, bill: object, product_id: object) -> bool:
        """Add a product to the operation's processed set; False if already there."""
        operation = self.find(bill)
        product = _normalize_bill(product_id)
        if operation is None or product is None:
            return False
        with self._lock:
            operation.last_seen = self._clock()
            if product in operation.processed_products:
                return False
            operation.processed_products.add(product)
            return True

    def sweep(self, now: Optional[float] = None) -> int:
        current = self._clock() if now is None else now
        with self._lock:
            expired = [
                op for op in self._operations.values() if self._expired(op, current)
            ]
            for operation in expired:
                del self._operations[operation.key]
                for bill in operation.bills:
                    if self._by_bill.get(bill) == operation.key:
                        del self._by_bill[bill]
            if expired:
                logger.info("expired %d inactive split operations", len(expired))
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._operations.clear()
            self._by_bill.clear()

    def _expired(self, operation: SplitOperation, now: float) -> bool:
        return now - operation.last_seen >= self._timeout

    def _live_matches(self, bills: Set[str], now: float) -> List[SplitOperation]:
        seen: Dict[str, SplitOperation] = {}
        for bill in bills:
            key = self._by_bill.get(bill)
            if key is None or key in seen:
                continue
            operation = self._operations.get(key)
            if operation is not None and not self._expired(operation, now):
                seen[key] = operation
        return sorted(seen.values(), key=lambda op: op.started_at)


__all__ = [
    "SplitOperation",
    "SplitOperationTracker",
    "correlation_key",
    "parse_bill_list",
    "split_participants",
]
