"""Shift-closure noise filter for delete-type rows.

A shift closeout in the POS emits one delete row per affected ticket or
product line. Those rows are bookkeeping, not user actions, and are marked
processed without being published. Classification runs in two tiers:

1. Direct membership: the row's shift (carried or resolved from its bill) is
   a live entry in :class:`ShiftClosureRegistry`.
2. Statistical fallback: counts of recent delete activity evaluated against
   :class:`ClosurePolicy`. Ticket deletes need one strong signal; product
   deletes need ``product_min_signals`` co-occurring signals.

Rows belonging to a live split operation skip the statistical tier.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SIGNAL_SAME_BILL = "same_bill_deletes"
SIGNAL_DISTINCT_BILLS = "distinct_bill_deletes"
SIGNAL_TRANSITIONS = "bill_transitions"
SIGNAL_SHIFT_CLOSING = "shift_closing"
SIGNAL_TICKET_BURST = "ticket_delete_burst"


@dataclass(frozen=True)
class ClosurePolicy:
    """Named thresholds for the statistical tier; counts must exceed them."""

    same_bill_window_seconds: float = 10.0
    same_bill_threshold: int = 10
    distinct_bills_window_seconds: float = 10.0
    distinct_bills_threshold: int = 6
    transitions_window_seconds: float = 30.0
    transitions_threshold: int = 8
    shift_closing_window_seconds: float = 300.0
    ticket_burst_window_seconds: float = 30.0
    ticket_burst_threshold: int = 8
    single_item_window_seconds: float = 5.0
    single_item_max: int = 2
    product_min_signals: int = 2
    closure_ttl_seconds: float = 600.0


class ClosureSignalSource(Protocol):
    """Database-side counters the statistical tier reads."""

    def count_deletes_for_bill(self, spec, bill: object, window_seconds: float) -> int: ...

    def count_deleted_bills(self, spec, window_seconds: float) -> int: ...

    def count_bill_transitions(self, window_seconds: float) -> int: ...

    def shift_closing_seen(self, window_seconds: float) -> bool: ...

    def resolve_shift_id(self, bill: object) -> Optional[object]: ...


def _shift_key(shift_id: object) -> Optional[str]:
    if shift_id is None:
        return None
    text = str(shift_id).strip()
    return text or None


class ShiftClosureRegistry:
    """Shift id to detection time for shifts observed closing."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._lock = Lock()
        self._closures: Dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._closures)

    def register(self, shift_id: object) -> None:
        key = _shift_key(shift_id)
        if key is None:
            return
        with self._lock:
            first = key not in self._closures
            self._closures[key] = self._clock()
        if first:
            logger.info("shift %s closure detected; suppressing its deletions", key)

    def is_closing(self, shift_id: object) -> bool:
        key = _shift_key(shift_id)
        if key is None:
            return False
        now = self._clock()
        with self._lock:
            detected = self._closures.get(key)
            return detected is not None and now - detected < self._ttl

    def closing_within(self, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            return any(now - detected < window_seconds for detected in self._closures.values())

    def sweep(self, now: Optional[float] = None) -> int:
        current = self._clock() if now is None else now
        with self._lock:
            expired = [k for k, t in self._closures.items() if current - t >= self._ttl]
            for key in expired:
                del self._closures[key]
        if expired:
            logger.info("cleared %d expired shift closures", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._closures.clear()


@dataclass(frozen=True)
class ClosureVerdict:
    noise: bool
    reason: str
    signals: Tuple[str, ...] = ()


_NOT_A_DELETE = ClosureVerdict(False, "not a delete")


class ShiftClosureFilter:
    """Classifies delete-type rows as closeout noise or legitimate removals."""

    def __init__(
        self,
        *,
        policy: ClosurePolicy,
        registry: ShiftClosureRegistry,
        signals: ClosureSignalSource,
    ) -> None:
        self.policy = policy
        self._registry = registry
        self._signals = signals

    def classify(self, record, spec, split_operation=None) -> ClosureVerdict:
        if not spec.is_delete(record.payload):
            return _NOT_A_DELETE
        label = "Ticket" if spec.kind == "ticket" else "Product"
        bill = record.get(spec.bill_column) if spec.bill_column else None

        shift_id = record.get("shift_id")
        if shift_id is None and bill is not None:
            shift_id = self._signals.resolve_shift_id(bill)
        if shift_id is not None and self._registry.is_closing(shift_id):
            return ClosureVerdict(
                True, f"Filtered: {label} deletion during shift closure", ("shift_member",)
            )

        if split_operation is not None:
            return ClosureVerdict(False, f"split operation {split_operation.key}")

        if spec.kind == "ticket":
            return self._classify_ticket(spec, label)
        return self._classify_product(spec, bill, label)

    def _classify_ticket(self, spec, label: str) -> ClosureVerdict:
        policy = self.policy
        if (
            self._signals.count_deleted_bills(spec, policy.ticket_burst_window_seconds)
            > policy.ticket_burst_threshold
        ):
            return self._noise(label, (SIGNAL_TICKET_BURST,))
        if self._shift_closing():
            return self._noise(label, (SIGNAL_SHIFT_CLOSING,))
        return ClosureVerdict(False, "no closure signal")

    def _classify_product(self, spec, bill: object, label: str) -> ClosureVerdict:
        policy = self.policy
        shift_closing = self._shift_closing()
        if not shift_closing and bill is not None:
            recent = self._signals.count_deletes_for_bill(
                spec, bill, policy.single_item_window_seconds
            )
            if recent <= policy.single_item_max:
                return ClosureVerdict(False, "single item removal")

        fired: List[str] = []
        if bill is not None and (
            self._signals.count_deletes_for_bill(
                spec, bill, policy.same_bill_window_seconds
            )
            > policy.same_bill_threshold
        ):
            fired.append(SIGNAL_SAME_BILL)
        if (
            self._signals.count_deleted_bills(spec, policy.distinct_bills_window_seconds)
            > policy.distinct_bills_threshold
        ):
            fired.append(SIGNAL_DISTINCT_BILLS)
        if (
            self._signals.count_bill_transitions(policy.transitions_window_seconds)
            > policy.transitions_threshold
        ):
            fired.append(SIGNAL_TRANSITIONS)
        if shift_closing:
            fired.append(SIGNAL_SHIFT_CLOSING)

        if len(fired) >= policy.product_min_signals:
            return self._noise(label, tuple(fired))
        return ClosureVerdict(False, "insufficient closure signals", tuple(fired))

    def _shift_closing(self) -> bool:
        window = self.policy.shift_closing_window_seconds
        return self._registry.closing_within(window) or self._signals.shift_closing_seen(
            window
        )

    def _noise(self, label: str, signals: Tuple[str, ...]) -> ClosureVerdict:
        logger.debug(
            "%s deletion classified as closeout noise (signals: %s)",
            label.lower(),
            ", ".join(signals),
        )
        return ClosureVerdict(
            True,
            f"Filtered: {label} deletion during bulk operation (likely shift closure)",
            signals,
        )


__all__ = [
    "ClosurePolicy",
    "ClosureSignalSource",
    "ClosureVerdict",
    "ShiftClosureFilter",
    "ShiftClosureRegistry",
]
