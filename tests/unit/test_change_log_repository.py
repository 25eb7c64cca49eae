from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import pytest
from psycopg2 import OperationalError

from pos_cdc_bridge.db.registry import TrackedTableRegistry
from pos_cdc_bridge.db.repository import ChangeLogRepository, TransientQueryError


class _FakeResult:
    def __init__(self, rows: List[dict]):
        self._rows = rows

    def fetchone(self) -> Optional[dict]:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> List[dict]:
        return list(self._rows)


class _FakeTransaction:
    def __init__(self, conn: "_FakeConnection"):
        self._conn = conn

    def __enter__(self) -> None:
        self._conn.in_transaction = True

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._conn.in_transaction = False
        self._conn.committed = exc_type is None
        return False


class _FakeConnection:
    def __init__(self, responses: Iterator[Any]):
        self._responses = responses
        self.executed = []
        self.in_transaction = False
        self.committed = False

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    def execute(self, query: str, params: Any = None) -> _FakeResult:
        self.executed.append((" ".join(query.split()), params, self.in_transaction))
        response = next(self._responses)
        if isinstance(response, Exception):
            raise response
        return _FakeResult(response)


class _FakePool:
    def __init__(self, *responses: Any):
        self.conn = _FakeConnection(iter(responses))

    @contextmanager
    def connection(self):
        yield self.conn


REGISTRY = TrackedTableRegistry("pos_events")
TICKETS = REGISTRY.get("TicketEvents")
PRODUCTS = REGISTRY.get("ProductEvents")
PAYMENTS = REGISTRY.get("PaymentEvents")


@pytest.mark.unit
def test_current_version_defaults_to_zero() -> None:
    pool = _FakePool([{"version": 0}])

    assert ChangeLogRepository(pool, REGISTRY).current_version() == 0
    assert "FROM pos_events.change_log" in pool.conn.executed[0][0]


@pytest.mark.unit
def test_fetch_changes_binds_relation_watermark_catchup_and_limit() -> None:
    row = {"id": 7, "folio": 55, "change_version": 101, "change_operation": "I"}
    pool = _FakePool([row])

    repository = ChangeLogRepository(pool, REGISTRY, catchup_seconds=120)
    rows = repository.fetch_changes(TICKETS, 100, 20)

    assert rows == [row]
    sql, params, _ = pool.conn.executed[0]
    assert params == {
        "table": "ticket_events",
        "watermark": 100,
        "catchup": 120.0,
        "limit": 20,
    }
    assert "make_interval(secs => %(catchup)s)" in sql
    assert "DISTINCT ON (cl.row_id)" in sql
    assert "t.response IS NULL" in sql
    assert "t.is_processed = FALSE" in sql


@pytest.mark.unit
def test_negative_catchup_window_is_rejected() -> None:
    with pytest.raises(ValueError):
        ChangeLogRepository(_FakePool([]), REGISTRY, catchup_seconds=-1)


@pytest.mark.unit
def test_scan_failure_is_wrapped() -> None:
    pool = _FakePool(OperationalError("statement timeout"))

    with pytest.raises(TransientQueryError) as excinfo:
        ChangeLogRepository(pool, REGISTRY).fetch_changes(PRODUCTS, 0, 20)

    assert "ProductEvents scan failed" in str(excinfo.value)


@pytest.mark.unit
def test_claim_runs_in_transaction_and_returns_won_ids() -> None:
    pool = _FakePool([{"id": 1}, {"id": 3}])

    won = ChangeLogRepository(pool, REGISTRY).claim(
        PAYMENTS, [1, 2, 3], "IN_PROGRESS:bridge-a"
    )

    assert won == [1, 3]
    sql, params, in_transaction = pool.conn.executed[0]
    assert in_transaction is True
    assert pool.conn.committed is True
    assert params == {"marker": "IN_PROGRESS:bridge-a", "ids": [1, 2, 3]}
    assert "response IS NULL" in sql
    assert "RETURNING id" in sql


@pytest.mark.unit
def test_claim_without_ids_skips_database() -> None:
    pool = _FakePool()

    assert ChangeLogRepository(pool, REGISTRY).claim(PAYMENTS, [], "x") == []
    assert pool.conn.executed == []


@pytest.mark.unit
def test_write_outcome_uses_success_or_failure_template() -> None:
    pool = _FakePool([], [])
    repository = ChangeLogRepository(pool, REGISTRY)

    repository.write_outcome(PAYMENTS, 5, "Published to pos.payments (m-1)", success=True)
    repository.write_outcome(PAYMENTS, 6, "Failed to publish: nack", success=False)

    success_sql, success_params, _ = pool.conn.executed[0]
    failure_sql, failure_params, _ = pool.conn.executed[1]
    assert "is_success = TRUE" in success_sql
    assert "is_failed = TRUE" in failure_sql
    assert success_params == {"id": 5, "response": "Published to pos.payments (m-1)"}
    assert failure_params["id"] == 6


@pytest.mark.unit
def test_ticket_write_back_marks_processed() -> None:
    pool = _FakePool([])

    ChangeLogRepository(pool, REGISTRY).write_outcome(
        TICKETS, 9, "Skipped - duplicate event", success=True
    )

    sql = pool.conn.executed[0][0]
    assert sql.startswith("UPDATE pos_events.ticket_events SET is_processed = TRUE")
    assert "processed_date = now()" in sql


@pytest.mark.unit
def test_write_back_failure_is_wrapped() -> None:
    pool = _FakePool(OperationalError("connection reset"))

    with pytest.raises(TransientQueryError):
        ChangeLogRepository(pool, REGISTRY).write_outcome(TICKETS, 1, "x", success=True)


@pytest.mark.unit
def test_closure_signal_queries() -> None:
    pool = _FakePool([{"n": 3}], [{"n": 7}], [{"n": 9}], [{"n": 1}], [{"shift_id": 77}])
    repository = ChangeLogRepository(pool, REGISTRY)

    assert repository.count_deletes_for_bill(PRODUCTS, 55, 10) == 3
    assert repository.count_deleted_bills(TICKETS, 30) == 7
    assert repository.count_bill_transitions(30) == 9
    assert repository.shift_closing_seen(300) is True
    assert repository.resolve_shift_id(55) == 77

    executed = pool.conn.executed
    assert executed[0][1] == {
        "bill": 55,
        "classification": "PRODUCT_REMOVED",
        "operation": "DELETE",
        "window": 10.0,
    }
    assert "COUNT(DISTINCT folio)" in executed[1][0]
    assert executed[1][1]["classification"] == "DELETED"
    assert executed[2][1]["statuses"] == ["DELETED", "PAID", "CLOSED"]
    assert "TURNO_UPDATED" in executed[3][0]


@pytest.mark.unit
def test_delete_counts_reject_tables_without_deletes() -> None:
    with pytest.raises(ValueError):
        ChangeLogRepository(_FakePool(), REGISTRY).count_deleted_bills(PAYMENTS, 10)
