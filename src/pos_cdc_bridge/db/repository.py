"""Repository for change-log scans, row claims, outcome write-back and closure signals."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from psycopg2 import Error

from . import ConnectionPool
from .registry import (
    CHANGE_LOG_RELATION,
    KIND_SHIFT,
    KIND_TICKET,
    TableSpec,
    TrackedTableRegistry,
)

logger = logging.getLogger(__name__)

BILL_TRANSITION_STATUSES = ("DELETED", "PAID", "CLOSED")


class TransientQueryError(Exception):
    """Raised when a database round-trip fails; the caller retries next cycle."""


class ChangeLogRepository:
    """Convenience wrapper around the connection pool for CDC queries."""

    def __init__(
        self,
        pool: ConnectionPool,
        registry: TrackedTableRegistry,
        *,
        catchup_seconds: float = 300.0,
    ):
        if catchup_seconds < 0:
            raise ValueError("catchup_seconds must not be negative")
        self._pool = pool
        self.registry = registry
        self._catchup = float(catchup_seconds)

    # ------------------------------------------------------------------
    # change source

    def current_version(self) -> int:
        sql = (
            "SELECT COALESCE(MAX(version), 0) AS version "
            f"FROM {self.registry.schema}.{CHANGE_LOG_RELATION}"
        )
        row = self._fetchone(sql, None, "current version lookup")
        return int(row["version"]) if row else 0

    def fetch_changes(
        self, spec: TableSpec, watermark: int, limit: int
    ) -> List[Dict[str, Any]]:
        queries = self.registry.queries(spec.name)
        params = {
            "table": spec.relation,
            "watermark": watermark,
            "catchup": self._catchup,
            "limit": limit,
        }
        return self._fetchall(queries.scan, params, f"{spec.name} scan")

    def claim(self, spec: TableSpec, row_ids: Sequence[int], marker: str) -> List[int]:
        """Mark rows in-progress in one short transaction; return the ids won."""
        if not row_ids:
            return []
        queries = self.registry.queries(spec.name)
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    rows = conn.execute(
                        queries.claim, {"marker": marker, "ids": list(row_ids)}
                    ).fetchall()
        except Error as exc:  # noqa: BLE001 - wrap driver errors
            raise TransientQueryError(f"{spec.name} claim failed: {exc}") from exc
        return [int(row["id"]) for row in rows]

    def write_outcome(
        self, spec: TableSpec, row_id: int, response: str, *, success: bool
    ) -> None:
        queries = self.registry.queries(spec.name)
        sql = queries.write_success if success else queries.write_failure
        try:
            with self._pool.connection() as conn:
                conn.execute(sql, {"id": row_id, "response": response})
        except Error as exc:  # noqa: BLE001
            raise TransientQueryError(
                f"{spec.name} write-back for row {row_id} failed: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # shift-closure signals

    def count_deletes_for_bill(
        self, spec: TableSpec, bill: object, window_seconds: float
    ) -> int:
        classification, operation = _delete_marker(spec)
        sql = f"""
            SELECT COUNT(*) AS n
              FROM {self.registry.qualified(spec)}
             WHERE {spec.bill_column} = %(bill)s
               AND {spec.classification_column} = %(classification)s
               AND operation_type = %(operation)s
               AND create_date >= now() - make_interval(secs => %(window)s)
            """
        params = {
            "bill": bill,
            "classification": classification,
            "operation": operation,
            "window": float(window_seconds),
        }
        return self._count(sql, params, f"{spec.name} bill delete count")

    def count_deleted_bills(self, spec: TableSpec, window_seconds: float) -> int:
        classification, operation = _delete_marker(spec)
        sql = f"""
            SELECT COUNT(DISTINCT {spec.bill_column}) AS n
              FROM {self.registry.qualified(spec)}
             WHERE {spec.classification_column} = %(classification)s
               AND operation_type = %(operation)s
               AND create_date >= now() - make_interval(secs => %(window)s)
            """
        params = {
            "classification": classification,
            "operation": operation,
            "window": float(window_seconds),
        }
        return self._count(sql, params, f"{spec.name} deleted bill count")

    def count_bill_transitions(self, window_seconds: float) -> int:
        tickets = self._require_kind(KIND_TICKET)
        sql = f"""
            SELECT COUNT(*) AS n
              FROM {self.registry.qualified(tickets)}
             WHERE event_type = ANY(%(statuses)s)
               AND create_date >= now() - make_interval(secs => %(window)s)
            """
        params = {
            "statuses": list(BILL_TRANSITION_STATUSES),
            "window": float(window_seconds),
        }
        return self._count(sql, params, "bill transition count")

    def shift_closing_seen(self, window_seconds: float) -> bool:
        shifts = self._require_kind(KIND_SHIFT)
        sql = f"""
            SELECT COUNT(*) AS n
              FROM {self.registry.qualified(shifts)}
             WHERE status = 'TURNO_UPDATED'
               AND cierre IS NOT NULL
               AND create_date >= now() - make_interval(secs => %(window)s)
            """
        return (
            self._count(sql, {"window": float(window_seconds)}, "shift closing lookup")
            > 0
        )

    def resolve_shift_id(self, bill: object) -> Optional[object]:
        tickets = self._require_kind(KIND_TICKET)
        sql = f"""
            SELECT shift_id
              FROM {self.registry.qualified(tickets)}
             WHERE folio = %(bill)s
               AND shift_id IS NOT NULL
             ORDER BY id DESC
             LIMIT 1
            """
        row = self._fetchone(sql, {"bill": bill}, "shift id lookup")
        return row["shift_id"] if row else None

    # ------------------------------------------------------------------

    def _require_kind(self, kind: str) -> TableSpec:
        spec = self.registry.by_kind(kind)
        if spec is None:
            raise TransientQueryError(f"no tracked table of kind {kind}")
        return spec

    def _count(self, sql: str, params: Any, what: str) -> int:
        row = self._fetchone(sql, params, what)
        return int(row["n"]) if row else 0

    def _fetchone(self, sql: str, params: Any, what: str) -> Optional[Dict[str, Any]]:
        try:
            with self._pool.connection() as conn:
                return conn.execute(sql, params).fetchone()
        except Error as exc:  # noqa: BLE001
            raise TransientQueryError(f"{what} failed: {exc}") from exc

    def _fetchall(self, sql: str, params: Any, what: str) -> List[Dict[str, Any]]:
        try:
            with self._pool.connection() as conn:
                return [dict(row) for row in conn.execute(sql, params).fetchall()]
        except Error as exc:  # noqa: BLE001
            raise TransientQueryError(f"{what} failed: {exc}") from exc


def _delete_marker(spec: TableSpec):
    if spec.delete_marker is None or spec.bill_column is None:
        raise ValueError(f"{spec.name} has no delete-type rows")
    return spec.delete_marker


__all__ = ["BILL_TRANSITION_STATUSES", "ChangeLogRepository", "TransientQueryError"]
