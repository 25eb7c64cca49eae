"""Registry of tracked POS staging tables and their compiled SQL templates."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from psycopg2 import Error

from . import Connection

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

KIND_TICKET = "ticket"
KIND_PRODUCT = "product"
KIND_PAYMENT = "payment"
KIND_SHIFT = "shift"

CHANGE_LOG_RELATION = "change_log"


class RegistryError(Exception):
    """Raised when the tracked-table registry does not match the database."""


@dataclass(frozen=True)
class TableSpec:
    """Static description of one tracked staging table."""

    name: str
    relation: str
    queue: str
    kind: str
    classification_column: str
    bill_column: Optional[str]
    fingerprint_columns: Tuple[str, ...]
    pending_predicate: str
    success_assignments: str
    failure_assignments: str
    columns: Tuple[str, ...]
    delete_marker: Optional[Tuple[str, str]] = None
    split_flag_column: Optional[str] = None
    claim_rows: bool = False

    def is_delete(self, payload: Dict[str, object]) -> bool:
        if self.delete_marker is None:
            return False
        classification, operation = self.delete_marker
        return (
            payload.get(self.classification_column) == classification
            and payload.get("operation_type") == operation
        )


@dataclass(frozen=True)
class TableQueries:
    """SQL templates compiled once per table at registry construction."""

    scan: str
    claim: str
    write_success: str
    write_failure: str


_OUTCOME_FLAGS_SUCCESS = (
    "is_success = TRUE, is_failed = FALSE, response = %(response)s, update_date = now()"
)
_OUTCOME_FLAGS_FAILURE = (
    "is_success = FALSE, is_failed = TRUE, response = %(response)s, update_date = now()"
)
_TICKET_PROCESSED = (
    "is_processed = TRUE, processed_date = now(), response = %(response)s, "
    "update_date = now()"
)

_SPLIT_COLUMNS = ("is_split_table", "main_table", "split_suffix")

DEFAULT_TABLES: Tuple[TableSpec, ...] = (
    TableSpec(
        name="TicketEvents",
        relation="ticket_events",
        queue="pos.tickets",
        kind=KIND_TICKET,
        classification_column="event_type",
        bill_column="folio",
        fingerprint_columns=(),
        pending_predicate="t.is_processed = FALSE",
        success_assignments=_TICKET_PROCESSED,
        failure_assignments=_TICKET_PROCESSED,
        columns=(
            "id",
            "folio",
            "table_number",
            "order_number",
            "event_type",
            "operation_type",
            "waiter_id",
            "waiter_name",
            "unique_code",
            "descuento",
            "total",
            "is_split_operation",
            "split_role",
            "parent_folio",
            "split_folios",
            "split_tables",
            "original_table",
            "shift_id",
            "create_date",
            "is_processed",
            "processed_date",
            "response",
            "update_date",
        ),
        delete_marker=("DELETED", "DELETE"),
        split_flag_column="is_split_operation",
    ),
    TableSpec(
        name="ProductEvents",
        relation="product_events",
        queue="pos.products",
        kind=KIND_PRODUCT,
        classification_column="status",
        bill_column="folio",
        fingerprint_columns=("id_producto",),
        pending_predicate="t.update_date IS NULL",
        success_assignments=_OUTCOME_FLAGS_SUCCESS,
        failure_assignments=_OUTCOME_FLAGS_FAILURE,
        columns=(
            "id",
            "folio",
            "table_number",
            "order_number",
            "status",
            "operation_type",
            "id_producto",
            "nombre_producto",
            "movimiento",
            "cantidad",
            "precio",
            "descuento",
            "hora",
            "modificador",
            "clasificacion",
            "waiter_id",
            "waiter_name",
            "unique_code",
            "unique_bill_code_pos",
            *_SPLIT_COLUMNS,
            "shift_id",
            "create_date",
            "is_success",
            "is_failed",
            "response",
            "update_date",
        ),
        delete_marker=("PRODUCT_REMOVED", "DELETE"),
        split_flag_column="is_split_table",
    ),
    TableSpec(
        name="PaymentEvents",
        relation="payment_events",
        queue="pos.payments",
        kind=KIND_PAYMENT,
        classification_column="status",
        bill_column="folio",
        fingerprint_columns=("id_forma_de_pago",),
        pending_predicate="t.update_date IS NULL",
        success_assignments=_OUTCOME_FLAGS_SUCCESS,
        failure_assignments=_OUTCOME_FLAGS_FAILURE,
        columns=(
            "id",
            "folio",
            "id_forma_de_pago",
            "importe",
            "propina",
            "referencia",
            "workspace_id",
            "unique_bill_code_pos",
            "method",
            "table_number",
            "order_number",
            *_SPLIT_COLUMNS,
            "status",
            "operation_type",
            "create_date",
            "is_success",
            "is_failed",
            "response",
            "update_date",
        ),
        split_flag_column="is_split_table",
        claim_rows=True,
    ),
    TableSpec(
        name="TurnoEvents",
        relation="shift_events",
        queue="pos.shifts",
        kind=KIND_SHIFT,
        classification_column="status",
        bill_column=None,
        fingerprint_columns=("id_turno",),
        pending_predicate="t.update_date IS NULL",
        success_assignments=_OUTCOME_FLAGS_SUCCESS,
        failure_assignments=_OUTCOME_FLAGS_FAILURE,
        columns=(
            "id",
            "id_turno_interno",
            "id_turno",
            "fondo",
            "apertura",
            "cierre",
            "cajero",
            "efectivo",
            "tarjeta",
            "vales",
            "credito",
            "corte_enviado",
            "status",
            "operation_type",
            "create_date",
            "is_success",
            "is_failed",
            "response",
            "update_date",
        ),
    ),
)


def _require_identifier(value: str, what: str) -> str:
    if not _IDENTIFIER.match(value):
        raise RegistryError(f"invalid {what} identifier: {value!r}")
    return value


def _compile(schema: str, spec: TableSpec) -> TableQueries:
    # Versions are assigned before commit, so a slow writer can land below the
    # watermark. Recent log entries are rescanned; handled rows drop out on
    # their response column.
    relation = f"{schema}.{spec.relation}"
    scan = f"""
        WITH latest AS (
            SELECT DISTINCT ON (cl.row_id)
                   cl.row_id, cl.version, cl.operation
              FROM {schema}.{CHANGE_LOG_RELATION} cl
             WHERE cl.table_name = %(table)s
               AND (cl.version > %(watermark)s
                    OR cl.changed_at >= now() - make_interval(secs => %(catchup)s))
             ORDER BY cl.row_id, cl.version DESC
        )
        SELECT t.*,
               latest.version AS change_version,
               latest.operation AS change_operation
          FROM latest
          JOIN {relation} t ON t.id = latest.row_id
         WHERE latest.operation IN ('I', 'U')
           AND t.response IS NULL
           AND {spec.pending_predicate}
         ORDER BY latest.version
         LIMIT %(limit)s
        """
    claim = f"""
        UPDATE {relation}
           SET response = %(marker)s
         WHERE id = ANY(%(ids)s)
           AND response IS NULL
     RETURNING id
        """
    write_success = f"UPDATE {relation} SET {spec.success_assignments} WHERE id = %(id)s"
    write_failure = f"UPDATE {relation} SET {spec.failure_assignments} WHERE id = %(id)s"
    return TableQueries(
        scan=scan,
        claim=claim,
        write_success=write_success,
        write_failure=write_failure,
    )


class TrackedTableRegistry:
    """Maps logical table names to their spec and compiled query templates."""

    def __init__(
        self,
        schema: str,
        specs: Iterable[TableSpec] = DEFAULT_TABLES,
        *,
        claim_tables: Optional[Sequence[str]] = None,
    ) -> None:
        self.schema = _require_identifier(schema, "schema")
        self._specs: Dict[str, TableSpec] = {}
        self._queries: Dict[str, TableQueries] = {}
        for spec in specs:
            _require_identifier(spec.relation, "relation")
            for column in spec.columns:
                _require_identifier(column, "column")
            if claim_tables is not None:
                spec = replace(spec, claim_rows=spec.name in claim_tables)
            if spec.name in self._specs:
                raise RegistryError(f"duplicate tracked table {spec.name}")
            self._specs[spec.name] = spec
            self._queries[spec.name] = _compile(self.schema, spec)

    def __iter__(self) -> Iterator[TableSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> List[str]:
        return list(self._specs)

    def get(self, name: str) -> TableSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise RegistryError(f"table {name} is not tracked") from None

    def queries(self, name: str) -> TableQueries:
        self.get(name)
        return self._queries[name]

    def by_kind(self, kind: str) -> Optional[TableSpec]:
        for spec in self._specs.values():
            if spec.kind == kind:
                return spec
        return None

    def qualified(self, spec: TableSpec) -> str:
        return f"{self.schema}.{spec.relation}"

    def validate(self, conn: Connection) -> None:
        """Check every referenced relation and column exists; raise otherwise."""
        try:
            rows = conn.execute(
                """
                SELECT table_name, column_name
                  FROM information_schema.columns
                 WHERE table_schema = %s
                """,
                (self.schema,),
            ).fetchall()
        except Error as exc:  # noqa: BLE001 - wrap driver errors
            raise RegistryError(f"schema introspection failed: {exc}") from exc

        available: Dict[str, set] = {}
        for row in rows:
            available.setdefault(row["table_name"], set()).add(row["column_name"])

        problems: List[str] = []
        if CHANGE_LOG_RELATION not in available:
            problems.append(f"{self.schema}.{CHANGE_LOG_RELATION} is missing")
        for spec in self._specs.values():
            present = available.get(spec.relation)
            if present is None:
                problems.append(f"{self.qualified(spec)} is missing")
                continue
            missing = [column for column in spec.columns if column not in present]
            if missing:
                problems.append(
                    f"{self.qualified(spec)} lacks columns: {', '.join(missing)}"
                )
        if problems:
            raise RegistryError("; ".join(problems))
        logger.info(
            "validated %d tracked tables in schema %s", len(self._specs), self.schema
        )


__all__ = [
    "CHANGE_LOG_RELATION",
    "DEFAULT_TABLES",
    "KIND_PAYMENT",
    "KIND_PRODUCT",
    "KIND_SHIFT",
    "KIND_TICKET",
    "RegistryError",
    "TableQueries",
    "TableSpec",
    "TrackedTableRegistry",
]
