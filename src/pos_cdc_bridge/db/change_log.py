"""Idempotent installer for the versioned change log and its row triggers."""

from __future__ import annotations

import logging
from typing import List

from psycopg2 import Error

from . import Connection
from .registry import CHANGE_LOG_RELATION, TrackedTableRegistry

logger = logging.getLogger(__name__)

TRIGGER_FUNCTION = "log_row_change"


class ChangeTrackingError(Exception):
    """Raised when the change-log objects cannot be installed."""


def build_install_statements(registry: TrackedTableRegistry) -> List[str]:
    """Return the DDL needed to track every registered table, in order."""
    schema = registry.schema
    log = f"{schema}.{CHANGE_LOG_RELATION}"
    statements = [
        f"CREATE SCHEMA IF NOT EXISTS {schema}",
        f"""
        CREATE TABLE IF NOT EXISTS {log} (
            version BIGSERIAL PRIMARY KEY,
            table_name TEXT NOT NULL,
            row_id INTEGER NOT NULL,
            operation CHAR(1) NOT NULL CHECK (operation IN ('I', 'U', 'D')),
            changed_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        f"""
        CREATE INDEX IF NOT EXISTS {CHANGE_LOG_RELATION}_table_version_idx
            ON {log} (table_name, version)
        """,
        f"""
        CREATE INDEX IF NOT EXISTS {CHANGE_LOG_RELATION}_table_changed_idx
            ON {log} (table_name, changed_at)
        """,
        # Updates that carry a response are this service's own claims and
        # write-backs; they are not logged. changed_at is the wall-clock time of
        # the change, not of its transaction start.
        f"""
        CREATE OR REPLACE FUNCTION {schema}.{TRIGGER_FUNCTION}() RETURNS trigger AS $$
        BEGIN
            IF TG_OP = 'INSERT' THEN
                INSERT INTO {log} (table_name, row_id, operation, changed_at)
                VALUES (TG_TABLE_NAME, NEW.id, 'I', clock_timestamp());
                RETURN NEW;
            ELSIF TG_OP = 'UPDATE' THEN
                IF NEW.response IS NULL THEN
                    INSERT INTO {log} (table_name, row_id, operation, changed_at)
                    VALUES (TG_TABLE_NAME, NEW.id, 'U', clock_timestamp());
                END IF;
                RETURN NEW;
            END IF;
            INSERT INTO {log} (table_name, row_id, operation, changed_at)
            VALUES (TG_TABLE_NAME, OLD.id, 'D', clock_timestamp());
            RETURN OLD;
        END;
        $$ LANGUAGE plpgsql
        """,
    ]
    for spec in registry:
        relation = registry.qualified(spec)
        trigger = f"{spec.relation}_change_log"
        statements.append(f"DROP TRIGGER IF EXISTS {trigger} ON {relation}")
        statements.append(
            f"""
            CREATE TRIGGER {trigger}
                AFTER INSERT OR UPDATE OR DELETE ON {relation}
                FOR EACH ROW EXECUTE FUNCTION {schema}.{TRIGGER_FUNCTION}()
            """
        )
    return statements


class ChangeTrackingInstaller:
    """Creates the change log, trigger function and per-table triggers."""

    def __init__(self, registry: TrackedTableRegistry) -> None:
        self._registry = registry

    def install(self, conn: Connection) -> None:
        statements = build_install_statements(self._registry)
        try:
            with conn.transaction():
                for statement in statements:
                    conn.execute(statement)
        except Error as exc:  # noqa: BLE001 - wrap driver errors
            raise ChangeTrackingError(f"change tracking install failed: {exc}") from exc
        logger.info(
            "change tracking installed for %s in schema %s",
            ", ".join(self._registry.names()),
            self._registry.schema,
        )


__all__ = ["ChangeTrackingError", "ChangeTrackingInstaller", "build_install_statements"]
