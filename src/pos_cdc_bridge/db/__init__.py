"""psycopg2 helpers shared by the change source, write-back and installer."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Optional, Sequence

import psycopg2
from psycopg2 import Error, OperationalError
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from pos_cdc_bridge.config import Settings


class _DictRowSentinel:
    """Sentinel representing row factory for dictionary rows."""


dict_row = _DictRowSentinel()

_USE_DEFAULT_FACTORY = object()


class _ExecuteResult:
    def __init__(self, cursor):
        self._cursor = cursor
        self._rows: Optional[list] = None
        self._index = 0
        self.rowcount = cursor.rowcount
        self._load_rows()

    def fetchone(self):
        rows = self._load_rows()
        if self._index >= len(rows):
            return None
        row = rows[self._index]
        self._index += 1
        return row

    def fetchall(self):
        rows = self._load_rows()
        remaining = rows[self._index :]
        self._index = len(rows)
        return remaining

    def __iter__(self) -> Iterator:
        rows = self._load_rows()
        start = self._index
        self._index = len(rows)
        return iter(rows[start:])

    def _load_rows(self) -> list:
        if self._rows is None:
            if self._cursor.description is not None:
                self._rows = list(self._cursor.fetchall())
            else:
                self._rows = []
            self._cursor.close()
        return self._rows


class _Transaction:
    """Groups statements on an autocommit connection into one transaction."""

    def __init__(self, connection: "Connection"):
        self._connection = connection

    def __enter__(self) -> None:
        self._connection.autocommit = False
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                self._connection.commit()
            else:
                self._connection.rollback()
        finally:
            self._connection.autocommit = True
        return False


class Connection(psycopg2.extensions.connection):
    """psycopg2 connection subclass providing convenience helpers used by the service."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.autocommit = True
        self._row_factory = None

    def transaction(self) -> _Transaction:
        return _Transaction(self)

    def cursor(self, *args, **kwargs):
        row_factory = kwargs.pop("row_factory", _USE_DEFAULT_FACTORY)
        if kwargs.get("cursor_factory") is None:
            if row_factory is dict_row:
                kwargs["cursor_factory"] = RealDictCursor
            elif row_factory is _USE_DEFAULT_FACTORY:
                if self._row_factory is dict_row:
                    kwargs["cursor_factory"] = RealDictCursor
            elif row_factory is not None:
                kwargs["cursor_factory"] = row_factory
        return super().cursor(*args, **kwargs)

    def execute(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> _ExecuteResult:
        cursor = self.cursor()
        cursor.execute(query, params)
        return _ExecuteResult(cursor)

    @property
    def row_factory(self):
        return self._row_factory

    @row_factory.setter
    def row_factory(self, factory) -> None:
        self._row_factory = factory


class ConnectionPool:
    """Thread-safe pool handing out dict-row :class:`Connection` objects."""

    def __init__(self, minconn: int, maxconn: int, **connect_kwargs: Any) -> None:
        connect_kwargs.setdefault("connection_factory", Connection)
        self._pool = ThreadedConnectionPool(
            max(1, minconn), max(minconn, maxconn, 1), **connect_kwargs
        )

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        conn = self._pool.getconn()
        conn.row_factory = dict_row
        broken = False
        try:
            yield conn
        except OperationalError:
            broken = True
            raise
        finally:
            if conn.closed:
                broken = True
            self._pool.putconn(conn, close=broken)

    def close(self) -> None:
        if not self._pool.closed:
            self._pool.closeall()


def connect(*args, **kwargs) -> Connection:
    """Create a Connection instance using psycopg2."""

    kwargs.setdefault("connection_factory", Connection)
    return psycopg2.connect(*args, **kwargs)


def _connect_kwargs(settings: "Settings") -> dict:
    return {
        "host": settings.db_host,
        "port": settings.db_port,
        "dbname": settings.db_name,
        "user": settings.db_user,
        "password": settings.db_password,
        "application_name": "pos-cdc-bridge",
    }


def connect_from_settings(settings: "Settings") -> Connection:
    """Create a psycopg2 connection using the provided service settings."""

    return connect(**_connect_kwargs(settings))


def pool_from_settings(settings: "Settings") -> ConnectionPool:
    """Create the shared connection pool used by all table processors."""

    return ConnectionPool(
        settings.db_pool_min, settings.db_pool_max, **_connect_kwargs(settings)
    )


__all__ = [
    "Connection",
    "ConnectionPool",
    "Error",
    "OperationalError",
    "connect",
    "connect_from_settings",
    "dict_row",
    "pool_from_settings",
]
