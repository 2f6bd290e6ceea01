"""Database Access capability consumed by the sync engine.

:class:`Database` wraps a zero-argument DB-API 2.0 connection factory and a
:class:`~anonsync.dialects.Dialect`.  Each thread that touches a
``Database`` gets its own connection, opened lazily on first use, so a
worker pool can fan out over chunks without sharing a connection.  All
connections are closed by :meth:`Database.close`.

Driver errors are passed through unchanged, except those that mean the
connection itself is gone (SQLSTATE class 08, or a failure to connect at
all), which become :class:`~anonsync.errors.SyncConnectionError`.
"""

from __future__ import annotations

import logging
import threading
from contextlib import closing, contextmanager
from types import TracebackType
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Type

from ._constants import DEFAULT_DIALECT
from .dialects import get_dialect
from .errors import SyncConnectionError, SyncError, is_connection_lost
from .schema import Column

logger = logging.getLogger(__name__)


def _execute(cur: Any, sql: str, params: Sequence[Any] = ()) -> None:
    if params:
        cur.execute(sql, tuple(params))
    else:
        cur.execute(sql)


class _Session:
    """Per-thread connection plus the cursor of the open transaction, if any."""

    __slots__ = ("conn", "cursor", "depth")

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self.cursor: Optional[Any] = None
        self.depth = 0


class Database:
    """Thread-aware access to one database.

    Args:
        connect:           Zero-argument callable returning a new DB-API
                           connection (``qmark`` parameter style).
        dialect:           ``"mysql"``, ``"mssql"`` or ``"sqlite"``.
        name:              Label used in logs and errors (e.g. ``"staging"``).
        statement_timeout: Per-statement timeout in seconds, applied through
                           the driver's ``Connection.timeout`` where it has one.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        dialect: str = DEFAULT_DIALECT,
        *,
        name: str = "database",
        statement_timeout: Optional[int] = None,
    ) -> None:
        self.name = name
        self.dialect = get_dialect(dialect)
        self.statement_timeout = statement_timeout
        self._connect = connect
        self._lock = threading.Lock()
        self._sessions: Dict[int, _Session] = {}

    # -- connections ---------------------------------------------------------

    def _session(self) -> _Session:
        ident = threading.get_ident()
        with self._lock:
            session = self._sessions.get(ident)
        if session is not None:
            return session
        try:
            conn = self._connect()
        except Exception as exc:
            raise SyncConnectionError(self.name, exc) from exc
        if self.statement_timeout and hasattr(conn, "timeout"):
            conn.timeout = self.statement_timeout
        session = _Session(conn)
        with self._lock:
            self._sessions[ident] = session
        logger.debug("%s: opened connection for thread %d", self.name, ident)
        return session

    def connection(self) -> Any:
        """Return this thread's connection, opening it if needed."""
        return self._session().conn

    def translate_error(self, exc: Exception) -> Exception:
        """Return a :class:`SyncConnectionError` for connection loss, else *exc*."""
        if not isinstance(exc, SyncError) and is_connection_lost(exc):
            return SyncConnectionError(self.name, exc)
        return exc

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Yield a cursor inside a transaction; commit on success, roll back on error.

        Nested use on the same thread joins the outer transaction, so a
        caller can scope several statements (e.g. one chunk) to a single
        commit.
        """
        session = self._session()
        if session.depth:
            session.depth += 1
            try:
                yield session.cursor
            finally:
                session.depth -= 1
            return

        with closing(session.conn.cursor()) as cur:
            session.cursor = cur
            session.depth = 1
            try:
                yield cur
                session.conn.commit()
            except Exception as exc:
                try:
                    session.conn.rollback()
                except Exception as rb_exc:
                    logger.warning("%s: rollback failed: %s", self.name, rb_exc)
                translated = self.translate_error(exc)
                if translated is not exc:
                    raise translated from exc
                raise
            finally:
                session.depth = 0
                session.cursor = None

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        """Run a SELECT and return all rows."""
        try:
            with closing(self.connection().cursor()) as cur:
                _execute(cur, sql, params)
                return list(cur.fetchall())
        except Exception as exc:
            translated = self.translate_error(exc)
            if translated is not exc:
                raise translated from exc
            raise

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement in a transaction and return the affected row count."""
        with self.transaction() as cur:
            _execute(cur, sql, params)
            return cur.rowcount

    # -- catalog and reads ---------------------------------------------------

    def list_tables(self) -> List[str]:
        sql, params = self.dialect.list_tables_sql()
        return [row[0] for row in self.query(sql, params)]

    def describe_columns(self, table: str) -> List[Column]:
        sql, params = self.dialect.columns_sql(table)
        return [self.dialect.column_from_row(row) for row in self.query(sql, params)]

    def primary_key(self, table: str) -> List[str]:
        sql, params = self.dialect.primary_key_sql(table)
        return self.dialect.primary_key_from_rows(self.query(sql, params))

    def count(self, table: str) -> int:
        rows = self.query(self.dialect.count_sql(table))
        return int(rows[0][0]) if rows else 0

    def fetch_page(
        self, table: str, columns: Sequence[str], key: str, offset: int, limit: int,
    ) -> List[Any]:
        """Return up to *limit* rows starting at *offset*, ordered by *key*."""
        sql = self.dialect.page_sql(table, columns, key)
        return self.query(sql, self.dialect.page_params(offset, limit))

    def fetch_keys(self, table: str, key: str, offset: int, limit: int) -> List[Any]:
        """Return up to *limit* values of *key* starting at *offset*, in key order."""
        sql = self.dialect.keys_sql(table, key)
        return [row[0] for row in self.query(sql, self.dialect.page_params(offset, limit))]

    # -- lifecycle -----------------------------------------------------------

    def test_connectivity(self) -> bool:
        """Run ``SELECT 1`` and return ``True`` on success, ``False`` on failure."""
        try:
            self.query("SELECT 1")
            return True
        except Exception as exc:
            logger.debug("%s: connectivity check failed: %s", self.name, exc)
            return False

    def release_other_threads(self) -> None:
        """Close connections opened by threads other than the caller's."""
        me = threading.get_ident()
        with self._lock:
            stale = [i for i in self._sessions if i != me]
            sessions = [self._sessions.pop(i) for i in stale]
        for session in sessions:
            self._close_conn(session.conn)

    def close(self) -> None:
        """Close every connection opened through this object."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._close_conn(session.conn)

    def _close_conn(self, conn: Any) -> None:
        try:
            conn.close()
        except Exception as exc:
            logger.warning("%s: error closing connection: %s", self.name, exc)

    def __enter__(self) -> "Database":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Database(name={self.name!r}, dialect={self.dialect.name!r})"
