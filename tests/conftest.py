"""Shared fixtures for anonsync tests."""

from __future__ import annotations

import sqlite3
from typing import Any, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from anonsync.database import Database


class FakeCursor:
    """Lightweight stand-in for a DB-API 2.0 cursor.

    Supply ``results`` as a list of lists -- each inner list is a set of rows
    returned by one successive ``execute()`` call.  Every call is recorded in
    ``executed`` as ``(sql, params)``.
    """

    def __init__(
        self,
        results: Optional[List[List[Tuple[Any, ...]]]] = None,
        rowcount: int = -1,
    ) -> None:
        self._results = list(results or [])
        self._call_idx = -1
        self._rows: List[Tuple[Any, ...]] = []
        self.rowcount = rowcount
        self.executed: List[Tuple[str, Any]] = []
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> None:
        self.executed.append((sql, params))
        self._call_idx += 1
        if self._call_idx < len(self._results):
            self._rows = list(self._results[self._call_idx])
        else:
            self._rows = []

    def fetchall(self) -> List[Tuple[Any, ...]]:
        return self._rows

    def fetchone(self) -> Optional[Tuple[Any, ...]]:
        return self._rows[0] if self._rows else None

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_cursor():
    """Return the ``FakeCursor`` *class* so tests can instantiate with custom data."""
    return FakeCursor


@pytest.fixture()
def mock_conn():
    """Return a ``MagicMock`` that looks like a DB-API 2.0 connection."""
    conn = MagicMock()
    return conn


@pytest.fixture()
def make_sqlite(tmp_path):
    """Factory: ``make_sqlite("name")`` -> ``Database`` over a SQLite file in *tmp_path*.

    File-backed so worker threads (one connection each) see the same data.
    """
    opened: List[Database] = []

    def _make(name: str, **kwargs: Any) -> Database:
        path = tmp_path / f"{name}.db"
        db = Database(
            lambda: sqlite3.connect(str(path), check_same_thread=False),
            "sqlite",
            name=name,
            **kwargs,
        )
        opened.append(db)
        return db

    yield _make
    for db in opened:
        db.close()


@pytest.fixture()
def source_target(make_sqlite):
    """A ``(source, target)`` pair of empty SQLite databases."""
    return make_sqlite("source"), make_sqlite("target")


USERS_DDL = (
    "CREATE TABLE users ("
    "id INTEGER PRIMARY KEY, email TEXT, password TEXT, name TEXT NOT NULL)"
)


@pytest.fixture()
def users_ddl():
    """DDL for a small ``users`` table carrying anonymized columns."""
    return USERS_DDL


@pytest.fixture()
def seed():
    """``seed(db, ddl, table, rows)`` creates a table and inserts *rows* (dicts)."""

    def _seed(db: Database, ddl: Optional[str], table: str, rows: List[dict]) -> None:
        if ddl:
            db.execute(ddl)
        for row in rows:
            cols = ", ".join(row)
            marks = ", ".join("?" * len(row))
            db.execute(f"INSERT INTO {table} ({cols}) VALUES ({marks})", list(row.values()))

    return _seed


@pytest.fixture()
def rows_of():
    """``rows_of(db, table)`` -> list of dicts ordered by ``id``."""

    def _rows(db: Database, table: str, order_by: str = "id") -> List[dict]:
        cur = db.connection().cursor()
        cur.execute(f"SELECT * FROM {table} ORDER BY {order_by}")
        names = [d[0] for d in cur.description]
        return [dict(zip(names, row)) for row in cur.fetchall()]

    return _rows
