"""Error taxonomy for the sync engine.

Each error carries the scope it aborts:

* :class:`ChunkFetchError`, :class:`TransformError`, :class:`WriteError` --
  one chunk (or one deletion batch); sibling chunks keep going.
* :class:`SchemaReadError`, :class:`CountError` -- one table; the
  orchestrator moves on to the next table.
* :class:`SyncConnectionError` -- the whole run; remaining hops are skipped.

The driver exception that caused the failure is kept on ``cause`` and is
also chained via ``raise ... from``.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class SchemaReadError(SyncError):
    """Table columns or key could not be read (or the target table created)."""

    def __init__(self, table: str, cause: Optional[BaseException] = None, detail: str = "") -> None:
        msg = f"Cannot introspect table {table!r}"
        if detail:
            msg += f": {detail}"
        elif cause is not None:
            msg += f": {cause}"
        super().__init__(msg, cause)
        self.table = table


class CountError(SyncError):
    """The source row count query failed."""

    def __init__(self, table: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Cannot count rows in {table!r}: {cause}", cause)
        self.table = table


class ChunkFetchError(SyncError):
    """A page of rows (or keys) could not be read from the source."""

    def __init__(
        self, table: str, offset: int, cause: Optional[BaseException] = None, detail: str = "",
    ) -> None:
        msg = f"Cannot fetch {table!r} at offset {offset}: {detail or cause}"
        super().__init__(msg, cause)
        self.table = table
        self.offset = offset


class TransformError(SyncError):
    """A fetched page could not be anonymized; nothing from it is written."""

    def __init__(
        self, table: str, offset: int, cause: Optional[BaseException] = None, detail: str = "",
    ) -> None:
        msg = f"Cannot anonymize {table!r} at offset {offset}: {detail or cause!r}"
        super().__init__(msg, cause)
        self.table = table
        self.offset = offset


class WriteError(SyncError):
    """An upsert or delete statement failed at the destination."""

    def __init__(self, table: str, cause: Optional[BaseException] = None, detail: str = "") -> None:
        super().__init__(f"Write to {table!r} failed: {detail or cause}", cause)
        self.table = table


class SyncConnectionError(SyncError):
    """A database connection could not be opened or was lost mid-run."""

    def __init__(self, database: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Connection to {database} failed: {cause}", cause)
        self.database = database


def is_connection_lost(exc: BaseException) -> bool:
    """Return ``True`` if *exc* is a driver error in SQLSTATE class ``08``.

    pyodbc puts the SQLSTATE in ``args[0]``; class 08 covers "connection
    exception" (08S01 communication link failure, 08003 not open, ...).
    """
    args = getattr(exc, "args", ())
    if not args or not isinstance(args[0], str):
        return False
    return args[0].startswith("08")
