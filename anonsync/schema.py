"""Table schema discovery and target table creation.

Columns are read from the *source* catalog in definition order and that
order is kept everywhere downstream: the ``CREATE TABLE`` issued on the
target, the SELECT list used to page through the source, and therefore the
key order of every record.

A target table that already exists is trusted as-is; column drift between
source and target is not reconciled.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Sequence, Union

from .errors import ChunkFetchError, SchemaReadError, SyncConnectionError

logger = logging.getLogger(__name__)


class Column(NamedTuple):
    name: str
    type: str
    nullable: bool


Value = Union[None, bool, int, float, Decimal, str, date, datetime, time]
Record = Dict[str, Value]


def describe_columns(db: Any, table: str) -> List[Column]:
    """Return the ordered columns of *table* as seen by *db*.

    Raises :class:`SchemaReadError` when the catalog query fails or
    returns nothing (dropped table, revoked privileges).
    """
    try:
        columns = db.describe_columns(table)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise SchemaReadError(table, exc) from exc
    if not columns:
        raise SchemaReadError(
            table, detail="no columns visible (table missing or not readable)",
        )
    logger.debug("%s: %d column(s): %s", table, len(columns), [c.name for c in columns])
    return columns


def primary_key(db: Any, table: str) -> List[str]:
    """Return the primary-key column names for *table* (may be empty)."""
    try:
        return db.primary_key(table)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise SchemaReadError(table, exc) from exc


def resolve_key_column(
    table: str, columns: Sequence[Column], pk_cols: Sequence[str], default: str = "id",
) -> str:
    """Pick the single column used to page, upsert and reconcile *table*.

    A single-column primary key wins; otherwise a column named *default*
    is used if present.  Composite or missing keys are rejected.
    """
    if len(pk_cols) == 1:
        return pk_cols[0]
    names = {c.name for c in columns}
    if default in names:
        if pk_cols:
            logger.warning(
                "%s has a composite primary key %s; keying on %r instead",
                table, list(pk_cols), default,
            )
        return default
    raise SchemaReadError(
        table,
        detail=(
            f"no single-column primary key (found {list(pk_cols)}) "
            f"and no {default!r} column"
        ),
    )


def ensure_table_exists(db: Any, table: str, columns: Sequence[Column], key: str) -> None:
    """Create *table* on *db* from *columns* unless it already exists.

    Safe to call on every run.
    """
    sql, params = db.dialect.create_table_sql(table, columns, key)
    try:
        with db.transaction() as cur:
            cur.execute(sql, params)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise SchemaReadError(table, exc, detail=f"cannot create target table: {exc}") from exc


def to_records(
    table: str, offset: int, columns: Sequence[Column], rows: Sequence[Sequence[Any]],
) -> List[Record]:
    """Zip driver *rows* with the introspected *columns* into records.

    A row whose width does not match the column list means the source
    changed shape under us; that page is rejected.
    """
    names = [c.name for c in columns]
    records: List[Record] = []
    for row in rows:
        if len(row) != len(names):
            raise ChunkFetchError(
                table, offset,
                detail=f"row has {len(row)} value(s), expected {len(names)}",
            )
        records.append(dict(zip(names, row)))
    return records
