"""Insert-or-update of record batches at the destination.

Two strategies produce the same end state:

``native``
    One ``INSERT ... ON DUPLICATE KEY UPDATE`` / ``ON CONFLICT DO UPDATE`` /
    ``MERGE`` statement per chunk.  Every non-key column of an existing row
    is overwritten with the incoming value (last writer wins).

``case``
    For drivers or servers without usable upsert syntax: look up which keys
    already exist, bulk-insert the rest, then issue one ``UPDATE`` per
    non-key column that maps each key to its new value through
    ``CASE key WHEN ? THEN ? ... END``, restricted to the keys being updated.

Values are always bound parameters.  A statement that would exceed the
dialect's parameter limit is split into several statements of whole rows.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, List, Sequence, Set, Tuple

from ._constants import DEFAULT_UPDATE_STRATEGY, VALID_UPDATE_STRATEGIES
from .dialects import Dialect
from .errors import SyncConnectionError, WriteError
from .schema import Record

logger = logging.getLogger(__name__)

Statement = Tuple[str, List[Any]]


def _batched(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    size = max(1, size)
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _rows_per_statement(dialect: Dialect, n_cols: int) -> int:
    rows = dialect.max_params // n_cols
    if dialect.max_rows:
        rows = min(rows, dialect.max_rows)
    return rows


def record_columns(table: str, records: Sequence[Record], key: str) -> List[str]:
    """Return the column list shared by *records* (the first record's keys).

    Every record must carry exactly the same columns, including *key*.
    """
    columns = list(records[0])
    if key not in columns:
        raise WriteError(table, detail=f"records have no key column {key!r}")
    expected = set(columns)
    for i, rec in enumerate(records):
        if set(rec) != expected:
            raise WriteError(
                table,
                detail=(
                    f"record {i} has columns {sorted(rec)}, "
                    f"expected {sorted(expected)}"
                ),
            )
    return columns


def build_upsert(
    dialect: Dialect, table: str, records: Sequence[Record], key: str,
) -> List[Statement]:
    """Return the native upsert statement(s) for *records*."""
    columns = record_columns(table, records, key)
    out: List[Statement] = []
    for batch in _batched(records, _rows_per_statement(dialect, len(columns))):
        sql = dialect.upsert_sql(table, columns, key, len(batch))
        out.append((sql, [rec[c] for rec in batch for c in columns]))
    return out


def build_insert(
    dialect: Dialect, table: str, records: Sequence[Record], columns: Sequence[str],
) -> List[Statement]:
    out: List[Statement] = []
    for batch in _batched(records, _rows_per_statement(dialect, len(columns))):
        sql = dialect.insert_sql(table, columns, len(batch))
        out.append((sql, [rec[c] for rec in batch for c in columns]))
    return out


def build_case_updates(
    dialect: Dialect, table: str, records: Sequence[Record], key: str, columns: Sequence[str],
) -> List[Statement]:
    """One ``UPDATE ... CASE`` statement per non-key column (per batch)."""
    out: List[Statement] = []
    # each row binds key + value in the CASE and key again in the IN list
    for batch in _batched(records, dialect.max_params // 3):
        for column in columns:
            if column == key:
                continue
            params: List[Any] = []
            for rec in batch:
                params.extend((rec[key], rec[column]))
            params.extend(rec[key] for rec in batch)
            out.append((dialect.case_update_sql(table, column, key, len(batch)), params))
    return out


def _existing_keys(cur: Any, dialect: Dialect, table: str, key: str, keys: Sequence[Any]) -> Set[Any]:
    found: Set[Any] = set()
    for batch in _batched(keys, dialect.max_params):
        cur.execute(dialect.existing_keys_sql(table, key, len(batch)), tuple(batch))
        found.update(row[0] for row in cur.fetchall())
    return found


def _run(cur: Any, statements: Sequence[Statement], n_rows: int) -> int:
    affected = 0
    unknown = False
    for sql, params in statements:
        cur.execute(sql, tuple(params))
        if cur.rowcount is None or cur.rowcount < 0:
            unknown = True
        else:
            affected += cur.rowcount
    return n_rows if unknown else affected


def upsert(
    db: Any,
    table: str,
    records: Sequence[Record],
    key: str,
    *,
    strategy: str = DEFAULT_UPDATE_STRATEGY,
) -> int:
    """Write *records* to *table* on *db*, inserting or overwriting by *key*.

    Runs inside ``db.transaction()``; when the caller already holds a
    transaction on this thread the statements join it.

    Returns the driver-reported affected row count (``len(records)`` when
    the driver cannot tell).  Raises :class:`WriteError` on any statement
    failure and :class:`SyncConnectionError` if the connection is lost.
    """
    if strategy not in VALID_UPDATE_STRATEGIES:
        raise ValueError(
            f"Invalid update strategy {strategy!r}; "
            f"must be one of {sorted(VALID_UPDATE_STRATEGIES)}"
        )
    if not records:
        return 0

    dialect = db.dialect
    columns = record_columns(table, records, key)

    try:
        with db.transaction() as cur:
            if strategy == "native":
                return _run(cur, build_upsert(dialect, table, records, key), len(records))

            existing = _existing_keys(cur, dialect, table, key, [r[key] for r in records])
            to_insert = [r for r in records if r[key] not in existing]
            to_update = [r for r in records if r[key] in existing]
            logger.debug(
                "%s: %d insert(s), %d update(s) via CASE", table, len(to_insert), len(to_update),
            )
            affected = 0
            if to_insert:
                affected += _run(cur, build_insert(dialect, table, to_insert, columns), len(to_insert))
            if to_update:
                _run(cur, build_case_updates(dialect, table, to_update, key, columns), len(to_update))
                affected += len(to_update)
            return affected
    except (SyncConnectionError, WriteError):
        raise
    except Exception as exc:
        translated = db.translate_error(exc)
        if translated is not exc:
            raise translated from exc
        raise WriteError(table, exc) from exc
