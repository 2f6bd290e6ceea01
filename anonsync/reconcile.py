"""Removal of destination rows that no longer exist at the source.

Source keys are paged in key order with the same chunking as extraction
and collected into one cumulative set.  The destination's keys are then
paged the same way, and every key outside that set is deleted by value
(``WHERE key IN (...)``).  Only key equality decides what goes: the two
sides may sort keys differently (collations are not copied to the
target), so no key range from one side is ever applied to the other.
Every source row present at scan time survives and nothing else does.

The cumulative set holds every source key in memory for the duration of
the pass.

This is not snapshot-isolated against writers on the source: a row
inserted after its page of keys was read is deleted from the destination
and comes back on the next run.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence, Set

from .errors import ChunkFetchError, SyncConnectionError, SyncError, WriteError

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[SyncError], None]


def _fetch_keys(db: Any, table: str, key: str, offset: int, limit: int) -> List[Any]:
    try:
        return db.fetch_keys(table, key, offset, limit)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise ChunkFetchError(table, offset, exc) from exc


def source_keys(source: Any, table: str, key: str, chunk_size: int) -> Set[Any]:
    """Return every value of *key* in *table* on *source*, read page by page."""
    seen: Set[Any] = set()
    offset = 0
    while True:
        keys = _fetch_keys(source, table, key, offset, chunk_size)
        if not keys:
            return seen
        seen.update(keys)
        offset += len(keys)


def _delete_keys(target: Any, table: str, key: str, keys: Sequence[Any]) -> int:
    sql = target.dialect.delete_keys_sql(table, key, len(keys))
    try:
        return max(target.execute(sql, list(keys)), 0)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise WriteError(table, exc) from exc


def reconcile_deletions(
    source: Any,
    target: Any,
    table: str,
    key: str,
    chunk_size: int,
    *,
    on_error: Optional[ErrorHandler] = None,
) -> int:
    """Delete rows of *table* on *target* whose *key* is absent on *source*.

    Returns the number of rows deleted.  A failed delete batch is passed to
    *on_error* and the pass moves on to the next page; without a handler
    it is raised.  A failed key fetch on either side always stops the pass
    (:class:`ChunkFetchError`), since a partial key set would delete rows
    that still exist.
    """
    seen = source_keys(source, table, key, chunk_size)
    logger.debug("%s: %d source key(s) collected", table, len(seen))

    limit = max(1, min(chunk_size, target.dialect.max_params))
    offset = 0
    deleted = 0
    while True:
        keys = _fetch_keys(target, table, key, offset, limit)
        if not keys:
            break
        obsolete = [k for k in keys if k not in seen]
        kept = len(keys)
        if obsolete:
            try:
                n = _delete_keys(target, table, key, obsolete)
                deleted += n
                # deleted rows no longer occupy positions in the key order
                kept -= len(obsolete)
                logger.debug("%s: deleted %d row(s) at offset %d", table, n, offset)
            except WriteError as exc:
                if on_error is None:
                    raise
                logger.error("%s: delete batch at offset %d failed: %s", table, offset, exc)
                on_error(exc)
        offset += kept

    logger.info("%s: removed %d obsolete row(s)", table, deleted)
    return deleted
