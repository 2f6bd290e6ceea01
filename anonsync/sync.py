"""Core sync engine: copy one table from a source to a target database.

Each table runs through a small state machine::

    INTROSPECTING -> COUNTING -> DISPATCHING -> RECONCILING -> DONE
                  \\-----------------\\------------------------> FAILED

``INTROSPECTING`` reads the source columns and key and creates the target
table if needed.  ``COUNTING`` snapshots the source row count.
``DISPATCHING`` pages through the source chunk by chunk (fetch, transform,
upsert), sequentially or on a bounded thread pool.  ``RECONCILING`` deletes
destination rows whose key is gone from the source; it starts only after
every chunk has finished.  Skip-listed tables end in ``SKIPPED`` without
either database being touched.

Failure scopes:

* a chunk that cannot be fetched, anonymized or written is logged and
  recorded; its siblings carry on and the table ends ``partial``;
* an introspection or count failure ends the table in ``FAILED``
  (``status == "error"``);
* :class:`~anonsync.errors.SyncConnectionError` propagates to the caller.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ._constants import (
    DEFAULT_CHUNK_PAUSE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_KEY_COLUMN,
    DEFAULT_MAX_WORKERS,
    DEFAULT_UPDATE_STRATEGY,
    VALID_UPDATE_STRATEGIES,
)
from .errors import (
    ChunkFetchError,
    CountError,
    SchemaReadError,
    SyncConnectionError,
    SyncError,
    TransformError,
    WriteError,
)
from .planner import Chunk, plan_chunks
from .reconcile import reconcile_deletions
from .schema import Column, describe_columns, ensure_table_exists, primary_key, resolve_key_column, to_records
from .transform import DEFAULT_POLICY, TransformPolicy
from .upsert import upsert

logger = logging.getLogger(__name__)


class TableState(str, enum.Enum):
    INTROSPECTING = "introspecting"
    COUNTING = "counting"
    DISPATCHING = "dispatching"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class _Progress:
    """Thread-safe tally of chunks and rows; feeds progress logs and the summary."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.done = 0
        self.fetched = 0
        self.written = 0
        self._lock = threading.Lock()

    def add_fetched(self, rows: int) -> None:
        with self._lock:
            self.fetched += rows

    def add(self, rows: int) -> int:
        with self._lock:
            self.done += 1
            self.written += rows
            return self.done


def _new_result(table: str) -> Dict[str, Any]:
    return {
        "table": table,
        "status": "ok",
        "state": TableState.INTROSPECTING.value,
        "key": None,
        "row_count": 0,
        "chunks_planned": 0,
        "chunks_failed": 0,
        "rows_fetched": 0,
        "rows_upserted": 0,
        "rows_deleted": 0,
        "errors": [],
        "duration_seconds": 0.0,
    }


def _enter(result: Dict[str, Any], state: TableState) -> None:
    logger.debug("%s: %s -> %s", result["table"], result["state"], state.value)
    result["state"] = state.value


def _count(source: Any, table: str) -> int:
    try:
        return source.count(table)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise CountError(table, exc) from exc


def sync_chunk(
    source: Any,
    target: Any,
    table: str,
    columns: Sequence[Column],
    key: str,
    offset: int,
    chunk_size: int,
    *,
    policy: TransformPolicy = DEFAULT_POLICY,
    strategy: str = DEFAULT_UPDATE_STRATEGY,
    chunk_pause: float = 0.0,
    on_fetched: Optional[Callable[[int], None]] = None,
) -> int:
    """Fetch, anonymize and upsert one page; return the number of rows written.

    *on_fetched*, if given, is called with the page's row count as soon as
    it has been read, before anything is written.  The upsert runs in a
    destination transaction scoped to this chunk, so a failure rolls back
    this chunk only.
    """
    names = [c.name for c in columns]
    try:
        rows = source.fetch_page(table, names, key, offset, chunk_size)
    except SyncConnectionError:
        raise
    except Exception as exc:
        raise ChunkFetchError(table, offset, exc) from exc

    records = to_records(table, offset, columns, rows)
    if on_fetched is not None:
        on_fetched(len(records))
    try:
        for record in records:
            policy.apply(record, key)
    except Exception as exc:
        raise TransformError(table, offset, exc) from exc

    affected = upsert(target, table, records, key, strategy=strategy)
    logger.debug(
        "%s: offset %d -> %d row(s) written (%d affected)", table, offset, len(records), affected,
    )
    if chunk_pause:
        time.sleep(chunk_pause)
    return len(records)


def _dispatch(
    source: Any,
    target: Any,
    columns: Sequence[Column],
    key: str,
    chunks: Sequence[Chunk],
    max_workers: int,
    failures: List[SyncError],
    **chunk_kwargs: Any,
) -> Tuple[int, int]:
    """Run every planned chunk exactly once; return ``(rows fetched, rows written)``."""
    progress = _Progress(len(chunks))
    chunk_failures = (ChunkFetchError, TransformError, WriteError)

    def run(chunk: Chunk) -> int:
        n = sync_chunk(
            source, target, chunk.table, columns, key, chunk.offset, chunk.size,
            on_fetched=progress.add_fetched, **chunk_kwargs,
        )
        done = progress.add(n)
        logger.debug("%s: chunk %d/%d done", chunk.table, done, progress.total)
        return n

    def record_failure(chunk: Chunk, exc: SyncError) -> None:
        logger.error("%s: chunk at offset %d failed: %s", chunk.table, chunk.offset, exc)
        failures.append(exc)

    if max_workers <= 1 or len(chunks) <= 1:
        for chunk in chunks:
            try:
                run(chunk)
            except chunk_failures as exc:
                record_failure(chunk, exc)
        return progress.fetched, progress.written

    workers = min(max_workers, len(chunks))
    logger.info("%s: dispatching %d chunk(s) on %d worker(s)", chunks[0].table, len(chunks), workers)
    try:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="anonsync") as pool:
            future_to_chunk = {pool.submit(run, chunk): chunk for chunk in chunks}
            try:
                for future in as_completed(future_to_chunk):
                    try:
                        future.result()
                    except chunk_failures as exc:
                        record_failure(future_to_chunk[future], exc)
            except BaseException:
                for future in future_to_chunk:
                    future.cancel()
                raise
    finally:
        source.release_other_threads()
        target.release_other_threads()
    return progress.fetched, progress.written


def sync_table(
    source: Any,
    target: Any,
    table: str,
    *,
    policy: Optional[TransformPolicy] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: int = DEFAULT_MAX_WORKERS,
    strategy: str = DEFAULT_UPDATE_STRATEGY,
    chunk_pause: float = DEFAULT_CHUNK_PAUSE,
    key_column: str = DEFAULT_KEY_COLUMN,
    skip: bool = False,
) -> dict:
    """Synchronize one table from *source* to *target*.

    Args:
        source:       :class:`~anonsync.database.Database` to read from.
        target:       :class:`~anonsync.database.Database` to write to.
        table:        Table name as listed by the source catalog.
        policy:       Anonymization applied to every record before it is
                      written (default :data:`~anonsync.transform.DEFAULT_POLICY`).
        chunk_size:   Rows per page (default ``1_000``).  Larger chunks trade
                      memory for fewer round trips.
        max_workers:  Chunks processed concurrently (default ``1`` =
                      sequential).  Each worker uses its own connections.
        strategy:     ``"native"`` upsert or ``"case"`` update + insert.
        chunk_pause:  Seconds to sleep after each chunk (default 10 ms).
        key_column:   Key used when the table has no single-column primary key.
        skip:         Leave the table alone entirely (skip-list hit).

    Returns:
        Summary dict.
    """
    if strategy not in VALID_UPDATE_STRATEGIES:
        raise ValueError(
            f"Invalid update strategy {strategy!r}; "
            f"must be one of {sorted(VALID_UPDATE_STRATEGIES)}"
        )
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if policy is None:
        policy = DEFAULT_POLICY

    result = _new_result(table)
    if skip:
        _enter(result, TableState.SKIPPED)
        result["status"] = "skipped"
        logger.info("%s: on skip-list, not synchronized", table)
        return result

    t0 = time.monotonic()
    failures: List[SyncError] = []
    try:
        columns = describe_columns(source, table)
        key = resolve_key_column(table, columns, primary_key(source, table), key_column)
        result["key"] = key
        ensure_table_exists(target, table, columns, key)

        _enter(result, TableState.COUNTING)
        row_count = _count(source, table)
        result["row_count"] = row_count

        if row_count:
            _enter(result, TableState.DISPATCHING)
            chunks = plan_chunks(table, row_count, chunk_size)
            result["chunks_planned"] = len(chunks)
            logger.info(
                "%s: %d row(s) in %d chunk(s) of %d, key %r",
                table, row_count, len(chunks), chunk_size, key,
            )
            fetched, written = _dispatch(
                source, target, columns, key, chunks, max_workers,
                failures, policy=policy, strategy=strategy, chunk_pause=chunk_pause,
            )
            result["rows_fetched"] = fetched
            result["rows_upserted"] = written
            result["chunks_failed"] = len(failures)
        else:
            logger.info("%s: source is empty", table)

        _enter(result, TableState.RECONCILING)
        try:
            result["rows_deleted"] = reconcile_deletions(
                source, target, table, key, chunk_size, on_error=failures.append,
            )
        except ChunkFetchError as exc:
            logger.error("%s: reconciliation stopped: %s", table, exc)
            failures.append(exc)

        _enter(result, TableState.DONE)
    except SyncConnectionError:
        raise
    except (SchemaReadError, CountError) as exc:
        logger.error("%s: failed while %s: %s", table, result["state"], exc)
        _enter(result, TableState.FAILED)
        result["status"] = "error"
        failures.append(exc)

    elapsed = time.monotonic() - t0
    result["duration_seconds"] = round(elapsed, 2)
    result["errors"] = [str(exc) for exc in failures]
    if failures and result["status"] == "ok":
        result["status"] = "partial"

    log = logger.info if result["status"] == "ok" else logger.warning
    log(
        "%s: %s | %d fetched | %d upserted | %d deleted (%.1fs)",
        table, result["status"], result["rows_fetched"], result["rows_upserted"],
        result["rows_deleted"], elapsed,
    )
    return result
