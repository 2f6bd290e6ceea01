"""Chunk planning: turn a row count into page offsets."""

from __future__ import annotations

from typing import List, NamedTuple


class Chunk(NamedTuple):
    table: str
    offset: int
    size: int


def plan_offsets(row_count: int, chunk_size: int) -> List[int]:
    """Return ``[0, chunk_size, 2*chunk_size, ...]`` while below *row_count*.

    The count is a snapshot taken before any chunk runs.  If the source
    changes while chunks execute, later pages may skip or repeat rows
    relative to that snapshot; the next run picks them up.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return list(range(0, max(row_count, 0), chunk_size))


def plan_chunks(table: str, row_count: int, chunk_size: int) -> List[Chunk]:
    return [Chunk(table, offset, chunk_size) for offset in plan_offsets(row_count, chunk_size)]
