"""anonsync -- Chunked, anonymizing table sync from one database down a chain of others."""

from .client import Replicator, succeeded
from .connection import DatabaseConnection
from .database import Database
from .errors import (
    ChunkFetchError,
    CountError,
    SchemaReadError,
    SyncConnectionError,
    SyncError,
    TransformError,
    WriteError,
)
from .sync import TableState, sync_table
from .transform import DEFAULT_POLICY, TransformPolicy

__all__ = [
    "Replicator",
    "succeeded",
    "DatabaseConnection",
    "Database",
    "sync_table",
    "TableState",
    "TransformPolicy",
    "DEFAULT_POLICY",
    "SyncError",
    "SchemaReadError",
    "CountError",
    "ChunkFetchError",
    "TransformError",
    "WriteError",
    "SyncConnectionError",
]
