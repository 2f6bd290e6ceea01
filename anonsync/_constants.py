"""Shared constants for the anonsync package."""

VALID_DIALECTS = frozenset({"mysql", "mssql", "sqlite"})
DEFAULT_DIALECT = "mysql"

VALID_UPDATE_STRATEGIES = frozenset({"native", "case"})
DEFAULT_UPDATE_STRATEGY = "native"

DEFAULT_CHUNK_SIZE = 1_000
DEFAULT_MAX_WORKERS = 1
DEFAULT_KEY_COLUMN = "id"

# Seconds to sleep after each chunk so other sessions get a turn on the target.
DEFAULT_CHUNK_PAUSE = 0.01
# Per-statement timeout on destination writes, in seconds.
DEFAULT_STATEMENT_TIMEOUT = 30

DEFAULT_SKIP_TABLES = frozenset()

# MIGRATION_FROM value -> (source, target)
ENVIRONMENT_HOPS = {
    "production": ("production", "staging"),
    "staging": ("staging", "local"),
}
