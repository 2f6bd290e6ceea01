"""High-level facade for refreshing a chain of databases.

``Replicator`` is the primary user-facing entry point::

    from anonsync import Replicator

    rep = Replicator.from_config("sync.yaml")

    # production -> staging -> local, one hop after the other:
    results = rep.sync_chain()

    # Or a single hop, as selected by MIGRATION_FROM:
    results = rep.sync_from("staging")        # staging -> local

Within a hop tables are synchronized one after the other; chunks of a table
may run on a worker pool (``max_workers``).  A table that fails is recorded
and the hop moves on.  A lost or unopenable connection stops the chain.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from types import TracebackType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type, Union

from ._constants import (
    DEFAULT_CHUNK_PAUSE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_KEY_COLUMN,
    DEFAULT_MAX_WORKERS,
    DEFAULT_SKIP_TABLES,
    DEFAULT_STATEMENT_TIMEOUT,
    DEFAULT_UPDATE_STRATEGY,
    ENVIRONMENT_HOPS,
    VALID_UPDATE_STRATEGIES,
)
from .connection import DatabaseConnection, load_dotenv
from .database import Database
from .errors import SyncConnectionError
from .sync import sync_table
from .transform import TransformPolicy

logger = logging.getLogger(__name__)

DatabaseSpec = Union[Database, DatabaseConnection, Mapping[str, Any]]


def expand_env(value: Any) -> Any:
    """Expand ``${VAR}`` references in string *value* with environment variables."""
    if not isinstance(value, str):
        return value

    def _repl(m):
        name = m.group(1)
        if name not in os.environ:
            raise KeyError(
                f"Environment variable {name!r} is not set "
                f"(referenced in config as ${{{name}}})"
            )
        return os.environ[name]

    return re.sub(r"\$\{(\w+)}", _repl, value)


def _load_config_file(path: Union[str, Path]) -> dict:
    """Load a YAML or JSON config file, chosen by extension."""
    p = Path(path)
    text = p.read_text()
    if p.suffix in (".yaml", ".yml"):
        try:
            import yaml
        except ImportError:
            raise ImportError(
                "PyYAML is required for YAML config files. "
                "Install it with: pip install anonsync[yaml]"
            )
        return yaml.safe_load(text)
    return json.loads(text)


def _validate_databases(value: object) -> Dict[str, DatabaseSpec]:
    """Raise ``TypeError`` / ``ValueError`` if *value* is not a name -> database map."""
    if not isinstance(value, Mapping):
        raise TypeError(f"databases must be a dict, got {type(value).__name__}")
    if not value:
        raise ValueError("databases dict must not be empty")
    for name, spec in value.items():
        if not isinstance(name, str):
            raise TypeError(f"database name must be str, got {type(name).__name__}")
        if not isinstance(spec, (Database, DatabaseConnection, Mapping)):
            raise TypeError(
                f"database {name!r} must be a Database, DatabaseConnection or "
                f"dict, got {type(spec).__name__}"
            )
    return dict(value)


def _validate_chain(chain: Sequence[str], databases: Mapping[str, Any]) -> List[str]:
    chain = list(chain)
    if len(chain) < 2:
        raise ValueError(f"chain needs at least two databases, got {chain}")
    unknown = [name for name in chain if name not in databases]
    if unknown:
        raise ValueError(
            f"chain refers to unknown database(s) {unknown}; "
            f"configured: {sorted(databases)}"
        )
    return chain


def succeeded(results: Iterable[dict]) -> bool:
    """``True`` when every table result is ``ok`` or ``skipped``."""
    return all(r.get("status") in ("ok", "skipped") for r in results)


class Replicator:
    """Drive table synchronization across a chain of databases.

    Args:
        databases:         ``{name: spec}`` where *spec* is a ready
                           :class:`~anonsync.database.Database`, a
                           :class:`~anonsync.connection.DatabaseConnection`,
                           or a dict of ``DatabaseConnection`` keyword arguments.
        chain:             Ordered database names; defaults to the keys of
                           *databases* in order.
        policy:            Anonymization policy (default built-in policy).
        chunk_size:        Rows per chunk (default ``1_000``).
        max_workers:       Chunks of one table processed in parallel
                           (default ``1`` = sequential).
        skip_tables:       Table names never synchronized.
        update_strategy:   ``"native"`` or ``"case"``.
        chunk_pause:       Seconds to sleep after each chunk.
        statement_timeout: Per-statement timeout in seconds for connections
                           this object opens.
    """

    def __init__(
        self,
        databases: Mapping[str, DatabaseSpec],
        *,
        chain: Optional[Sequence[str]] = None,
        policy: Optional[TransformPolicy] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = DEFAULT_MAX_WORKERS,
        skip_tables: Iterable[str] = DEFAULT_SKIP_TABLES,
        update_strategy: str = DEFAULT_UPDATE_STRATEGY,
        chunk_pause: float = DEFAULT_CHUNK_PAUSE,
        statement_timeout: Optional[int] = DEFAULT_STATEMENT_TIMEOUT,
        key_column: str = DEFAULT_KEY_COLUMN,
    ) -> None:
        if update_strategy not in VALID_UPDATE_STRATEGIES:
            raise ValueError(
                f"update_strategy must be one of {sorted(VALID_UPDATE_STRATEGIES)}, "
                f"got {update_strategy!r}"
            )
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self._specs = _validate_databases(databases)
        self.chain = _validate_chain(chain, self._specs) if chain else list(self._specs)
        self.policy = policy if policy is not None else TransformPolicy.from_config(None)
        self.chunk_size = chunk_size
        self.max_workers = max(1, max_workers)
        self.skip_tables = frozenset(skip_tables)
        self.update_strategy = update_strategy
        self.chunk_pause = chunk_pause
        self.statement_timeout = statement_timeout
        self.key_column = key_column
        self._open: Dict[str, Database] = {}
        self._owned: List[str] = []

    # -- factory ------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: Union[str, Path, dict],
        *,
        chain: Optional[Sequence[str]] = None,
        max_workers: Optional[int] = None,
        chunk_size: Optional[int] = None,
        update_strategy: Optional[str] = None,
    ) -> "Replicator":
        """Create a fully configured ``Replicator`` from a config file or dict.

        Accepts either a file path (YAML/JSON) or an already-parsed dict.
        Loads ``.env`` automatically and expands ``${VAR}`` references in
        the database settings.

        .. code-block:: yaml

            databases:
              production:
                dialect: mysql
                server: db.prod.internal
                database: app
                user: readonly
                password: ${DB_PASSWORD}
              staging:
                dialect: mysql
                server: db.staging.internal
                database: app
                user: app
                password: ${DB_PASSWORD_STAGING}
            chain: [production, staging]
            chunk_size: 1000
            max_workers: 4
            skip_tables: [schema_migrations]
            update_strategy: native
            anonymize:
              email: {template: "dev_hotel{id}@movefast.xyz"}

        A database entry may also be just ``{environment: staging}`` to take
        every setting from the ``DB_*_STAGING`` environment variables.
        """
        load_dotenv()

        if isinstance(config, (str, Path)):
            config = _load_config_file(config)
        if not isinstance(config, dict):
            raise TypeError(f"config must be a mapping, got {type(config).__name__}")

        raw_dbs = config.get("databases")
        if raw_dbs is None:
            raise ValueError("config has no 'databases' section")
        databases = {
            name: {k: expand_env(v) for k, v in (spec or {}).items()}
            for name, spec in _validate_databases(raw_dbs).items()
        }

        cfg_timeout = config.get("statement_timeout", DEFAULT_STATEMENT_TIMEOUT)
        return cls(
            databases,
            chain=chain or config.get("chain"),
            policy=TransformPolicy.from_config(config.get("anonymize")),
            chunk_size=chunk_size or config.get("chunk_size") or DEFAULT_CHUNK_SIZE,
            max_workers=max_workers or config.get("max_workers") or DEFAULT_MAX_WORKERS,
            skip_tables=config.get("skip_tables") or DEFAULT_SKIP_TABLES,
            update_strategy=update_strategy or config.get("update_strategy") or DEFAULT_UPDATE_STRATEGY,
            chunk_pause=config.get("chunk_pause", DEFAULT_CHUNK_PAUSE),
            statement_timeout=cfg_timeout,
            key_column=config.get("key_column", DEFAULT_KEY_COLUMN),
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> "Replicator":
        """Replicator over production, staging and local, configured from ``DB_*`` env vars."""
        load_dotenv()
        databases = {env: {"environment": env} for env in ("production", "staging", "local")}
        return cls(databases, **kwargs)

    # -- connections --------------------------------------------------------

    def database(self, name: str) -> Database:
        """Return the :class:`Database` for *name*, opening it on first use."""
        if name in self._open:
            return self._open[name]
        if name not in self._specs:
            raise KeyError(f"Unknown database {name!r}; configured: {sorted(self._specs)}")
        spec = self._specs[name]
        if isinstance(spec, Database):
            db = spec
        else:
            if not isinstance(spec, DatabaseConnection):
                kwargs = dict(spec)
                environment = kwargs.pop("environment", name)
                spec = DatabaseConnection(environment, **kwargs)
            db = spec.to_database(statement_timeout=self.statement_timeout)
            db.name = name
            self._owned.append(name)
        self._open[name] = db
        return db

    def _connect_checked(self, name: str) -> Database:
        db = self.database(name)
        # Opens this thread's connection; raises SyncConnectionError on failure.
        db.connection()
        return db

    # -- sync operations ----------------------------------------------------

    def sync_hop(self, source_name: str, target_name: str) -> List[dict]:
        """Synchronize every source table from *source_name* into *target_name*.

        Tables come from the source catalog; tables that only exist at the
        target are left alone.  Returns one result dict per table.
        """
        source = self._connect_checked(source_name)
        target = self._connect_checked(target_name)
        logger.info("Synchronizing %s -> %s", source_name, target_name)

        try:
            tables = source.list_tables()
        except SyncConnectionError:
            raise
        except Exception as exc:
            raise SyncConnectionError(source_name, exc) from exc
        logger.info("%s: %d table(s) to consider", source_name, len(tables))

        results: List[dict] = []
        for table in tables:
            try:
                result = sync_table(
                    source,
                    target,
                    table,
                    policy=self.policy,
                    chunk_size=self.chunk_size,
                    max_workers=self.max_workers,
                    strategy=self.update_strategy,
                    chunk_pause=self.chunk_pause,
                    key_column=self.key_column,
                    skip=table in self.skip_tables,
                )
            except SyncConnectionError as exc:
                exc.results = results
                raise
            except Exception as exc:
                logger.error("Failed to sync %s.%s: %s", source_name, table, exc)
                result = self._error_result(table, exc)

            result.update(source=source_name, target=target_name)
            results.append(result)

            if result["status"] in ("error", "partial"):
                try:
                    self._check_connection(source_name, source)
                    self._check_connection(target_name, target)
                except SyncConnectionError as exc:
                    exc.results = results
                    raise
        return results

    def sync_chain(self, names: Optional[Sequence[str]] = None) -> List[dict]:
        """Run ``d0 -> d1``, ``d1 -> d2``, ... over *names* (default :attr:`chain`).

        Table failures are recorded and do not stop the chain.  A
        :class:`SyncConnectionError` stops it: later hops are not run and the
        error is re-raised with the results gathered so far attached as
        ``exc.results``.
        """
        chain = _validate_chain(names or self.chain, self._specs)
        results: List[dict] = []
        for source_name, target_name in zip(chain, chain[1:]):
            try:
                results.extend(self.sync_hop(source_name, target_name))
            except SyncConnectionError as exc:
                logger.error(
                    "Aborting chain at %s -> %s: %s", source_name, target_name, exc,
                )
                exc.results = results + getattr(exc, "results", [])
                raise
        return results

    def sync_from(self, environment: str) -> List[dict]:
        """Run the hop selected by a ``MIGRATION_FROM`` value.

        ``production`` syncs production -> staging; ``staging`` syncs
        staging -> local.
        """
        env = environment.strip().lower()
        if env not in ENVIRONMENT_HOPS:
            raise ValueError(
                f"Unknown source environment {environment!r}; "
                f"must be one of {sorted(ENVIRONMENT_HOPS)}"
            )
        return self.sync_chain(list(ENVIRONMENT_HOPS[env]))

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _check_connection(name: str, db: Database) -> None:
        """Raise :class:`SyncConnectionError` if *db* no longer answers."""
        if not db.test_connectivity():
            raise SyncConnectionError(name, RuntimeError("connectivity check failed"))

    @staticmethod
    def _error_result(table: str, exc: Exception) -> dict:
        return {
            "table": table,
            "status": "error",
            "state": "failed",
            "rows_fetched": 0,
            "rows_upserted": 0,
            "rows_deleted": 0,
            "errors": [str(exc)],
        }

    # -- context manager / lifecycle ----------------------------------------

    def close(self) -> None:
        """Close the databases this object opened (caller-supplied ones stay open)."""
        for name in self._owned:
            self._open[name].close()
        self._open.clear()
        self._owned.clear()

    def __enter__(self) -> "Replicator":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Replicator(chain={self.chain!r}, chunk_size={self.chunk_size}, "
            f"max_workers={self.max_workers}, skip_tables={len(self.skip_tables)})"
        )
