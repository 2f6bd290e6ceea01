"""Connection helper for the databases in a sync chain.

Provides :class:`DatabaseConnection`, a configurable connection wrapper with
context-manager support.  MySQL and SQL Server are reached through
``pyodbc``; SQLite files (handy for local mirrors) through ``sqlite3``.

Configuration is resolved in order: explicit arguments > environment variables >
built-in defaults.  A ``.env`` file is loaded automatically (if present) via
:func:`load_dotenv`.

Env vars (suffixed with ``_STAGING`` / ``_LOCAL`` for those environments,
unsuffixed for ``production``):
    DB_HOST      -- server host name (default: localhost)
    DB_PORT      -- server port (default: 3306 for MySQL, 1433 for SQL Server)
    DB_NAME      -- database name, or file path for SQLite
    DB_USER      -- login
    DB_PASSWORD  -- login password (**required** for server dialects)
    DB_DIALECT   -- mysql (default), mssql or sqlite
    ODBC_DRIVER  -- ODBC driver name (default depends on dialect)
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing
from decimal import Decimal
from types import TracebackType
from typing import Any, Optional, Type

from ._constants import DEFAULT_DIALECT
from .database import Database
from .dialects import get_dialect

logger = logging.getLogger(__name__)

# pyodbc returns Decimal for DECIMAL/NUMERIC columns; sqlite3 cannot bind it.
sqlite3.register_adapter(Decimal, str)

_DEFAULT_SERVER = "localhost"
_DEFAULT_PORTS = {"mysql": 3306, "mssql": 1433}
_DEFAULT_DRIVERS = {
    "mysql": "MySQL ODBC 8.0 Unicode Driver",
    "mssql": "ODBC Driver 18 for SQL Server",
}


_dotenv_loaded: set = set()


def load_dotenv(path: Optional[str] = None) -> None:
    """Read a simple key=value .env file into ``os.environ`` (no dependencies).

    Subsequent calls with the same resolved *path* are no-ops.
    """
    if path is None:
        path = os.path.join(os.getcwd(), ".env")
    resolved = os.path.abspath(path)
    if resolved in _dotenv_loaded:
        return
    if not os.path.isfile(resolved):
        return
    with open(resolved) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                k, v = line.split("=", 1)
                os.environ.setdefault(k.strip(), v.strip().strip("'\""))
    _dotenv_loaded.add(resolved)
    logger.debug("Loaded environment from %s", resolved)


def env_suffix(environment: str) -> str:
    """Return the env-var suffix for *environment* (``""`` for production)."""
    env = environment.strip().lower()
    if env in ("", "production", "prod"):
        return ""
    return "_" + env.upper()


class DatabaseConnection:
    """Managed connection to one database of the chain.

    Usage as a context manager::

        with DatabaseConnection("staging") as conn:
            cur = conn.cursor()
            cur.execute("SELECT 1")

    Or as a factory for the sync engine (one connection per worker thread)::

        db = DatabaseConnection("staging").to_database(statement_timeout=30)
    """

    def __init__(
        self,
        environment: str = "production",
        *,
        dialect: Optional[str] = None,
        server: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        driver: Optional[str] = None,
        dotenv_path: Optional[str] = None,
    ) -> None:
        load_dotenv(dotenv_path)

        sfx = env_suffix(environment)
        self.environment = environment
        self.dialect = get_dialect(
            dialect or os.environ.get(f"DB_DIALECT{sfx}", DEFAULT_DIALECT)
        ).name
        self.server = server or os.environ.get(f"DB_HOST{sfx}", _DEFAULT_SERVER)
        self.port = int(
            port or os.environ.get(f"DB_PORT{sfx}") or _DEFAULT_PORTS.get(self.dialect, 0)
        )
        self.database = database or os.environ.get(f"DB_NAME{sfx}", "")
        self.user = user or os.environ.get(f"DB_USER{sfx}", "")
        self.driver = driver or os.environ.get(
            f"ODBC_DRIVER{sfx}", _DEFAULT_DRIVERS.get(self.dialect, "")
        )
        self._password = password if password is not None else os.environ.get(f"DB_PASSWORD{sfx}")
        self._password_var = f"DB_PASSWORD{sfx}"
        self._conn: Optional[Any] = None

    @property
    def connection_string(self) -> str:
        """Build the ODBC connection string (raises if credentials are missing)."""
        if not self.database:
            raise ValueError(
                f"No database name for {self.environment}. Set DB_NAME"
                f"{env_suffix(self.environment)} or pass it to the constructor."
            )
        if self._password is None:
            raise ValueError(
                f"No password supplied for {self.environment}. Set "
                f"{self._password_var} in your environment or .env file, "
                "or pass it to the constructor."
            )
        if self.dialect == "mssql":
            return (
                f"Driver={{{self.driver}}};Server={self.server},{self.port};"
                f"Database={self.database};Uid={self.user};Pwd={self._password};"
                "Encrypt=yes;TrustServerCertificate=no;Connection Timeout=30;"
            )
        return (
            f"Driver={{{self.driver}}};Server={self.server};Port={self.port};"
            f"Database={self.database};Uid={self.user};Pwd={self._password};"
            "charset=utf8mb4;"
        )

    def open(self) -> Any:
        """Open and return a new DB-API connection (never cached)."""
        if self.dialect == "sqlite":
            if not self.database:
                raise ValueError(f"No SQLite database path for {self.environment}")
            logger.debug("Opening SQLite database %s", self.database)
            return sqlite3.connect(self.database, check_same_thread=False)

        conn_str = self.connection_string
        import pyodbc

        logger.debug(
            "Connecting to %s:%s/%s as %s", self.server, self.port, self.database, self.user,
        )
        return pyodbc.connect(conn_str)

    def connect(self) -> Any:
        """Open and return a connection.

        Subsequent calls return the same connection unless :meth:`close` has
        been called.
        """
        if self._conn is None:
            self._conn = self.open()
        return self._conn

    def close(self) -> None:
        """Close the underlying connection if open."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def test_connectivity(self) -> bool:
        """Run ``SELECT 1`` and return ``True`` on success, ``False`` on failure."""
        try:
            conn = self.connect()
            with closing(conn.cursor()) as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
            return True
        except Exception as exc:
            logger.debug("Connectivity check for %s failed: %s", self.environment, exc)
            return False

    def to_database(self, statement_timeout: Optional[int] = None) -> Database:
        """Return a :class:`~anonsync.database.Database` backed by :meth:`open`."""
        return Database(
            self.open,
            self.dialect,
            name=self.environment,
            statement_timeout=statement_timeout,
        )

    def __enter__(self) -> Any:
        return self.connect()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"DatabaseConnection(environment={self.environment!r}, "
            f"dialect={self.dialect!r}, server={self.server!r}, "
            f"database={self.database!r}, user={self.user!r})"
        )
