"""SQL text for each supported backend.

All database-specific query logic is isolated here so it can be tested
independently from the sync orchestration and I/O layers.  Every builder
returns SQL with ``?`` placeholders (the ``qmark`` style shared by pyodbc
and sqlite3); row data is never interpolated into the statement text, only
identifiers, and those always go through :meth:`Dialect.quote`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from ._constants import VALID_DIALECTS
from .schema import Column


def _placeholders(n: int) -> str:
    return ", ".join("?" * n)


def _row_placeholders(n_cols: int, n_rows: int) -> str:
    row = f"({_placeholders(n_cols)})"
    return ", ".join([row] * n_rows)


class Dialect:
    """Base dialect; subclasses override catalog queries and upsert syntax."""

    name = "ansi"
    #: Upper bound on bound parameters in a single statement.
    max_params = 999
    #: Upper bound on rows in one VALUES list, if the backend has one.
    max_rows = None

    def quote(self, name: str) -> str:
        """Double-quote an identifier, escaping embedded quotes."""
        return '"' + name.replace('"', '""') + '"'

    def quote_table(self, table: str) -> str:
        return self.quote(table)

    def column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote(c) for c in columns)

    # -- catalog -------------------------------------------------------------

    def list_tables_sql(self) -> Tuple[str, tuple]:
        raise NotImplementedError

    def columns_sql(self, table: str) -> Tuple[str, tuple]:
        raise NotImplementedError

    def column_from_row(self, row: Sequence[Any]) -> Column:
        raise NotImplementedError

    def primary_key_sql(self, table: str) -> Tuple[str, tuple]:
        raise NotImplementedError

    def primary_key_from_rows(self, rows: Sequence[Sequence[Any]]) -> List[str]:
        return [row[0] for row in rows]

    def create_table_sql(
        self, table: str, columns: Sequence[Column], key: str,
    ) -> Tuple[str, tuple]:
        """``CREATE TABLE IF NOT EXISTS`` using the source types verbatim."""
        defs = [
            f"{self.quote(c.name)} {c.type} "
            f"{'NULL' if c.nullable and c.name != key else 'NOT NULL'}"
            for c in columns
        ]
        defs.append(f"PRIMARY KEY ({self.quote(key)})")
        body = ", ".join(defs)
        return f"CREATE TABLE IF NOT EXISTS {self.quote_table(table)} ({body})", ()

    # -- reads ---------------------------------------------------------------

    def count_sql(self, table: str) -> str:
        return f"SELECT COUNT(*) FROM {self.quote_table(table)}"

    def page_sql(self, table: str, columns: Sequence[str], key: str) -> str:
        """SELECT one page ordered by *key*; bind with :meth:`page_params`."""
        return (
            f"SELECT {self.column_list(columns)} FROM {self.quote_table(table)} "
            f"ORDER BY {self.quote(key)} LIMIT ? OFFSET ?"
        )

    def page_params(self, offset: int, limit: int) -> tuple:
        return (limit, offset)

    def keys_sql(self, table: str, key: str) -> str:
        return self.page_sql(table, [key], key)

    def existing_keys_sql(self, table: str, key: str, n_keys: int) -> str:
        q = self.quote(key)
        return (
            f"SELECT {q} FROM {self.quote_table(table)} "
            f"WHERE {q} IN ({_placeholders(n_keys)})"
        )

    # -- writes --------------------------------------------------------------

    def insert_sql(self, table: str, columns: Sequence[str], n_rows: int) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} ({self.column_list(columns)}) "
            f"VALUES {_row_placeholders(len(columns), n_rows)}"
        )

    def upsert_sql(
        self, table: str, columns: Sequence[str], key: str, n_rows: int,
    ) -> str:
        raise NotImplementedError

    def case_update_sql(self, table: str, column: str, key: str, n_rows: int) -> str:
        """UPDATE one *column* for *n_rows* keys via ``CASE key WHEN ? THEN ?``.

        Parameters: ``(k1, v1, k2, v2, ..., k1, k2, ...)``.
        """
        qc, qk = self.quote(column), self.quote(key)
        whens = " ".join(["WHEN ? THEN ?"] * n_rows)
        return (
            f"UPDATE {self.quote_table(table)} SET {qc} = CASE {qk} {whens} "
            f"ELSE {qc} END WHERE {qk} IN ({_placeholders(n_rows)})"
        )

    def delete_keys_sql(self, table: str, key: str, n_keys: int) -> str:
        """DELETE the rows whose *key* is one of *n_keys* bound values."""
        qk = self.quote(key)
        return (
            f"DELETE FROM {self.quote_table(table)} "
            f"WHERE {qk} IN ({_placeholders(n_keys)})"
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class MySQLDialect(Dialect):
    name = "mysql"
    max_params = 65_535

    def quote(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def list_tables_sql(self) -> Tuple[str, tuple]:
        return (
            "SELECT TABLE_NAME FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE' "
            "ORDER BY TABLE_NAME"
        ), ()

    def columns_sql(self, table: str) -> Tuple[str, tuple]:
        return (
            "SELECT COLUMN_NAME, COLUMN_TYPE, IS_NULLABLE "
            "FROM information_schema.COLUMNS "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? "
            "ORDER BY ORDINAL_POSITION"
        ), (table,)

    def column_from_row(self, row: Sequence[Any]) -> Column:
        return Column(row[0], row[1], str(row[2]).upper() == "YES")

    def primary_key_sql(self, table: str) -> Tuple[str, tuple]:
        return (
            "SELECT COLUMN_NAME FROM information_schema.KEY_COLUMN_USAGE "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? "
            "AND CONSTRAINT_NAME = 'PRIMARY' ORDER BY ORDINAL_POSITION"
        ), (table,)

    def upsert_sql(
        self, table: str, columns: Sequence[str], key: str, n_rows: int,
    ) -> str:
        updates = [f"{self.quote(c)} = VALUES({self.quote(c)})" for c in columns if c != key]
        if not updates:
            qk = self.quote(key)
            updates = [f"{qk} = {qk}"]
        return (
            f"{self.insert_sql(table, columns, n_rows)} "
            f"ON DUPLICATE KEY UPDATE {', '.join(updates)}"
        )


_MSSQL_SIZED = frozenset({"char", "varchar", "nchar", "nvarchar", "binary", "varbinary"})
_MSSQL_SCALED = frozenset({"decimal", "numeric"})


def _split_mssql_name(table: str) -> Tuple[str, str]:
    if "." in table:
        schema, name = table.split(".", 1)
        return schema, name
    return "dbo", table


class MSSQLDialect(Dialect):
    name = "mssql"
    # SQL Server rejects more than 2100 parameters per request
    # and more than 1000 row values per INSERT.
    max_params = 2_099
    max_rows = 1_000

    def quote(self, name: str) -> str:
        """Bracket-quote a SQL Server identifier, escaping embedded ``]``."""
        return f"[{name.replace(']', ']]')}]"

    def quote_table(self, table: str) -> str:
        schema, name = _split_mssql_name(table)
        return f"{self.quote(schema)}.{self.quote(name)}"

    def list_tables_sql(self) -> Tuple[str, tuple]:
        return (
            "SELECT TABLE_SCHEMA + '.' + TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_TYPE = 'BASE TABLE' ORDER BY 1"
        ), ()

    def columns_sql(self, table: str) -> Tuple[str, tuple]:
        return (
            "SELECT COLUMN_NAME, DATA_TYPE, CHARACTER_MAXIMUM_LENGTH, "
            "NUMERIC_PRECISION, NUMERIC_SCALE, IS_NULLABLE "
            "FROM INFORMATION_SCHEMA.COLUMNS "
            "WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ? "
            "ORDER BY ORDINAL_POSITION"
        ), _split_mssql_name(table)

    def column_from_row(self, row: Sequence[Any]) -> Column:
        name, data_type, char_len, precision, scale, nullable = row
        t = data_type.lower()
        if t in _MSSQL_SIZED and char_len is not None:
            t = f"{t}({'max' if char_len == -1 else char_len})"
        elif t in _MSSQL_SCALED and precision is not None:
            t = f"{t}({precision},{scale or 0})"
        return Column(name, t, str(nullable).upper() == "YES")

    def primary_key_sql(self, table: str) -> Tuple[str, tuple]:
        return (
            """
            SELECT c.name
            FROM sys.indexes i
            JOIN sys.index_columns ic ON i.object_id = ic.object_id AND i.index_id = ic.index_id
            JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id
            WHERE i.is_primary_key = 1
              AND i.object_id = OBJECT_ID(?)
            ORDER BY ic.key_ordinal
            """,
            (table,),
        )

    def create_table_sql(
        self, table: str, columns: Sequence[Column], key: str,
    ) -> Tuple[str, tuple]:
        sql, _ = super().create_table_sql(table, columns, key)
        sql = sql.replace("CREATE TABLE IF NOT EXISTS", "CREATE TABLE", 1)
        return f"IF OBJECT_ID(?, 'U') IS NULL {sql}", (table,)

    def page_sql(self, table: str, columns: Sequence[str], key: str) -> str:
        return (
            f"SELECT {self.column_list(columns)} FROM {self.quote_table(table)} "
            f"ORDER BY {self.quote(key)} OFFSET ? ROWS FETCH NEXT ? ROWS ONLY"
        )

    def page_params(self, offset: int, limit: int) -> tuple:
        return (offset, limit)

    def upsert_sql(
        self, table: str, columns: Sequence[str], key: str, n_rows: int,
    ) -> str:
        qk = self.quote(key)
        cols = self.column_list(columns)
        sql = (
            f"MERGE INTO {self.quote_table(table)} WITH (HOLDLOCK) AS tgt "
            f"USING (VALUES {_row_placeholders(len(columns), n_rows)}) AS src ({cols}) "
            f"ON tgt.{qk} = src.{qk}"
        )
        updates = [f"tgt.{self.quote(c)} = src.{self.quote(c)}" for c in columns if c != key]
        if updates:
            sql += f" WHEN MATCHED THEN UPDATE SET {', '.join(updates)}"
        src_cols = ", ".join(f"src.{self.quote(c)}" for c in columns)
        return sql + f" WHEN NOT MATCHED THEN INSERT ({cols}) VALUES ({src_cols});"


class SQLiteDialect(Dialect):
    name = "sqlite"

    def list_tables_sql(self) -> Tuple[str, tuple]:
        return (
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ), ()

    def columns_sql(self, table: str) -> Tuple[str, tuple]:
        return f"PRAGMA table_info({self.quote(table)})", ()

    def column_from_row(self, row: Sequence[Any]) -> Column:
        # (cid, name, type, notnull, dflt_value, pk)
        return Column(row[1], row[2] or "", not row[3])

    def primary_key_sql(self, table: str) -> Tuple[str, tuple]:
        return f"PRAGMA table_info({self.quote(table)})", ()

    def primary_key_from_rows(self, rows: Sequence[Sequence[Any]]) -> List[str]:
        pk = sorted((row[5], row[1]) for row in rows if row[5])
        return [name for _, name in pk]

    def upsert_sql(
        self, table: str, columns: Sequence[str], key: str, n_rows: int,
    ) -> str:
        sql = f"{self.insert_sql(table, columns, n_rows)} ON CONFLICT ({self.quote(key)}) DO "
        updates = [f"{self.quote(c)} = excluded.{self.quote(c)}" for c in columns if c != key]
        if not updates:
            return sql + "NOTHING"
        return sql + f"UPDATE SET {', '.join(updates)}"


_DIALECTS: Dict[str, Dialect] = {
    "mysql": MySQLDialect(),
    "mssql": MSSQLDialect(),
    "sqlite": SQLiteDialect(),
}


def get_dialect(name: str) -> Dialect:
    """Return the shared :class:`Dialect` instance for *name*."""
    key = name.strip().lower()
    if key not in VALID_DIALECTS:
        raise ValueError(
            f"Unknown dialect {name!r}; must be one of {sorted(VALID_DIALECTS)}"
        )
    return _DIALECTS[key]
