"""
Base SQL dialect.

A dialect turns table/column names into SQL text for one database engine
family. It performs no I/O and holds no state beyond the driver paramstyle,
which decides how bind placeholders are rendered.
"""

from collections.abc import Sequence
from enum import Enum

from utils.sql_safety import quote_with, validate_integer_param, validate_type_definition


class DialectType(str, Enum):
    GENERIC = "GENERIC"
    MYSQL = "MYSQL"
    POSTGRESQL = "POSTGRESQL"
    ORACLE = "ORACLE"
    SQLSERVER = "SQLSERVER"
    SQLITE = "SQLITE"


# DB-API paramstyles and how the n-th (1-based) placeholder renders
_PLACEHOLDERS = {
    "qmark": lambda n: "?",
    "format": lambda n: "%s",
    "pyformat": lambda n: "%s",
    "numeric": lambda n: f":{n}",
    "named": lambda n: f":p{n}",
}


class Dialect:
    """
    Generic ANSI dialect.

    Upserts render as a plain INSERT; callers must delete conflicting keys
    first (see ``requires_pre_delete``).
    """

    dialect_type = DialectType.GENERIC
    open_quote = '"'
    close_quote = '"'
    requires_pre_delete = True

    def __init__(self, paramstyle: str = "qmark"):
        if paramstyle not in _PLACEHOLDERS:
            raise ValueError(f"Unsupported paramstyle: {paramstyle!r}")
        self.paramstyle = paramstyle

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(paramstyle={self.paramstyle!r})"

    # ---- quoting -----------------------------------------------------------

    def quote_identifier(self, name: str) -> str:
        """
        Quote a single identifier.

        Raises:
            ValueError: If the name is empty or contains NUL/control characters
        """
        return quote_with(name, self.open_quote, self.close_quote)

    def qualify_table(self, table: str, schema: str | None = None) -> str:
        """Quoted ``schema.table`` (or just ``table`` when schema is empty)."""
        if schema:
            return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"
        return self.quote_identifier(table)

    def placeholder(self, position: int = 1) -> str:
        return _PLACEHOLDERS[self.paramstyle](position)

    def placeholders(self, count: int, start: int = 1) -> str:
        return ", ".join(self.placeholder(start + i) for i in range(count))

    def _column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote_identifier(column) for column in columns)

    @staticmethod
    def _check_columns(columns: Sequence[str], primary_key_columns: Sequence[str]) -> None:
        if not columns:
            raise ValueError("At least one column is required")
        if not primary_key_columns:
            raise ValueError("At least one primary key column is required")
        missing = [pk for pk in primary_key_columns if pk not in columns]
        if missing:
            raise ValueError(f"Primary key columns not in column list: {missing}")

    @staticmethod
    def _non_key_columns(columns: Sequence[str], primary_key_columns: Sequence[str]) -> list[str]:
        keys = set(primary_key_columns)
        return [column for column in columns if column not in keys]

    # ---- writes ------------------------------------------------------------

    def build_insert_sql(self, table: str, columns: Sequence[str], schema: str | None = None) -> str:
        if not columns:
            raise ValueError("At least one column is required")
        return (
            f"INSERT INTO {self.qualify_table(table, schema)} ({self._column_list(columns)}) "
            f"VALUES ({self.placeholders(len(columns))})"
        )

    def build_upsert_sql(
        self,
        table: str,
        columns: Sequence[str],
        primary_key_columns: Sequence[str],
        schema: str | None = None,
    ) -> str:
        """
        Insert-or-update statement taking one parameter per column, in order.

        Args:
            table: Target table name
            columns: All columns written, parameters bind in this order
            primary_key_columns: Conflict key, must be a subset of columns
            schema: Optional schema

        Returns:
            SQL text
        """
        self._check_columns(columns, primary_key_columns)
        return self.build_insert_sql(table, columns, schema)

    def build_delete_all_sql(self, table: str, schema: str | None = None) -> str:
        return f"DELETE FROM {self.qualify_table(table, schema)}"

    def build_truncate_sql(self, table: str, schema: str | None = None) -> str:
        return f"TRUNCATE TABLE {self.qualify_table(table, schema)}"

    def build_add_column_sql(
        self, table: str, column: str, type_definition: str, schema: str | None = None
    ) -> str:
        validate_type_definition(type_definition)
        return (
            f"ALTER TABLE {self.qualify_table(table, schema)} "
            f"ADD COLUMN {self.quote_identifier(column)} {type_definition.strip()}"
        )

    def build_delete_by_primary_key_in_sql(
        self, table: str, primary_key_column: str, key_count: int, schema: str | None = None
    ) -> str:
        validate_integer_param(key_count, "key_count", min_value=1)
        return (
            f"DELETE FROM {self.qualify_table(table, schema)} "
            f"WHERE {self.quote_identifier(primary_key_column)} IN ({self.placeholders(key_count)})"
        )

    def build_delete_by_key_sql(
        self, table: str, key_columns: Sequence[str], schema: str | None = None
    ) -> str:
        """Delete one row by its (possibly composite) key; binds one value per key column."""
        if not key_columns:
            raise ValueError("At least one key column is required")
        conditions = " AND ".join(
            f"{self.quote_identifier(column)} = {self.placeholder(i + 1)}"
            for i, column in enumerate(key_columns)
        )
        return f"DELETE FROM {self.qualify_table(table, schema)} WHERE {conditions}"

    # ---- reads -------------------------------------------------------------

    def build_select_by_primary_key_in_sql(
        self,
        table: str,
        select_columns: Sequence[str],
        primary_key_column: str,
        key_count: int,
        schema: str | None = None,
        filter_condition: str | None = None,
    ) -> str:
        validate_integer_param(key_count, "key_count", min_value=1)
        if not select_columns:
            raise ValueError("At least one column is required")
        sql = (
            f"SELECT {self._column_list(select_columns)} FROM {self.qualify_table(table, schema)} "
            f"WHERE {self.quote_identifier(primary_key_column)} IN ({self.placeholders(key_count)})"
        )
        if filter_condition:
            sql += f" AND ({filter_condition})"
        return sql

    def build_key_range_sql(
        self,
        table: str,
        key_column: str,
        schema: str | None = None,
        filter_condition: str | None = None,
    ) -> str:
        """``MIN(key), MAX(key), COUNT(*)`` over the whole (optionally filtered) table."""
        key = self.quote_identifier(key_column)
        sql = f"SELECT MIN({key}), MAX({key}), COUNT(*) FROM {self.qualify_table(table, schema)}"
        if filter_condition:
            sql += f" WHERE ({filter_condition})"
        return sql

    def build_range_select_sql(
        self,
        table: str,
        select_columns: Sequence[str],
        key_column: str,
        closed: bool = False,
        schema: str | None = None,
        filter_condition: str | None = None,
    ) -> str:
        """
        Rows whose key lies in one bucket.

        Binds ``(start, end)``; the upper bound is exclusive unless ``closed``.
        """
        if not select_columns:
            raise ValueError("At least one column is required")
        key = self.quote_identifier(key_column)
        upper = "<=" if closed else "<"
        sql = (
            f"SELECT {self._column_list(select_columns)} FROM {self.qualify_table(table, schema)} "
            f"WHERE {key} >= {self.placeholder(1)} AND {key} {upper} {self.placeholder(2)}"
        )
        if filter_condition:
            sql += f" AND ({filter_condition})"
        return sql

    def build_extract_sql(
        self,
        table: str,
        select_columns: Sequence[str],
        order_columns: Sequence[str],
        incremental_column: str | None = None,
        filter_condition: str | None = None,
        schema: str | None = None,
    ) -> str:
        """
        Streaming extraction query.

        When ``incremental_column`` is given the statement binds one
        parameter, the previous watermark.
        """
        if not select_columns:
            raise ValueError("At least one column is required")
        sql = f"SELECT {self._column_list(select_columns)} FROM {self.qualify_table(table, schema)}"
        conditions = []
        if filter_condition:
            conditions.append(f"({filter_condition})")
        if incremental_column:
            conditions.append(f"{self.quote_identifier(incremental_column)} > {self.placeholder(1)}")
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        if order_columns:
            sql += f" ORDER BY {self._column_list(order_columns)}"
        return sql
