"""
Engine-specific dialects.

Each class overrides only what its engine does differently from the
generic ANSI dialect: identifier quoting, upsert syntax, and a few DDL forms.
"""

from collections.abc import Sequence

from utils.sql_safety import validate_type_definition

from .base import Dialect, DialectType


class GenericDialect(Dialect):
    """Fallback for unrecognized engines."""

    pass


class MySqlDialect(Dialect):
    """MySQL family: MySQL, MariaDB, TiDB, PolarDB, StarRocks."""

    dialect_type = DialectType.MYSQL
    open_quote = "`"
    close_quote = "`"
    requires_pre_delete = False

    def build_upsert_sql(
        self,
        table: str,
        columns: Sequence[str],
        primary_key_columns: Sequence[str],
        schema: str | None = None,
    ) -> str:
        self._check_columns(columns, primary_key_columns)
        non_keys = self._non_key_columns(columns, primary_key_columns)
        if non_keys:
            assignments = ", ".join(
                f"{self.quote_identifier(c)} = VALUES({self.quote_identifier(c)})" for c in non_keys
            )
        else:
            # all-key table: a no-op assignment keeps the statement valid
            assignments = ", ".join(
                f"{self.quote_identifier(c)} = {self.quote_identifier(c)}" for c in primary_key_columns
            )
        return f"{self.build_insert_sql(table, columns, schema)} ON DUPLICATE KEY UPDATE {assignments}"


class PostgreSqlDialect(Dialect):
    """PostgreSQL family: PostgreSQL, openGauss, Kingbase, GaussDB."""

    dialect_type = DialectType.POSTGRESQL
    requires_pre_delete = False
    excluded_alias = "EXCLUDED"

    def build_upsert_sql(
        self,
        table: str,
        columns: Sequence[str],
        primary_key_columns: Sequence[str],
        schema: str | None = None,
    ) -> str:
        self._check_columns(columns, primary_key_columns)
        updates = self._non_key_columns(columns, primary_key_columns) or list(primary_key_columns)
        assignments = ", ".join(
            f"{self.quote_identifier(c)} = {self.excluded_alias}.{self.quote_identifier(c)}"
            for c in updates
        )
        return (
            f"{self.build_insert_sql(table, columns, schema)} "
            f"ON CONFLICT ({self._column_list(primary_key_columns)}) DO UPDATE SET {assignments}"
        )


class SqliteDialect(PostgreSqlDialect):
    """SQLite 3.24+ (ON CONFLICT upsert, no TRUNCATE)."""

    dialect_type = DialectType.SQLITE
    excluded_alias = "excluded"

    def build_truncate_sql(self, table: str, schema: str | None = None) -> str:
        return self.build_delete_all_sql(table, schema)


class _MergeDialect(Dialect):
    """Shared MERGE rendering for Oracle and SQL Server."""

    requires_pre_delete = False
    target_alias = "target"
    source_alias = "source"

    def _alias(self, name: str) -> str:
        raise NotImplementedError

    def _source_select(self, columns: Sequence[str]) -> str:
        raise NotImplementedError

    def _merge_terminator(self) -> str:
        return ""

    def build_upsert_sql(
        self,
        table: str,
        columns: Sequence[str],
        primary_key_columns: Sequence[str],
        schema: str | None = None,
    ) -> str:
        self._check_columns(columns, primary_key_columns)
        t, s = self.target_alias, self.source_alias
        on_clause = " AND ".join(
            f"{t}.{self.quote_identifier(pk)} = {s}.{self.quote_identifier(pk)}"
            for pk in primary_key_columns
        )
        sql = (
            f"MERGE INTO {self.qualify_table(table, schema)} {self._alias(t)} "
            f"USING ({self._source_select(columns)}) {self._alias(s)} ON ({on_clause})"
        )
        non_keys = self._non_key_columns(columns, primary_key_columns)
        # ON-clause columns cannot be updated, so an all-key table only inserts
        if non_keys:
            assignments = ", ".join(
                f"{t}.{self.quote_identifier(c)} = {s}.{self.quote_identifier(c)}" for c in non_keys
            )
            sql += f" WHEN MATCHED THEN UPDATE SET {assignments}"
        source_values = ", ".join(f"{s}.{self.quote_identifier(c)}" for c in columns)
        sql += (
            f" WHEN NOT MATCHED THEN INSERT ({self._column_list(columns)}) "
            f"VALUES ({source_values}){self._merge_terminator()}"
        )
        return sql


class OracleDialect(_MergeDialect):
    dialect_type = DialectType.ORACLE

    def _alias(self, name: str) -> str:
        return name

    def _source_select(self, columns: Sequence[str]) -> str:
        projections = ", ".join(
            f"{self.placeholder(i + 1)} AS {self.quote_identifier(c)}" for i, c in enumerate(columns)
        )
        return f"SELECT {projections} FROM dual"

    def build_add_column_sql(
        self, table: str, column: str, type_definition: str, schema: str | None = None
    ) -> str:
        validate_type_definition(type_definition)
        return (
            f"ALTER TABLE {self.qualify_table(table, schema)} "
            f"ADD ({self.quote_identifier(column)} {type_definition.strip()})"
        )


class SqlServerDialect(_MergeDialect):
    dialect_type = DialectType.SQLSERVER
    open_quote = "["
    close_quote = "]"

    def _alias(self, name: str) -> str:
        return f"AS {name}"

    def _source_select(self, columns: Sequence[str]) -> str:
        projections = ", ".join(
            f"{self.placeholder(i + 1)} AS {self.quote_identifier(c)}" for i, c in enumerate(columns)
        )
        return f"SELECT {projections}"

    def _merge_terminator(self) -> str:
        return ";"

    def build_add_column_sql(
        self, table: str, column: str, type_definition: str, schema: str | None = None
    ) -> str:
        validate_type_definition(type_definition)
        return (
            f"ALTER TABLE {self.qualify_table(table, schema)} "
            f"ADD {self.quote_identifier(column)} {type_definition.strip()}"
        )


DEFAULT_DIALECTS: dict[DialectType, type[Dialect]] = {
    DialectType.GENERIC: GenericDialect,
    DialectType.MYSQL: MySqlDialect,
    DialectType.POSTGRESQL: PostgreSqlDialect,
    DialectType.ORACLE: OracleDialect,
    DialectType.SQLSERVER: SqlServerDialect,
    DialectType.SQLITE: SqliteDialect,
}
