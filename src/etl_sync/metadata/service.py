"""
Catalog access for table and column descriptors.

``DatabaseMetadataService`` is the narrow interface the engine consumes;
``DbApiMetadataService`` implements it over DB-API connections using
information_schema, Oracle's ALL_* views, or SQLite pragmas depending on the
datasource's dialect.
"""

import logging
from typing import Any, Protocol

from ..datasource import DatasourceRegistry, fetch_all
from ..dialect import Dialect, DialectType
from ..models import ColumnMetadata, TableMetadata

logger = logging.getLogger(__name__)


class DatabaseMetadataService(Protocol):
    def get_columns(self, datasource_code: str, schema: str | None, table: str) -> list[ColumnMetadata]:
        ...

    def get_tables(self, datasource_code: str, schema: str | None) -> list[TableMetadata]:
        ...


def _nullable(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().upper() in ("YES", "Y", "TRUE", "1")
    return bool(value)


class DbApiMetadataService:
    """Reads catalog metadata through the datasource registry's pools."""

    def __init__(self, registry: DatasourceRegistry):
        self.registry = registry

    # ---- columns -----------------------------------------------------------

    def get_columns(self, datasource_code: str, schema: str | None, table: str) -> list[ColumnMetadata]:
        """
        Columns of one table, primary-key flags included.

        Returns an empty list when the table does not exist.
        """
        dialect = self.registry.dialect(datasource_code)
        with self.registry.connection(datasource_code) as conn:
            if dialect.dialect_type == DialectType.SQLITE:
                return self._sqlite_columns(conn, dialect, table)
            if dialect.dialect_type == DialectType.ORACLE:
                return self._oracle_columns(conn, dialect, schema, table)
            return self._information_schema_columns(conn, dialect, schema, table)

    def _sqlite_columns(self, conn: Any, dialect: Dialect, table: str) -> list[ColumnMetadata]:
        rows = fetch_all(conn, f"PRAGMA table_info({dialect.quote_identifier(table)})")
        # cid, name, type, notnull, dflt_value, pk
        return [
            ColumnMetadata(
                name=name,
                data_type=data_type or None,
                nullable=not notnull,
                primary_key=bool(pk),
                ordinal=cid + 1,
            )
            for cid, name, data_type, notnull, _default, pk in rows
        ]

    def _information_schema_columns(
        self, conn: Any, dialect: Dialect, schema: str | None, table: str
    ) -> list[ColumnMetadata]:
        sql = (
            "SELECT column_name, data_type, character_maximum_length, numeric_precision, "
            "numeric_scale, is_nullable, ordinal_position "
            f"FROM information_schema.columns WHERE table_name = {dialect.placeholder(1)}"
        )
        params: tuple = (table,)
        if schema:
            sql += f" AND table_schema = {dialect.placeholder(2)}"
            params = (table, schema)
        rows = fetch_all(conn, sql, params)
        primary_keys = set(self._information_schema_primary_keys(conn, dialect, schema, table))
        return [
            ColumnMetadata(
                name=name,
                data_type=data_type,
                size=char_length if char_length is not None else precision,
                scale=scale,
                nullable=_nullable(is_nullable),
                primary_key=name in primary_keys,
                ordinal=ordinal,
            )
            for name, data_type, char_length, precision, scale, is_nullable, ordinal in rows
        ]

    def _information_schema_primary_keys(
        self, conn: Any, dialect: Dialect, schema: str | None, table: str
    ) -> list[str]:
        sql = (
            "SELECT kcu.column_name FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name "
            "AND tc.table_schema = kcu.table_schema AND tc.table_name = kcu.table_name "
            f"WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_name = {dialect.placeholder(1)}"
        )
        params: tuple = (table,)
        if schema:
            sql += f" AND tc.table_schema = {dialect.placeholder(2)}"
            params = (table, schema)
        sql += " ORDER BY kcu.ordinal_position"
        return [row[0] for row in fetch_all(conn, sql, params)]

    def _oracle_columns(
        self, conn: Any, dialect: Dialect, schema: str | None, table: str
    ) -> list[ColumnMetadata]:
        sql = (
            "SELECT column_name, data_type, data_length, data_precision, data_scale, "
            f"nullable, column_id FROM all_tab_columns WHERE table_name = {dialect.placeholder(1)}"
        )
        params: tuple = (table,)
        if schema:
            sql += f" AND owner = {dialect.placeholder(2)}"
            params = (table, schema)
        rows = fetch_all(conn, sql, params)

        pk_sql = (
            "SELECT cc.column_name FROM all_constraints c "
            "JOIN all_cons_columns cc ON c.owner = cc.owner AND c.constraint_name = cc.constraint_name "
            f"WHERE c.constraint_type = 'P' AND c.table_name = {dialect.placeholder(1)}"
        )
        if schema:
            pk_sql += f" AND c.owner = {dialect.placeholder(2)}"
        primary_keys = {row[0] for row in fetch_all(conn, pk_sql, params)}

        return [
            ColumnMetadata(
                name=name,
                data_type=data_type,
                size=precision if precision is not None else length,
                scale=scale,
                nullable=_nullable(nullable),
                primary_key=name in primary_keys,
                ordinal=column_id,
            )
            for name, data_type, length, precision, scale, nullable, column_id in rows
        ]

    # ---- tables ------------------------------------------------------------

    def get_tables(self, datasource_code: str, schema: str | None) -> list[TableMetadata]:
        """Tables visible in a schema, with comma-separated primary keys."""
        dialect = self.registry.dialect(datasource_code)
        with self.registry.connection(datasource_code) as conn:
            if dialect.dialect_type == DialectType.SQLITE:
                names = [row[0] for row in fetch_all(
                    conn, "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
                )]
                tables = []
                for name in names:
                    columns = self._sqlite_columns(conn, dialect, name)
                    pks = [c.name for c in sorted(columns, key=lambda c: c.ordinal or 0) if c.primary_key]
                    tables.append(TableMetadata(name=name, schema=None, primary_key=",".join(pks) or None))
                return tables

            if dialect.dialect_type == DialectType.ORACLE:
                sql = "SELECT table_name, owner FROM all_tables"
                params: tuple = ()
                if schema:
                    sql += f" WHERE owner = {dialect.placeholder(1)}"
                    params = (schema,)
                rows = fetch_all(conn, sql + " ORDER BY table_name", params)
                return [TableMetadata(name=name, schema=owner) for name, owner in rows]

            sql = "SELECT table_name, table_schema FROM information_schema.tables WHERE table_type = 'BASE TABLE'"
            params = ()
            if schema:
                sql += f" AND table_schema = {dialect.placeholder(1)}"
                params = (schema,)
            rows = fetch_all(conn, sql + " ORDER BY table_name", params)
            return [
                TableMetadata(
                    name=name,
                    schema=table_schema,
                    primary_key=",".join(
                        self._information_schema_primary_keys(conn, dialect, table_schema, name)
                    ) or None,
                )
                for name, table_schema in rows
            ]
