"""
Table structure inspection.

Normalizes column descriptors into a stable order, determines the primary
key, and computes a structural digest that changes exactly when the
column list, a column's type/size/scale/nullability, or the primary key
changes.
"""

import hashlib
import logging
from typing import Any

from utils.tracing import trace_function

from ..errors import SchemaNotFoundError
from ..models import ColumnMetadata, TableColumn, TableSchemaMetadata
from .service import DatabaseMetadataService

logger = logging.getLogger(__name__)


def _digest_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def compute_structure_digest(columns: list[TableColumn], primary_key_columns: list[str]) -> str:
    """
    SHA-256 hex digest of a table structure.

    Args:
        columns: Columns in canonical order
        primary_key_columns: Primary key columns in key order

    Returns:
        64-character lowercase hex digest
    """
    column_part = "||".join(
        "|".join(
            _digest_value(value)
            for value in (column.name, column.data_type, column.size, column.scale, column.nullable)
        )
        for column in columns
    )
    payload = f"{column_part}##{','.join(primary_key_columns)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _sort_key(column: ColumnMetadata) -> tuple:
    # Missing ordinals sort after all known ones, ties broken by name
    return (column.ordinal is None, column.ordinal or 0, column.name)


class TableMetadataInspector:
    """Builds TableSchemaMetadata from a DatabaseMetadataService."""

    def __init__(self, metadata_service: DatabaseMetadataService):
        self.metadata_service = metadata_service

    @trace_function("inspect_table", component="metadata")
    def inspect(self, datasource_code: str, schema: str | None, table: str) -> TableSchemaMetadata:
        """
        Inspect one table.

        Args:
            datasource_code: Datasource to read from
            schema: Optional schema
            table: Table name

        Returns:
            Columns, primary key and structural digest

        Raises:
            ValueError: If the table name is empty
            SchemaNotFoundError: If the table has no visible columns
        """
        if not table:
            raise ValueError("Table name cannot be empty")

        raw_columns = self.metadata_service.get_columns(datasource_code, schema, table)
        if not raw_columns:
            raise SchemaNotFoundError(datasource_code, schema, table)

        columns = [
            TableColumn(
                name=c.name,
                data_type=c.data_type,
                size=c.size,
                scale=c.scale,
                nullable=c.nullable,
                primary_key=c.primary_key,
                ordinal=c.ordinal,
            )
            for c in sorted(raw_columns, key=_sort_key)
        ]

        primary_keys = [c.name for c in columns if c.primary_key]
        if not primary_keys:
            primary_keys = self._table_level_primary_key(datasource_code, schema, table)

        digest = compute_structure_digest(columns, primary_keys)
        logger.debug(
            f"Inspected {datasource_code}:{schema or ''}.{table}: "
            f"{len(columns)} columns, pk={primary_keys}, digest={digest[:12]}"
        )
        return TableSchemaMetadata(
            datasource=datasource_code,
            schema=schema,
            table=table,
            columns=columns,
            primary_key_columns=primary_keys,
            structure_digest=digest,
        )

    def _table_level_primary_key(self, datasource_code: str, schema: str | None, table: str) -> list[str]:
        for meta in self.metadata_service.get_tables(datasource_code, schema):
            if meta.name.lower() == table.lower() and meta.primary_key:
                return [part.strip() for part in meta.primary_key.split(",") if part.strip()]
        return []
