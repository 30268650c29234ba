"""
Column mapping resolution.

Turns a job's mapping rules and the inspected structure of both tables into
a column projection: which source columns are read, which target columns are
written, and how a source row becomes a target row. Source columns not named
by any rule are copied to the target column of the same name.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import SchemaDriftError, UnsupportedKeyTypeError
from ..models import MappingAction, SyncJob, TableColumn, TableSchemaMetadata

logger = logging.getLogger(__name__)


@dataclass
class ColumnProjection:
    """
    Resolved source-to-target column projection.

    ``slots`` holds one entry per target column: either the index of a source
    column in ``source_columns`` or a constant.
    """

    source_columns: list[str]
    target_columns: list[str]
    slots: list[tuple[bool, Any]]
    source_key_columns: list[str]
    target_key_columns: list[str]
    extract_columns: list[str]
    incremental_index: int | None = None
    missing_target_columns: list[tuple[str, TableColumn]] = field(default_factory=list)

    def project(self, row: Sequence[Any]) -> tuple:
        return tuple(row[value] if is_copy else value for is_copy, value in self.slots)

    def incremental_value(self, row: Sequence[Any]) -> Any:
        return row[self.incremental_index] if self.incremental_index is not None else None


def _require_source_column(job: SyncJob, source: TableSchemaMetadata, name: str) -> TableColumn:
    column = source.find_column(name)
    if column is None:
        raise SchemaDriftError(
            f"Job '{job.id}': source column '{name}' no longer exists in "
            f"{source.datasource}:{source.table}"
        )
    return column


def resolve_projection(
    job: SyncJob,
    source: TableSchemaMetadata,
    target: TableSchemaMetadata,
    schema_evolution: bool = True,
) -> ColumnProjection:
    """
    Resolve the job's column projection against the current table structures.

    Args:
        job: Job definition
        source: Inspected source table
        target: Inspected target table
        schema_evolution: Allow mapped target columns missing from the target;
            they are reported in ``missing_target_columns`` for the caller to add

    Returns:
        Column projection

    Raises:
        SchemaDriftError: If a mapped source column vanished, or a mapped target
            column is missing and schema evolution is disabled
        UnsupportedKeyTypeError: If no key can be mapped between the tables
    """
    rules_by_source = {
        rule.source_column.lower(): rule for rule in job.mapping_rules if rule.source_column
    }

    # (target name, source column or None, constant)
    entries: list[tuple[str, TableColumn | None, Any]] = []
    for rule in job.mapping_rules:
        if rule.action == MappingAction.COPY:
            column = _require_source_column(job, source, rule.source_column)
            entries.append((rule.target_column, column, None))
        elif rule.action == MappingAction.CONSTANT:
            entries.append((rule.target_column, None, rule.constant_value))
        else:
            _require_source_column(job, source, rule.source_column)

    mapped_targets = {name.lower() for name, _, _ in entries}
    for column in source.columns:
        if column.name.lower() in rules_by_source or column.name.lower() in mapped_targets:
            continue
        entries.append((column.name, column, None))

    source_columns: list[str] = []
    target_columns: list[str] = []
    slots: list[tuple[bool, Any]] = []
    missing: list[tuple[str, TableColumn]] = []
    # (target name, source name) of every copied column
    copied: list[tuple[str, str]] = []

    for target_name, column, constant in entries:
        existing = target.find_column(target_name)
        if existing is None:
            if column is None or not schema_evolution:
                raise SchemaDriftError(
                    f"Job '{job.id}': target column '{target_name}' does not exist in "
                    f"{target.datasource}:{target.table}"
                )
            missing.append((target_name, column))
        else:
            target_name = existing.name
        target_columns.append(target_name)
        if column is None:
            slots.append((False, constant))
            continue
        source_columns.append(column.name)
        slots.append((True, len(source_columns) - 1))
        copied.append((target_name, column.name))

    target_keys = list(target.primary_key_columns)
    if not target_keys:
        # Fall back to the source key carried over to the target
        by_source = {src.lower(): tgt for tgt, src in copied}
        target_keys = [by_source[pk.lower()] for pk in source.primary_key_columns if pk.lower() in by_source]
    if not target_keys:
        raise UnsupportedKeyTypeError(
            f"Job '{job.id}': neither {target.table} nor {source.table} has a usable primary key"
        )

    by_target = {tgt.lower(): src for tgt, src in copied}
    source_keys = []
    for key in target_keys:
        mapped = by_target.get(key.lower())
        if mapped is None:
            raise UnsupportedKeyTypeError(
                f"Job '{job.id}': target key column '{key}' is not copied from the source"
            )
        source_keys.append(mapped)

    extract_columns = list(source_columns)
    incremental_index = None
    if job.incremental_column:
        incremental = _require_source_column(job, source, job.incremental_column)
        if incremental.name not in extract_columns:
            extract_columns.append(incremental.name)
        incremental_index = extract_columns.index(incremental.name)

    logger.debug(
        f"Job '{job.id}': projection {source_columns} -> {target_columns}, "
        f"keys {source_keys} -> {target_keys}"
    )
    return ColumnProjection(
        source_columns=source_columns,
        target_columns=target_columns,
        slots=slots,
        source_key_columns=source_keys,
        target_key_columns=target_keys,
        extract_columns=extract_columns,
        incremental_index=incremental_index,
        missing_target_columns=missing,
    )
