"""
Data model for synchronization jobs, run state and run history.

Enums are str-valued so they round-trip through the state tables as text.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import JobConfigurationError


class SyncMode(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


class RunState(str, Enum):
    """Lifecycle of a single orchestrated run."""

    PENDING = "PENDING"
    EXTRACTING = "EXTRACTING"
    BUCKETING = "BUCKETING"
    RECONCILING = "RECONCILING"
    CHECKPOINTING = "CHECKPOINTING"
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCESS, RunState.PARTIAL_SUCCESS, RunState.FAILED)


class MappingAction(str, Enum):
    COPY = "COPY"
    SKIP = "SKIP"
    CONSTANT = "CONSTANT"


class SkipReason(str, Enum):
    """Why a bucket ended the run in the state it did."""

    CHECKSUM_EQUAL = "CHECKSUM_EQUAL"
    REPAIRED = "REPAIRED"
    RETRY_RECOVERED = "RETRY_RECOVERED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    NON_DETERMINISTIC_ORDER = "NON_DETERMINISTIC_ORDER"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    COMPARISON_ERROR = "COMPARISON_ERROR"
    REPAIR_ERROR = "REPAIR_ERROR"


class Side(str, Enum):
    SOURCE = "SOURCE"
    TARGET = "TARGET"


@dataclass
class ColumnMappingRule:
    """One ordered source-to-target column rule."""

    source_column: str | None
    target_column: str | None
    action: MappingAction = MappingAction.COPY
    constant_value: Any = None
    ordinal: int = 0

    def __post_init__(self) -> None:
        self.action = MappingAction(self.action)
        if self.action == MappingAction.COPY and not (self.source_column and self.target_column):
            raise JobConfigurationError("COPY rule needs both source_column and target_column")
        if self.action == MappingAction.CONSTANT and not self.target_column:
            raise JobConfigurationError("CONSTANT rule needs a target_column")
        if self.action == MappingAction.SKIP and not self.source_column:
            raise JobConfigurationError("SKIP rule needs a source_column")


@dataclass
class SyncJob:
    """
    Job definition supplied by configuration.

    Read-only from the engine's point of view.
    """

    id: str
    name: str
    source_datasource: str
    source_table: str
    target_datasource: str
    target_table: str
    source_schema: str | None = None
    target_schema: str | None = None
    sync_mode: SyncMode = SyncMode.FULL
    incremental_column: str | None = None
    batch_size: int = 1000
    retry_count: int = 3
    retry_interval_seconds: float = 1.0
    concurrent_allowed: bool = False
    mapping_rules: list[ColumnMappingRule] = field(default_factory=list)
    truncate_before_full: bool = False
    filter_condition: str | None = None

    def __post_init__(self) -> None:
        self.sync_mode = SyncMode(self.sync_mode)
        if self.sync_mode == SyncMode.INCREMENTAL and not self.incremental_column:
            raise JobConfigurationError(
                f"Job '{self.id}': incremental_column is required for INCREMENTAL mode"
            )
        if self.sync_mode == SyncMode.FULL and self.incremental_column:
            raise JobConfigurationError(
                f"Job '{self.id}': incremental_column is only valid for INCREMENTAL mode"
            )
        if self.batch_size <= 0:
            raise JobConfigurationError(f"Job '{self.id}': batch_size must be positive")
        if self.retry_count < 0:
            raise JobConfigurationError(f"Job '{self.id}': retry_count cannot be negative")
        self.mapping_rules = sorted(self.mapping_rules, key=lambda rule: rule.ordinal)


@dataclass
class SyncCheckpoint:
    """Per-job watermark and last outcome."""

    job_id: str
    sync_mode: SyncMode
    incremental_column: str | None = None
    last_incremental_value: str | None = None
    last_sync_time: datetime | None = None
    source_row_count: int = 0
    target_row_count: int = 0
    applied_bucket_count: int = 0
    skipped_bucket_count: int = 0
    validation_status: str = "INIT"
    last_execution_log_id: str | None = None


@dataclass
class ExecutionLog:
    """One row per run. Immutable once sealed."""

    id: str
    job_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    source_row_count: int = 0
    target_row_count: int = 0
    inserted_count: int = 0
    bucket_count: int = 0
    mismatch_count: int = 0
    needs_sync_count: int = 0
    final_state: RunState | None = None
    error_message: str | None = None
    execution_detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "source_row_count": self.source_row_count,
            "target_row_count": self.target_row_count,
            "inserted_count": self.inserted_count,
            "bucket_count": self.bucket_count,
            "mismatch_count": self.mismatch_count,
            "needs_sync_count": self.needs_sync_count,
            "final_state": self.final_state.value if self.final_state else None,
            "error_message": self.error_message,
        }


@dataclass
class BucketChecksum:
    """Comparison outcome for one key-range bucket of one run."""

    execution_log_id: str
    bucket_number: int
    boundary_start: str
    boundary_end: str
    boundary_closed: bool = False
    source_row_count: int = 0
    target_row_count: int = 0
    source_checksum: str | None = None
    target_checksum: str | None = None
    retry_count: int = 0
    retry_success: bool = False
    needs_sync: bool = False
    skip_reason: SkipReason | None = None
    compared_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_retry_time: datetime | None = None

    @property
    def matched(self) -> bool:
        return (
            self.source_checksum is not None
            and self.source_row_count == self.target_row_count
            and self.source_checksum == self.target_checksum
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket_number": self.bucket_number,
            "boundary_start": self.boundary_start,
            "boundary_end": self.boundary_end,
            "boundary_closed": self.boundary_closed,
            "source_row_count": self.source_row_count,
            "target_row_count": self.target_row_count,
            "source_checksum": self.source_checksum,
            "target_checksum": self.target_checksum,
            "retry_count": self.retry_count,
            "retry_success": self.retry_success,
            "needs_sync": self.needs_sync,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
        }


@dataclass
class ValidationLog:
    """Whole-table consistency summary for one run."""

    execution_log_id: str
    job_id: str
    source_total_rows: int
    target_total_rows: int
    source_checksum: str
    target_checksum: str
    bucket_count: int
    mismatch_count: int
    status: ExecutionStatus
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class TableStructureSnapshot:
    """Last observed structure of one side of a job."""

    job_id: str
    datasource: str
    schema: str | None
    table: str
    side: Side
    column_count: int
    primary_key_columns: list[str]
    structure_digest: str
    snapshot_time: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ColumnMetadata:
    """Column descriptor returned by a metadata service."""

    name: str
    data_type: str | None = None
    size: int | None = None
    scale: int | None = None
    nullable: bool | None = None
    primary_key: bool = False
    ordinal: int | None = None


@dataclass
class TableMetadata:
    """Table descriptor returned by a metadata service."""

    name: str
    schema: str | None = None
    primary_key: str | None = None


@dataclass
class TableColumn:
    """Normalized column of an inspected table."""

    name: str
    data_type: str | None
    size: int | None
    scale: int | None
    nullable: bool | None
    primary_key: bool
    ordinal: int | None

    @property
    def type_definition(self) -> str:
        """Column type with size/scale, usable in ALTER TABLE ... ADD."""
        base = self.data_type or "VARCHAR"
        if "(" in base:
            return base
        if self.size and self.scale:
            return f"{base}({self.size},{self.scale})"
        if self.size and base.upper() in ("VARCHAR", "CHAR", "NVARCHAR", "NCHAR", "VARCHAR2", "DECIMAL", "NUMERIC"):
            return f"{base}({self.size})"
        return base


@dataclass
class TableSchemaMetadata:
    """Inspected structure of one table plus its structural digest."""

    datasource: str
    schema: str | None
    table: str
    columns: list[TableColumn]
    primary_key_columns: list[str]
    structure_digest: str

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def find_column(self, name: str) -> TableColumn | None:
        """Case-insensitive column lookup."""
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None
