"""
Persistent run state.

Checkpoints, execution logs, bucket checksums, validation logs and structure
snapshots live in five tables on a state datasource, which can be any engine
with a registered dialect. Timestamps are stored as ISO-8601 text and flags
as 0/1 integers so the same schema works everywhere.
"""

import logging
import threading
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from utils.tracing import trace_function

from ..datasource import DatasourceRegistry
from ..dialect import Dialect, DialectType
from ..models import (
    BucketChecksum,
    ExecutionLog,
    ExecutionStatus,
    RunState,
    Side,
    SkipReason,
    SyncCheckpoint,
    SyncMode,
    TableStructureSnapshot,
    ValidationLog,
)

logger = logging.getLogger(__name__)

CHECKPOINT = "etl_sync_checkpoint"
EXECUTION_LOG = "etl_execution_log"
BUCKET_CHECKSUM = "etl_bucket_checksum"
VALIDATION_LOG = "etl_validation_log"
STRUCTURE_SNAPSHOT = "etl_structure_snapshot"

# (column, type) pairs; "BIGINT" is rewritten per engine
_TABLES: dict[str, tuple[list[tuple[str, str]], list[str]]] = {
    CHECKPOINT: ([
        ("job_id", "VARCHAR(128)"),
        ("sync_mode", "VARCHAR(16)"),
        ("incremental_column", "VARCHAR(128)"),
        ("last_incremental_value", "VARCHAR(256)"),
        ("last_sync_time", "VARCHAR(40)"),
        ("source_row_count", "BIGINT"),
        ("target_row_count", "BIGINT"),
        ("applied_bucket_count", "BIGINT"),
        ("skipped_bucket_count", "BIGINT"),
        ("validation_status", "VARCHAR(32)"),
        ("last_execution_log_id", "VARCHAR(64)"),
    ], ["job_id"]),
    EXECUTION_LOG: ([
        ("id", "VARCHAR(64)"),
        ("job_id", "VARCHAR(128)"),
        ("status", "VARCHAR(32)"),
        ("start_time", "VARCHAR(40)"),
        ("end_time", "VARCHAR(40)"),
        ("duration_ms", "BIGINT"),
        ("source_row_count", "BIGINT"),
        ("target_row_count", "BIGINT"),
        ("inserted_count", "BIGINT"),
        ("bucket_count", "BIGINT"),
        ("mismatch_count", "BIGINT"),
        ("needs_sync_count", "BIGINT"),
        ("final_state", "VARCHAR(32)"),
        ("error_message", "VARCHAR(4000)"),
        ("execution_detail", "VARCHAR(4000)"),
    ], ["id"]),
    BUCKET_CHECKSUM: ([
        ("execution_log_id", "VARCHAR(64)"),
        ("bucket_number", "BIGINT"),
        ("boundary_start", "VARCHAR(512)"),
        ("boundary_end", "VARCHAR(512)"),
        ("boundary_closed", "INTEGER"),
        ("source_row_count", "BIGINT"),
        ("target_row_count", "BIGINT"),
        ("source_checksum", "VARCHAR(32)"),
        ("target_checksum", "VARCHAR(32)"),
        ("retry_count", "INTEGER"),
        ("retry_success", "INTEGER"),
        ("needs_sync", "INTEGER"),
        ("skip_reason", "VARCHAR(32)"),
        ("compared_at", "VARCHAR(40)"),
        ("last_retry_time", "VARCHAR(40)"),
    ], ["execution_log_id", "bucket_number"]),
    VALIDATION_LOG: ([
        ("execution_log_id", "VARCHAR(64)"),
        ("job_id", "VARCHAR(128)"),
        ("source_total_rows", "BIGINT"),
        ("target_total_rows", "BIGINT"),
        ("source_checksum", "VARCHAR(32)"),
        ("target_checksum", "VARCHAR(32)"),
        ("bucket_count", "BIGINT"),
        ("mismatch_count", "BIGINT"),
        ("status", "VARCHAR(32)"),
        ("message", "VARCHAR(4000)"),
        ("created_at", "VARCHAR(40)"),
    ], ["execution_log_id"]),
    STRUCTURE_SNAPSHOT: ([
        ("job_id", "VARCHAR(128)"),
        ("datasource_code", "VARCHAR(128)"),
        ("schema_name", "VARCHAR(128)"),
        ("table_name", "VARCHAR(128)"),
        ("side", "VARCHAR(16)"),
        ("column_count", "INTEGER"),
        ("primary_key_columns", "VARCHAR(1024)"),
        ("structure_digest", "VARCHAR(64)"),
        ("snapshot_time", "VARCHAR(40)"),
    ], ["job_id", "datasource_code", "schema_name", "table_name"]),
}

_MAX_TEXT = 4000


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _truncate(value: str | None, limit: int = _MAX_TEXT) -> str | None:
    if value is None or len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


class SyncStateStore:
    """
    SQL-backed store for all run state.

    Writes are serialized by an in-process lock; reads are not.
    """

    def __init__(self, registry: DatasourceRegistry, datasource_code: str, table_prefix: str = ""):
        """
        Initialize state store

        Args:
            registry: Datasource registry providing the state connection
            datasource_code: Code of the state datasource
            table_prefix: Prefix applied to all state table names
        """
        self.registry = registry
        self.datasource_code = datasource_code
        self.table_prefix = table_prefix
        self._write_lock = threading.RLock()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the write lock across a read-modify-write sequence."""
        with self._write_lock:
            yield

    @property
    def dialect(self) -> Dialect:
        return self.registry.dialect(self.datasource_code)

    def _table(self, name: str) -> str:
        return self.dialect.qualify_table(f"{self.table_prefix}{name}")

    def _column_type(self, declared: str) -> str:
        if declared == "BIGINT" and self.dialect.dialect_type == DialectType.ORACLE:
            return "NUMBER(19)"
        return declared

    # ---- schema ------------------------------------------------------------

    @trace_function("state_initialize_schema", component="state")
    def initialize_schema(self) -> list[str]:
        """
        Create missing state tables.

        Returns:
            Names of the tables that were created
        """
        created = []
        with self._write_lock, self.registry.connection(self.datasource_code) as conn:
            for name, (columns, keys) in _TABLES.items():
                if self._table_exists(conn, name):
                    continue
                column_sql = ", ".join(
                    f"{self.dialect.quote_identifier(column)} {self._column_type(declared)}"
                    + (" NOT NULL" if column in keys else "")
                    for column, declared in columns
                )
                key_sql = ", ".join(self.dialect.quote_identifier(k) for k in keys)
                cursor = conn.cursor()
                try:
                    cursor.execute(
                        f"CREATE TABLE {self._table(name)} ({column_sql}, PRIMARY KEY ({key_sql}))"
                    )
                finally:
                    cursor.close()
                created.append(f"{self.table_prefix}{name}")
            conn.commit()
        if created:
            logger.info(f"Created state tables: {', '.join(created)}")
        return created

    def _table_exists(self, conn: Any, name: str) -> bool:
        cursor = conn.cursor()
        try:
            cursor.execute(f"SELECT COUNT(*) FROM {self._table(name)} WHERE 1 = 0")
            cursor.fetchall()
            return True
        except Exception:
            conn.rollback()
            return False
        finally:
            cursor.close()

    # ---- low-level helpers -------------------------------------------------

    def _query(self, sql: str, params: Sequence[Any] = (), limit: int | None = None) -> list[tuple]:
        with self.registry.connection(self.datasource_code) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, tuple(params))
                return list(cursor.fetchmany(limit) if limit else cursor.fetchall())
            finally:
                cursor.close()

    def _execute(self, sql: str, params: Sequence[Any]) -> int:
        with self._write_lock, self.registry.connection(self.datasource_code) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, tuple(params))
                rowcount = cursor.rowcount
                conn.commit()
                return rowcount
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _upsert_many(self, name: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        columns, keys = _TABLES[name]
        column_names = [column for column, _ in columns]
        table = f"{self.table_prefix}{name}"
        dialect = self.dialect
        upsert_sql = dialect.build_upsert_sql(table, column_names, keys)
        with self._write_lock, self.registry.connection(self.datasource_code) as conn:
            cursor = conn.cursor()
            try:
                if dialect.requires_pre_delete:
                    cursor.executemany(
                        dialect.build_delete_by_key_sql(table, keys),
                        [tuple(row[k] for k in keys) for row in rows],
                    )
                cursor.executemany(upsert_sql, [tuple(row[c] for c in column_names) for row in rows])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _select(self, name: str, where: list[str], params: Sequence[Any], order_by: str | None = None) -> str:
        columns, _ = _TABLES[name]
        dialect = self.dialect
        sql = (
            f"SELECT {', '.join(dialect.quote_identifier(c) for c, _ in columns)} "
            f"FROM {self._table(name)}"
        )
        if where:
            sql += " WHERE " + " AND ".join(
                f"{dialect.quote_identifier(column)} = {dialect.placeholder(i + 1)}"
                for i, column in enumerate(where)
            )
        if order_by:
            sql += f" ORDER BY {order_by}"
        return sql

    # ---- checkpoints -------------------------------------------------------

    def get_checkpoint(self, job_id: str) -> SyncCheckpoint | None:
        rows = self._query(self._select(CHECKPOINT, ["job_id"], [job_id]), [job_id])
        return self._checkpoint_from_row(rows[0]) if rows else None

    def insert_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        self._upsert_many(CHECKPOINT, [self._checkpoint_row(checkpoint)])

    def update_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        """Overwrite every mutable checkpoint field in one statement."""
        dialect = self.dialect
        fields = [
            "last_incremental_value",
            "last_sync_time",
            "source_row_count",
            "target_row_count",
            "applied_bucket_count",
            "skipped_bucket_count",
            "validation_status",
            "last_execution_log_id",
        ]
        row = self._checkpoint_row(checkpoint)
        assignments = ", ".join(
            f"{dialect.quote_identifier(f)} = {dialect.placeholder(i + 1)}" for i, f in enumerate(fields)
        )
        sql = (
            f"UPDATE {self._table(CHECKPOINT)} SET {assignments} "
            f"WHERE {dialect.quote_identifier('job_id')} = {dialect.placeholder(len(fields) + 1)}"
        )
        self._execute(sql, [row[f] for f in fields] + [checkpoint.job_id])

    @staticmethod
    def _checkpoint_row(checkpoint: SyncCheckpoint) -> dict[str, Any]:
        return {
            "job_id": checkpoint.job_id,
            "sync_mode": checkpoint.sync_mode.value,
            "incremental_column": checkpoint.incremental_column,
            "last_incremental_value": checkpoint.last_incremental_value,
            "last_sync_time": _ts(checkpoint.last_sync_time),
            "source_row_count": checkpoint.source_row_count,
            "target_row_count": checkpoint.target_row_count,
            "applied_bucket_count": checkpoint.applied_bucket_count,
            "skipped_bucket_count": checkpoint.skipped_bucket_count,
            "validation_status": checkpoint.validation_status,
            "last_execution_log_id": checkpoint.last_execution_log_id,
        }

    @staticmethod
    def _checkpoint_from_row(row: tuple) -> SyncCheckpoint:
        return SyncCheckpoint(
            job_id=row[0],
            sync_mode=SyncMode(row[1]),
            incremental_column=row[2],
            last_incremental_value=row[3],
            last_sync_time=_parse_ts(row[4]),
            source_row_count=row[5] or 0,
            target_row_count=row[6] or 0,
            applied_bucket_count=row[7] or 0,
            skipped_bucket_count=row[8] or 0,
            validation_status=row[9],
            last_execution_log_id=row[10],
        )

    # ---- execution logs ----------------------------------------------------

    def create_execution_log(self, job_id: str) -> ExecutionLog:
        """Open a RUNNING execution log."""
        log = ExecutionLog(
            id=uuid.uuid4().hex,
            job_id=job_id,
            status=ExecutionStatus.RUNNING,
            start_time=datetime.now(UTC),
            final_state=RunState.PENDING,
        )
        self._upsert_many(EXECUTION_LOG, [self._execution_log_row(log)])
        return log

    def seal_execution_log(self, log: ExecutionLog) -> bool:
        """
        Write the final outcome of a run.

        Only a RUNNING row is updated, so a sealed log never changes again.

        Returns:
            True if the row was sealed by this call
        """
        dialect = self.dialect
        fields = [
            "status", "end_time", "duration_ms", "source_row_count", "target_row_count",
            "inserted_count", "bucket_count", "mismatch_count", "needs_sync_count",
            "final_state", "error_message", "execution_detail",
        ]
        row = self._execution_log_row(log)
        assignments = ", ".join(
            f"{dialect.quote_identifier(f)} = {dialect.placeholder(i + 1)}" for i, f in enumerate(fields)
        )
        n = len(fields)
        sql = (
            f"UPDATE {self._table(EXECUTION_LOG)} SET {assignments} "
            f"WHERE {dialect.quote_identifier('id')} = {dialect.placeholder(n + 1)} "
            f"AND {dialect.quote_identifier('status')} = {dialect.placeholder(n + 2)}"
        )
        updated = self._execute(sql, [row[f] for f in fields] + [log.id, ExecutionStatus.RUNNING.value])
        if updated == 0:
            logger.warning(f"Execution log {log.id} was already sealed; outcome not overwritten")
        return updated != 0

    def get_execution_log(self, execution_log_id: str) -> ExecutionLog | None:
        rows = self._query(self._select(EXECUTION_LOG, ["id"], [execution_log_id]), [execution_log_id])
        return self._execution_log_from_row(rows[0]) if rows else None

    def list_execution_logs(self, job_id: str, limit: int = 20) -> list[ExecutionLog]:
        """Most recent runs of a job, newest first."""
        order = f"{self.dialect.quote_identifier('start_time')} DESC"
        rows = self._query(self._select(EXECUTION_LOG, ["job_id"], [job_id], order), [job_id], limit=limit)
        return [self._execution_log_from_row(row) for row in rows]

    @staticmethod
    def _execution_log_row(log: ExecutionLog) -> dict[str, Any]:
        return {
            "id": log.id,
            "job_id": log.job_id,
            "status": log.status.value,
            "start_time": _ts(log.start_time),
            "end_time": _ts(log.end_time),
            "duration_ms": log.duration_ms,
            "source_row_count": log.source_row_count,
            "target_row_count": log.target_row_count,
            "inserted_count": log.inserted_count,
            "bucket_count": log.bucket_count,
            "mismatch_count": log.mismatch_count,
            "needs_sync_count": log.needs_sync_count,
            "final_state": log.final_state.value if log.final_state else None,
            "error_message": _truncate(log.error_message),
            "execution_detail": _truncate(log.execution_detail),
        }

    @staticmethod
    def _execution_log_from_row(row: tuple) -> ExecutionLog:
        return ExecutionLog(
            id=row[0],
            job_id=row[1],
            status=ExecutionStatus(row[2]),
            start_time=_parse_ts(row[3]),
            end_time=_parse_ts(row[4]),
            duration_ms=row[5],
            source_row_count=row[6] or 0,
            target_row_count=row[7] or 0,
            inserted_count=row[8] or 0,
            bucket_count=row[9] or 0,
            mismatch_count=row[10] or 0,
            needs_sync_count=row[11] or 0,
            final_state=RunState(row[12]) if row[12] else None,
            error_message=row[13],
            execution_detail=row[14],
        )

    # ---- bucket checksums --------------------------------------------------

    def save_bucket_checksums(self, buckets: list[BucketChecksum]) -> None:
        """Insert or update bucket records in place (keyed by run and bucket number)."""
        self._upsert_many(BUCKET_CHECKSUM, [self._bucket_row(b) for b in buckets])

    def list_bucket_checksums(self, execution_log_id: str) -> list[BucketChecksum]:
        order = self.dialect.quote_identifier("bucket_number")
        rows = self._query(
            self._select(BUCKET_CHECKSUM, ["execution_log_id"], [execution_log_id], order),
            [execution_log_id],
        )
        return [self._bucket_from_row(row) for row in rows]

    @staticmethod
    def _bucket_row(bucket: BucketChecksum) -> dict[str, Any]:
        return {
            "execution_log_id": bucket.execution_log_id,
            "bucket_number": bucket.bucket_number,
            "boundary_start": _truncate(bucket.boundary_start, 512),
            "boundary_end": _truncate(bucket.boundary_end, 512),
            "boundary_closed": int(bucket.boundary_closed),
            "source_row_count": bucket.source_row_count,
            "target_row_count": bucket.target_row_count,
            "source_checksum": bucket.source_checksum,
            "target_checksum": bucket.target_checksum,
            "retry_count": bucket.retry_count,
            "retry_success": int(bucket.retry_success),
            "needs_sync": int(bucket.needs_sync),
            "skip_reason": bucket.skip_reason.value if bucket.skip_reason else None,
            "compared_at": _ts(bucket.compared_at),
            "last_retry_time": _ts(bucket.last_retry_time),
        }

    @staticmethod
    def _bucket_from_row(row: tuple) -> BucketChecksum:
        return BucketChecksum(
            execution_log_id=row[0],
            bucket_number=row[1],
            boundary_start=row[2],
            boundary_end=row[3],
            boundary_closed=bool(row[4]),
            source_row_count=row[5] or 0,
            target_row_count=row[6] or 0,
            source_checksum=row[7],
            target_checksum=row[8],
            retry_count=row[9] or 0,
            retry_success=bool(row[10]),
            needs_sync=bool(row[11]),
            skip_reason=SkipReason(row[12]) if row[12] else None,
            compared_at=_parse_ts(row[13]),
            last_retry_time=_parse_ts(row[14]),
        )

    # ---- validation logs ---------------------------------------------------

    def save_validation_log(self, validation: ValidationLog) -> None:
        self._upsert_many(VALIDATION_LOG, [{
            "execution_log_id": validation.execution_log_id,
            "job_id": validation.job_id,
            "source_total_rows": validation.source_total_rows,
            "target_total_rows": validation.target_total_rows,
            "source_checksum": validation.source_checksum,
            "target_checksum": validation.target_checksum,
            "bucket_count": validation.bucket_count,
            "mismatch_count": validation.mismatch_count,
            "status": validation.status.value,
            "message": _truncate(validation.message),
            "created_at": _ts(validation.created_at),
        }])

    def get_validation_log(self, execution_log_id: str) -> ValidationLog | None:
        rows = self._query(
            self._select(VALIDATION_LOG, ["execution_log_id"], [execution_log_id]), [execution_log_id]
        )
        if not rows:
            return None
        row = rows[0]
        return ValidationLog(
            execution_log_id=row[0],
            job_id=row[1],
            source_total_rows=row[2] or 0,
            target_total_rows=row[3] or 0,
            source_checksum=row[4],
            target_checksum=row[5],
            bucket_count=row[6] or 0,
            mismatch_count=row[7] or 0,
            status=ExecutionStatus(row[8]),
            message=row[9],
            created_at=_parse_ts(row[10]),
        )

    # ---- structure snapshots -----------------------------------------------

    def save_snapshot(self, snapshot: TableStructureSnapshot) -> None:
        """Overwrite the snapshot for (job, datasource, schema, table)."""
        self._upsert_many(STRUCTURE_SNAPSHOT, [{
            "job_id": snapshot.job_id,
            "datasource_code": snapshot.datasource,
            "schema_name": snapshot.schema or "",
            "table_name": snapshot.table,
            "side": snapshot.side.value,
            "column_count": snapshot.column_count,
            "primary_key_columns": ",".join(snapshot.primary_key_columns),
            "structure_digest": snapshot.structure_digest,
            "snapshot_time": _ts(snapshot.snapshot_time),
        }])

    def get_latest_snapshot(
        self, job_id: str, datasource: str, schema: str | None, table: str
    ) -> TableStructureSnapshot | None:
        params = [job_id, datasource, schema or "", table]
        rows = self._query(
            self._select(STRUCTURE_SNAPSHOT, ["job_id", "datasource_code", "schema_name", "table_name"], params),
            params,
        )
        if not rows:
            return None
        row = rows[0]
        return TableStructureSnapshot(
            job_id=row[0],
            datasource=row[1],
            schema=row[2] or None,
            table=row[3],
            side=Side(row[4]),
            column_count=row[5] or 0,
            primary_key_columns=[c for c in (row[6] or "").split(",") if c],
            structure_digest=row[7],
            snapshot_time=_parse_ts(row[8]),
        )
