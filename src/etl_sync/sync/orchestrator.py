"""
Reconciliation orchestrator.

Drives one job run end to end:

    PENDING -> EXTRACTING -> BUCKETING -> RECONCILING -> CHECKPOINTING
            -> SUCCESS | PARTIAL_SUCCESS | FAILED

Every run leaves a sealed execution log; every run that reached bucketing
also leaves a validation log. The checkpoint only moves on SUCCESS or
PARTIAL_SUCCESS.
"""

import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from utils.logging import ContextLogger
from utils.metrics import SyncMetrics, get_sync_metrics
from utils.tracing import add_span_attributes, trace_operation

from ..bucket import BucketChecksumEngine, KeyBucket, TableSide, combine_checksums
from ..context import JobRunGuard, RunContext
from ..datasource import DatasourceRegistry
from ..dialect import DialectType
from ..errors import ConcurrentRunRejectedError
from ..metadata import TableMetadataInspector
from ..models import (
    BucketChecksum,
    ExecutionLog,
    ExecutionStatus,
    RunState,
    Side,
    SkipReason,
    SyncCheckpoint,
    SyncJob,
    SyncMode,
    TableSchemaMetadata,
    TableStructureSnapshot,
    ValidationLog,
)
from ..state import CheckpointManager, SyncStateStore
from ..state.watermark import (
    DATE,
    DATETIME,
    infer_watermark_kind,
    max_value,
    parse_watermark,
    render_watermark,
)
from .extract import RowExtractor
from .mapping import ColumnProjection, resolve_projection
from .writer import TargetWriter

logger = logging.getLogger(__name__)


@dataclass
class _RunPlan:
    source_meta: TableSchemaMetadata
    target_meta: TableSchemaMetadata
    projection: ColumnProjection
    source_side: TableSide
    target_side: TableSide
    writer: TargetWriter
    watermark_kind: str | None = None


@dataclass
class _RunTotals:
    source_rows: int = 0
    target_rows: int = 0
    extracted: int = 0
    inserted: int = 0
    candidate_watermark: str | None = None
    buckets: list[BucketChecksum] = field(default_factory=list)
    first_pass_mismatches: int = 0
    bucketing_ran: bool = False


class ReconciliationOrchestrator:
    """Runs sync jobs: extract, load, validate by bucket, repair, checkpoint."""

    def __init__(
        self,
        registry: DatasourceRegistry,
        store: SyncStateStore,
        inspector: TableMetadataInspector,
        bucket_engine: BucketChecksumEngine,
        metrics: SyncMetrics | None = None,
        guard: JobRunGuard | None = None,
        run_timeout_seconds: float | None = 3600,
        max_concurrent_runs: int = 4,
        schema_evolution: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize orchestrator

        Args:
            registry: Datasource registry
            store: Run state store
            inspector: Table structure inspector
            bucket_engine: Bucket scoring and repair engine
            metrics: Metrics sink (default: process-wide SyncMetrics)
            guard: Per-job run guard (default: a private one)
            run_timeout_seconds: Time limit per run; None or 0 disables it
            max_concurrent_runs: Worker threads used by ``submit``
            schema_evolution: Add mapped columns missing from the target
            sleep: Sleep function used between batch write retries
        """
        self.registry = registry
        self.store = store
        self.checkpoints = CheckpointManager(store)
        self.inspector = inspector
        self.bucket_engine = bucket_engine
        self.metrics = metrics or get_sync_metrics()
        self.guard = guard or JobRunGuard()
        self.run_timeout_seconds = run_timeout_seconds
        self.schema_evolution = schema_evolution
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_runs, thread_name_prefix="sync-run")

    # ---- entry points ------------------------------------------------------

    def execute(self, job: SyncJob) -> ExecutionLog:
        """
        Run a job synchronously on the caller's thread.

        Run failures are recorded in the returned (sealed) execution log,
        not raised.

        Returns:
            Sealed execution log

        Raises:
            ConcurrentRunRejectedError: If the job is already running and
                does not allow concurrent runs; no run is started
        """
        try:
            with self.guard.hold(job):
                return self._run(job)
        except ConcurrentRunRejectedError:
            logger.warning(f"Rejected trigger of job '{job.id}': a run is already active")
            self.metrics.record_rejected_run(job.id)
            raise

    def submit(self, job: SyncJob) -> Future:
        """Run a job on the orchestrator's worker pool."""
        return self._executor.submit(self.execute, job)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ---- run ---------------------------------------------------------------

    def _run(self, job: SyncJob) -> ExecutionLog:
        log = self.store.create_execution_log(job.id)
        context = RunContext(job, log, timeout_seconds=self.run_timeout_seconds or None)
        run_logger = ContextLogger(__name__, job_id=job.id, execution_log_id=log.id)
        totals = _RunTotals()
        status = ExecutionStatus.FAILED
        started = time.monotonic()

        self.metrics.run_started()
        run_logger.info(f"Starting {job.sync_mode.value} run of job '{job.id}'")

        try:
            with trace_operation(
                "sync_run", job_id=job.id, execution_log_id=log.id, sync_mode=job.sync_mode.value
            ):
                checkpoint = self.checkpoints.get_or_create(job)

                context.transition(RunState.EXTRACTING)
                plan = self._prepare(context)
                self._extract(context, plan, checkpoint, totals)

                context.transition(RunState.BUCKETING)
                buckets = self._compare(context, plan, totals)

                context.transition(RunState.RECONCILING)
                self._reconcile(context, plan, buckets, totals)

                context.transition(RunState.CHECKPOINTING)
                status = self._outcome(totals)
                self.checkpoints.update_after_execution(
                    checkpoint,
                    new_watermark=totals.candidate_watermark,
                    source_count=totals.source_rows,
                    target_count=totals.target_rows,
                    applied_buckets=sum(1 for b in totals.buckets if not b.needs_sync),
                    skipped_buckets=sum(1 for b in totals.buckets if b.needs_sync),
                    validation_status=status.value,
                    execution_log_id=log.id,
                    watermark_kind=plan.watermark_kind,
                )
                context.transition(RunState(status.value))
                add_span_attributes(status=status.value, bucket_count=len(totals.buckets))
        except Exception as e:
            status = ExecutionStatus.FAILED
            log.error_message = f"{type(e).__name__}: {e}"
            run_logger.error(f"Run failed in state {context.state.value}: {log.error_message}", exc_info=True)
            if not context.state.is_terminal:
                context.transition(RunState.FAILED)
        finally:
            context.cancel()
            self._finish(context, log, status, totals, started)

        return log

    def _finish(
        self, context: RunContext, log: ExecutionLog, status: ExecutionStatus, totals: _RunTotals, started: float
    ) -> None:
        end = datetime.now(UTC)
        needs_sync = sum(1 for b in totals.buckets if b.needs_sync)

        log.status = status
        log.end_time = end
        log.duration_ms = int((end - log.start_time).total_seconds() * 1000)
        log.source_row_count = totals.source_rows
        log.target_row_count = totals.target_rows
        log.inserted_count = totals.inserted
        log.bucket_count = len(totals.buckets)
        log.mismatch_count = totals.first_pass_mismatches
        log.needs_sync_count = needs_sync
        log.final_state = context.state
        context.detail["extracted_rows"] = totals.extracted
        context.detail["divergent_buckets"] = [
            {"bucket": b.bucket_number, "reason": b.skip_reason.value if b.skip_reason else None}
            for b in totals.buckets if b.needs_sync
        ]
        log.execution_detail = json.dumps(context.detail, default=str)

        try:
            self.store.seal_execution_log(log)
            if totals.bucketing_ran:
                self.store.save_validation_log(self._validation_log(context.job, log, totals))
        except Exception as e:
            logger.error(f"Failed to record outcome of run {log.id}: {e}", exc_info=True)

        self.metrics.record_run(context.job.id, status.value, time.monotonic() - started)
        logger.info(
            f"Run {log.id} of job '{context.job.id}' finished {status.value}: "
            f"{totals.inserted} rows loaded, {log.bucket_count} buckets, "
            f"{log.mismatch_count} mismatched, {needs_sync} need sync, {log.duration_ms}ms"
        )

    @staticmethod
    def _outcome(totals: _RunTotals) -> ExecutionStatus:
        # Extraction and load completed; divergent buckets only downgrade the run
        if any(b.needs_sync for b in totals.buckets):
            return ExecutionStatus.PARTIAL_SUCCESS
        return ExecutionStatus.SUCCESS

    # ---- preparation -------------------------------------------------------

    def _prepare(self, context: RunContext) -> _RunPlan:
        job = context.job
        source_dialect = self.registry.dialect(job.source_datasource)
        target_dialect = self.registry.dialect(job.target_datasource)
        context.detail["source_dialect"] = source_dialect.dialect_type.value
        context.detail["target_dialect"] = target_dialect.dialect_type.value

        source_meta = self.inspector.inspect(job.source_datasource, job.source_schema, job.source_table)
        target_meta = self.inspector.inspect(job.target_datasource, job.target_schema, job.target_table)
        projection = resolve_projection(job, source_meta, target_meta, self.schema_evolution)

        writer = TargetWriter(
            self.registry,
            job.target_datasource,
            job.target_table,
            projection.target_columns,
            projection.target_key_columns,
            schema=job.target_schema,
            retry_count=job.retry_count,
            retry_interval=job.retry_interval_seconds,
            key_batch_size=self.bucket_engine.key_batch_size,
            sleep=self._sleep,
        )

        if projection.missing_target_columns:
            added = []
            for name, column in projection.missing_target_columns:
                writer.add_column(name, column.type_definition)
                added.append(name)
            context.detail["added_columns"] = added
            target_meta = self.inspector.inspect(job.target_datasource, job.target_schema, job.target_table)

        self._record_structure(job, Side.SOURCE, source_meta, context)
        self._record_structure(job, Side.TARGET, target_meta, context)

        watermark_kind = None
        if job.incremental_column:
            column = source_meta.find_column(job.incremental_column)
            watermark_kind = infer_watermark_kind(column.data_type if column else None)

        source_side = TableSide(
            datasource=job.source_datasource,
            table=job.source_table,
            schema=job.source_schema,
            key_columns=projection.source_key_columns,
            select_columns=projection.source_columns,
            filter_condition=job.filter_condition,
            project=projection.project,
        )
        target_side = TableSide(
            datasource=job.target_datasource,
            table=job.target_table,
            schema=job.target_schema,
            key_columns=projection.target_key_columns,
            select_columns=projection.target_columns,
        )
        return _RunPlan(source_meta, target_meta, projection, source_side, target_side, writer, watermark_kind)

    def _record_structure(
        self, job: SyncJob, side: Side, meta: TableSchemaMetadata, context: RunContext
    ) -> None:
        previous = self.store.get_latest_snapshot(job.id, meta.datasource, meta.schema, meta.table)
        if previous is not None and previous.structure_digest != meta.structure_digest:
            logger.warning(
                f"Job '{job.id}': {side.value.lower()} table {meta.table} changed structure "
                f"({previous.structure_digest[:12]} -> {meta.structure_digest[:12]})"
            )
            self.metrics.record_schema_drift(job.id, side.value)
            context.detail.setdefault("schema_drift", []).append(side.value)

        self.store.save_snapshot(TableStructureSnapshot(
            job_id=job.id,
            datasource=meta.datasource,
            schema=meta.schema,
            table=meta.table,
            side=side,
            column_count=len(meta.columns),
            primary_key_columns=list(meta.primary_key_columns),
            structure_digest=meta.structure_digest,
        ))

    # ---- extraction --------------------------------------------------------

    def _bind_watermark(self, job: SyncJob, stored: str | None, kind: str | None) -> Any:
        if stored is None or kind is None:
            return stored
        # SQLite keeps temporal values as text; compare text with text
        source_type = self.registry.dialect(job.source_datasource).dialect_type
        if source_type == DialectType.SQLITE and kind in (DATETIME, DATE):
            return stored
        try:
            return parse_watermark(stored, kind)
        except ValueError:
            logger.warning(f"Job '{job.id}': stored watermark {stored!r} is not a {kind}; binding as text")
            return stored

    def _extract(self, context: RunContext, plan: _RunPlan, checkpoint: SyncCheckpoint, totals: _RunTotals) -> None:
        job = context.job
        projection = plan.projection

        if job.sync_mode == SyncMode.FULL and job.truncate_before_full:
            plan.writer.clear()

        watermark = None
        order_columns = list(projection.source_key_columns)
        if job.sync_mode == SyncMode.INCREMENTAL:
            watermark = self._bind_watermark(job, checkpoint.last_incremental_value, plan.watermark_kind)
            incremental = projection.extract_columns[projection.incremental_index]
            order_columns = [incremental] + [c for c in order_columns if c != incremental]
            context.detail["previous_watermark"] = checkpoint.last_incremental_value

        extractor = RowExtractor(
            self.registry,
            job.source_datasource,
            job.source_table,
            projection.extract_columns,
            order_columns,
            schema=job.source_schema,
            incremental_column=job.incremental_column,
            filter_condition=job.filter_condition,
            batch_size=job.batch_size,
        )

        highest = None
        with trace_operation("extract_and_load", job_id=job.id, batch_size=job.batch_size):
            for batch in extractor.batches(context, watermark):
                loaded = plan.writer.upsert([projection.project(row) for row in batch])
                if projection.incremental_index is not None:
                    for row in batch:
                        highest = max_value(highest, projection.incremental_value(row))
                totals.extracted += len(batch)
                totals.inserted += loaded
                self.metrics.record_rows(job.id, extracted=len(batch), loaded=loaded, phase="extract")

        totals.candidate_watermark = render_watermark(highest)
        context.detail["candidate_watermark"] = totals.candidate_watermark
        logger.info(f"Job '{job.id}': extracted {totals.extracted} rows, loaded {totals.inserted}")

    # ---- bucketing and repair ----------------------------------------------

    def _compare(self, context: RunContext, plan: _RunPlan, totals: _RunTotals) -> list[KeyBucket]:
        buckets, source_range, target_range = self.bucket_engine.plan(plan.source_side, plan.target_side)
        totals.source_rows = source_range.row_count
        totals.target_rows = target_range.row_count

        totals.bucketing_ran = True
        totals.buckets = self.bucket_engine.compare(context, plan.source_side, plan.target_side, buckets)
        totals.first_pass_mismatches = sum(1 for b in totals.buckets if b.needs_sync)
        self.store.save_bucket_checksums(totals.buckets)
        return buckets

    def _reconcile(self, context: RunContext, plan: _RunPlan, buckets: list[KeyBucket], totals: _RunTotals) -> None:
        job = context.job
        repaired_before = plan.writer.rows_written

        for bucket, record in zip(buckets, totals.buckets):
            if not record.needs_sync:
                self.metrics.record_bucket(job.id, "matched")
                continue
            if record.skip_reason == SkipReason.TYPE_MISMATCH:
                self.metrics.record_bucket(job.id, "needs_sync")
                continue
            context.check()
            self.bucket_engine.reconcile(
                context,
                plan.source_side,
                plan.target_side,
                bucket,
                record,
                plan.writer,
                retry_count=job.retry_count,
                retry_interval=job.retry_interval_seconds,
            )
            self.store.save_bucket_checksums([record])
            self.metrics.record_bucket(job.id, "needs_sync" if record.needs_sync else "recovered")

        repaired = plan.writer.rows_written - repaired_before
        if repaired:
            self.metrics.record_rows(job.id, loaded=repaired, phase="repair")
            context.detail["repaired_rows"] = repaired
            totals.target_rows = self.bucket_engine.key_range(plan.target_side).row_count

    @staticmethod
    def _validation_log(job: SyncJob, log: ExecutionLog, totals: _RunTotals) -> ValidationLog:
        divergent = [b for b in totals.buckets if b.needs_sync]
        if divergent:
            message = "; ".join(
                f"bucket {b.bucket_number} [{b.boundary_start}, {b.boundary_end}"
                f"{']' if b.boundary_closed else ')'}: "
                f"{b.skip_reason.value if b.skip_reason else 'UNRESOLVED'}"
                for b in divergent
            )
        else:
            message = f"All {len(totals.buckets)} buckets consistent"
        return ValidationLog(
            execution_log_id=log.id,
            job_id=job.id,
            source_total_rows=sum(b.source_row_count for b in totals.buckets),
            target_total_rows=sum(b.target_row_count for b in totals.buckets),
            source_checksum=combine_checksums(b.source_checksum for b in totals.buckets),
            target_checksum=combine_checksums(b.target_checksum for b in totals.buckets),
            bucket_count=len(totals.buckets),
            mismatch_count=len(divergent),
            status=log.status,
            message=message,
        )
