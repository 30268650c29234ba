"""
Bucket checksum engine.

Partitions the union key range of a source and a target table into buckets,
scores every bucket on both sides in parallel, and repairs mismatched buckets
one at a time with bounded retries.
"""

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from utils.metrics import SyncMetrics
from utils.retry import backoff_delay
from utils.tracing import add_span_event, trace_operation

from ..context import RunContext
from ..datasource import DatasourceRegistry, fetch_all
from ..errors import RunTimeoutError, UnsupportedKeyTypeError
from ..models import BucketChecksum, SkipReason
from .checksum import BucketScore, canonical_text, score_rows
from .partition import KeyBucket, KeyRange, merge_key_ranges, partition_key_range

logger = logging.getLogger(__name__)

FETCH_SIZE = 1000
# Exponential backoff between repair attempts stops growing at 16x
MAX_BACKOFF_EXPONENT = 4


class BucketWriter(Protocol):
    def upsert(self, rows: list[tuple]) -> int:
        ...

    def delete_keys(self, keys: list[tuple]) -> int:
        ...


@dataclass
class TableSide:
    """
    One side of a comparison.

    ``select_columns`` are read when scoring; ``project`` maps a selected row
    to the values compared with the other side, in target column order.
    ``key_columns`` correspond position by position across both sides.
    """

    datasource: str
    table: str
    key_columns: list[str]
    select_columns: list[str]
    schema: str | None = None
    filter_condition: str | None = None
    project: Callable[[Sequence[Any]], tuple] | None = None

    def __post_init__(self) -> None:
        if not self.key_columns:
            raise UnsupportedKeyTypeError(f"Table {self.table} has no primary key")

    @property
    def key_column(self) -> str:
        return self.key_columns[0]

    def values(self, row: Sequence[Any]) -> tuple:
        return self.project(row) if self.project else tuple(row)


def _classify_failure(error: Exception) -> SkipReason:
    if isinstance(error, (TypeError, ValueError)) or type(error).__name__ == "DataError":
        return SkipReason.TYPE_MISMATCH
    return SkipReason.COMPARISON_ERROR


def _key_token(key: Sequence[Any]) -> tuple:
    return tuple(canonical_text(value) for value in key)


def _batches(items: list[Any], size: int) -> Iterator[list[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class BucketChecksumEngine:
    """Scores and repairs key-range buckets between two tables."""

    def __init__(
        self,
        registry: DatasourceRegistry,
        rows_per_bucket: int = 10000,
        max_buckets: int = 10000,
        parallelism: int = 4,
        key_batch_size: int = 900,
        prune_orphans: bool = True,
        metrics: SyncMetrics | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize bucket engine

        Args:
            registry: Datasource registry for both sides
            rows_per_bucket: Target rows per bucket
            max_buckets: Upper bound on bucket count
            parallelism: Concurrent bucket scoring workers
            key_batch_size: Keys per ``WHERE pk IN (...)`` repair query
            prune_orphans: Delete target rows whose key is gone from the source
            metrics: Metrics sink (optional)
            sleep: Sleep function used between repair attempts
        """
        self.registry = registry
        self.rows_per_bucket = rows_per_bucket
        self.max_buckets = max_buckets
        self.parallelism = max(1, parallelism)
        self.key_batch_size = key_batch_size
        self.prune_orphans = prune_orphans
        self.metrics = metrics
        self._sleep = sleep

    # ---- planning ----------------------------------------------------------

    def key_range(self, side: TableSide) -> KeyRange:
        dialect = self.registry.dialect(side.datasource)
        sql = dialect.build_key_range_sql(side.table, side.key_column, side.schema, side.filter_condition)
        with self.registry.connection(side.datasource) as conn:
            rows = fetch_all(conn, sql)
        low, high, count = rows[0] if rows else (None, None, 0)
        return KeyRange(low, high, count or 0)

    def plan(self, source: TableSide, target: TableSide) -> tuple[list[KeyBucket], KeyRange, KeyRange]:
        """
        Buckets covering the union of both key ranges.

        Returns:
            (buckets, source key range, target key range)

        Raises:
            UnsupportedKeyTypeError: If the keys cannot be partitioned
        """
        source_range = self.key_range(source)
        target_range = self.key_range(target)
        key_range = merge_key_ranges(source_range, target_range)
        buckets = partition_key_range(key_range, self.rows_per_bucket, self.max_buckets)
        logger.info(
            f"Planned {len(buckets)} buckets over [{key_range.min_key}, {key_range.max_key}] "
            f"({key_range.row_count} rows max per side)"
        )
        return buckets, source_range, target_range

    # ---- scoring -----------------------------------------------------------

    def score(self, side: TableSide, bucket: KeyBucket) -> BucketScore:
        dialect = self.registry.dialect(side.datasource)
        sql = dialect.build_range_select_sql(
            side.table, side.select_columns, side.key_column, bucket.closed, side.schema, side.filter_condition
        )
        with self.registry.connection(side.datasource) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, (bucket.start, bucket.end))
                return score_rows(side.values(row) for row in self._iter_rows(cursor))
            finally:
                cursor.close()

    @staticmethod
    def _iter_rows(cursor: Any) -> Iterator[Sequence[Any]]:
        while True:
            rows = cursor.fetchmany(FETCH_SIZE)
            if not rows:
                return
            yield from rows

    def _score_pair(
        self, context: RunContext, source: TableSide, target: TableSide, bucket: KeyBucket
    ) -> tuple[BucketScore, BucketScore]:
        context.check()
        return self.score(source, bucket), self.score(target, bucket)

    def compare(
        self, context: RunContext, source: TableSide, target: TableSide, buckets: list[KeyBucket]
    ) -> list[BucketChecksum]:
        """
        Score every bucket on both sides.

        Scoring failures are recorded on the bucket, never raised.

        Returns:
            One record per bucket, in bucket order

        Raises:
            RunTimeoutError: If the run deadline passes while scoring
        """
        if not buckets:
            return []

        execution_log_id = context.execution_log.id
        records: dict[int, BucketChecksum] = {}

        with trace_operation("compare_buckets", bucket_count=len(buckets), job_id=context.job.id):
            executor = ThreadPoolExecutor(
                max_workers=min(self.parallelism, len(buckets)),
                thread_name_prefix=f"bucket-{context.job.id}",
            )
            timed_out = False
            try:
                pending = {
                    executor.submit(self._score_pair, context, source, target, bucket): bucket
                    for bucket in buckets
                }
                while pending:
                    done, _ = wait(pending, timeout=context.remaining(), return_when=FIRST_COMPLETED)
                    if not done:
                        context.cancel()
                        for future in pending:
                            future.cancel()
                        context.check()
                    for future in done:
                        bucket = pending.pop(future)
                        records[bucket.number] = self._first_pass_record(execution_log_id, bucket, future)
            except RunTimeoutError:
                timed_out = True
                raise
            finally:
                executor.shutdown(wait=not timed_out, cancel_futures=True)

        mismatched = sum(1 for r in records.values() if r.needs_sync)
        logger.info(f"Compared {len(records)} buckets for job '{context.job.id}': {mismatched} mismatched")
        return [records[b.number] for b in buckets]

    def _first_pass_record(self, execution_log_id: str, bucket: KeyBucket, future) -> BucketChecksum:
        record = BucketChecksum(
            execution_log_id=execution_log_id,
            bucket_number=bucket.number,
            boundary_start=bucket.boundary_start,
            boundary_end=bucket.boundary_end,
            boundary_closed=bucket.closed,
        )
        error = future.exception()
        if isinstance(error, RunTimeoutError):
            raise error
        if error is not None:
            record.needs_sync = True
            record.skip_reason = _classify_failure(error)
            logger.warning(
                f"Bucket {bucket.number} [{record.boundary_start}, {record.boundary_end}] "
                f"could not be scored: {type(error).__name__}: {error}"
            )
            return record

        source_score, target_score = future.result()
        self._apply_scores(record, source_score, target_score)
        if record.matched:
            record.skip_reason = SkipReason.CHECKSUM_EQUAL
        else:
            record.needs_sync = True
            logger.info(
                f"Bucket {bucket.number} mismatch: source {source_score.row_count} rows/{source_score.hex}, "
                f"target {target_score.row_count} rows/{target_score.hex}"
            )
        return record

    @staticmethod
    def _apply_scores(record: BucketChecksum, source: BucketScore, target: BucketScore) -> None:
        record.source_row_count = source.row_count
        record.target_row_count = target.row_count
        record.source_checksum = source.hex
        record.target_checksum = target.hex
        record.compared_at = datetime.now(UTC)

    # ---- repair ------------------------------------------------------------

    def _bucket_keys(self, side: TableSide, bucket: KeyBucket) -> list[tuple]:
        dialect = self.registry.dialect(side.datasource)
        sql = dialect.build_range_select_sql(
            side.table, side.key_columns, side.key_column, bucket.closed, side.schema, side.filter_condition
        )
        with self.registry.connection(side.datasource) as conn:
            return [tuple(row) for row in fetch_all(conn, sql, (bucket.start, bucket.end))]

    def repair(self, context: RunContext, source: TableSide, target: TableSide,
               bucket: KeyBucket, writer: BucketWriter) -> int:
        """
        Copy a bucket's source rows onto the target.

        Source rows are fetched by key in batches of ``key_batch_size`` and
        upserted; target rows whose key is no longer present at the source
        are deleted when orphan pruning is enabled.

        Returns:
            Number of rows upserted
        """
        source_keys = self._bucket_keys(source, bucket)
        leading = list(dict.fromkeys(key[0] for key in source_keys))
        dialect = self.registry.dialect(source.datasource)
        written = 0

        for chunk in _batches(leading, self.key_batch_size):
            context.check()
            sql = dialect.build_select_by_primary_key_in_sql(
                source.table, source.select_columns, source.key_column, len(chunk), source.schema,
                source.filter_condition,
            )
            with self.registry.connection(source.datasource) as conn:
                rows = fetch_all(conn, sql, chunk)
            written += writer.upsert([source.values(row) for row in rows])

        if self.prune_orphans:
            present = {_key_token(key) for key in source_keys}
            orphans = [key for key in self._bucket_keys(target, bucket) if _key_token(key) not in present]
            if orphans:
                deleted = writer.delete_keys(orphans)
                logger.info(f"Bucket {bucket.number}: deleted {deleted} orphan target rows")

        return written

    def reconcile(
        self,
        context: RunContext,
        source: TableSide,
        target: TableSide,
        bucket: KeyBucket,
        record: BucketChecksum,
        writer: BucketWriter,
        retry_count: int,
        retry_interval: float,
    ) -> BucketChecksum:
        """
        Repair one mismatched bucket, retrying until it matches or attempts run out.

        The first repair happens immediately; each of the ``retry_count``
        further attempts waits with exponential backoff. The record is updated
        in place: ``retry_count`` counts only the attempts after the first
        repair, and ``retry_success`` is set when one of those recovers the
        bucket.

        Raises:
            RunTimeoutError: If the run deadline passes
        """
        job_id = context.job.id
        reason = record.skip_reason or SkipReason.RETRY_EXHAUSTED
        previous_source = record.source_checksum

        with trace_operation("repair_bucket", job_id=job_id, bucket=bucket.number):
            for attempt in range(retry_count + 1):
                context.check()
                if attempt:
                    delay = backoff_delay(attempt, retry_interval, max_exponent=MAX_BACKOFF_EXPONENT)
                    logger.info(f"Bucket {bucket.number}: retry {attempt}/{retry_count} in {delay:.2f}s")
                    add_span_event("bucket_retry", attempt=attempt, delay=delay)
                    if self.metrics:
                        self.metrics.record_bucket_retry(job_id)
                    self._sleep(delay)
                    context.check()
                    record.retry_count = attempt
                    record.last_retry_time = datetime.now(UTC)

                try:
                    self.repair(context, source, target, bucket, writer)
                except RunTimeoutError:
                    raise
                except Exception as e:
                    reason = SkipReason.REPAIR_ERROR
                    logger.warning(f"Bucket {bucket.number}: repair failed: {type(e).__name__}: {e}")
                    continue

                try:
                    source_score, target_score = self._score_pair(context, source, target, bucket)
                except RunTimeoutError:
                    raise
                except Exception as e:
                    reason = _classify_failure(e)
                    logger.warning(f"Bucket {bucket.number}: rescoring failed: {type(e).__name__}: {e}")
                    continue

                self._apply_scores(record, source_score, target_score)
                if record.matched:
                    record.needs_sync = False
                    record.retry_success = attempt > 0
                    record.skip_reason = SkipReason.RETRY_RECOVERED if attempt else SkipReason.REPAIRED
                    logger.info(f"Bucket {bucket.number} recovered after {attempt + 1} repair(s)")
                    return record

                if previous_source is not None and source_score.hex != previous_source:
                    reason = SkipReason.NON_DETERMINISTIC_ORDER
                else:
                    reason = SkipReason.RETRY_EXHAUSTED
                previous_source = source_score.hex

        record.needs_sync = True
        record.retry_success = False
        record.skip_reason = reason
        logger.warning(
            f"Bucket {bucket.number} [{record.boundary_start}, {record.boundary_end}] still divergent "
            f"after {record.retry_count} retries: {reason.value}"
        )
        return record
