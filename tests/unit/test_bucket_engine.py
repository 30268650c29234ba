"""
Unit tests for BucketChecksumEngine against SQLite
"""

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from etl_sync.bucket import BucketChecksumEngine, KeyBucket, TableSide
from etl_sync.context import RunContext
from etl_sync.errors import RunTimeoutError, UnsupportedKeyTypeError
from etl_sync.models import ExecutionLog, ExecutionStatus, SkipReason, SyncJob
from etl_sync.sync import TargetWriter


def make_context():
    job = SyncJob(
        id="items", name="Items",
        source_datasource="source", source_table="items",
        target_datasource="target", target_table="items",
    )
    log = ExecutionLog(id="run-1", job_id="items", status=ExecutionStatus.RUNNING, start_time=datetime.now(UTC))
    return RunContext(job, log)


def side(code):
    return TableSide(datasource=code, table="items", key_columns=["id"], select_columns=["id", "v"])


def fill(run_sql, code, ids, value=lambda i: f"v{i}"):
    values = ", ".join(f"({i}, '{value(i)}')" for i in ids)
    script = "CREATE TABLE items (id INTEGER PRIMARY KEY, v TEXT);"
    if values:
        script += f"INSERT INTO items VALUES {values};"
    run_sql(code, script)


@pytest.fixture
def engine(registry, metrics):
    return BucketChecksumEngine(registry, rows_per_bucket=50, max_buckets=100, parallelism=3, metrics=metrics)


@pytest.fixture
def writer(registry):
    return TargetWriter(registry, "target", "items", ["id", "v"], ["id"], sleep=Mock())


class TestTableSide:
    """Test TableSide"""

    def test_requires_key(self):
        with pytest.raises(UnsupportedKeyTypeError):
            TableSide(datasource="s", table="t", key_columns=[], select_columns=["a"])

    def test_projection_applied(self):
        s = TableSide("s", "t", ["id"], ["id", "v"], project=lambda row: (row[1],))
        assert s.values((1, "x")) == ("x",)
        assert side("source").values([1, "x"]) == (1, "x")


class TestPlanning:
    """Test key range discovery and bucket planning"""

    def test_key_range(self, engine, run_sql):
        fill(run_sql, "source", range(1, 11))

        key_range = engine.key_range(side("source"))

        assert (key_range.min_key, key_range.max_key, key_range.row_count) == (1, 10, 10)

    def test_key_range_of_empty_table(self, engine, run_sql):
        fill(run_sql, "source", [])
        assert engine.key_range(side("source")).empty

    def test_plan_covers_union(self, engine, run_sql):
        fill(run_sql, "source", range(1, 101))
        fill(run_sql, "target", range(50, 151))

        buckets, source_range, target_range = engine.plan(side("source"), side("target"))

        assert [(b.start, b.end) for b in buckets] == [(1, 51), (51, 101), (101, 151)]
        assert source_range.row_count == 100
        assert target_range.row_count == 101

    def test_plan_both_empty(self, engine, run_sql):
        fill(run_sql, "source", [])
        fill(run_sql, "target", [])
        assert engine.plan(side("source"), side("target"))[0] == []


class TestCompare:
    """Test first-pass bucket scoring"""

    def test_identical_tables(self, engine, run_sql):
        fill(run_sql, "source", range(1, 101))
        fill(run_sql, "target", range(1, 101))
        buckets, _, _ = engine.plan(side("source"), side("target"))

        records = engine.compare(make_context(), side("source"), side("target"), buckets)

        assert [r.bucket_number for r in records] == [0, 1]
        assert all(r.skip_reason == SkipReason.CHECKSUM_EQUAL for r in records)
        assert not any(r.needs_sync for r in records)
        assert records[0].source_checksum == records[0].target_checksum
        assert records[0].execution_log_id == "run-1"

    def test_changed_row_flags_only_its_bucket(self, engine, run_sql):
        fill(run_sql, "source", range(1, 101))
        fill(run_sql, "target", range(1, 101), value=lambda i: "stale" if i == 75 else f"v{i}")
        buckets, _, _ = engine.plan(side("source"), side("target"))

        records = engine.compare(make_context(), side("source"), side("target"), buckets)

        assert [r.needs_sync for r in records] == [False, True]
        assert records[1].source_row_count == records[1].target_row_count == 50
        assert records[1].skip_reason is None

    def test_missing_rows_detected_by_count(self, engine, run_sql):
        fill(run_sql, "source", range(1, 101))
        fill(run_sql, "target", range(1, 90))
        buckets, _, _ = engine.plan(side("source"), side("target"))

        records = engine.compare(make_context(), side("source"), side("target"), buckets)

        assert records[-1].needs_sync
        assert records[-1].target_row_count < records[-1].source_row_count

    def test_scoring_failure_recorded(self, engine, run_sql):
        fill(run_sql, "source", range(1, 11))
        fill(run_sql, "target", range(1, 11))
        broken = TableSide("target", "items", ["id"], ["id", "no_such_column"])

        records = engine.compare(make_context(), side("source"), broken, [KeyBucket(0, 1, 11)])

        assert records[0].needs_sync
        assert records[0].skip_reason == SkipReason.COMPARISON_ERROR
        assert records[0].source_checksum is None

    def test_no_buckets(self, engine):
        assert engine.compare(make_context(), side("source"), side("target"), []) == []

    def test_cancelled_run_raises(self, engine, run_sql):
        fill(run_sql, "source", range(1, 11))
        fill(run_sql, "target", range(1, 11))
        context = make_context()
        context.cancel()

        with pytest.raises(RunTimeoutError):
            engine.compare(context, side("source"), side("target"), [KeyBucket(0, 1, 11)])


class TestRepair:
    """Test bucket repair"""

    def test_repair_copies_and_prunes(self, engine, writer, run_sql, query):
        fill(run_sql, "source", range(1, 11))
        fill(run_sql, "target", [1, 2, 3, 12], value=lambda i: "old")

        written = engine.repair(make_context(), side("source"), side("target"), KeyBucket(0, 1, 13), writer)

        assert written == 10
        assert query("target", "SELECT id, v FROM items ORDER BY id") == [(i, f"v{i}") for i in range(1, 11)]

    def test_orphans_kept_without_pruning(self, registry, writer, run_sql, query):
        engine = BucketChecksumEngine(registry, prune_orphans=False)
        fill(run_sql, "source", range(1, 5))
        fill(run_sql, "target", [12])

        engine.repair(make_context(), side("source"), side("target"), KeyBucket(0, 1, 13), writer)

        assert query("target", "SELECT COUNT(*) FROM items") == [(5,)]

    def test_repair_respects_bucket_bounds(self, engine, writer, run_sql, query):
        fill(run_sql, "source", range(1, 21))
        fill(run_sql, "target", [])

        engine.repair(make_context(), side("source"), side("target"), KeyBucket(0, 5, 10), writer)

        assert query("target", "SELECT MIN(id), MAX(id) FROM items") == [(5, 9)]

    def test_repair_chunks_keys(self, registry, writer, run_sql, query):
        engine = BucketChecksumEngine(registry, key_batch_size=3)
        fill(run_sql, "source", range(1, 11))
        fill(run_sql, "target", [])

        assert engine.repair(make_context(), side("source"), side("target"), KeyBucket(0, 1, 11), writer) == 10


class TestReconcile:
    """Test retry-driven bucket reconciliation"""

    @staticmethod
    def first_pass(engine, run_sql, target_ids):
        fill(run_sql, "source", range(1, 11))
        fill(run_sql, "target", target_ids)
        bucket = KeyBucket(0, 1, 11)
        record = engine.compare(make_context(), side("source"), side("target"), [bucket])[0]
        assert record.needs_sync
        return bucket, record

    def test_recovered_on_first_repair(self, registry, writer, metrics, run_sql):
        sleep = Mock()
        engine = BucketChecksumEngine(registry, metrics=metrics, sleep=sleep)
        bucket, record = self.first_pass(engine, run_sql, range(1, 6))

        engine.reconcile(make_context(), side("source"), side("target"), bucket, record, writer, 3, 1.0)

        assert not record.needs_sync
        assert not record.retry_success
        assert record.retry_count == 0
        assert record.skip_reason == SkipReason.REPAIRED
        assert record.last_retry_time is None
        sleep.assert_not_called()

    def test_recovered_on_retry(self, registry, writer, metrics, run_sql):
        sleep = Mock()
        engine = BucketChecksumEngine(registry, metrics=metrics, sleep=sleep)
        bucket, record = self.first_pass(engine, run_sql, range(1, 6))
        batches = []

        def upsert_after_first(rows):
            batches.append(rows)
            return writer.upsert(rows) if len(batches) > 1 else 0

        flaky_writer = Mock()
        flaky_writer.upsert.side_effect = upsert_after_first
        flaky_writer.delete_keys.side_effect = writer.delete_keys

        engine.reconcile(make_context(), side("source"), side("target"), bucket, record, flaky_writer, 3, 1.0)

        assert not record.needs_sync
        assert record.retry_success
        assert record.retry_count == 1
        assert record.skip_reason == SkipReason.RETRY_RECOVERED
        assert record.last_retry_time is not None
        assert [c.args[0] for c in sleep.call_args_list] == [1.0]

    def test_exhausted_when_repair_has_no_effect(self, registry, metrics, run_sql):
        sleep = Mock()
        engine = BucketChecksumEngine(registry, metrics=metrics, sleep=sleep)
        bucket, record = self.first_pass(engine, run_sql, range(1, 6))
        idle_writer = Mock()
        idle_writer.upsert.return_value = 0

        engine.reconcile(make_context(), side("source"), side("target"), bucket, record, idle_writer, 2, 1.0)

        assert record.needs_sync
        assert not record.retry_success
        assert record.retry_count == 2
        assert record.last_retry_time is not None
        assert record.skip_reason == SkipReason.RETRY_EXHAUSTED
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        assert metrics.registry.get_sample_value(
            "etl_sync_bucket_retries_total", {"job_id": "items"}
        ) == 2

    def test_backoff_capped_at_sixteen_times(self, registry, run_sql):
        sleep = Mock()
        engine = BucketChecksumEngine(registry, sleep=sleep)
        bucket, record = self.first_pass(engine, run_sql, range(1, 6))
        idle_writer = Mock()
        idle_writer.upsert.return_value = 0

        engine.reconcile(make_context(), side("source"), side("target"), bucket, record, idle_writer, 6, 0.5)

        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_repair_error(self, registry, run_sql):
        engine = BucketChecksumEngine(registry, sleep=Mock())
        bucket, record = self.first_pass(engine, run_sql, range(1, 6))
        failing_writer = Mock()
        failing_writer.upsert.side_effect = RuntimeError("target is read-only")

        engine.reconcile(make_context(), side("source"), side("target"), bucket, record, failing_writer, 1, 0.1)

        assert record.needs_sync
        assert record.skip_reason == SkipReason.REPAIR_ERROR
        assert record.retry_count == 1

    def test_zero_retries_repairs_once(self, registry, writer, run_sql):
        sleep = Mock()
        engine = BucketChecksumEngine(registry, sleep=sleep)
        bucket, record = self.first_pass(engine, run_sql, [])

        engine.reconcile(make_context(), side("source"), side("target"), bucket, record, writer, 0, 1.0)

        assert not record.needs_sync
        assert record.retry_count == 0
        assert record.skip_reason == SkipReason.REPAIRED

    def test_cancelled_run_stops_reconcile(self, registry, writer, run_sql):
        engine = BucketChecksumEngine(registry, sleep=Mock())
        bucket, record = self.first_pass(engine, run_sql, [])
        context = make_context()
        context.cancel()

        with pytest.raises(RunTimeoutError):
            engine.reconcile(context, side("source"), side("target"), bucket, record, writer, 3, 1.0)
