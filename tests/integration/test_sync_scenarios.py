"""
End-to-end sync scenarios against SQLite datasources.

Each test wires a full engine (registry, state store, inspector, bucket
engine, orchestrator) over three SQLite files and drives jobs through
``ReconciliationOrchestrator.execute``.
"""

import json
import threading
import sqlite3

import pytest

from etl_sync.app import build_engine
from etl_sync.config import AppConfig, EngineSettings, parse_config
from etl_sync.dialect import ConnectionInfo
from etl_sync.errors import ConcurrentRunRejectedError
from etl_sync.models import (
    ColumnMappingRule,
    ExecutionStatus,
    MappingAction,
    RunState,
    SkipReason,
    SyncJob,
)
from utils.db_pool import GenericConnectionPool

pytestmark = pytest.mark.integration

ORDERS_DDL = (
    "CREATE TABLE orders (id INTEGER PRIMARY KEY, customer TEXT NOT NULL, "
    "amount NUMERIC(12, 2), updated_at TIMESTAMP);"
)


def seed_orders(rows: int, updated_at: str = "2024-01-01 00:00:00") -> str:
    return ORDERS_DDL + f"""
        WITH RECURSIVE n(i) AS (SELECT 1 UNION ALL SELECT i + 1 FROM n WHERE i < {rows})
        INSERT INTO orders SELECT i, 'customer-' || (i % 97), i * 1.5, '{updated_at}' FROM n;
    """


def orders_job(**kwargs) -> SyncJob:
    options = dict(
        id="orders", name="Orders",
        source_datasource="source", source_table="orders",
        target_datasource="target", target_table="orders",
        batch_size=500, retry_count=3, retry_interval_seconds=0,
    )
    options.update(kwargs)
    return SyncJob(**options)


@pytest.fixture
def make_engine(registry, metrics):
    engines = []

    def make(**settings):
        options = dict(rows_per_bucket=1000, parallelism=4, run_timeout_seconds=120)
        options.update(settings)
        config = AppConfig(datasources={}, state_datasource="state", jobs={}, engine=EngineSettings(**options))
        engine = build_engine(config, registry=registry, metrics=metrics)
        engine.store.initialize_schema()
        engines.append(engine)
        return engine

    yield make
    for engine in engines:
        engine.orchestrator.close()


class TestFullSync:
    """FULL mode into an empty target"""

    def test_ten_thousand_rows(self, make_engine, run_sql, query, metrics):
        run_sql("source", seed_orders(10000))
        run_sql("target", ORDERS_DDL)
        engine = make_engine()

        log = engine.orchestrator.execute(orders_job())

        assert log.status == ExecutionStatus.SUCCESS
        assert log.final_state == RunState.SUCCESS
        assert log.inserted_count == 10000
        assert log.source_row_count == log.target_row_count == 10000
        assert log.bucket_count == 10
        assert log.mismatch_count == 0
        assert log.needs_sync_count == 0
        assert log.end_time is not None and log.duration_ms >= 0

        validation = engine.store.get_validation_log(log.id)
        assert validation.source_checksum == validation.target_checksum
        assert validation.source_total_rows == 10000
        assert validation.message == "All 10 buckets consistent"

        checkpoint = engine.store.get_checkpoint("orders")
        assert checkpoint.validation_status == "SUCCESS"
        assert checkpoint.applied_bucket_count == 10
        assert checkpoint.last_execution_log_id == log.id

        assert query("target", "SELECT COUNT(*), SUM(amount) FROM orders") == \
            query("source", "SELECT COUNT(*), SUM(amount) FROM orders")
        assert metrics.registry.get_sample_value(
            "etl_sync_runs_total", {"job_id": "orders", "status": "SUCCESS"}
        ) == 1

    def test_rerun_is_idempotent(self, make_engine, run_sql, query):
        run_sql("source", seed_orders(300))
        run_sql("target", ORDERS_DDL)
        engine = make_engine(rows_per_bucket=100)

        first = engine.orchestrator.execute(orders_job())
        second = engine.orchestrator.execute(orders_job())

        assert first.status == second.status == ExecutionStatus.SUCCESS
        assert query("target", "SELECT COUNT(*) FROM orders") == [(300,)]
        runs = engine.store.list_execution_logs("orders")
        assert [run.id for run in runs] == [second.id, first.id]

    def test_truncate_before_full(self, make_engine, run_sql, query):
        run_sql("source", seed_orders(50))
        run_sql("target", ORDERS_DDL + "INSERT INTO orders VALUES (5000, 'stale', 1, NULL);")
        engine = make_engine()

        log = engine.orchestrator.execute(orders_job(truncate_before_full=True))

        assert log.status == ExecutionStatus.SUCCESS
        assert log.mismatch_count == 0
        assert query("target", "SELECT COUNT(*) FROM orders WHERE id = 5000") == [(0,)]


class TestIncrementalRepair:
    """Edited target row found by bucket comparison and repaired"""

    def test_edited_row_repaired(self, make_engine, run_sql, query):
        run_sql("source", seed_orders(1000))
        run_sql("target", ORDERS_DDL)
        engine = make_engine(rows_per_bucket=100)
        job = orders_job(sync_mode="INCREMENTAL", incremental_column="updated_at")

        first = engine.orchestrator.execute(job)
        assert first.status == ExecutionStatus.SUCCESS
        assert engine.store.get_checkpoint("orders").last_incremental_value == "2024-01-01 00:00:00"

        run_sql("target", "UPDATE orders SET amount = 999 WHERE id = 42;")
        run_sql("source", "INSERT INTO orders VALUES (1001, 'late', 10, '2024-02-01 00:00:00');")

        second = engine.orchestrator.execute(job)

        assert second.status == ExecutionStatus.SUCCESS
        assert second.inserted_count == 1
        assert second.mismatch_count == 1
        assert second.needs_sync_count == 0
        assert query("target", "SELECT amount FROM orders WHERE id = 42") == \
            query("source", "SELECT amount FROM orders WHERE id = 42")

        repaired = [
            b for b in engine.store.list_bucket_checksums(second.id) if b.skip_reason != SkipReason.CHECKSUM_EQUAL
        ]
        assert len(repaired) == 1
        assert repaired[0].skip_reason == SkipReason.REPAIRED
        assert repaired[0].retry_count == 0
        assert not repaired[0].needs_sync

        checkpoint = engine.store.get_checkpoint("orders")
        assert checkpoint.last_incremental_value == "2024-02-01 00:00:00"
        assert json.loads(second.execution_detail)["previous_watermark"] == "2024-01-01 00:00:00"

    def test_integer_watermark(self, make_engine, run_sql):
        run_sql("source", "CREATE TABLE events (id INTEGER PRIMARY KEY, seq INTEGER, body TEXT);"
                          "INSERT INTO events VALUES (1, 9, 'a'), (2, 10, 'b');")
        run_sql("target", "CREATE TABLE events (id INTEGER PRIMARY KEY, seq INTEGER, body TEXT);")
        engine = make_engine()
        job = orders_job(id="events", source_table="events", target_table="events",
                         sync_mode="INCREMENTAL", incremental_column="seq")

        engine.orchestrator.execute(job)
        run_sql("source", "INSERT INTO events VALUES (3, 11, 'c');")
        log = engine.orchestrator.execute(job)

        assert log.inserted_count == 1
        assert engine.store.get_checkpoint("events").last_incremental_value == "11"


class TestUnreachableTarget:
    """Connectivity loss fails the run and leaves the checkpoint alone"""

    def test_failed_run_keeps_watermark(self, make_engine, registry, run_sql):
        run_sql("source", seed_orders(100))
        run_sql("target", ORDERS_DDL)
        engine = make_engine()
        job = orders_job(sync_mode="INCREMENTAL", incremental_column="updated_at")
        engine.orchestrator.execute(job)
        before = engine.store.get_checkpoint("orders")

        def refuse():
            raise sqlite3.OperationalError("unable to open database file")

        registry.pool("target").close()
        registry.register(
            "target",
            GenericConnectionPool(connect=refuse, min_size=0, health_check_interval=0, acquire_timeout=1),
            ConnectionInfo(product_name="SQLite"),
        )
        run_sql("source", "INSERT INTO orders VALUES (101, 'late', 1, '2024-03-01 00:00:00');")

        log = engine.orchestrator.execute(job)

        assert log.status == ExecutionStatus.FAILED
        assert log.final_state == RunState.FAILED
        assert "ConnectivityError" in log.error_message
        assert engine.store.get_validation_log(log.id) is None

        after = engine.store.get_checkpoint("orders")
        assert after.last_incremental_value == before.last_incremental_value
        assert after.last_execution_log_id == before.last_execution_log_id

        stored = engine.store.get_execution_log(log.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error_message == log.error_message


class TestPersistentCorruption:
    """A bucket that diverges again after every repair"""

    CORRUPT_ROW_42 = """
        CREATE TRIGGER corrupt_insert AFTER INSERT ON orders WHEN NEW.id = 42
        BEGIN UPDATE orders SET amount = -1 WHERE id = 42; END;
        CREATE TRIGGER corrupt_update AFTER UPDATE ON orders WHEN NEW.id = 42 AND NEW.amount <> -1
        BEGIN UPDATE orders SET amount = -1 WHERE id = 42; END;
    """

    @pytest.mark.slow
    def test_retry_exhausted_is_partial_success(self, make_engine, run_sql, metrics):
        run_sql("source", seed_orders(10000))
        run_sql("target", ORDERS_DDL + self.CORRUPT_ROW_42)
        engine = make_engine(rows_per_bucket=100)

        log = engine.orchestrator.execute(orders_job(retry_count=3))

        assert log.status == ExecutionStatus.PARTIAL_SUCCESS
        assert log.bucket_count == 100
        assert log.mismatch_count == 1
        assert log.needs_sync_count == 1

        divergent = [b for b in engine.store.list_bucket_checksums(log.id) if b.needs_sync]
        assert len(divergent) == 1
        bucket = divergent[0]
        assert bucket.bucket_number == 0
        assert bucket.skip_reason == SkipReason.RETRY_EXHAUSTED
        assert bucket.retry_count == 3
        assert bucket.last_retry_time is not None
        assert not bucket.retry_success

        checkpoint = engine.store.get_checkpoint("orders")
        assert checkpoint.validation_status == "PARTIAL_SUCCESS"
        assert checkpoint.skipped_bucket_count == 1
        assert checkpoint.applied_bucket_count == 99
        assert "RETRY_EXHAUSTED" in engine.store.get_validation_log(log.id).message
        assert metrics.registry.get_sample_value("etl_sync_bucket_retries_total", {"job_id": "orders"}) == 3

    def test_every_bucket_divergent_is_partial_success(self, make_engine, run_sql):
        run_sql("source", seed_orders(20, updated_at="2024-01-05 00:00:00"))
        run_sql("target", ORDERS_DDL + """
            CREATE TRIGGER corrupt_all AFTER INSERT ON orders
            BEGIN UPDATE orders SET customer = 'x' WHERE id = NEW.id; END;
            CREATE TRIGGER corrupt_all_updates AFTER UPDATE ON orders WHEN NEW.customer <> 'x'
            BEGIN UPDATE orders SET customer = 'x' WHERE id = NEW.id; END;
        """)
        engine = make_engine()
        job = orders_job(retry_count=1, sync_mode="INCREMENTAL", incremental_column="updated_at")

        log = engine.orchestrator.execute(job)

        assert log.status == ExecutionStatus.PARTIAL_SUCCESS
        assert log.final_state == RunState.PARTIAL_SUCCESS
        assert log.bucket_count == log.needs_sync_count == 1
        assert log.error_message is None
        assert engine.store.get_validation_log(log.id).status == ExecutionStatus.PARTIAL_SUCCESS

        checkpoint = engine.store.get_checkpoint("orders")
        assert checkpoint.last_execution_log_id == log.id
        assert checkpoint.validation_status == "PARTIAL_SUCCESS"
        assert checkpoint.last_incremental_value == "2024-01-05 00:00:00"


class TestRunControl:
    """Timeouts and overlapping runs"""

    def test_timeout_fails_run(self, make_engine, run_sql):
        run_sql("source", seed_orders(100))
        run_sql("target", ORDERS_DDL)
        engine = make_engine(run_timeout_seconds=1e-6)

        log = engine.orchestrator.execute(orders_job())

        assert log.status == ExecutionStatus.FAILED
        assert "RunTimeoutError" in log.error_message
        assert engine.store.get_checkpoint("orders").last_execution_log_id is None

    def test_overlapping_run_rejected(self, make_engine, run_sql, metrics):
        run_sql("source", seed_orders(10))
        run_sql("target", ORDERS_DDL)
        engine = make_engine()
        job = orders_job()

        with engine.orchestrator.guard.hold(job):
            with pytest.raises(ConcurrentRunRejectedError):
                engine.orchestrator.execute(job)

        assert engine.store.list_execution_logs("orders") == []
        assert metrics.registry.get_sample_value("etl_sync_runs_rejected_total", {"job_id": "orders"}) == 1

    def test_concurrent_allowed_job_runs_twice(self, make_engine, run_sql):
        run_sql("source", seed_orders(10))
        run_sql("target", ORDERS_DDL)
        engine = make_engine()
        job = orders_job(concurrent_allowed=True)

        futures = [engine.orchestrator.submit(job) for _ in range(2)]

        assert [f.result(timeout=60).status for f in futures] == [ExecutionStatus.SUCCESS] * 2

    def test_slower_overlapping_run_keeps_newer_watermark(self, make_engine, run_sql, monkeypatch):
        run_sql("source", seed_orders(50))
        run_sql("target", ORDERS_DDL)
        engine = make_engine()
        job = orders_job(concurrent_allowed=True, sync_mode="INCREMENTAL", incremental_column="updated_at")

        real_compare = engine.bucket_engine.compare
        first_in_compare, release_first = threading.Event(), threading.Event()
        calls = []

        def compare_holding_first_run(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                first_in_compare.set()
                release_first.wait(timeout=60)
            return real_compare(*args, **kwargs)

        monkeypatch.setattr(engine.bucket_engine, "compare", compare_holding_first_run)

        slow = engine.orchestrator.submit(job)
        try:
            assert first_in_compare.wait(timeout=60)
            run_sql("source", "INSERT INTO orders VALUES (51, 'late', 1, '2024-02-01 00:00:00');")
            fast = engine.orchestrator.execute(job)
        finally:
            release_first.set()

        assert fast.status == ExecutionStatus.SUCCESS
        assert slow.result(timeout=60).status == ExecutionStatus.SUCCESS
        assert engine.store.get_checkpoint("orders").last_incremental_value == "2024-02-01 00:00:00"


class TestStructureChanges:
    """Schema drift detection and target evolution"""

    def test_new_source_column_added_to_target(self, make_engine, run_sql, query, metrics):
        run_sql("source", seed_orders(30))
        run_sql("target", ORDERS_DDL)
        engine = make_engine()
        engine.orchestrator.execute(orders_job())

        run_sql("source", "ALTER TABLE orders ADD COLUMN region TEXT; UPDATE orders SET region = 'EU';")
        log = engine.orchestrator.execute(orders_job())

        assert log.status == ExecutionStatus.SUCCESS
        detail = json.loads(log.execution_detail)
        assert detail["added_columns"] == ["region"]
        assert detail["schema_drift"] == ["SOURCE", "TARGET"]
        assert query("target", "SELECT DISTINCT region FROM orders") == [("EU",)]
        assert metrics.registry.get_sample_value(
            "etl_sync_schema_drift_total", {"job_id": "orders", "side": "SOURCE"}
        ) == 1

    def test_evolution_disabled_fails(self, make_engine, run_sql):
        run_sql("source", seed_orders(5) + "ALTER TABLE orders ADD COLUMN region TEXT;")
        run_sql("target", ORDERS_DDL)
        engine = make_engine(schema_evolution=False)

        log = engine.orchestrator.execute(orders_job())

        assert log.status == ExecutionStatus.FAILED
        assert "SchemaDriftError" in log.error_message

    def test_missing_source_table(self, make_engine, run_sql):
        run_sql("target", ORDERS_DDL)
        engine = make_engine()

        log = engine.orchestrator.execute(orders_job())

        assert log.status == ExecutionStatus.FAILED
        assert "SchemaNotFoundError" in log.error_message


class TestMappingAndKeys:
    """Mapping rules and composite keys end to end"""

    def test_skip_and_constant_rules(self, make_engine, run_sql, query):
        run_sql("source", seed_orders(40))
        run_sql("target", "CREATE TABLE orders (id INTEGER PRIMARY KEY, amount NUMERIC(12, 2), "
                          "updated_at TIMESTAMP, origin TEXT);")
        engine = make_engine()
        job = orders_job(mapping_rules=[
            ColumnMappingRule("customer", None, MappingAction.SKIP),
            ColumnMappingRule(None, "origin", MappingAction.CONSTANT, constant_value="erp", ordinal=1),
        ])

        log = engine.orchestrator.execute(job)

        assert log.status == ExecutionStatus.SUCCESS
        assert log.mismatch_count == 0
        assert query("target", "SELECT DISTINCT origin FROM orders") == [("erp",)]

    def test_composite_key_orphan_pruned(self, make_engine, run_sql, query):
        ddl = "CREATE TABLE lines (order_id INTEGER, line_no INTEGER, sku TEXT, PRIMARY KEY (order_id, line_no));"
        run_sql("source", ddl + """
            WITH RECURSIVE n(i) AS (SELECT 0 UNION ALL SELECT i + 1 FROM n WHERE i < 59)
            INSERT INTO lines SELECT i / 3 + 1, i % 3 + 1, 'sku-' || i FROM n;
        """)
        run_sql("target", ddl + "INSERT INTO lines VALUES (1, 99, 'orphan');")
        engine = make_engine()

        log = engine.orchestrator.execute(orders_job(id="lines", source_table="lines", target_table="lines"))

        assert log.status == ExecutionStatus.SUCCESS
        assert log.mismatch_count == 1
        assert log.needs_sync_count == 0
        assert query("target", "SELECT COUNT(*) FROM lines") == [(60,)]
        assert query("target", "SELECT COUNT(*) FROM lines WHERE line_no = 99") == [(0,)]

    def test_filtered_job_with_composite_key(self, make_engine, run_sql, query):
        ddl = (
            "CREATE TABLE lines (order_id INTEGER, line_no INTEGER, sku TEXT, status TEXT, "
            "updated_at TIMESTAMP, PRIMARY KEY (order_id, line_no));"
        )
        run_sql("source", ddl + """
            WITH RECURSIVE n(i) AS (SELECT 0 UNION ALL SELECT i + 1 FROM n WHERE i < 29)
            INSERT INTO lines SELECT i / 3 + 1, i % 3 + 1, 'sku-' || i,
                CASE WHEN i % 3 = 2 THEN 'void' ELSE 'open' END, '2024-01-01 00:00:00' FROM n;
        """)
        run_sql("target", ddl)
        engine = make_engine(prune_orphans=False)
        job = orders_job(
            id="lines", source_table="lines", target_table="lines",
            sync_mode="INCREMENTAL", incremental_column="updated_at",
            filter_condition="status <> 'void'",
        )

        first = engine.orchestrator.execute(job)
        assert first.status == ExecutionStatus.SUCCESS
        assert first.inserted_count == 20

        run_sql("target", "UPDATE lines SET sku = 'bad' WHERE order_id = 2 AND line_no = 1;")
        second = engine.orchestrator.execute(job)

        assert second.status == ExecutionStatus.SUCCESS
        assert second.inserted_count == 0
        assert second.mismatch_count == 1
        assert second.needs_sync_count == 0
        assert query("target", "SELECT COUNT(*) FROM lines WHERE status = 'void'") == [(0,)]
        assert query("target", "SELECT sku FROM lines WHERE order_id = 2 AND line_no = 1") == [("sku-3",)]

    def test_text_keys(self, make_engine, run_sql, query):
        ddl = "CREATE TABLE skus (code TEXT PRIMARY KEY, name TEXT);"
        values = ", ".join(f"('SKU-{i:05d}', 'item {i}')" for i in range(500))
        run_sql("source", ddl + f"INSERT INTO skus VALUES {values};")
        run_sql("target", ddl + "INSERT INTO skus VALUES ('SKU-00100', 'wrong'), ('ZZZ', 'orphan');")
        engine = make_engine(rows_per_bucket=50)

        log = engine.orchestrator.execute(orders_job(id="skus", source_table="skus", target_table="skus"))

        assert log.status == ExecutionStatus.SUCCESS
        assert log.needs_sync_count == 0
        assert query("target", "SELECT COUNT(*) FROM skus") == [(500,)]


class TestConfiguredEngine:
    """Engine built from a parsed configuration document"""

    def test_run_from_config(self, tmp_path, metrics):
        paths = {code: tmp_path / f"{code}.db" for code in ("erp", "dw", "meta")}
        with sqlite3.connect(paths["erp"]) as conn:
            conn.executescript(seed_orders(250))
        with sqlite3.connect(paths["dw"]) as conn:
            conn.executescript(ORDERS_DDL)

        config = parse_config({
            "datasources": {
                code: {"driver": "sqlite", "params": {"database": str(path)}, "pool": {"health_check_interval": 0}}
                for code, path in paths.items()
            },
            "state": {"datasource": "meta", "table_prefix": "sync_"},
            "engine": {"rows_per_bucket": 100},
            "jobs": {
                "orders": {
                    "source": {"datasource": "erp", "table": "orders"},
                    "target": {"datasource": "dw", "table": "orders"},
                    "sync_mode": "INCREMENTAL",
                    "incremental_column": "updated_at",
                },
            },
        }, environ={})
        engine = build_engine(config, metrics=metrics)
        try:
            assert "sync_etl_sync_checkpoint" in engine.store.initialize_schema()
            log = engine.orchestrator.execute(config.jobs["orders"])
        finally:
            engine.close()

        assert log.status == ExecutionStatus.SUCCESS
        assert log.bucket_count == 3
        with sqlite3.connect(paths["dw"]) as conn:
            assert conn.execute("SELECT COUNT(*) FROM orders").fetchone() == (250,)
