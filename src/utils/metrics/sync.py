"""
Metrics for synchronization runs.

Tracks run outcomes, row throughput, bucket comparison results and schema
drift for monitoring the ETL sync engine.
"""

import logging
import threading
import time

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

logger = logging.getLogger(__name__)


class SyncMetrics:
    """
    Metrics for synchronization runs

    Tracks runs, rows moved, bucket outcomes and drift per job.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize sync metrics

        Args:
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.registry = registry or REGISTRY

        self.runs_total = Counter(
            "etl_sync_runs_total",
            "Total number of synchronization runs by final status",
            ["job_id", "status"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "etl_sync_run_duration_seconds",
            "Duration of synchronization runs in seconds",
            ["job_id"],
            buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
            registry=self.registry,
        )

        self.last_run_timestamp = Gauge(
            "etl_sync_last_run_timestamp",
            "Timestamp of last finished run",
            ["job_id"],
            registry=self.registry,
        )

        self.active_runs = Gauge(
            "etl_sync_active_runs",
            "Runs currently in progress",
            registry=self.registry,
        )

        self.rejected_runs_total = Counter(
            "etl_sync_runs_rejected_total",
            "Runs rejected because the job was already running",
            ["job_id"],
            registry=self.registry,
        )

        self.rows_extracted_total = Counter(
            "etl_sync_rows_extracted_total",
            "Rows read from the source during extraction",
            ["job_id"],
            registry=self.registry,
        )

        self.rows_loaded_total = Counter(
            "etl_sync_rows_loaded_total",
            "Rows upserted into the target (extraction and repair)",
            ["job_id", "phase"],
            registry=self.registry,
        )

        self.buckets_total = Counter(
            "etl_sync_buckets_total",
            "Buckets compared, by outcome",
            ["job_id", "outcome"],
            registry=self.registry,
        )

        self.bucket_retries_total = Counter(
            "etl_sync_bucket_retries_total",
            "Bucket repair attempts",
            ["job_id"],
            registry=self.registry,
        )

        self.schema_drift_total = Counter(
            "etl_sync_schema_drift_total",
            "Structure digest changes detected between runs",
            ["job_id", "side"],
            registry=self.registry,
        )

    def run_started(self) -> None:
        self.active_runs.inc()

    def record_run(self, job_id: str, status: str, duration: float) -> None:
        """
        Record a finished run

        Args:
            job_id: Job identifier
            status: Final execution status
            duration: Duration in seconds
        """
        self.active_runs.dec()
        self.runs_total.labels(job_id=job_id, status=status).inc()
        self.run_duration_seconds.labels(job_id=job_id).observe(duration)
        self.last_run_timestamp.labels(job_id=job_id).set(time.time())

        logger.debug(f"Recorded run: job={job_id}, status={status}, duration={duration:.2f}s")

    def record_rejected_run(self, job_id: str) -> None:
        self.rejected_runs_total.labels(job_id=job_id).inc()

    def record_rows(self, job_id: str, extracted: int = 0, loaded: int = 0, phase: str = "extract") -> None:
        if extracted:
            self.rows_extracted_total.labels(job_id=job_id).inc(extracted)
        if loaded:
            self.rows_loaded_total.labels(job_id=job_id, phase=phase).inc(loaded)

    def record_bucket(self, job_id: str, outcome: str) -> None:
        """
        Record one bucket comparison

        Args:
            job_id: Job identifier
            outcome: "matched", "recovered" or "needs_sync"
        """
        self.buckets_total.labels(job_id=job_id, outcome=outcome).inc()

    def record_bucket_retry(self, job_id: str) -> None:
        self.bucket_retries_total.labels(job_id=job_id).inc()

    def record_schema_drift(self, job_id: str, side: str) -> None:
        self.schema_drift_total.labels(job_id=job_id, side=side).inc()
        logger.warning(f"Schema drift detected: job={job_id}, side={side}")


_default_metrics: SyncMetrics | None = None
_default_lock = threading.Lock()


def get_sync_metrics() -> SyncMetrics:
    """Process-wide SyncMetrics on the global registry."""
    global _default_metrics
    with _default_lock:
        if _default_metrics is None:
            _default_metrics = SyncMetrics()
        return _default_metrics
