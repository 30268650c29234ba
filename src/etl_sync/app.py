"""
Composition root.

Builds the datasource registry, state store, inspector, bucket engine and
orchestrator from an AppConfig.
"""

import logging
from dataclasses import dataclass

from utils.metrics import MetricsPublisher, SyncMetrics, get_sync_metrics
from utils.tracing import initialize_tracing

from .bucket import BucketChecksumEngine
from .config import AppConfig
from .context import JobRunGuard
from .datasource import DatasourceRegistry
from .dialect import DEFAULT_DIALECTS, DialectResolver
from .metadata import DbApiMetadataService, TableMetadataInspector
from .state import SyncStateStore
from .sync import ReconciliationOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: AppConfig
    registry: DatasourceRegistry
    store: SyncStateStore
    inspector: TableMetadataInspector
    bucket_engine: BucketChecksumEngine
    orchestrator: ReconciliationOrchestrator

    def close(self) -> None:
        self.orchestrator.close()
        self.registry.close()


def build_engine(
    config: AppConfig,
    registry: DatasourceRegistry | None = None,
    metrics: SyncMetrics | None = None,
) -> Engine:
    """
    Wire up an engine.

    Args:
        config: Loaded configuration
        registry: Pre-built registry (default: built from ``config.datasources``)
        metrics: Metrics sink (default: process-wide SyncMetrics)

    Returns:
        Engine ready to run jobs
    """
    if registry is None:
        registry = DatasourceRegistry(config.datasources, DialectResolver(dict(DEFAULT_DIALECTS)))
    metrics = metrics or get_sync_metrics()
    settings = config.engine

    store = SyncStateStore(registry, config.state_datasource, config.state_table_prefix)
    inspector = TableMetadataInspector(DbApiMetadataService(registry))
    bucket_engine = BucketChecksumEngine(
        registry,
        rows_per_bucket=settings.rows_per_bucket,
        max_buckets=settings.max_buckets,
        parallelism=settings.parallelism,
        key_batch_size=settings.key_batch_size,
        prune_orphans=settings.prune_orphans,
        metrics=metrics,
    )
    orchestrator = ReconciliationOrchestrator(
        registry,
        store,
        inspector,
        bucket_engine,
        metrics=metrics,
        guard=JobRunGuard(),
        run_timeout_seconds=settings.run_timeout_seconds,
        max_concurrent_runs=settings.max_concurrent_runs,
        schema_evolution=settings.schema_evolution,
    )
    logger.info(
        f"Engine built: {len(config.datasources)} datasources, {len(config.jobs)} jobs, "
        f"state on '{config.state_datasource}'"
    )
    return Engine(config, registry, store, inspector, bucket_engine, orchestrator)


def start_observability(config: AppConfig) -> MetricsPublisher | None:
    """Start tracing and, when a port is configured, the metrics endpoint."""
    tracing = config.tracing
    initialize_tracing(
        service_name=tracing.get("service_name", "etl-sync"),
        otlp_endpoint=tracing.get("otlp_endpoint"),
        console_export=bool(tracing.get("console", False)),
        sampling_rate=float(tracing.get("sampling_rate", 1.0)),
    )
    if config.metrics_port is None:
        return None
    publisher = MetricsPublisher(port=config.metrics_port)
    publisher.start()
    return publisher
