"""
Metrics publishing to Prometheus

Usage:
    from utils.metrics import MetricsPublisher, SyncMetrics

    publisher = MetricsPublisher(port=9091)
    publisher.start()

    metrics = SyncMetrics()
    metrics.record_run("orders", status="SUCCESS", duration=12.5)
"""

from .publisher import MetricsPublisher
from .registry import get_or_create_metric
from .sync import SyncMetrics, get_sync_metrics

__all__ = [
    "MetricsPublisher",
    "SyncMetrics",
    "get_sync_metrics",
    "get_or_create_metric",
]
