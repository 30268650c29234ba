"""
Shared infrastructure for the ETL sync engine

Provides:
- db_pool: Thread-safe DB-API connection pools
- logging: Structured logging setup
- metrics: Prometheus metrics for sync runs
- tracing: OpenTelemetry spans
- retry: Exponential backoff helpers
- sql_safety: Identifier quoting and validation
"""

__version__ = "1.0.0"
__all__ = ["db_pool", "logging", "metrics", "tracing", "retry", "sql_safety"]
