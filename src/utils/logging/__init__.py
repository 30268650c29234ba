"""
Structured logging configuration for the ETL sync engine

Provides JSON-formatted or colored console logging with contextual fields.

Usage:
    from utils.logging import setup_logging, ContextLogger

    # Setup logging (call once at application startup)
    setup_logging(level="INFO", log_file="/var/log/etl-sync/app.log")

    # Per-run logger carrying job context
    log = ContextLogger(__name__, job_id="orders")
    log.info("Run started", execution_log_id="ab12")
"""

from .config import configure_from_env, get_logger, setup_logging, shutdown_logging
from .formatters import ConsoleFormatter, JSONFormatter
from .handlers import ContextLogger

__all__ = [
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "configure_from_env",
    "JSONFormatter",
    "ConsoleFormatter",
    "ContextLogger",
]
