"""Connection pool for any DB-API 2.0 driver."""

import importlib
from collections.abc import Callable
from typing import Any

from opentelemetry import trace

from utils.tracing import trace_operation

from .base import BaseConnectionPool


def driver_connect_factory(module: str, *args: Any, **kwargs: Any) -> Callable[[], Any]:
    """
    Build a connect callable for a DB-API driver module.

    Args:
        module: Importable driver module name (e.g. "sqlite3", "pymysql", "oracledb")
        *args: Positional arguments for the driver's connect()
        **kwargs: Keyword arguments for the driver's connect()

    Returns:
        Zero-argument callable opening a new connection
    """
    driver = importlib.import_module(module)

    def connect() -> Any:
        return driver.connect(*args, **kwargs)

    connect.driver = driver
    return connect


class GenericConnectionPool(BaseConnectionPool):
    """
    Pool over a plain connect callable.

    Used for SQLite state stores, MySQL/Oracle drivers and tests.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        db_type: str = "generic",
        health_query: str = "SELECT 1",
        **kwargs: Any,
    ):
        """
        Initialize generic pool.

        Args:
            connect: Zero-argument callable returning a new DB-API connection
            db_type: Database type label for metrics
            health_query: Probe statement (e.g. "SELECT 1 FROM dual" for Oracle)
            **kwargs: Additional arguments for BaseConnectionPool
        """
        self._connect = connect
        self.db_type = db_type
        self.health_query = health_query
        super().__init__(**kwargs)

    def _create_connection(self) -> Any:
        with trace_operation(
            f"{self.db_type}_connect",
            kind=trace.SpanKind.CLIENT,
            pool_name=self.pool_name,
        ):
            return self._connect()

    def _is_connection_healthy(self, conn: Any) -> bool:
        if conn is None:
            return False
        cursor = conn.cursor()
        try:
            cursor.execute(self.health_query)
            cursor.fetchone()
            return True
        finally:
            cursor.close()

    def _close_connection(self, conn: Any) -> None:
        if conn is not None:
            conn.close()

    def _get_db_type(self) -> str:
        return self.db_type
