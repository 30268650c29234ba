"""
Database connection pooling.

Provides thread-safe connection pools with health checks, metrics,
and automatic connection recycling to prevent stale connections.

PostgreSQL and other DB-API drivers go through GenericConnectionPool with
driver_connect_factory. The ODBC pool imports pyodbc at module import time,
so it is imported from its own module:

    from utils.db_pool.sqlserver import SQLServerConnectionPool
"""

from .base import (
    BaseConnectionPool,
    ConnectionPoolError,
    PoolClosedError,
    PooledConnection,
    PoolExhaustedError,
)
from .generic import GenericConnectionPool, driver_connect_factory

__all__ = [
    "BaseConnectionPool",
    "GenericConnectionPool",
    "driver_connect_factory",
    "PooledConnection",
    "ConnectionPoolError",
    "PoolExhaustedError",
    "PoolClosedError",
]
