"""
Base classes and functionality for database connection pooling.

Provides thread-safe connection pools with health checks, metrics,
and automatic connection recycling. Bucket workers each borrow their own
connection, so a pool never hands one connection to two threads at once.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from queue import Empty, Queue
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from utils.metrics import get_or_create_metric
from utils.tracing import trace_operation

logger = logging.getLogger(__name__)


CONNECTION_POOL_SIZE = get_or_create_metric(lambda: Gauge(
    "etl_db_pool_size",
    "Current size of database connection pool",
    ["database_type", "pool_name"],
), "etl_db_pool_size")

CONNECTION_POOL_ACTIVE = get_or_create_metric(lambda: Gauge(
    "etl_db_pool_active",
    "Number of borrowed connections",
    ["database_type", "pool_name"],
), "etl_db_pool_active")

CONNECTION_POOL_WAITS = get_or_create_metric(lambda: Counter(
    "etl_db_pool_waits_total",
    "Number of times a connection request had to wait",
    ["database_type", "pool_name"],
), "etl_db_pool_waits")

CONNECTION_POOL_ERRORS = get_or_create_metric(lambda: Counter(
    "etl_db_pool_errors_total",
    "Number of connection pool errors",
    ["database_type", "pool_name", "error_type"],
), "etl_db_pool_errors")

CONNECTION_ACQUIRE_TIME = get_or_create_metric(lambda: Histogram(
    "etl_db_pool_acquire_seconds",
    "Time to acquire a connection from pool",
    ["database_type", "pool_name"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
), "etl_db_pool_acquire_seconds")


@dataclass
class PooledConnection:
    """Wrapper for a pooled database connection with metadata."""

    connection: Any
    created_at: datetime
    last_used: datetime
    use_count: int = 0
    is_healthy: bool = True

    def mark_used(self) -> None:
        """Mark connection as used and update timestamp."""
        self.last_used = datetime.now(UTC)
        self.use_count += 1


class ConnectionPoolError(Exception):
    """Base exception for connection pool errors."""

    pass


class PoolExhaustedError(ConnectionPoolError):
    """Raised when the connection pool is exhausted."""

    pass


class PoolClosedError(ConnectionPoolError):
    """Raised when attempting to use a closed pool."""

    pass


class BaseConnectionPool:
    """
    Base class for database connection pools.

    Subclasses provide connection creation, health probing and closing.
    Connections are rolled back when returned so no transaction leaks
    between borrowers.
    """

    def __init__(
        self,
        min_size: int = 1,
        max_size: int = 10,
        max_idle_time: int = 300,
        max_lifetime: int = 3600,
        health_check_interval: int = 60,
        acquire_timeout: float = 30.0,
        pool_name: str = "default",
    ):
        """
        Initialize connection pool.

        Args:
            min_size: Minimum number of connections to maintain
            max_size: Maximum number of connections allowed
            max_idle_time: Maximum idle time in seconds before recycling
            max_lifetime: Maximum connection lifetime in seconds
            health_check_interval: Interval for health checks in seconds
                (0 disables the background checker)
            acquire_timeout: Timeout for acquiring connection in seconds
            pool_name: Name of the pool for metrics
        """
        if min_size < 0 or max_size < 1 or min_size > max_size:
            raise ValueError(f"Invalid pool sizing: min={min_size}, max={max_size}")

        self.min_size = min_size
        self.max_size = max_size
        self.max_idle_time = timedelta(seconds=max_idle_time)
        self.max_lifetime = timedelta(seconds=max_lifetime)
        self.health_check_interval = health_check_interval
        self.acquire_timeout = acquire_timeout
        self.pool_name = pool_name

        self._pool: Queue[PooledConnection] = Queue(maxsize=max_size)
        self._all_connections: list[PooledConnection] = []
        self._lock = threading.RLock()
        self._closed = False
        self._stop_event = threading.Event()

        self._fill_to_minimum("initialization")

        self._health_check_thread: threading.Thread | None = None
        if health_check_interval > 0:
            self._health_check_thread = threading.Thread(
                target=self._health_check_worker,
                name=f"pool-health-{pool_name}",
                daemon=True,
            )
            self._health_check_thread.start()

        logger.info(
            f"Initialized {self.__class__.__name__} '{pool_name}' "
            f"(min={min_size}, max={max_size})"
        )

    def _create_connection(self) -> Any:
        """Create a new database connection. Must be implemented by subclasses."""
        raise NotImplementedError

    def _is_connection_healthy(self, conn: Any) -> bool:
        """Check if connection is healthy. Must be implemented by subclasses."""
        raise NotImplementedError

    def _close_connection(self, conn: Any) -> None:
        """Close a database connection. Must be implemented by subclasses."""
        raise NotImplementedError

    def _get_db_type(self) -> str:
        """Get database type for metrics. Must be implemented by subclasses."""
        raise NotImplementedError

    def _reset_connection(self, conn: Any) -> None:
        """Discard any open transaction before the connection goes back to the pool."""
        conn.rollback()

    def _labels(self) -> dict[str, str]:
        return {"database_type": self._get_db_type(), "pool_name": self.pool_name}

    def _record_error(self, error_type: str) -> None:
        CONNECTION_POOL_ERRORS.labels(**self._labels(), error_type=error_type).inc()

    def _new_pooled(self) -> PooledConnection:
        now = datetime.now(UTC)
        pooled_conn = PooledConnection(
            connection=self._create_connection(), created_at=now, last_used=now
        )
        with self._lock:
            self._all_connections.append(pooled_conn)
        return pooled_conn

    def _fill_to_minimum(self, reason: str) -> None:
        with self._lock:
            needed = self.min_size - len(self._all_connections)
            for _ in range(max(0, needed)):
                try:
                    self._pool.put(self._new_pooled())
                except Exception as e:
                    logger.error(f"Failed to create connection ({reason}) for '{self.pool_name}': {e}")
                    self._record_error(reason)
                    break
            self._update_metrics()

    def _check_connection_health(self, pooled_conn: PooledConnection) -> bool:
        """
        Check if a pooled connection is healthy.

        A connection is recycled when it exceeded its lifetime, sat idle too
        long, or fails the engine-specific probe.
        """
        now = datetime.now(UTC)

        if now - pooled_conn.created_at > self.max_lifetime:
            logger.debug("Connection exceeded max lifetime, recycling")
            return False

        if now - pooled_conn.last_used > self.max_idle_time:
            logger.debug("Connection exceeded max idle time, recycling")
            return False

        try:
            pooled_conn.is_healthy = self._is_connection_healthy(pooled_conn.connection)
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            pooled_conn.is_healthy = False
            self._record_error("health_check")
        return pooled_conn.is_healthy

    def _recycle_connection(self, pooled_conn: PooledConnection) -> None:
        """Close and remove a connection from the pool."""
        try:
            self._close_connection(pooled_conn.connection)
        except Exception as e:
            logger.warning(f"Error closing connection: {e}")
        finally:
            with self._lock:
                if pooled_conn in self._all_connections:
                    self._all_connections.remove(pooled_conn)

    def _health_check_worker(self) -> None:
        """Background worker to perform periodic health checks."""
        while not self._stop_event.wait(self.health_check_interval):
            try:
                self._perform_health_checks()
            except Exception as e:
                logger.error(f"Health check worker error: {e}")

    def _perform_health_checks(self) -> None:
        """Probe idle connections, drop unhealthy ones and refill to minimum."""
        if self._closed:
            return

        idle: list[PooledConnection] = []
        while True:
            try:
                idle.append(self._pool.get_nowait())
            except Empty:
                break

        for pooled_conn in idle:
            if self._check_connection_health(pooled_conn):
                self._pool.put_nowait(pooled_conn)
            else:
                self._recycle_connection(pooled_conn)
                logger.info(f"Recycled unhealthy connection in '{self.pool_name}'")

        self._fill_to_minimum("replenishment")

    def _update_metrics(self) -> None:
        with self._lock:
            total_size = len(self._all_connections)
            active_size = total_size - self._pool.qsize()
        CONNECTION_POOL_SIZE.labels(**self._labels()).set(total_size)
        CONNECTION_POOL_ACTIVE.labels(**self._labels()).set(active_size)

    def _take(self, deadline: float) -> PooledConnection:
        """Idle connection, a new one if under max_size, or wait for a release."""
        while True:
            try:
                return self._pool.get_nowait()
            except Empty:
                pass

            with self._lock:
                live = len(self._all_connections)
                if live < self.max_size:
                    try:
                        logger.debug(f"Creating new connection for '{self.pool_name}'")
                        return self._new_pooled()
                    except Exception as e:
                        self._record_error("creation")
                        if live == 0:
                            # Nothing will ever be released back: fail fast
                            raise ConnectionPoolError(
                                f"Cannot open connection for pool '{self.pool_name}': {e}"
                            ) from e
                        logger.warning(f"Failed to create new connection: {e}")

            CONNECTION_POOL_WAITS.labels(**self._labels()).inc()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PoolExhaustedError(
                    f"No connection available within {self.acquire_timeout}s"
                )
            try:
                return self._pool.get(timeout=min(remaining, 0.5))
            except Empty:
                continue

    @contextmanager
    def acquire(self) -> Iterator[Any]:
        """
        Acquire a connection from the pool.

        Yields:
            Database connection

        Raises:
            PoolClosedError: If pool is closed
            PoolExhaustedError: If no connection available within timeout
            ConnectionPoolError: If the pool is empty and a connection cannot be opened
        """
        if self._closed:
            raise PoolClosedError(f"Connection pool '{self.pool_name}' is closed")

        start_time = time.monotonic()
        deadline = start_time + self.acquire_timeout
        pooled_conn: PooledConnection | None = None

        with trace_operation(
            "db_pool_acquire",
            kind=trace.SpanKind.CLIENT,
            database_type=self._get_db_type(),
            pool_name=self.pool_name,
        ):
            while pooled_conn is None:
                candidate = self._take(deadline)
                if self._check_connection_health(candidate):
                    pooled_conn = candidate
                else:
                    logger.info("Connection unhealthy, recycling and retrying")
                    self._recycle_connection(candidate)

            pooled_conn.mark_used()
            self._update_metrics()
            CONNECTION_ACQUIRE_TIME.labels(**self._labels()).observe(time.monotonic() - start_time)

        try:
            yield pooled_conn.connection
        finally:
            self._release(pooled_conn)

    def _release(self, pooled_conn: PooledConnection) -> None:
        if self._closed:
            self._recycle_connection(pooled_conn)
            return
        try:
            self._reset_connection(pooled_conn.connection)
            self._pool.put(pooled_conn, timeout=1.0)
        except Exception as e:
            logger.error(f"Failed to return connection to pool: {e}")
            self._recycle_connection(pooled_conn)
        self._update_metrics()

    def close(self) -> None:
        """Close all connections and shutdown the pool."""
        if self._closed:
            return

        logger.info(f"Closing connection pool '{self.pool_name}'")
        self._closed = True
        self._stop_event.set()

        with self._lock:
            for pooled_conn in self._all_connections:
                try:
                    self._close_connection(pooled_conn.connection)
                except Exception as e:
                    logger.warning(f"Error closing connection: {e}")
            self._all_connections.clear()

            while True:
                try:
                    self._pool.get_nowait()
                except Empty:
                    break

        logger.info(f"Connection pool '{self.pool_name}' closed")

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        with self._lock:
            total_size = len(self._all_connections)
            idle_size = self._pool.qsize()

            return {
                "pool_name": self.pool_name,
                "database_type": self._get_db_type(),
                "total_connections": total_size,
                "idle_connections": idle_size,
                "active_connections": total_size - idle_size,
                "min_size": self.min_size,
                "max_size": self.max_size,
                "closed": self._closed,
            }
