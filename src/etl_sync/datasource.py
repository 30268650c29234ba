"""
Datasource registry.

Maps a datasource code to its configuration, a lazily created connection
pool and the dialect resolved for it.
"""

import importlib
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any

from utils.db_pool import (
    BaseConnectionPool,
    ConnectionPoolError,
    GenericConnectionPool,
    driver_connect_factory,
)
from utils.retry import retry_database_operation

from .dialect import ConnectionInfo, Dialect, DialectResolver, describe_connection
from .errors import ConnectivityError, JobConfigurationError

logger = logging.getLogger(__name__)

# driver -> (product name, paramstyle)
_BUILTIN_DRIVERS = {
    "postgresql": ("PostgreSQL", "pyformat"),
    "sqlserver": ("Microsoft SQL Server", "qmark"),
    "sqlite": ("SQLite", "qmark"),
}


@dataclass
class DatasourceConfig:
    """
    Connection settings for one datasource.

    ``driver`` is one of "postgresql", "sqlserver", "sqlite", or "dbapi"
    (any DB-API module named by ``module``).
    """

    code: str
    driver: str
    params: dict[str, Any] = field(default_factory=dict)
    module: str | None = None
    product: str | None = None
    url: str | None = None
    pool: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.driver not in _BUILTIN_DRIVERS and self.driver != "dbapi":
            raise JobConfigurationError(
                f"Datasource '{self.code}': unknown driver {self.driver!r}"
            )
        if self.driver == "dbapi" and not self.module:
            raise JobConfigurationError(
                f"Datasource '{self.code}': driver 'dbapi' requires 'module'"
            )


@retry_database_operation(max_retries=2, base_delay=0.5)
def fetch_all(conn: Any, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
    """Run a read query on a borrowed connection, retrying transient errors."""
    cursor = conn.cursor()
    try:
        cursor.execute(sql, tuple(params))
        return list(cursor.fetchall())
    finally:
        cursor.close()


def _sqlite_connect(database: str, **kwargs: Any):
    # Bucket workers use pooled connections from several threads
    return sqlite3.connect(database, check_same_thread=False, timeout=30, **kwargs)


class DatasourceRegistry:
    """
    Datasource code -> pool, connection info and dialect.

    Pools are created on first use and shared by every job that names the
    same datasource.
    """

    def __init__(
        self,
        configs: dict[str, DatasourceConfig] | None = None,
        resolver: DialectResolver | None = None,
    ):
        self._configs = dict(configs or {})
        self._resolver = resolver or DialectResolver()
        self._pools: dict[str, BaseConnectionPool] = {}
        self._infos: dict[str, ConnectionInfo] = {}
        self._dialects: dict[str, Dialect] = {}
        self._lock = threading.Lock()

    def register(self, code: str, pool: BaseConnectionPool, info: ConnectionInfo) -> None:
        """Register an already constructed pool (embedding, tests)."""
        with self._lock:
            self._pools[code] = pool
            self._infos[code] = info
            self._dialects.pop(code, None)

    def codes(self) -> list[str]:
        return sorted(set(self._configs) | set(self._pools))

    def _config(self, code: str) -> DatasourceConfig:
        try:
            return self._configs[code]
        except KeyError:
            raise JobConfigurationError(f"Unknown datasource '{code}'") from None

    def _build_pool(self, config: DatasourceConfig) -> BaseConnectionPool:
        pool_options = {"pool_name": config.code, **config.pool}
        if config.driver == "postgresql":
            params = {"connect_timeout": 10, **config.params}
            return GenericConnectionPool(
                connect=driver_connect_factory("psycopg2", **params),
                db_type="postgresql",
                **pool_options,
            )
        if config.driver == "sqlserver":
            from utils.db_pool.sqlserver import SQLServerConnectionPool

            return SQLServerConnectionPool(**config.params, **pool_options)
        if config.driver == "sqlite":
            params = dict(config.params)
            database = params.pop("database")
            return GenericConnectionPool(
                connect=lambda: _sqlite_connect(database, **params),
                db_type="sqlite",
                **pool_options,
            )
        connect = driver_connect_factory(config.module, **config.params)
        return GenericConnectionPool(
            connect=connect,
            db_type=config.module,
            health_query=config.pool.get("health_query", "SELECT 1"),
            **{k: v for k, v in pool_options.items() if k != "health_query"},
        )

    def _build_info(self, config: DatasourceConfig) -> ConnectionInfo:
        if config.driver in _BUILTIN_DRIVERS:
            product, paramstyle = _BUILTIN_DRIVERS[config.driver]
            return ConnectionInfo(product_name=config.product or product, url=config.url, paramstyle=paramstyle)

        if config.product:
            driver = importlib.import_module(config.module)
            return ConnectionInfo(
                product_name=config.product,
                url=config.url,
                paramstyle=getattr(driver, "paramstyle", "qmark"),
            )

        # Ask the server which engine sits behind the module
        with self.connection(config.code) as conn:
            live = describe_connection(conn)
        logger.info(f"Datasource '{config.code}' reports product {live.product_name!r}")
        return ConnectionInfo(
            product_name=live.product_name or config.module,
            url=config.url,
            paramstyle=live.paramstyle,
        )

    def pool(self, code: str) -> BaseConnectionPool:
        with self._lock:
            pool = self._pools.get(code)
            if pool is None:
                config = self._config(code)
                logger.info(f"Creating connection pool for datasource '{code}' ({config.driver})")
                pool = self._build_pool(config)
                self._pools[code] = pool
            return pool

    def describe(self, code: str) -> ConnectionInfo:
        """
        Connection info for a datasource, built once and cached.

        Configured ``product``/``url`` win; a ``dbapi`` datasource without a
        configured product is asked over a live connection.

        Raises:
            ConnectivityError: If a live connection is needed and cannot be opened
        """
        with self._lock:
            info = self._infos.get(code)
        if info is None:
            info = self._build_info(self._config(code))
            with self._lock:
                info = self._infos.setdefault(code, info)
        return info

    def dialect(self, code: str) -> Dialect:
        """
        Dialect for a datasource, resolved once and cached.

        Raises:
            UnsupportedDialectError: If the resolver has no usable dialect
        """
        info = self.describe(code)
        with self._lock:
            dialect = self._dialects.get(code)
            if dialect is None:
                dialect = self._resolver.resolve(info)
                self._dialects[code] = dialect
                logger.info(f"Datasource '{code}' resolved to {dialect!r}")
            return dialect

    @contextmanager
    def connection(self, code: str) -> Iterator[Any]:
        """
        Borrow a connection.

        Raises:
            ConnectivityError: If no connection can be obtained
        """
        pool = self.pool(code)
        with ExitStack() as stack:
            try:
                conn = stack.enter_context(pool.acquire())
            except ConnectionPoolError as e:
                raise ConnectivityError(code, str(e)) from e
            yield conn

    def close(self) -> None:
        with self._lock:
            pools = list(self._pools.items())
            self._pools.clear()
        for code, pool in pools:
            try:
                pool.close()
            except Exception as e:
                logger.warning(f"Error closing pool for datasource '{code}': {e}")
