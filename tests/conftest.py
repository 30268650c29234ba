"""
Pytest configuration and fixtures for ETL sync tests.

Provides SQLite-backed datasources (one file per datasource), an isolated
metrics registry, and helpers for seeding and reading tables.
"""

import sqlite3
from collections.abc import Callable
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from etl_sync.datasource import DatasourceRegistry
from etl_sync.dialect import ConnectionInfo
from etl_sync.state import SyncStateStore
from utils.db_pool import GenericConnectionPool
from utils.metrics import SyncMetrics

DATASOURCES = ("source", "target", "state")


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def sqlite_pool(path: Path, name: str) -> GenericConnectionPool:
    return GenericConnectionPool(
        connect=lambda: sqlite3.connect(str(path), check_same_thread=False, timeout=30),
        db_type="sqlite",
        pool_name=name,
        max_size=8,
        health_check_interval=0,
    )


@pytest.fixture
def db_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def registry(db_dir: Path):
    """Registry with SQLite datasources "source", "target" and "state"."""
    reg = DatasourceRegistry()
    for code in DATASOURCES:
        reg.register(code, sqlite_pool(db_dir / f"{code}.db", code), ConnectionInfo(product_name="SQLite"))
    yield reg
    reg.close()


@pytest.fixture
def metrics() -> SyncMetrics:
    return SyncMetrics(registry=CollectorRegistry())


@pytest.fixture
def state_store(registry: DatasourceRegistry) -> SyncStateStore:
    store = SyncStateStore(registry, "state")
    store.initialize_schema()
    return store


@pytest.fixture
def run_sql(registry: DatasourceRegistry) -> Callable[[str, str], None]:
    """Execute a SQL script on a datasource and commit."""

    def run(code: str, script: str) -> None:
        with registry.connection(code) as conn:
            conn.executescript(script)
            conn.commit()

    return run


@pytest.fixture
def query(registry: DatasourceRegistry) -> Callable[..., list[tuple]]:
    """Fetch all rows of a query on a datasource."""

    def fetch(code: str, sql: str, params: tuple = ()) -> list[tuple]:
        with registry.connection(code) as conn:
            return conn.execute(sql, params).fetchall()

    return fetch
