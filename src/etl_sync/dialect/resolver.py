"""
Dialect resolution from connection metadata.

Matches keywords in the product name and connection URL against known engine
families, in a fixed order, and instantiates the dialect registered for the
winner. The registry is passed in explicitly; nothing is discovered at import
time.
"""

import logging
import sys
from dataclasses import dataclass
from typing import Any

from ..errors import UnsupportedDialectError
from .base import Dialect, DialectType
from .variants import DEFAULT_DIALECTS

logger = logging.getLogger(__name__)

# Order matters: first match wins
_KEYWORDS: list[tuple[DialectType, tuple[str, ...]]] = [
    (DialectType.MYSQL, ("mysql", "mariadb", "tidb", "polar", "starrocks")),
    (DialectType.POSTGRESQL, ("postgresql", "postgres", "opengauss", "kingbase", "gaussdb")),
    (DialectType.ORACLE, ("oracle",)),
    (DialectType.SQLSERVER, ("sql server", "microsoft sql server", "jdbc:sqlserver", "mssql", "sqlserver")),
    (DialectType.SQLITE, ("sqlite",)),
]

# DB-API driver module -> product name
_DRIVER_PRODUCTS = {
    "psycopg2": "PostgreSQL",
    "psycopg": "PostgreSQL",
    "pg8000": "PostgreSQL",
    "sqlite3": "SQLite",
    "pymysql": "MySQL",
    "MySQLdb": "MySQL",
    "mysql": "MySQL",
    "oracledb": "Oracle",
    "cx_Oracle": "Oracle",
    "pymssql": "Microsoft SQL Server",
}

SQL_DBMS_NAME = 17  # ODBC SQLGetInfo code


@dataclass(frozen=True)
class ConnectionInfo:
    """What the resolver needs to know about a datasource."""

    product_name: str | None = None
    url: str | None = None
    paramstyle: str = "qmark"


def describe_connection(connection: Any) -> ConnectionInfo:
    """
    Derive a ConnectionInfo from a live DB-API connection.

    Args:
        connection: Open DB-API 2.0 connection

    Returns:
        Product name and paramstyle of the connection's driver
    """
    module_name = type(connection).__module__.split(".")[0]
    driver = sys.modules.get(module_name)
    paramstyle = getattr(driver, "paramstyle", "qmark")

    product = _DRIVER_PRODUCTS.get(module_name)
    if module_name == "pyodbc":
        try:
            product = connection.getinfo(SQL_DBMS_NAME)
        except Exception as e:
            logger.warning(f"Could not read DBMS name from ODBC connection: {e}")

    return ConnectionInfo(product_name=product, url=None, paramstyle=paramstyle)


class DialectResolver:
    """Selects a Dialect for a connection from an explicit registry."""

    def __init__(self, registry: dict[DialectType, type[Dialect]] | None = None):
        """
        Initialize resolver

        Args:
            registry: Dialect classes by type (default: all built-in dialects)
        """
        self.registry = dict(DEFAULT_DIALECTS if registry is None else registry)

    @staticmethod
    def detect_type(info: ConnectionInfo) -> DialectType:
        """Engine family for a connection; GENERIC when nothing matches."""
        haystack = " ".join(
            part.lower() for part in (info.product_name, info.url) if part
        )
        for dialect_type, keywords in _KEYWORDS:
            if any(keyword in haystack for keyword in keywords):
                return dialect_type
        return DialectType.GENERIC

    def resolve(self, info: ConnectionInfo) -> Dialect:
        """
        Resolve the dialect for a connection.

        Args:
            info: Connection metadata

        Returns:
            Dialect bound to the connection's paramstyle

        Raises:
            UnsupportedDialectError: If neither the matched type nor GENERIC
                is registered
        """
        dialect_type = self.detect_type(info)
        dialect_cls = self.registry.get(dialect_type)
        if dialect_cls is None:
            dialect_cls = self.registry.get(DialectType.GENERIC)
            if dialect_cls is None:
                raise UnsupportedDialectError(
                    f"No dialect registered for {dialect_type.value} "
                    f"(product={info.product_name!r}, url={info.url!r}) and no GENERIC fallback"
                )
            logger.warning(f"No {dialect_type.value} dialect registered, using GENERIC")
        return dialect_cls(paramstyle=info.paramstyle)
