"""
Per-engine SQL generation.

Dialects are pure SQL text generators; DialectResolver picks one from
connection metadata.
"""

from .base import Dialect, DialectType
from .resolver import ConnectionInfo, DialectResolver, describe_connection
from .variants import (
    DEFAULT_DIALECTS,
    GenericDialect,
    MySqlDialect,
    OracleDialect,
    PostgreSqlDialect,
    SqliteDialect,
    SqlServerDialect,
)

__all__ = [
    "Dialect",
    "DialectType",
    "DialectResolver",
    "ConnectionInfo",
    "describe_connection",
    "DEFAULT_DIALECTS",
    "GenericDialect",
    "MySqlDialect",
    "PostgreSqlDialect",
    "SqliteDialect",
    "OracleDialect",
    "SqlServerDialect",
]
