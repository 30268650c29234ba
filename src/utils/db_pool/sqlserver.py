"""SQL Server connection pool implementation."""

from typing import Any

import pyodbc
from opentelemetry import trace

from utils.tracing import trace_operation

from .base import BaseConnectionPool


class SQLServerConnectionPool(BaseConnectionPool):
    """Connection pool for SQL Server databases over ODBC."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        connection_string: str | None = None,
        autocommit: bool = False,
        **kwargs: Any,
    ):
        """
        Initialize SQL Server connection pool.

        Args:
            host: SQL Server host (required if connection_string not provided)
            port: SQL Server port (required if connection_string not provided)
            database: Database name (required if connection_string not provided)
            user: Username (required if connection_string not provided)
            password: Password (required if connection_string not provided)
            driver: ODBC driver name
            connection_string: Complete ODBC connection string (alternative to individual params)
            autocommit: Open connections in autocommit mode
            **kwargs: Additional arguments for BaseConnectionPool
        """
        if connection_string:
            self.connection_string = connection_string
        else:
            if not all([host, port, database, user, password]):
                raise ValueError(
                    "Either connection_string or all of (host, port, database, user, password) must be provided"
                )
            self.connection_string = (
                f"DRIVER={{{driver}}};"
                f"SERVER={host},{port};"
                f"DATABASE={database};"
                f"UID={user};"
                f"PWD={password};"
                f"TrustServerCertificate=yes;"
                f"Encrypt=yes;"
            )
        self.host = host or self._extract_from_conn_str(self.connection_string, "SERVER")
        self.database = database or self._extract_from_conn_str(self.connection_string, "DATABASE")
        self.autocommit = autocommit

        super().__init__(**kwargs)

    @staticmethod
    def _extract_from_conn_str(conn_str: str, key: str) -> str:
        """Extract a value from connection string for span attributes."""
        for part in conn_str.split(";"):
            if part.strip().upper().startswith(key.upper() + "="):
                return part.split("=", 1)[1].strip()
        return "unknown"

    def _create_connection(self) -> pyodbc.Connection:
        """Create a new SQL Server connection."""
        with trace_operation(
            "sqlserver_connect",
            kind=trace.SpanKind.CLIENT,
            db_host=self.host,
            db_name=self.database,
        ):
            return pyodbc.connect(self.connection_string, timeout=10, autocommit=self.autocommit)

    def _is_connection_healthy(self, conn: pyodbc.Connection) -> bool:
        """Check if SQL Server connection is healthy."""
        if conn is None:
            return False

        try:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            cursor.close()
            return True
        except pyodbc.Error:
            return False

    def _close_connection(self, conn: pyodbc.Connection) -> None:
        """Close SQL Server connection."""
        if conn is not None:
            conn.close()

    def _get_db_type(self) -> str:
        return "sqlserver"
