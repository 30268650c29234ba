"""
Exception hierarchy for synchronization runs.

Fatal errors abort a run and leave the checkpoint untouched. Bucket-level
problems are never raised out of the bucket engine; they are recorded as a
skip reason on the bucket instead.
"""


class EtlSyncError(Exception):
    """Base exception for all synchronization errors."""

    pass


class ConnectivityError(EtlSyncError):
    """Raised when a datasource cannot be reached."""

    def __init__(self, datasource: str, message: str):
        self.datasource = datasource
        super().__init__(f"Datasource '{datasource}' unreachable: {message}")


class UnsupportedDialectError(EtlSyncError):
    """Raised when no registered dialect can serve a connection."""

    pass


class SchemaNotFoundError(EtlSyncError):
    """Raised when a table has no visible columns."""

    def __init__(self, datasource: str, schema: str | None, table: str):
        self.datasource = datasource
        self.schema = schema
        self.table = table
        location = f"{schema}.{table}" if schema else table
        super().__init__(f"Table {location} not found on datasource '{datasource}'")


class SchemaDriftError(EtlSyncError):
    """Raised when a mapped column no longer exists on one side."""

    pass


class UnsupportedKeyTypeError(EtlSyncError):
    """Raised when the primary key is missing or cannot be range-partitioned."""

    pass


class BatchWriteError(EtlSyncError):
    """Raised when a target batch still fails after all write retries."""

    def __init__(self, table: str, attempts: int, cause: Exception):
        self.table = table
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Batch write to {table} failed after {attempts} attempt(s): "
            f"{type(cause).__name__}: {cause}"
        )


class JobConfigurationError(EtlSyncError):
    """Raised when a job definition is internally inconsistent."""

    pass


class RunTimeoutError(EtlSyncError):
    """Raised when a run exceeds its configured time limit."""

    pass


class ConcurrentRunRejectedError(EtlSyncError):
    """Raised when a job that forbids overlap is triggered while running."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' is already running and does not allow concurrent runs")


class InvalidStateTransition(EtlSyncError):
    """Raised on an illegal run state change."""

    pass
