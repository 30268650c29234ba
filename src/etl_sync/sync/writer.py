"""
Target table writer.

Upserts row batches with the target dialect's statement, committing once per
batch and retrying a failed batch with exponential backoff before giving up
with BatchWriteError.
"""

import logging
import time
from collections.abc import Callable

from utils.retry import retry_with_backoff

from ..datasource import DatasourceRegistry
from ..errors import BatchWriteError

logger = logging.getLogger(__name__)


class TargetWriter:
    """Writes projected rows to one target table."""

    def __init__(
        self,
        registry: DatasourceRegistry,
        datasource: str,
        table: str,
        columns: list[str],
        key_columns: list[str],
        schema: str | None = None,
        retry_count: int = 3,
        retry_interval: float = 1.0,
        key_batch_size: int = 900,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize target writer

        Args:
            registry: Datasource registry
            datasource: Target datasource code
            table: Target table
            columns: Columns written, in row order
            key_columns: Primary key columns, a subset of ``columns``
            schema: Optional target schema
            retry_count: Retries per failed batch
            retry_interval: Delay before the first retry in seconds
            key_batch_size: Keys per ``DELETE ... IN (...)`` statement
            sleep: Sleep function used between retries
        """
        self.registry = registry
        self.datasource = datasource
        self.table = table
        self.schema = schema
        self.columns = list(columns)
        self.key_columns = list(key_columns)
        self.retry_count = retry_count
        self.retry_interval = retry_interval
        self.key_batch_size = key_batch_size
        self.rows_written = 0
        self._sleep = sleep

        self.dialect = registry.dialect(datasource)
        self._upsert_sql = self.dialect.build_upsert_sql(table, self.columns, self.key_columns, schema)
        self._key_positions = [self.columns.index(k) for k in self.key_columns]

    def _with_retries(self, func: Callable, *args):
        retrying = retry_with_backoff(
            max_retries=self.retry_count,
            base_delay=self.retry_interval,
            max_delay=self.retry_interval * 16,
            jitter=False,
            sleep=self._sleep,
        )(func)
        try:
            return retrying(*args)
        except Exception as e:
            raise BatchWriteError(self.table, self.retry_count + 1, e) from e

    def upsert(self, rows: list[tuple]) -> int:
        """
        Upsert one batch of rows.

        Returns:
            Number of rows written

        Raises:
            BatchWriteError: If the batch fails after every retry
        """
        if not rows:
            return 0
        self._with_retries(self._write_batch, rows)
        self.rows_written += len(rows)
        return len(rows)

    def _write_batch(self, rows: list[tuple]) -> None:
        with self.registry.connection(self.datasource) as conn:
            cursor = conn.cursor()
            try:
                if self.dialect.requires_pre_delete:
                    cursor.executemany(
                        self.dialect.build_delete_by_key_sql(self.table, self.key_columns, self.schema),
                        [tuple(row[i] for i in self._key_positions) for row in rows],
                    )
                cursor.executemany(self._upsert_sql, [tuple(row) for row in rows])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def delete_keys(self, keys: list[tuple]) -> int:
        """
        Delete target rows by key.

        Args:
            keys: Key tuples in ``key_columns`` order

        Returns:
            Number of keys deleted
        """
        if not keys:
            return 0
        self._with_retries(self._delete_batch, keys)
        return len(keys)

    def _delete_batch(self, keys: list[tuple]) -> None:
        with self.registry.connection(self.datasource) as conn:
            cursor = conn.cursor()
            try:
                if len(self.key_columns) == 1:
                    values = [key[0] for key in keys]
                    for i in range(0, len(values), self.key_batch_size):
                        chunk = values[i:i + self.key_batch_size]
                        cursor.execute(
                            self.dialect.build_delete_by_primary_key_in_sql(
                                self.table, self.key_columns[0], len(chunk), self.schema
                            ),
                            tuple(chunk),
                        )
                else:
                    cursor.executemany(
                        self.dialect.build_delete_by_key_sql(self.table, self.key_columns, self.schema),
                        keys,
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def clear(self) -> None:
        """Empty the target table: TRUNCATE, falling back to DELETE."""
        with self.registry.connection(self.datasource) as conn:
            cursor = conn.cursor()
            try:
                try:
                    cursor.execute(self.dialect.build_truncate_sql(self.table, self.schema))
                except Exception as e:
                    logger.warning(f"TRUNCATE of {self.table} failed ({e}); falling back to DELETE")
                    conn.rollback()
                    cursor.execute(self.dialect.build_delete_all_sql(self.table, self.schema))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        logger.info(f"Cleared target table {self.table}")

    def add_column(self, column: str, type_definition: str) -> None:
        sql = self.dialect.build_add_column_sql(self.table, column, type_definition, self.schema)
        with self.registry.connection(self.datasource) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        logger.info(f"Added column {column} {type_definition} to {self.table}")
