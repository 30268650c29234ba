"""
Streaming source extraction.
"""

import logging
from collections.abc import Iterator
from typing import Any

from ..context import RunContext
from ..datasource import DatasourceRegistry

logger = logging.getLogger(__name__)


class RowExtractor:
    """Reads source rows in ``batch_size`` chunks over one cursor."""

    def __init__(
        self,
        registry: DatasourceRegistry,
        datasource: str,
        table: str,
        columns: list[str],
        order_columns: list[str],
        schema: str | None = None,
        incremental_column: str | None = None,
        filter_condition: str | None = None,
        batch_size: int = 1000,
    ):
        self.registry = registry
        self.datasource = datasource
        self.table = table
        self.columns = columns
        self.order_columns = order_columns
        self.schema = schema
        self.incremental_column = incremental_column
        self.filter_condition = filter_condition
        self.batch_size = batch_size

    def batches(self, context: RunContext, watermark: Any = None) -> Iterator[list[tuple]]:
        """
        Yield row batches, checking the run deadline between batches.

        Args:
            context: Current run
            watermark: Previous watermark; None selects every row

        Yields:
            Lists of at most ``batch_size`` rows in ``columns`` order
        """
        dialect = self.registry.dialect(self.datasource)
        incremental = self.incremental_column if watermark is not None else None
        sql = dialect.build_extract_sql(
            self.table,
            self.columns,
            self.order_columns,
            incremental_column=incremental,
            filter_condition=self.filter_condition,
            schema=self.schema,
        )
        params = (watermark,) if incremental else ()
        logger.debug(f"Extracting from {self.datasource}:{self.table} with watermark {watermark!r}")

        with self.registry.connection(self.datasource) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                while True:
                    context.check()
                    rows = cursor.fetchmany(self.batch_size)
                    if not rows:
                        break
                    yield [tuple(row) for row in rows]
            finally:
                cursor.close()
