"""
Sync Strategies Module

Writes one batch of rows into a target table under the Replace or Merge
strategy. Each call is a single transaction: it either commits all of its
rows or rolls back and raises.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import time

from db_sync.dialects import Dialect
from db_sync.dialects.base import chunked
from db_sync.data_transfer import restore_value
from db_sync.errors import ConfigurationError, DataError
from db_sync.models import BatchResult, PrimaryKey, SyncStrategy, TableSchema

logger = logging.getLogger(__name__)


def resolve_strategy(requested: SyncStrategy, primary_key: Optional[PrimaryKey], table_name: str) -> SyncStrategy:
    """Merge needs a primary key; without one the table is replaced instead."""
    if requested == SyncStrategy.MERGE and not primary_key:
        logger.warning(f"No primary key found for {table_name}, falling back to replace strategy")
        return SyncStrategy.REPLACE
    return requested


class SyncExecutor:
    """Apply batches to one target connection."""

    def __init__(self, dialect: Dialect, conn):
        self.dialect = dialect
        self.conn = conn

    def prepare_rows(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        columns: Sequence[str],
        target_schema: TableSchema,
    ) -> List[Tuple[Any, ...]]:
        """
        Order row values by ``columns`` and convert them for the target driver.

        Raises:
            DataError: If a column is missing from the target table
        """
        schema_by_name = {col.column_name: col for col in target_schema}
        missing = [c for c in columns if c not in schema_by_name]
        if missing:
            raise DataError(
                f"Columns {missing} not found in target table '{table_name}'"
            )

        target_columns = [schema_by_name[c] for c in columns]
        return [
            tuple(
                restore_value(row.get(col.column_name), col, self.dialect.name)
                for col in target_columns
            )
            for row in rows
        ]

    def sync(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        columns: Sequence[str],
        strategy: SyncStrategy,
        target_schema: TableSchema,
        primary_key: Optional[PrimaryKey] = None,
        is_first_batch: bool = False,
    ) -> BatchResult:
        """
        Write one batch under the given strategy.

        Args:
            table_name: Target table
            rows: Sanitized source rows
            columns: Source column order
            strategy: Strategy already resolved against the primary key
            target_schema: Target table metadata
            primary_key: Target primary key (required for Merge)
            is_first_batch: Replace deletes all target rows only on the first batch

        Returns:
            Row counters for this call
        """
        if strategy == SyncStrategy.MERGE:
            return self.merge(table_name, rows, columns, target_schema, primary_key or [])
        return self.replace(table_name, rows, columns, target_schema, is_first_batch)

    def replace(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        columns: Sequence[str],
        target_schema: TableSchema,
        is_first_batch: bool,
    ) -> BatchResult:
        """
        Insert rows; on the first batch delete every target row first.

        The delete runs even when the batch is empty so an empty source leaves
        an empty target.
        """
        values = self.prepare_rows(table_name, rows, columns, target_schema)
        result = BatchResult()
        start_time = time.time()

        def work(cursor):
            if is_first_batch:
                self.dialect.execute(cursor, self.dialect.delete_all_sql(table_name))
                result.deleted = max(cursor.rowcount, 0)
                logger.info(f"Deleted {result.deleted} existing rows from {table_name}")

            if not values:
                return

            size = self.dialect.chunk_size(len(columns), self.dialect.replace_chunk_size)
            with self.dialect.insert_guard(cursor, table_name, columns):
                for chunk in chunked(values, size):
                    self.dialect.execute(
                        cursor,
                        self.dialect.insert_sql(table_name, columns, len(chunk)),
                        [v for row in chunk for v in row],
                    )
                    result.inserted += len(chunk)

        self._in_transaction(table_name, work)
        logger.info(
            f"Replace {table_name}: {result.deleted} deleted, {result.inserted} inserted "
            f"in {time.time() - start_time:.2f}s"
        )
        return result

    def merge(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        columns: Sequence[str],
        target_schema: TableSchema,
        primary_key: PrimaryKey,
    ) -> BatchResult:
        """
        Insert new keys and update existing keys. Target-only rows are kept.

        Raises:
            ConfigurationError: If primary_key is empty or not covered by columns
        """
        if not primary_key:
            raise ConfigurationError(
                f"No primary key found for table '{table_name}'. Cannot use merge strategy."
            )
        missing_pks = set(primary_key) - set(columns)
        if missing_pks:
            raise ConfigurationError(f"Primary key columns not in column list: {sorted(missing_pks)}")

        values = self.prepare_rows(table_name, rows, columns, target_schema)
        if not values:
            return BatchResult()

        start_time = time.time()
        outcome: List[BatchResult] = []

        def work(cursor):
            outcome.append(
                self.dialect.upsert(cursor, table_name, columns, values, primary_key, target_schema)
            )

        self._in_transaction(table_name, work)
        result = outcome[0]
        logger.info(
            f"Merge {table_name}: {result.inserted} inserted, {result.updated} updated, "
            f"{result.skipped} skipped in {time.time() - start_time:.2f}s"
        )
        return result

    def _in_transaction(self, table_name: str, work) -> None:
        cursor = self.conn.cursor()
        try:
            work(cursor)
            self.conn.commit()
        except Exception:
            logger.error(f"Rolling back batch for {table_name}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()
