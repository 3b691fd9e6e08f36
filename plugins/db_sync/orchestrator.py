"""
Sync Orchestrator

Runs a sync job: every table goes through
fetch schema -> ensure target table -> batched transfer, independently of the
other tables. Tables are processed in fixed-size groups; a group finishes
completely before the next one starts. Within a table the next batch is read
while the current one is being written, and writes stay strictly in offset
order.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional
import logging
import time

from db_sync.config import SyncSettings, get_settings
from db_sync.errors import ConfigurationError, SyncError
from db_sync.models import (
    BatchResult,
    FetchedBatch,
    SyncJobResult,
    SyncStrategy,
    TableSyncResult,
)
from db_sync.sync_strategies import resolve_strategy

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Coordinate the per-table pipelines of one job."""

    def __init__(
        self,
        source,
        target,
        strategy=SyncStrategy.REPLACE,
        batch_size: Optional[int] = None,
        concurrent_tables: Optional[int] = None,
        settings: Optional[SyncSettings] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            source: Source endpoint (LocalEndpoint or AgentEndpoint)
            target: Target endpoint
            strategy: Requested strategy (Merge falls back to Replace per table
                when the target has no primary key)
            batch_size: Rows per batch
            concurrent_tables: Tables per group

        Raises:
            ConfigurationError: On an unknown strategy or non-positive sizes
        """
        settings = settings or get_settings()
        if source is None or target is None:
            raise ConfigurationError("Both source and target connections are required")

        self.source = source
        self.target = target
        self.strategy = SyncStrategy.parse(strategy)
        self.batch_size = settings.batch_size if batch_size is None else int(batch_size)
        self.concurrent_tables = (
            settings.concurrent_tables if concurrent_tables is None else int(concurrent_tables)
        )

        if self.batch_size <= 0:
            raise ConfigurationError(f"Batch size must be positive, got {self.batch_size}")
        if self.concurrent_tables <= 0:
            raise ConfigurationError(
                f"Concurrent tables must be positive, got {self.concurrent_tables}"
            )

    def list_source_tables(self) -> List[str]:
        with self.source.session() as src:
            return src.list_tables()

    def run(self, tables: List[str]) -> SyncJobResult:
        """
        Synchronize every table and aggregate the outcome.

        A failing table produces a failed TableSyncResult; it never stops the
        other tables.

        Raises:
            ConfigurationError: If the table list is empty
        """
        tables = [t for t in (tables or []) if t]
        if not tables:
            raise ConfigurationError("At least one table is required")

        start_time = time.time()
        results: List[TableSyncResult] = []

        logger.info(
            f"Starting {self.strategy.value} sync of {len(tables)} tables "
            f"({self.source.dialect} -> {self.target.dialect}, "
            f"batch size {self.batch_size}, {self.concurrent_tables} tables per group)"
        )

        for group_start in range(0, len(tables), self.concurrent_tables):
            group = tables[group_start:group_start + self.concurrent_tables]
            logger.info(
                f"Processing group {group_start // self.concurrent_tables + 1}: {', '.join(group)}"
            )
            with ThreadPoolExecutor(max_workers=len(group), thread_name_prefix="sync-table") as pool:
                futures = [pool.submit(self.sync_table, table) for table in group]
                results.extend(future.result() for future in futures)

        job = SyncJobResult(
            results=results,
            duration_ms=int((time.time() - start_time) * 1000),
            strategy=self.strategy,
        )
        summary = job.summary()
        logger.info(
            f"Sync complete: {summary['successCount']}/{summary['totalTables']} tables succeeded, "
            f"{summary['totalInserted']} inserted, {summary['totalUpdated']} updated, "
            f"{summary['totalDeleted']} deleted in {summary['duration']}ms"
        )
        return job

    def sync_table(self, table_name: str) -> TableSyncResult:
        """Run one table's pipeline; failures are returned, not raised."""
        start_time = time.time()
        totals = BatchResult()
        strategy = self.strategy
        created = False
        source_rows = 0

        try:
            with self.source.session() as src, self.target.session() as tgt:
                source_schema, source_pk = src.describe(table_name)
                created = tgt.ensure_table(table_name, source_schema, self.source.dialect, source_pk)

                # Target metadata is read once and reused for every batch
                target_schema, target_pk = tgt.describe(table_name)
                strategy = resolve_strategy(self.strategy, target_pk, table_name)
                columns = [col.column_name for col in source_schema]

                with ThreadPoolExecutor(max_workers=1, thread_name_prefix="prefetch") as fetcher:
                    pending: Future = fetcher.submit(src.fetch_batch, table_name, 0, self.batch_size)
                    is_first_batch = True

                    while pending is not None:
                        batch: FetchedBatch = pending.result()
                        pending = None
                        if batch.has_more:
                            pending = fetcher.submit(
                                src.fetch_batch, table_name, batch.next_offset, self.batch_size
                            )

                        batch_start = time.time()
                        result = tgt.write_batch(
                            table_name,
                            batch.rows,
                            columns,
                            strategy,
                            is_first_batch,
                            not batch.has_more,
                            target_schema,
                            target_pk,
                        )
                        totals = totals + result
                        source_rows += len(batch.rows)
                        is_first_batch = False

                        elapsed = time.time() - batch_start
                        rows_per_sec = len(batch.rows) / elapsed if elapsed > 0 else 0
                        logger.info(
                            f"{table_name}: batch {batch.batch_number}/{max(batch.total_batches, 1)} "
                            f"wrote {len(batch.rows)} rows ({rows_per_sec:,.0f} rows/sec)"
                        )

        except Exception as e:
            if isinstance(e, SyncError):
                logger.error(f"Table {table_name} failed: {e}")
            else:
                logger.exception(f"Table {table_name} failed with an unexpected error")
            return TableSyncResult(
                table=table_name,
                success=False,
                message=f"Failed to sync {table_name}: {e}",
                counts=totals,
                table_created=created,
                duration_ms=int((time.time() - start_time) * 1000),
                strategy=strategy,
                requested_strategy=self.strategy,
                source_rows=source_rows,
                error=str(e),
            )

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Table {table_name} synchronized with {strategy.value}: {totals.inserted} inserted, "
            f"{totals.updated} updated, {totals.deleted} deleted in {duration_ms}ms"
        )
        return TableSyncResult(
            table=table_name,
            success=True,
            message=f"Successfully synchronized {source_rows} rows",
            counts=totals,
            table_created=created,
            duration_ms=duration_ms,
            strategy=strategy,
            requested_strategy=self.strategy,
            source_rows=source_rows,
        )
