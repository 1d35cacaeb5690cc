"""
Replication Pipeline Module

Orchestrates one replication run. For each configured table:

1. ensure the destination schema exists
2. extract batches on a background thread into a bounded queue
3. load + merge each batch on a pool of worker threads, each batch in its
   own transaction on its own pooled connection
4. once extraction and all workers are finished, advance the table cursor

The bounded queue is the only throttle: when every worker is busy and the
queue is full, extraction blocks until a slot frees up.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging
import os
import queue
import threading
import time

import pendulum

from ch_pg_replication import merge as merge_engine
from ch_pg_replication import staging_loader
from ch_pg_replication.connections import PostgresConnectionPool
from ch_pg_replication.ddl_generator import ensure_schema
from ch_pg_replication.errors import ReplicationCancelled, StagingError
from ch_pg_replication.extractor import ExtractionStrategy, extract
from ch_pg_replication.run_context import ReplicationContext
from ch_pg_replication.table_config import DEFAULT_BATCH_SIZE, ReplicationConfig, TableSpec

logger = logging.getLogger(__name__)


class TableRunState(Enum):
    """
    Table lifecycle. LOADING and MERGING are per-batch states, held by the
    worker processing the batch and reported when a batch fails.
    """

    IDLE = "idle"
    SCHEMA_ENSURED = "schema_ensured"
    EXTRACTING = "extracting"
    LOADING = "loading"
    MERGING = "merging"
    CURSOR_ADVANCED = "cursor_advanced"
    DONE = "done"
    FAILED = "failed"


class CursorPolicy(Enum):
    """How the new cursor value is chosen after a table completes."""

    NOW = "now"
    MAX_OBSERVED = "max_observed"

    @classmethod
    def parse(cls, value: Any) -> "CursorPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown cursor policy '{value}' (expected one of: "
                f"{', '.join(p.value for p in cls)})"
            )


def _get_loader_config() -> Tuple[int, int]:
    """
    Get loader configuration from environment variables.

    Returns:
        Tuple of (max_workers, queue_size)
    """
    max_workers = int(os.environ.get('MAX_PARALLEL_LOADERS', '4'))
    queue_size = int(os.environ.get('BATCH_QUEUE_SIZE', '4'))
    return max(1, max_workers), max(1, queue_size)


def _get_strategy_config() -> Tuple[ExtractionStrategy, CursorPolicy]:
    strategy = ExtractionStrategy.parse(os.environ.get('EXTRACTION_STRATEGY', 'paginate'))
    cursor_policy = CursorPolicy.parse(os.environ.get('CURSOR_POLICY', 'now'))
    return strategy, cursor_policy


def _source_timezone(client) -> str:
    """
    Timezone the ClickHouse server reported at connect time.

    Naive DateTime values come back as wall-clock time in this zone.
    """
    server_info = getattr(getattr(client, 'connection', None), 'server_info', None)
    name = getattr(server_info, 'timezone', None)
    return name if isinstance(name, str) and name else 'UTC'


def _as_utc(value: Any, source_tz: str = 'UTC') -> Optional[datetime]:
    if isinstance(value, datetime):
        return pendulum.instance(value, tz=source_tz).in_timezone('UTC')
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


class _TableRunStats:
    """Thread-safe counters shared by the extraction thread and the workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self.batches_total = 0
        self.batches_loaded = 0
        self.batches_failed = 0
        self.rows_extracted = 0
        self.rows_merged = 0
        self.max_cursor: Optional[datetime] = None
        self.errors: List[str] = []

    def batch_queued(self, rows: int) -> int:
        with self._lock:
            self.batches_total += 1
            self.rows_extracted += rows
            return self.batches_total

    def batch_loaded(self, rows_merged: int) -> None:
        with self._lock:
            self.batches_loaded += 1
            self.rows_merged += rows_merged

    def batch_failed(self, message: str) -> None:
        with self._lock:
            self.batches_failed += 1
            self.errors.append(message)

    def observe_cursor(self, value: Optional[datetime]) -> None:
        if value is None:
            return
        with self._lock:
            if self.max_cursor is None or value > self.max_cursor:
                self.max_cursor = value


class Replicator:
    """Replicate configured tables from ClickHouse into PostgreSQL."""

    # Sentinel value to signal end of extraction (one per worker)
    _DONE = object()

    def __init__(
        self,
        source_client,
        pool: PostgresConnectionPool,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: Optional[int] = None,
        queue_size: Optional[int] = None,
        strategy: Optional[Any] = None,
        cursor_policy: Optional[Any] = None,
    ):
        """
        Initialize the replicator.

        Args:
            source_client: clickhouse_driver.Client, used only by the extraction thread
            pool: Destination connection pool shared by the workers
            batch_size: Rows per batch
            max_workers: Concurrent load/merge workers (default MAX_PARALLEL_LOADERS)
            queue_size: Batches buffered between extraction and workers
                        (default BATCH_QUEUE_SIZE)
            strategy: Extraction strategy (default EXTRACTION_STRATEGY)
            cursor_policy: Cursor policy (default CURSOR_POLICY)
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")

        env_workers, env_queue_size = _get_loader_config()
        env_strategy, env_cursor_policy = _get_strategy_config()

        self.source_client = source_client
        self.pool = pool
        self.batch_size = batch_size
        self.max_workers = max(1, max_workers or env_workers)
        self.queue_size = max(1, queue_size or env_queue_size)
        self.strategy = ExtractionStrategy.parse(strategy) if strategy else env_strategy
        self.cursor_policy = CursorPolicy.parse(cursor_policy) if cursor_policy else env_cursor_policy

    def replicate_table(
        self,
        table: TableSpec,
        context: Optional[ReplicationContext] = None,
    ) -> Dict[str, Any]:
        """
        Replicate one table.

        A failed batch is logged and counted but does not fail the table.
        Schema, extraction and cancellation failures do, and leave the
        cursor untouched.

        Args:
            table: Table to replicate (its cursor is advanced in memory on success)
            context: Optional cancellation/deadline token

        Returns:
            Result dictionary with statistics
        """
        context = context or ReplicationContext()
        start_time = time.time()
        state = TableRunState.IDLE
        stats = _TableRunStats()
        table_errors: List[str] = []
        previous_cursor = table.cursor.last_sync

        logger.info(f"Starting replication: {table.source} -> {table.destination}")

        try:
            context.check()
            ensure_schema(table, self.pool)
            state = TableRunState.SCHEMA_ENSURED

            state = TableRunState.EXTRACTING
            self._run_batches(table, stats, context)
            context.check()

            if table.cursor.enabled:
                table.cursor.last_sync = self._next_cursor(table, stats)
                state = TableRunState.CURSOR_ADVANCED
                logger.info(
                    f"Cursor for {table.source} advanced to "
                    f"{table.cursor.last_sync.isoformat() if table.cursor.last_sync else None}"
                )

            state = TableRunState.DONE
        except ReplicationCancelled as e:
            message = f"Replication of {table.source} cancelled: {e}"
            logger.error(message)
            table_errors.append(message)
            state = TableRunState.FAILED
        except Exception as e:
            message = f"Error replicating {table.source}: {e}"
            logger.error(message)
            table_errors.append(message)
            state = TableRunState.FAILED

        if state is TableRunState.FAILED:
            table.cursor.last_sync = previous_cursor

        elapsed_time = time.time() - start_time
        avg_rows_per_second = stats.rows_merged / elapsed_time if elapsed_time > 0 else 0

        result = {
            'source_table': table.source,
            'target_table': table.destination,
            'state': state.value,
            'rows_extracted': stats.rows_extracted,
            'rows_merged': stats.rows_merged,
            'batches_total': stats.batches_total,
            'batches_loaded': stats.batches_loaded,
            'batches_failed': stats.batches_failed,
            'batch_size': self.batch_size,
            'elapsed_time_seconds': elapsed_time,
            'avg_rows_per_second': avg_rows_per_second,
            'cursor': table.cursor.last_sync.isoformat() if table.cursor.last_sync else None,
            'success': state is TableRunState.DONE,
            'errors': table_errors + stats.errors,
        }

        if result['success']:
            logger.info(
                f"Replicated {table.source}: {stats.rows_extracted:,} rows extracted, "
                f"{stats.batches_loaded}/{stats.batches_total} batches loaded "
                f"({stats.batches_failed} failed) in {elapsed_time:.2f} seconds "
                f"({avg_rows_per_second:,.0f} rows/sec average)"
            )
        else:
            logger.warning(
                f"Replication of {table.source} failed after {elapsed_time:.2f} seconds: "
                f"{stats.batches_loaded}/{stats.batches_total} batches loaded, cursor unchanged"
            )

        return result

    def _run_batches(
        self,
        table: TableSpec,
        stats: _TableRunStats,
        context: ReplicationContext,
    ) -> None:
        """Run extraction and the loader workers until both are finished."""
        batch_queue: queue.Queue = queue.Queue(maxsize=self.queue_size)
        cursor_index = self._cursor_index(table)

        def on_batch(batch):
            batch_number = stats.batch_queued(len(batch))
            if cursor_index is not None:
                # server_info is only populated once the first query is running
                source_tz = _source_timezone(self.source_client)
                stats.observe_cursor(max(
                    (v for v in (_as_utc(row[cursor_index], source_tz) for row in batch) if v is not None),
                    default=None,
                ))
            # Blocks while the queue is full (backpressure)
            batch_queue.put((batch_number, batch))

        def extraction():
            try:
                return extract(
                    table,
                    self.source_client,
                    self.batch_size,
                    on_batch,
                    strategy=self.strategy,
                    context=context,
                )
            finally:
                for _ in range(self.max_workers):
                    batch_queue.put(self._DONE)

        with ThreadPoolExecutor(
            max_workers=self.max_workers + 1,
            thread_name_prefix=f"replicate-{table.destination_table_name}",
        ) as executor:
            workers = [
                executor.submit(self._worker, table, batch_queue, stats, context)
                for _ in range(self.max_workers)
            ]
            extraction_future = executor.submit(extraction)

            # Join barrier: extraction finished and every worker drained
            extraction_error = extraction_future.exception()
            for worker in workers:
                worker.result()

        if extraction_error is not None:
            raise extraction_error

    def _worker(
        self,
        table: TableSpec,
        batch_queue: queue.Queue,
        stats: _TableRunStats,
        context: ReplicationContext,
    ) -> None:
        while True:
            item = batch_queue.get()
            if item is self._DONE:
                return

            batch_number, batch = item
            if context.cancelled:
                stats.batch_failed(f"Batch {batch_number}: skipped ({context.reason})")
                continue

            self._process_batch(table, batch_number, batch, stats, context)

    def _process_batch(
        self,
        table: TableSpec,
        batch_number: int,
        batch: List[Tuple[Any, ...]],
        stats: _TableRunStats,
        context: ReplicationContext,
    ) -> None:
        """Load one batch into a staging table and merge it, in one transaction."""
        batch_start_time = time.time()
        batch_state = TableRunState.LOADING
        try:
            with self.pool.connection() as conn:
                staging_table = staging_loader.load(table, conn, batch, context)
                batch_state = TableRunState.MERGING
                rows_merged = merge_engine.merge(table, conn, staging_table, context)
                conn.commit()
        except StagingError as e:
            message = f"Batch {batch_number}: staging failed, merge skipped: {e}"
            logger.error(message)
            stats.batch_failed(message)
            return
        except Exception as e:
            message = f"Batch {batch_number}: failed while {batch_state.value} into {table.destination}: {e}"
            logger.error(message)
            stats.batch_failed(message)
            return

        stats.batch_loaded(rows_merged)
        batch_time = time.time() - batch_start_time
        rows_per_second = len(batch) / batch_time if batch_time > 0 else 0
        logger.info(
            f"Batch {batch_number}: merged {rows_merged:,} of {len(batch):,} rows "
            f"into {table.destination} at {rows_per_second:,.0f} rows/sec"
        )

    def _cursor_index(self, table: TableSpec) -> Optional[int]:
        if not table.cursor.enabled or self.cursor_policy is not CursorPolicy.MAX_OBSERVED:
            return None
        try:
            return table.source_columns.index(table.cursor.column)
        except ValueError:
            logger.warning(
                f"Cursor column '{table.cursor.column}' is not replicated for {table.source}; "
                f"using the completion time as the new cursor"
            )
            return None

    def _next_cursor(self, table: TableSpec, stats: _TableRunStats) -> Optional[datetime]:
        if self.cursor_policy is CursorPolicy.MAX_OBSERVED and table.cursor.column in table.source_columns:
            # No rows (or only NULL cursor values) read: keep the previous cursor
            if stats.max_cursor is None:
                return table.cursor.last_sync
            return stats.max_cursor
        return datetime.now(timezone.utc)

    def replicate_all(
        self,
        config: ReplicationConfig,
        only: Optional[str] = None,
        context: Optional[ReplicationContext] = None,
    ) -> Dict[str, Any]:
        """
        Replicate every configured table in order.

        A failed table is logged and the run moves on to the next one.
        Cursors are only advanced in memory; the caller persists the
        configuration after the run.

        Args:
            config: Replication configuration
            only: Replicate only the table with this source name
            context: Optional cancellation/deadline token shared by all tables

        Returns:
            Run summary with per-table results
        """
        context = context or ReplicationContext()
        start_time = time.time()
        results = []

        if only and config.get_table(only) is None:
            logger.warning(f"No configured table has source '{only}', nothing to replicate")

        for table in config.tables:
            if only and table.source != only:
                logger.info(f"Skipping {table.source} (only '{only}' requested)")
                continue

            if table.cursor.enabled:
                if table.cursor.last_sync:
                    logger.info(
                        f"Resuming {table.source} from {table.cursor.column} > "
                        f"{table.cursor.last_sync.isoformat()}"
                    )
                else:
                    logger.info(f"No previous sync for {table.source}, doing a full scan")

            results.append(self.replicate_table(table, context))

        successful = [r for r in results if r['success']]
        failed = [r for r in results if not r['success']]
        batches_failed = sum(r['batches_failed'] for r in results)

        summary = {
            'status': 'success' if not failed and not batches_failed else 'partial_failure',
            'total_tables': len(results),
            'successful_tables': len(successful),
            'failed_tables': len(failed),
            'rows_extracted': sum(r['rows_extracted'] for r in results),
            'rows_merged': sum(r['rows_merged'] for r in results),
            'batches_failed': batches_failed,
            'elapsed_time_seconds': time.time() - start_time,
            'tables': results,
        }

        logger.info(
            f"Replication run finished: {summary['successful_tables']}/{summary['total_tables']} "
            f"tables succeeded, {summary['rows_extracted']:,} rows extracted, "
            f"{summary['rows_merged']:,} rows merged in {summary['elapsed_time_seconds']:.2f}s"
        )
        for result in failed:
            logger.error(f"  {result['source_table']}: {'; '.join(result['errors'])}")

        return summary
