"""
Batching Extractor Module

Reads one configured table from ClickHouse and delivers its rows to a
callback in batches of exactly batch_size rows (the last batch may be
smaller). Two strategies are supported:

- stream: a single streaming query, rows accumulated into batches as
  blocks arrive from the server
- paginate: COUNT(*) of the filtered query, then LIMIT/OFFSET pages
  ordered by the primary key

Rows are scanned through a RowScanner built once from the first result's
column metadata.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import time

from ch_pg_replication.run_context import ReplicationContext
from ch_pg_replication.table_config import TableSpec
from ch_pg_replication.type_inference import RowScanner

logger = logging.getLogger(__name__)

RowBatch = List[Tuple[Any, ...]]
BatchCallback = Callable[[RowBatch], None]


class ExtractionStrategy(Enum):
    STREAM = "stream"
    PAGINATE = "paginate"

    @classmethod
    def parse(cls, value: Any) -> "ExtractionStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown extraction strategy '{value}' (expected one of: "
                f"{', '.join(s.value for s in cls)})"
            )


def quote_identifier(name: str) -> str:
    """Backtick-quote a ClickHouse identifier, escaping embedded backticks."""
    return '`' + name.replace('\\', '\\\\').replace('`', '\\`') + '`'


def quote_table_name(name: str) -> str:
    """Quote 'db.table' (or 'table') part by part."""
    return '.'.join(quote_identifier(part) for part in name.split('.'))


def format_cursor_timestamp(value: datetime) -> str:
    """Render a cursor value as 'YYYY-MM-DD HH:MM:SS' in UTC (naive is taken as UTC)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%d %H:%M:%S')


def build_source_query(table: TableSpec) -> str:
    """
    Build the extraction query for a table.

    FINAL makes the server collapse ReplacingMergeTree/CollapsingMergeTree
    versions before returning rows. When the table has a cursor with a
    last_sync value, only rows strictly newer than it are selected.

    Args:
        table: Table to extract

    Returns:
        ClickHouse SELECT statement
    """
    columns = ', '.join(quote_identifier(c) for c in table.source_columns)
    query = f"SELECT {columns} FROM {quote_table_name(table.source)} FINAL"

    cursor = table.cursor
    if cursor.enabled and cursor.last_sync is not None:
        query += (
            f" WHERE {quote_identifier(cursor.column)} > "
            f"toDateTime('{format_cursor_timestamp(cursor.last_sync)}', 'UTC')"
        )

    return query


def build_count_query(query: str) -> str:
    return f"SELECT COUNT(*) FROM ({query}) AS subquery"


def build_page_query(query: str, order_by: List[str], limit: int, offset: int) -> str:
    order = ', '.join(quote_identifier(c) for c in order_by)
    return f"{query} ORDER BY {order} LIMIT {int(limit)} OFFSET {int(offset)}"


def _query_settings(context: Optional[ReplicationContext], **settings: Any) -> Dict[str, Any]:
    if context is not None:
        max_execution_time = context.execution_time_seconds()
        if max_execution_time is not None:
            settings['max_execution_time'] = max_execution_time
    return settings


def _check(context: Optional[ReplicationContext]) -> None:
    if context is not None:
        context.check()


def extract(
    table: TableSpec,
    client,
    batch_size: int,
    on_batch: BatchCallback,
    strategy: ExtractionStrategy = ExtractionStrategy.PAGINATE,
    context: Optional[ReplicationContext] = None,
) -> int:
    """
    Extract a table and hand its rows to on_batch in fixed-size batches.

    Every extracted row is delivered in exactly one batch; all batches but
    the last hold exactly batch_size rows. on_batch may block (e.g. on a
    full queue), which throttles extraction.

    Args:
        table: Table to extract
        client: clickhouse_driver.Client (used only from the calling thread)
        batch_size: Rows per batch
        on_batch: Callback receiving each batch
        strategy: STREAM or PAGINATE
        context: Optional cancellation/deadline token, checked between batches

    Returns:
        Total number of rows extracted

    Raises:
        ValueError: If batch_size < 1
        ReplicationCancelled: If the context is cancelled mid-extraction
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    strategy = ExtractionStrategy.parse(strategy)
    if strategy is ExtractionStrategy.PAGINATE and not table.primary_key_source:
        logger.warning(
            f"Table '{table.source}' has no primary key to order pages by, "
            f"falling back to streaming extraction"
        )
        strategy = ExtractionStrategy.STREAM

    query = build_source_query(table)
    logger.info(f"Extracting {table.source} ({strategy.value}, batch_size={batch_size:,})")
    logger.debug(f"Source query: {query}")

    start_time = time.time()
    if strategy is ExtractionStrategy.STREAM:
        total_rows, batches = _extract_stream(table, client, query, batch_size, on_batch, context)
    else:
        total_rows, batches = _extract_paginated(table, client, query, batch_size, on_batch, context)

    elapsed_time = time.time() - start_time
    rows_per_second = total_rows / elapsed_time if elapsed_time > 0 else 0
    logger.info(
        f"Extracted {total_rows:,} rows in {batches} batch(es) from {table.source} "
        f"in {elapsed_time:.2f}s ({rows_per_second:,.0f} rows/sec)"
    )
    return total_rows


def _extract_stream(
    table: TableSpec,
    client,
    query: str,
    batch_size: int,
    on_batch: BatchCallback,
    context: Optional[ReplicationContext],
) -> Tuple[int, int]:
    _check(context)
    settings = _query_settings(context, max_block_size=batch_size)
    rows_iter = client.execute_iter(query, with_column_types=True, settings=settings)

    scanner: Optional[RowScanner] = None
    batch: RowBatch = []
    total_rows = 0
    batches = 0

    try:
        for item in rows_iter:
            # First item of a with_column_types stream is the column metadata
            if scanner is None:
                scanner = RowScanner(item)
                continue

            batch.append(scanner.scan(item))
            if len(batch) == batch_size:
                on_batch(batch)
                total_rows += len(batch)
                batches += 1
                logger.debug(f"{table.source}: queued batch {batches} ({total_rows:,} rows so far)")
                batch = []
                _check(context)
    except Exception:
        # An abandoned stream leaves the connection mid-result; the client
        # reconnects on its next query
        client.disconnect()
        raise

    if batch:
        on_batch(batch)
        total_rows += len(batch)
        batches += 1

    return total_rows, batches


def _extract_paginated(
    table: TableSpec,
    client,
    query: str,
    batch_size: int,
    on_batch: BatchCallback,
    context: Optional[ReplicationContext],
) -> Tuple[int, int]:
    _check(context)
    count_result = client.execute(build_count_query(query), settings=_query_settings(context))
    expected_rows = int(count_result[0][0]) if count_result else 0
    logger.info(f"{table.source}: {expected_rows:,} rows to extract")

    scanner: Optional[RowScanner] = None
    total_rows = 0
    batches = 0
    offset = 0

    while offset < expected_rows:
        _check(context)
        page_query = build_page_query(query, table.primary_key_source, batch_size, offset)
        rows, columns = client.execute(
            page_query, with_column_types=True, settings=_query_settings(context)
        )
        if not rows:
            logger.warning(
                f"{table.source}: empty page at offset {offset:,} "
                f"(expected {expected_rows:,} rows), stopping"
            )
            break

        if scanner is None:
            scanner = RowScanner(columns)

        batch = scanner.scan_all(rows)
        on_batch(batch)
        total_rows += len(batch)
        batches += 1
        offset += len(batch)
        logger.debug(f"{table.source}: queued page {batches} ({total_rows:,}/{expected_rows:,} rows)")

    return total_rows, batches
