"""
Staging Loader Module

Bulk-loads one batch into a disposable staging table on the caller's
connection. The staging table is a TEMPORARY copy of the destination's
shape created with ON COMMIT DROP, so it disappears when the batch's
transaction ends, whether the merge commits or the batch is rolled back.
"""

from datetime import datetime, date, time as dt_time
from decimal import Decimal
from io import StringIO, TextIOBase
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Iterable, List, Optional, Tuple
from uuid import UUID, uuid4
import csv
import json
import logging
import math

from psycopg2 import sql

from ch_pg_replication.errors import StagingError
from ch_pg_replication.run_context import ReplicationContext
from ch_pg_replication.table_config import TableSpec

logger = logging.getLogger(__name__)

NULL_MARKER = '\\N'


def staging_table_name(table: TableSpec) -> str:
    """
    Unique staging table name for one batch: <destination table>_stg_<8 hex>.

    The destination name is shortened so the result stays within
    PostgreSQL's 63 character identifier limit.
    """
    suffix = f"_stg_{uuid4().hex[:8]}"
    return table.destination_table_name[:63 - len(suffix)] + suffix


def destination_identifier(table: TableSpec) -> sql.Identifier:
    """sql.Identifier for the (optionally schema-qualified) destination table."""
    return sql.Identifier(*table.destination_parts)


def set_statement_timeout(cursor, context: Optional[ReplicationContext]) -> None:
    """Bound the rest of the current transaction by the run's remaining time."""
    if context is None:
        return
    timeout_ms = context.statement_timeout_ms()
    if timeout_ms is not None:
        cursor.execute(sql.SQL("SET LOCAL statement_timeout = {}").format(sql.Literal(timeout_ms)))


def load(
    table: TableSpec,
    conn,
    batch: List[Tuple[Any, ...]],
    context: Optional[ReplicationContext] = None,
) -> str:
    """
    Create a staging table and COPY the batch into it.

    Nothing is committed here: the caller merges from the returned staging
    table and commits (or rolls back) the whole batch.

    Args:
        table: Destination table the batch belongs to
        conn: psycopg2 connection owned by the calling worker
        batch: Rows aligned with the table's column order
        context: Optional cancellation/deadline token

    Returns:
        Name of the staging table holding the batch

    Raises:
        StagingError: If the staging table cannot be created or the copy fails
        ReplicationCancelled: If the context is already cancelled
    """
    if context is not None:
        context.check()

    staging_table = staging_table_name(table)

    create_sql = sql.SQL(
        "CREATE TEMPORARY TABLE {staging} (LIKE {destination} INCLUDING DEFAULTS) ON COMMIT DROP"
    ).format(
        staging=sql.Identifier(staging_table),
        destination=destination_identifier(table),
    )

    try:
        with conn.cursor() as cursor:
            set_statement_timeout(cursor, context)
            cursor.execute(create_sql)
    except Exception as e:
        raise StagingError(
            f"Failed to create staging table {staging_table} for {table.destination}: {e}",
            staging_table,
        ) from e

    copy_sql = sql.SQL(
        "COPY {staging} ({columns}) FROM STDIN WITH (FORMAT CSV, DELIMITER E'\\t', QUOTE '\"', NULL '\\N')"
    ).format(
        staging=sql.Identifier(staging_table),
        columns=sql.SQL(', ').join([sql.Identifier(c) for c in table.destination_columns]),
    )

    stream = _CSVRowStream(batch, _normalize_value)
    try:
        with conn.cursor() as cursor:
            cursor.copy_expert(copy_sql, stream)
    except Exception as e:
        raise StagingError(
            f"Failed to copy {len(batch):,} rows into {staging_table}: {e}",
            staging_table,
        ) from e

    logger.debug(f"Staged {len(batch):,} rows for {table.destination} in {staging_table}")
    return staging_table


def _array_element(value: Any) -> str:
    if value is None:
        return 'NULL'
    if isinstance(value, list):
        return _array_literal(value)
    text = _normalize_value(value)
    if not isinstance(text, str):
        text = str(text)
    return '"' + text.replace('\\', '\\\\').replace('"', '\\"') + '"'


def _array_literal(values: List[Any]) -> str:
    """PostgreSQL array literal: ['a', None] -> {"a",NULL}."""
    return '{' + ','.join(_array_element(v) for v in values) + '}'


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID, IPv4Address, IPv6Address)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _normalize_value(value: Any) -> Any:
    """
    Normalize Python values for COPY consumption.

    NULL values are the literal '\\N' (COPY's NULL option); empty strings
    stay empty strings. Lists become array literals and mappings or tuples
    become JSON text, so array and json/jsonb destination columns accept them.
    """
    if value is None:
        return NULL_MARKER

    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 't' if value else 'f'
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '\\x' + bytes(value).hex()
    if isinstance(value, float) and not math.isfinite(value):
        return NULL_MARKER
    if isinstance(value, (UUID, IPv4Address, IPv6Address)):
        return str(value)
    if isinstance(value, list):
        return _array_literal(value)
    if isinstance(value, (dict, tuple)):
        return json.dumps(value, default=_json_default, ensure_ascii=False)

    return value


class _CSVRowStream(TextIOBase):
    """Lazy text stream that feeds COPY FROM without large buffers."""

    def __init__(self, rows: Iterable[Tuple[Any, ...]], normalizer):
        self._iterator = iter(rows)
        self._normalizer = normalizer
        self._buffer = ''
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> str:
        while (size is None or size < 0 or len(self._buffer) < size) and not self._exhausted:
            try:
                row = next(self._iterator)
            except StopIteration:
                self._exhausted = True
                break
            self._buffer += self._format_row(row)

        if size is None or size < 0:
            data = self._buffer
            self._buffer = ''
            return data

        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data

    def _format_row(self, row: Tuple[Any, ...]) -> str:
        buffer = StringIO()
        writer = csv.writer(
            buffer,
            delimiter='\t',
            quoting=csv.QUOTE_MINIMAL,
            lineterminator='\n',
        )
        writer.writerow([self._normalizer(value) for value in row])
        return buffer.getvalue()
