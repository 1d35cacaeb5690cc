"""
Merge/Upsert Module

Folds a loaded staging table into its destination with a single
INSERT ... SELECT ... ON CONFLICT statement. Duplicate keys within the
staging table are collapsed first so the statement never touches the same
destination row twice; the row loaded last wins.
"""

from typing import Optional
import logging

from psycopg2 import sql

from ch_pg_replication.run_context import ReplicationContext
from ch_pg_replication.staging_loader import destination_identifier, set_statement_timeout
from ch_pg_replication.table_config import TableSpec

logger = logging.getLogger(__name__)


def build_merge_query(table: TableSpec, staging_table: str) -> sql.Composed:
    """
    Build the merge statement for a table and one of its staging tables.

    Args:
        table: Destination table
        staging_table: Unqualified staging table name

    Returns:
        Composed SQL statement
    """
    columns = table.destination_columns
    pk_columns = table.primary_key

    all_cols = sql.SQL(', ').join([sql.Identifier(c) for c in columns])
    destination = destination_identifier(table)
    staging = sql.Identifier(staging_table)

    if not pk_columns:
        return sql.SQL(
            "INSERT INTO {destination} ({columns}) SELECT {columns} FROM {staging}"
        ).format(destination=destination, columns=all_cols, staging=staging)

    pk_cols = sql.SQL(', ').join([sql.Identifier(c) for c in pk_columns])

    # Non-PK columns for UPDATE SET clause
    non_pk_columns = [c for c in columns if c not in pk_columns]

    if non_pk_columns:
        conflict_action = sql.SQL('DO UPDATE SET {}').format(
            sql.SQL(', ').join([
                sql.SQL('{} = EXCLUDED.{}').format(sql.Identifier(c), sql.Identifier(c))
                for c in non_pk_columns
            ])
        )
    else:
        # All columns are PK - do nothing on conflict
        conflict_action = sql.SQL('DO NOTHING')

    return sql.SQL(
        "INSERT INTO {destination} ({columns}) "
        "SELECT DISTINCT ON ({pk}) {columns} FROM {staging} "
        "ORDER BY {pk}, ctid DESC "
        "ON CONFLICT ({pk}) {action}"
    ).format(
        destination=destination,
        columns=all_cols,
        staging=staging,
        pk=pk_cols,
        action=conflict_action,
    )


def merge(
    table: TableSpec,
    conn,
    staging_table: str,
    context: Optional[ReplicationContext] = None,
) -> int:
    """
    Upsert the contents of a staging table into the destination.

    Runs inside the caller's transaction; the caller commits.

    Args:
        table: Destination table
        conn: psycopg2 connection holding the staging table
        staging_table: Staging table name returned by the loader
        context: Optional cancellation/deadline token

    Returns:
        Number of destination rows inserted or updated
    """
    if context is not None:
        context.check()

    query = build_merge_query(table, staging_table)

    try:
        with conn.cursor() as cursor:
            set_statement_timeout(cursor, context)
            cursor.execute(query)
            affected = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
    except Exception as e:
        logger.error(f"Error merging {staging_table} into {table.destination}: {e}")
        raise

    logger.debug(f"Merged {affected:,} rows from {staging_table} into {table.destination}")
    return affected
