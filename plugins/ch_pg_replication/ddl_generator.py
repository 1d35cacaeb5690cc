"""
PostgreSQL DDL Generation Module

This module generates and applies the destination DDL for a configured
table: the table itself, its primary key and its secondary indexes. Every
statement is idempotent so it can run at the start of each replication.
"""

from typing import List, Optional
import logging

from ch_pg_replication.connections import PostgresConnectionPool
from ch_pg_replication.errors import SchemaError
from ch_pg_replication.table_config import TableSpec

logger = logging.getLogger(__name__)


class DDLGenerator:
    """Generate and apply PostgreSQL DDL statements from table configuration."""

    def __init__(self, pool: Optional[PostgresConnectionPool] = None):
        """
        Initialize the DDL generator.

        Args:
            pool: Destination connection pool (only needed to apply DDL)
        """
        self.pool = pool

    def generate_create_table(self, table: TableSpec) -> str:
        """
        Generate CREATE TABLE IF NOT EXISTS statement for PostgreSQL.

        The primary key is added separately by generate_primary_key so that
        an existing table without one can be upgraded.

        Args:
            table: Table configuration

        Returns:
            CREATE TABLE DDL statement
        """
        column_definitions = [
            f"    {self._quote_identifier(column.destination)} {column.type}"
            for column in table.columns
        ]
        return '\n'.join([
            f"CREATE TABLE IF NOT EXISTS {self._qualified_name(table)} (",
            ',\n'.join(column_definitions),
            ')',
        ])

    def generate_primary_key(self, table: TableSpec) -> Optional[str]:
        """
        Generate ALTER TABLE ADD PRIMARY KEY statement.

        Returns:
            ALTER TABLE DDL statement, or None if the table has no key columns
        """
        if not table.primary_key:
            return None

        pk_columns = ', '.join([self._quote_identifier(col) for col in table.primary_key])
        return f"ALTER TABLE {self._qualified_name(table)} ADD PRIMARY KEY ({pk_columns})"

    def generate_indexes(self, table: TableSpec) -> List[str]:
        """
        Generate CREATE INDEX IF NOT EXISTS statements for a table.

        Index names are prefixed with the destination table name.
        """
        index_statements = []
        for index in table.indexes:
            index_name = f"{table.destination_table_name}_{index.name}"
            columns = ', '.join([self._quote_identifier(col) for col in index.columns])
            index_statements.append(
                f"CREATE INDEX IF NOT EXISTS {self._quote_identifier(index_name)} "
                f"ON {self._qualified_name(table)} ({columns})"
            )
        return index_statements

    def has_primary_key(self, conn, table: TableSpec) -> bool:
        parts = table.destination_parts
        schema_name = parts[0] if len(parts) == 2 else None
        with conn.cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM information_schema.table_constraints
                WHERE table_schema = COALESCE(%s, current_schema())
                  AND table_name = %s
                  AND constraint_type = 'PRIMARY KEY'
                """,
                (schema_name, parts[-1]),
            )
            return cursor.fetchone() is not None

    def ensure_schema(self, table: TableSpec) -> None:
        """
        Create the destination table, primary key and indexes if missing.

        Each statement commits on its own. Only a failure to create the
        table is fatal for the table; key and index failures are logged.

        Raises:
            SchemaError: If CREATE TABLE fails
        """
        if self.pool is None:
            raise ValueError("DDLGenerator needs a connection pool to apply DDL")

        create_sql = self.generate_create_table(table)
        try:
            self._execute(create_sql)
        except Exception as e:
            raise SchemaError(f"Failed to create table {table.destination}: {e}") from e

        pk_sql = self.generate_primary_key(table)
        if pk_sql:
            try:
                with self.pool.connection() as conn:
                    if self.has_primary_key(conn, table):
                        logger.debug(f"Primary key already present on {table.destination}")
                    else:
                        self._execute_on(conn, pk_sql)
            except Exception as e:
                logger.warning(f"Could not add primary key to {table.destination}: {e}")

        for index_sql in self.generate_indexes(table):
            try:
                self._execute(index_sql)
            except Exception as e:
                logger.warning(f"Could not create index on {table.destination}: {e}")

        logger.info(f"Schema ensured for {table.destination}")

    def _execute(self, ddl: str) -> None:
        with self.pool.connection() as conn:
            self._execute_on(conn, ddl)

    def _execute_on(self, conn, ddl: str) -> None:
        logger.info(f"Executing DDL: {ddl[:100]}...")
        try:
            with conn.cursor() as cursor:
                cursor.execute(ddl)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _qualified_name(self, table: TableSpec) -> str:
        return '.'.join(self._quote_identifier(part) for part in table.destination_parts)

    def _quote_identifier(self, identifier: str) -> str:
        """
        Quote a PostgreSQL identifier safely.

        Args:
            identifier: Identifier to quote

        Returns:
            Safely quoted identifier
        """
        # Escape embedded double quotes by doubling them (PostgreSQL standard)
        escaped = identifier.replace('"', '""')
        return f'"{escaped}"'


def ensure_schema(table: TableSpec, pool: PostgresConnectionPool) -> None:
    """Create the destination objects for a table (see DDLGenerator.ensure_schema)."""
    DDLGenerator(pool).ensure_schema(table)
