"""
Connection Management Module

Builds the two store connections from Airflow connection IDs:

- ClickHouse: a single clickhouse-driver client used only by the extraction
  thread (the client is not thread-safe).
- PostgreSQL: a bounded, thread-safe pool shared by the loader workers. Each
  worker acquires its own connection per batch and never shares it.
"""

from typing import Any, Dict, Optional
import contextlib
import logging
import os
import threading

from airflow.providers.postgres.hooks.postgres import PostgresHook
from airflow_clickhouse_plugin.hooks.clickhouse import ClickHouseHook
from psycopg2 import pool as pg_pool

logger = logging.getLogger(__name__)


def _get_pool_config(max_workers: int) -> Dict[str, float]:
    """
    Get PostgreSQL pool sizing from environment variables.

    The pool always has room for every loader worker plus one connection
    for schema management.
    """
    max_conn = int(os.environ.get('MAX_PG_CONNECTIONS', str(max(8, max_workers + 1))))
    acquire_timeout = float(os.environ.get('PG_ACQUIRE_TIMEOUT', '120'))
    return {
        'max_conn': max(max_conn, max_workers + 1),
        'acquire_timeout': acquire_timeout,
    }


class PostgresConnectionPool:
    """
    Thread-safe PostgreSQL connection pool with blocking acquire.

    psycopg2's ThreadedConnectionPool raises as soon as it is exhausted; a
    semaphore in front of it makes callers wait for a free connection
    instead, up to acquire_timeout.

    Usage:
        pool = PostgresConnectionPool.from_airflow_connection('postgres_target')
        with pool.connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
            conn.commit()
    """

    def __init__(
        self,
        min_conn: int = 1,
        max_conn: int = 8,
        acquire_timeout: float = 120.0,
        **connect_kwargs: Any,
    ):
        """
        Initialize the pool.

        Args:
            min_conn: Connections to pre-create (warm start)
            max_conn: Maximum concurrent connections (hard limit)
            acquire_timeout: Seconds to wait when the pool is exhausted
            **connect_kwargs: Arguments for psycopg2.connect (host, port, ...)
        """
        self._max_conn = max_conn
        self._acquire_timeout = acquire_timeout
        self._semaphore = threading.Semaphore(max_conn)
        self._in_use = 0
        self._lock = threading.Lock()
        self._closed = False

        logger.info(f"Initializing PostgreSQL connection pool: min={min_conn}, max={max_conn}")
        self._pool = pg_pool.ThreadedConnectionPool(min_conn, max_conn, **connect_kwargs)

    @classmethod
    def from_airflow_connection(
        cls,
        postgres_conn_id: str,
        max_workers: int = 4,
    ) -> "PostgresConnectionPool":
        """
        Create a pool from an Airflow PostgreSQL connection.

        Args:
            postgres_conn_id: Airflow connection ID for the destination database
            max_workers: Number of concurrent loader workers that will share it

        Returns:
            Ready-to-use connection pool
        """
        hook = PostgresHook(postgres_conn_id=postgres_conn_id)
        conn = hook.get_connection(postgres_conn_id)
        sizing = _get_pool_config(max_workers)

        pool = cls(
            min_conn=1,
            max_conn=int(sizing['max_conn']),
            acquire_timeout=sizing['acquire_timeout'],
            host=conn.host,
            port=conn.port or 5432,
            dbname=conn.schema or conn.login,
            user=conn.login,
            password=conn.password,
            application_name='ch_pg_replication',
        )
        logger.info(f"Created PostgreSQL pool for {postgres_conn_id}: max={sizing['max_conn']}")
        return pool

    def acquire(self):
        """
        Acquire a connection from the pool.

        Blocks if all connections are in use until one becomes available
        or acquire_timeout is reached.

        Raises:
            TimeoutError: If no connection available within timeout
            RuntimeError: If the pool has been closed
        """
        if self._closed:
            raise RuntimeError("Connection pool has been closed")

        if not self._semaphore.acquire(timeout=self._acquire_timeout):
            raise TimeoutError(
                f"Could not acquire PostgreSQL connection within {self._acquire_timeout}s "
                f"(pool max: {self._max_conn})"
            )

        try:
            conn = self._pool.getconn()
        except Exception:
            self._semaphore.release()
            raise

        with self._lock:
            self._in_use += 1
        return conn

    def release(self, conn) -> None:
        """
        Return a connection to the pool. Broken connections are discarded.

        Args:
            conn: Connection to return (None is ignored)
        """
        if conn is None:
            return

        try:
            if not self._closed:
                self._pool.putconn(conn, close=bool(getattr(conn, 'closed', False)))
        finally:
            with self._lock:
                self._in_use -= 1
            self._semaphore.release()

    @contextlib.contextmanager
    def connection(self):
        """
        Context manager for a pooled connection.

        Anything not committed by the caller is rolled back before the
        connection goes back to the pool, which also drops ON COMMIT DROP
        staging tables left by a failed batch.
        """
        conn = self.acquire()
        try:
            yield conn
        finally:
            if not getattr(conn, 'closed', False) and getattr(conn, 'autocommit', False) is False:
                try:
                    conn.rollback()
                except Exception:
                    logger.exception("Exception occurred during PostgreSQL connection rollback")
            self.release(conn)

    def close(self) -> None:
        """Close all connections and shut down the pool."""
        if self._closed:
            return
        self._closed = True
        self._pool.closeall()
        logger.info("PostgreSQL connection pool closed")

    @property
    def stats(self) -> Dict[str, int]:
        """Get pool statistics."""
        return {
            'in_use': self._in_use,
            'max': self._max_conn,
        }


def open_source_client(clickhouse_conn_id: str, settings: Optional[Dict[str, Any]] = None):
    """
    Open a ClickHouse client from an Airflow connection and check it works.

    Args:
        clickhouse_conn_id: Airflow connection ID for the source ClickHouse server
        settings: Optional client settings merged into the connection's own

    Returns:
        clickhouse_driver.Client

    Raises:
        Exception: Driver error if the server cannot be reached (fatal for the run)
    """
    hook = ClickHouseHook(clickhouse_conn_id=clickhouse_conn_id)
    client = hook.get_conn()
    if settings:
        client.settings.update(settings)

    client.execute('SELECT 1')
    logger.info(f"Connected to ClickHouse via {clickhouse_conn_id}")
    return client


def close_source_client(client) -> None:
    """Disconnect a ClickHouse client, ignoring a client that is already gone."""
    if client is None:
        return
    try:
        client.disconnect()
    except Exception as e:
        logger.warning(f"Error disconnecting ClickHouse client: {e}")
