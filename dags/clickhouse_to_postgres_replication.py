"""
ClickHouse to PostgreSQL Replication DAG

This DAG replicates the tables listed in a YAML configuration file from
ClickHouse into PostgreSQL:

1. Load and validate the configuration
2. For each table: ensure the destination schema, extract batches, load
   each batch into a staging table and merge it with an upsert
3. Write the advanced cursors back to the configuration file

Tables with a cursor column are extracted incrementally (only rows newer
than the last successful sync). Tables without a primary key are
append-only.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import List, Dict, Any
import logging
import os

# Configuration from environment
MAX_PARALLEL_LOADERS = int(os.environ.get('MAX_PARALLEL_LOADERS', '4'))
DEFAULT_CONFIG_PATH = os.environ.get(
    'REPLICATION_CONFIG_PATH', '/usr/local/airflow/include/config/replication.yml'
)

# Import replication modules
from ch_pg_replication.connections import (
    PostgresConnectionPool,
    close_source_client,
    open_source_client,
)
from ch_pg_replication.pipeline import Replicator
from ch_pg_replication.run_context import ReplicationContext
from ch_pg_replication.table_config import ReplicationConfig

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or on schedule
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 1,
        "retry_delay": timedelta(seconds=30),
        "retry_exponential_backoff": False,
        "max_retry_delay": timedelta(minutes=30),
        "pool": "default_pool",
    },
    params={
        "source_conn_id": Param(
            default="clickhouse_source",
            type="string",
            description="ClickHouse connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="PostgreSQL connection ID"
        ),
        "config_path": Param(
            default=DEFAULT_CONFIG_PATH,
            type="string",
            description="Path to the replication YAML configuration (cursors are written back)"
        ),
        "only_table": Param(
            default="",
            type="string",
            description="Replicate only the table with this source name (empty for all)"
        ),
        "batch_size": Param(
            default=0,
            type="integer",
            minimum=0,
            maximum=1000000,
            description="Rows per batch (0 uses the configuration's batch_size)"
        ),
        "max_parallel_loaders": Param(
            default=MAX_PARALLEL_LOADERS,
            type="integer",
            minimum=1,
            maximum=32,
            description="Concurrent load/merge workers per table"
        ),
        "extraction_strategy": Param(
            default="",
            type="string",
            enum=["", "paginate", "stream"],
            description="Read pages ordered by primary key, or stream the whole result (empty uses the configuration, then EXTRACTION_STRATEGY)"
        ),
        "cursor_policy": Param(
            default="",
            type="string",
            enum=["", "now", "max_observed"],
            description="New cursor value: completion time, or the max cursor value read (empty uses the configuration, then CURSOR_POLICY)"
        ),
        "timeout_seconds": Param(
            default=0,
            type="integer",
            minimum=0,
            description="Deadline for the whole run; bounds ClickHouse and PostgreSQL statements (0 for no deadline)"
        ),
    },
    tags=["replication", "clickhouse", "postgres", "etl", "incremental"],
)
def clickhouse_to_postgres_replication():
    """
    Batch replication DAG for ClickHouse to PostgreSQL.

    Upserts configured tables and advances their cursors after the run.
    """

    @task
    def load_config(**context) -> List[str]:
        """
        Load and validate the replication configuration.

        Returns:
            Source names of the tables that will be replicated
        """
        params = context["params"]
        config = ReplicationConfig.load(params["config_path"])
        only_table = params.get("only_table") or None

        tables = [t.source for t in config.tables if not only_table or t.source == only_table]
        if only_table and not tables:
            logger.warning(f"Table '{only_table}' is not in {params['config_path']}")

        logger.info(f"Prepared {len(tables)} tables for replication: {', '.join(tables)}")
        return tables

    @task
    def replicate(tables: List[str], **context) -> Dict[str, Any]:
        """
        Replicate the configured tables and persist the advanced cursors.

        Configuration and connection errors fail the task; per-table
        failures are reported in the returned summary.
        """
        params = context["params"]
        config_path = params["config_path"]
        config = ReplicationConfig.load(config_path)
        batch_size = params.get("batch_size") or config.batch_size
        max_workers = params.get("max_parallel_loaders", MAX_PARALLEL_LOADERS)

        if not tables:
            logger.warning("No tables to replicate")
            return {"status": "no_tables", "total_tables": 0, "tables": []}

        source_client = open_source_client(params["source_conn_id"])
        pool = None
        try:
            pool = PostgresConnectionPool.from_airflow_connection(
                params["target_conn_id"], max_workers=max_workers
            )
            replicator = Replicator(
                source_client,
                pool,
                batch_size=batch_size,
                max_workers=max_workers,
                strategy=params.get("extraction_strategy") or config.extraction_strategy,
                cursor_policy=params.get("cursor_policy") or config.cursor_policy,
            )
            summary = replicator.replicate_all(
                config,
                only=params.get("only_table") or None,
                context=ReplicationContext(timeout=params.get("timeout_seconds") or None),
            )
        finally:
            if pool is not None:
                pool.close()
            close_source_client(source_client)

        # Cursors are persisted once, after the whole run
        config.save(config_path)
        return summary

    @task(trigger_rule="all_done")
    def collect_results(summary: Dict[str, Any], **context) -> Dict[str, Any]:
        """
        Summarize the replication run.

        Args:
            summary: Run summary returned by replicate

        Returns:
            Summary dict
        """
        if not summary or not summary.get("tables"):
            return {
                "status": "no_tables",
                "message": "No tables were replicated",
                "tables_replicated": 0,
                "total_rows_merged": 0,
            }

        results = summary["tables"]
        failed_tables = [r["source_table"] for r in results if not r.get("success")]

        report = {
            "status": summary["status"],
            "tables_replicated": summary["successful_tables"],
            "tables_failed": summary["failed_tables"],
            "total_rows_extracted": summary["rows_extracted"],
            "total_rows_merged": summary["rows_merged"],
            "batches_failed": summary["batches_failed"],
            "elapsed_time_seconds": summary["elapsed_time_seconds"],
            "details": [
                {
                    "table": r["source_table"],
                    "state": r["state"],
                    "rows_extracted": r["rows_extracted"],
                    "batches_failed": r["batches_failed"],
                    "cursor": r["cursor"],
                }
                for r in results
            ],
        }

        logger.info(
            f"Replication complete: {report['tables_replicated']} tables replicated, "
            f"{report['tables_failed']} failed. "
            f"Total: {report['total_rows_extracted']:,} extracted, "
            f"{report['total_rows_merged']:,} merged"
        )

        if failed_tables:
            logger.error(f"Failed tables: {', '.join(failed_tables)}")

        return report

    # Define task flow
    tables = load_config()
    summary = replicate(tables)
    collect_results(summary)


# Instantiate the DAG
clickhouse_to_postgres_replication()
