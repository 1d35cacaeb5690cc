"""
ClickHouse to PostgreSQL Replication Utilities

This package replicates configured tables from ClickHouse into PostgreSQL
using Apache Airflow, in bounded batches with idempotent upserts and
optional cursor-based incremental extraction.

Modules:
- table_config: Table/column/index/cursor model and YAML configuration
- connections: PostgreSQL connection pool and ClickHouse client
- type_inference: Infer scan shapes from ClickHouse column metadata
- extractor: Batched extraction (stream or paginate)
- staging_loader: COPY batches into per-batch staging tables
- merge: Deduplicating INSERT ... ON CONFLICT merge from staging
- ddl_generator: Create destination tables, primary keys and indexes
- pipeline: Orchestrate extraction, loading and cursor advancement

Performance Options:
- MAX_PARALLEL_LOADERS=N: Concurrent load/merge workers per table
- BATCH_QUEUE_SIZE=N: Batches buffered between extraction and loaders
- MAX_PG_CONNECTIONS=N: PostgreSQL pool size
- EXTRACTION_STRATEGY=paginate|stream: How rows are read from ClickHouse
- CURSOR_POLICY=now|max_observed: How the cursor advances after a table
"""

__version__ = "1.0.0"

from ch_pg_replication import errors
from ch_pg_replication import run_context
from ch_pg_replication import table_config
from ch_pg_replication import type_inference
from ch_pg_replication import connections
from ch_pg_replication import extractor
from ch_pg_replication import staging_loader
from ch_pg_replication import merge
from ch_pg_replication import ddl_generator
from ch_pg_replication import pipeline

__all__ = [
    "errors",
    "run_context",
    "table_config",
    "type_inference",
    "connections",
    "extractor",
    "staging_loader",
    "merge",
    "ddl_generator",
    "pipeline",
]
