"""
Replication Exceptions

Lower layers raise these (or let driver errors propagate unchanged); the
pipeline orchestrator decides whether an error is fatal for the run, for a
table, or only for a single batch.
"""


class ReplicationError(Exception):
    """Base class for replication errors."""


class ConfigurationError(ReplicationError):
    """Configuration file is missing, malformed, or fails validation."""


class SchemaError(ReplicationError):
    """Destination table could not be created."""


class StagingError(ReplicationError):
    """Staging table creation or bulk copy failed for one batch."""

    def __init__(self, message: str, staging_table: str = None):
        super().__init__(message)
        self.staging_table = staging_table


class ReplicationCancelled(ReplicationError):
    """The run context was cancelled or its deadline passed."""
