"""
Table Configuration Module

This module holds the replication data model (tables, columns, indexes and
cursors) and reads/writes it from the YAML configuration file. Cursors are
written back by the caller after a whole run so the next run resumes from
the last synchronized timestamp.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging
import os
import re

import yaml

from ch_pg_replication.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10000

EXTRACTION_STRATEGIES = ('paginate', 'stream')
CURSOR_POLICIES = ('now', 'max_observed')

_IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')
_TYPE_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9_ ,()\[\]]*$')


def validate_sql_identifier(identifier: str, identifier_type: str = "identifier") -> str:
    """
    Validate a PostgreSQL identifier (table, column or index name).

    Args:
        identifier: The identifier to validate
        identifier_type: Type description for error messages

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        ConfigurationError: If the identifier is invalid
    """
    if not identifier:
        raise ConfigurationError(f"Invalid {identifier_type}: cannot be empty")

    if len(identifier) > 63:
        raise ConfigurationError(
            f"Invalid {identifier_type} '{identifier}': exceeds PostgreSQL limit of 63 characters"
        )

    if not _IDENTIFIER_PATTERN.match(identifier):
        raise ConfigurationError(
            f"Invalid {identifier_type} '{identifier}': must start with letter or underscore "
            "and contain only alphanumeric characters and underscores"
        )

    return identifier


def split_qualified_name(name: str) -> Tuple[str, ...]:
    """
    Split 'schema.table' into its parts ('table' alone is returned as a 1-tuple).

    Raises:
        ConfigurationError: If the name has more than two parts or a part is invalid
    """
    parts = tuple(name.split('.')) if name else ('',)
    if len(parts) > 2:
        raise ConfigurationError(f"Invalid table name '{name}': expected 'table' or 'schema.table'")
    for part in parts:
        validate_sql_identifier(part, "table name")
    return parts


def _parse_timestamp(value: Any, table_name: str) -> Optional[datetime]:
    """Normalise a YAML cursor value to an aware UTC datetime (None = never synced)."""
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            raise ConfigurationError(
                f"Table '{table_name}': cannot parse cursor last_sync '{value}'"
            )
    else:
        raise ConfigurationError(
            f"Table '{table_name}': unsupported cursor last_sync value {value!r}"
        )

    # 0001-01-01 is the zero timestamp written by older tooling
    if parsed.year <= 1:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class ColumnSpec:
    """One replicated column: source name, destination name and type."""

    source: str
    destination: str
    type: str
    primary: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnSpec":
        if not isinstance(data, dict) or not data.get('source'):
            raise ConfigurationError(f"Column entry must have a 'source' name: {data!r}")
        if not data.get('type'):
            raise ConfigurationError(f"Column '{data['source']}' must declare a destination 'type'")
        return cls(
            source=str(data['source']),
            destination=str(data.get('destination') or data['source']),
            type=str(data['type']).strip(),
            primary=bool(data.get('primary', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'destination': self.destination,
            'type': self.type,
            'primary': self.primary,
        }


@dataclass
class IndexSpec:
    """Secondary index over destination columns."""

    name: str
    columns: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexSpec":
        if not isinstance(data, dict) or not data.get('name'):
            raise ConfigurationError(f"Index entry must have a 'name': {data!r}")
        return cls(name=str(data['name']), columns=[str(c) for c in data.get('columns') or []])

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'columns': list(self.columns)}


@dataclass
class CursorSpec:
    """
    Incremental extraction cursor.

    last_sync of None means the next run does a full scan.
    """

    column: str = ''
    last_sync: Optional[datetime] = None

    @property
    def enabled(self) -> bool:
        return bool(self.column)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], table_name: str) -> "CursorSpec":
        if not data:
            return cls()
        return cls(
            column=str(data.get('column') or ''),
            last_sync=_parse_timestamp(data.get('last_sync'), table_name),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'column': self.column,
            'last_sync': self.last_sync.isoformat() if self.last_sync else None,
        }


@dataclass
class TableSpec:
    """A source table and how it lands in the destination."""

    source: str
    destination: str
    columns: List[ColumnSpec]
    indexes: List[IndexSpec] = field(default_factory=list)
    cursor: CursorSpec = field(default_factory=CursorSpec)

    @property
    def source_columns(self) -> List[str]:
        return [column.source for column in self.columns]

    @property
    def destination_columns(self) -> List[str]:
        return [column.destination for column in self.columns]

    @property
    def primary_key(self) -> List[str]:
        """Destination names of the primary key columns, in column order."""
        return [column.destination for column in self.columns if column.primary]

    @property
    def primary_key_source(self) -> List[str]:
        """Source names of the primary key columns, in column order."""
        return [column.source for column in self.columns if column.primary]

    @property
    def destination_parts(self) -> Tuple[str, ...]:
        return split_qualified_name(self.destination)

    @property
    def destination_table_name(self) -> str:
        """Unqualified destination table name (used for staging and index names)."""
        return self.destination_parts[-1]

    def validate(self) -> None:
        """
        Check the invariants the pipeline relies on.

        Raises:
            ConfigurationError: If any invariant is violated
        """
        if not self.source:
            raise ConfigurationError("Table entry must have a 'source' name")
        split_qualified_name(self.destination)

        if not self.columns:
            raise ConfigurationError(f"Table '{self.source}' must declare at least one column")

        seen = set()
        for column in self.columns:
            validate_sql_identifier(column.destination, f"column name in table '{self.source}'")
            if column.destination in seen:
                raise ConfigurationError(
                    f"Table '{self.source}': duplicate destination column '{column.destination}'"
                )
            seen.add(column.destination)
            if not _TYPE_PATTERN.match(column.type):
                raise ConfigurationError(
                    f"Table '{self.source}': unsupported type declarator '{column.type}' "
                    f"for column '{column.destination}'"
                )

        for index in self.indexes:
            validate_sql_identifier(index.name, f"index name in table '{self.source}'")
            if not index.columns:
                raise ConfigurationError(f"Index '{index.name}' on '{self.source}' has no columns")
            missing = [c for c in index.columns if c not in seen]
            if missing:
                raise ConfigurationError(
                    f"Index '{index.name}' on '{self.source}' references unknown columns: {missing}"
                )

        if not self.primary_key:
            logger.warning(
                f"Table '{self.source}' has no primary key; merges will be append-only"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableSpec":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Table entry must be a mapping, got {data!r}")
        source = str(data.get('source') or '')
        table = cls(
            source=source,
            destination=str(data.get('destination') or source),
            columns=[ColumnSpec.from_dict(c) for c in data.get('columns') or []],
            indexes=[IndexSpec.from_dict(i) for i in data.get('indexes') or []],
            cursor=CursorSpec.from_dict(data.get('cursor'), source),
        )
        table.validate()
        return table

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'destination': self.destination,
            'indexes': [index.to_dict() for index in self.indexes],
            'columns': [column.to_dict() for column in self.columns],
            'cursor': self.cursor.to_dict(),
        }


def _parse_choice(data: Dict[str, Any], key: str, choices: Tuple[str, ...]) -> Optional[str]:
    value = data.get(key)
    if value is None or value == '':
        return None
    value = str(value).strip().lower()
    if value not in choices:
        raise ConfigurationError(f"{key} must be one of {', '.join(choices)}, got '{value}'")
    return value


@dataclass
class ReplicationConfig:
    """
    Top-level configuration: the tables to replicate and the batch size.

    extraction_strategy and cursor_policy, when set, override the
    EXTRACTION_STRATEGY and CURSOR_POLICY environment defaults.
    """

    tables: List[TableSpec] = field(default_factory=list)
    batch_size: int = DEFAULT_BATCH_SIZE
    extraction_strategy: Optional[str] = None
    cursor_policy: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplicationConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        batch_size = data.get('batch_size') or DEFAULT_BATCH_SIZE
        try:
            batch_size = int(batch_size)
        except (TypeError, ValueError):
            raise ConfigurationError(f"batch_size must be an integer, got {batch_size!r}")
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")

        return cls(
            tables=[TableSpec.from_dict(t) for t in data.get('tables') or []],
            batch_size=batch_size,
            extraction_strategy=_parse_choice(data, 'extraction_strategy', EXTRACTION_STRATEGIES),
            cursor_policy=_parse_choice(data, 'cursor_policy', CURSOR_POLICIES),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'batch_size': self.batch_size}
        if self.extraction_strategy:
            data['extraction_strategy'] = self.extraction_strategy
        if self.cursor_policy:
            data['cursor_policy'] = self.cursor_policy
        data['tables'] = [table.to_dict() for table in self.tables]
        return data

    @classmethod
    def load(cls, path: str) -> "ReplicationConfig":
        """
        Parse the YAML configuration file.

        Args:
            path: Path to the configuration file

        Returns:
            Validated ReplicationConfig

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                data = yaml.safe_load(handle)
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file '{path}': {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse configuration file '{path}': {e}") from e

        config = cls.from_dict(data or {})
        logger.info(f"Loaded {len(config.tables)} table(s) from {path} (batch_size={config.batch_size:,})")
        return config

    def save(self, path: str) -> None:
        """
        Write the configuration (including advanced cursors) back to YAML.

        The file is replaced atomically so a crash mid-write keeps the old cursors.
        """
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as handle:
            yaml.safe_dump(self.to_dict(), handle, sort_keys=False, default_flow_style=False)
        os.replace(tmp_path, path)
        logger.info(f"Saved configuration to {path}")

    def get_table(self, source: str) -> Optional[TableSpec]:
        for table in self.tables:
            if table.source == source:
                return table
        return None
