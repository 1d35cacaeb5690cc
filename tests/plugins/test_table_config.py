"""
Tests for Table Configuration

These tests validate:
- Identifier and table name validation
- Column/index/cursor parsing and defaults
- YAML load/save round trip of cursors
- Rejection of invalid configurations
"""

import pytest
from datetime import datetime, timezone

import yaml


def _table_dict(**overrides):
    data = {
        'source': 'events',
        'destination': 'public.events',
        'columns': [
            {'source': 'id', 'destination': 'id', 'type': 'BIGINT', 'primary': True},
            {'source': 'name', 'type': 'TEXT'},
            {'source': 'updated_at', 'destination': 'updated_at', 'type': 'TIMESTAMP'},
        ],
        'indexes': [{'name': 'by_name', 'columns': ['name']}],
        'cursor': {'column': 'updated_at', 'last_sync': '2024-01-01T00:00:00+00:00'},
    }
    data.update(overrides)
    return data


class TestValidateSqlIdentifier:
    """Test PostgreSQL identifier validation."""

    def test_valid_identifiers_unchanged(self):
        from ch_pg_replication.table_config import validate_sql_identifier

        for name in ['users', '_private', 'Order_Items2']:
            assert validate_sql_identifier(name) == name

    def test_rejects_empty(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import validate_sql_identifier

        with pytest.raises(ConfigurationError, match='cannot be empty'):
            validate_sql_identifier('')

    def test_rejects_injection_attempt(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import validate_sql_identifier

        with pytest.raises(ConfigurationError):
            validate_sql_identifier('users; DROP TABLE users')

    def test_rejects_too_long(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import validate_sql_identifier

        with pytest.raises(ConfigurationError, match='63'):
            validate_sql_identifier('a' * 64)

    def test_split_qualified_name(self):
        from ch_pg_replication.table_config import split_qualified_name

        assert split_qualified_name('public.events') == ('public', 'events')
        assert split_qualified_name('events') == ('events',)

    def test_split_rejects_three_parts(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import split_qualified_name

        with pytest.raises(ConfigurationError):
            split_qualified_name('db.public.events')


class TestTableSpec:
    """Test table parsing and derived views."""

    def test_parses_full_table(self):
        from ch_pg_replication.table_config import TableSpec

        table = TableSpec.from_dict(_table_dict())

        assert table.source == 'events'
        assert table.destination == 'public.events'
        assert table.source_columns == ['id', 'name', 'updated_at']
        assert table.destination_columns == ['id', 'name', 'updated_at']
        assert table.primary_key == ['id']
        assert table.primary_key_source == ['id']
        assert table.destination_table_name == 'events'
        assert table.indexes[0].name == 'by_name'
        assert table.cursor.column == 'updated_at'
        assert table.cursor.last_sync == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_destination_defaults_to_source(self):
        from ch_pg_replication.table_config import TableSpec

        data = _table_dict()
        del data['destination']
        table = TableSpec.from_dict(data)

        assert table.destination == 'events'
        assert table.columns[1].destination == 'name'

    def test_renamed_primary_key_columns(self):
        from ch_pg_replication.table_config import TableSpec

        table = TableSpec.from_dict(_table_dict(columns=[
            {'source': 'EventID', 'destination': 'event_id', 'type': 'BIGINT', 'primary': True},
            {'source': 'Name', 'destination': 'name', 'type': 'TEXT'},
        ], indexes=[], cursor=None))

        assert table.primary_key == ['event_id']
        assert table.primary_key_source == ['EventID']

    def test_missing_cursor_is_disabled(self):
        from ch_pg_replication.table_config import TableSpec

        table = TableSpec.from_dict(_table_dict(cursor=None))

        assert not table.cursor.enabled
        assert table.cursor.last_sync is None

    def test_zero_timestamp_means_never_synced(self):
        from ch_pg_replication.table_config import TableSpec

        table = TableSpec.from_dict(_table_dict(
            cursor={'column': 'updated_at', 'last_sync': '0001-01-01T00:00:00Z'}
        ))

        assert table.cursor.last_sync is None

    def test_naive_timestamp_taken_as_utc(self):
        from ch_pg_replication.table_config import TableSpec

        table = TableSpec.from_dict(_table_dict(
            cursor={'column': 'updated_at', 'last_sync': datetime(2024, 5, 1, 12, 30)}
        ))

        assert table.cursor.last_sync == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_rejects_empty_columns(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import TableSpec

        with pytest.raises(ConfigurationError, match='at least one column'):
            TableSpec.from_dict(_table_dict(columns=[], indexes=[]))

    def test_rejects_duplicate_destination_columns(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import TableSpec

        with pytest.raises(ConfigurationError, match='duplicate'):
            TableSpec.from_dict(_table_dict(columns=[
                {'source': 'a', 'destination': 'x', 'type': 'TEXT'},
                {'source': 'b', 'destination': 'x', 'type': 'TEXT'},
            ], indexes=[]))

    def test_rejects_index_on_unknown_column(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import TableSpec

        with pytest.raises(ConfigurationError, match='unknown columns'):
            TableSpec.from_dict(_table_dict(indexes=[{'name': 'by_x', 'columns': ['missing']}]))

    def test_rejects_unsafe_type(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import TableSpec

        with pytest.raises(ConfigurationError, match='type declarator'):
            TableSpec.from_dict(_table_dict(columns=[
                {'source': 'id', 'type': "TEXT; DROP TABLE users; --"},
            ], indexes=[]))

    def test_accepts_array_and_numeric_types(self):
        from ch_pg_replication.table_config import TableSpec

        table = TableSpec.from_dict(_table_dict(columns=[
            {'source': 'tags', 'type': 'TEXT[]'},
            {'source': 'amount', 'type': 'NUMERIC(18, 4)'},
        ], indexes=[], cursor=None))

        assert [c.type for c in table.columns] == ['TEXT[]', 'NUMERIC(18, 4)']

    def test_rejects_unparseable_cursor(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import TableSpec

        with pytest.raises(ConfigurationError, match='last_sync'):
            TableSpec.from_dict(_table_dict(cursor={'column': 'updated_at', 'last_sync': 'yesterday'}))


class TestReplicationConfig:
    """Test YAML configuration loading and saving."""

    def test_load_and_save_round_trips_cursor(self, tmp_path):
        from ch_pg_replication.table_config import ReplicationConfig

        path = tmp_path / 'replication.yml'
        path.write_text(yaml.safe_dump({'batch_size': 500, 'tables': [_table_dict()]}))

        config = ReplicationConfig.load(str(path))
        assert config.batch_size == 500

        new_cursor = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)
        config.tables[0].cursor.last_sync = new_cursor
        config.save(str(path))

        reloaded = ReplicationConfig.load(str(path))
        assert reloaded.tables[0].cursor.last_sync == new_cursor
        assert reloaded.tables[0].primary_key == ['id']
        assert not (tmp_path / 'replication.yml.tmp').exists()

    def test_default_batch_size(self):
        from ch_pg_replication.table_config import DEFAULT_BATCH_SIZE, ReplicationConfig

        config = ReplicationConfig.from_dict({'tables': [_table_dict()]})
        assert config.batch_size == DEFAULT_BATCH_SIZE == 10000

    def test_rejects_non_positive_batch_size(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import ReplicationConfig

        with pytest.raises(ConfigurationError, match='positive'):
            ReplicationConfig.from_dict({'batch_size': -5, 'tables': []})

    def test_missing_file_raises_configuration_error(self, tmp_path):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import ReplicationConfig

        with pytest.raises(ConfigurationError, match='Cannot read'):
            ReplicationConfig.load(str(tmp_path / 'missing.yml'))

    def test_malformed_yaml_raises_configuration_error(self, tmp_path):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import ReplicationConfig

        path = tmp_path / 'broken.yml'
        path.write_text('tables: [unclosed')

        with pytest.raises(ConfigurationError, match='Cannot parse'):
            ReplicationConfig.load(str(path))

    def test_get_table(self):
        from ch_pg_replication.table_config import ReplicationConfig

        config = ReplicationConfig.from_dict({'tables': [_table_dict()]})

        assert config.get_table('events') is config.tables[0]
        assert config.get_table('missing') is None

    def test_strategy_and_policy_overrides(self):
        from ch_pg_replication.table_config import ReplicationConfig

        config = ReplicationConfig.from_dict({
            'extraction_strategy': 'STREAM',
            'cursor_policy': 'max_observed',
            'tables': [_table_dict()],
        })

        assert config.extraction_strategy == 'stream'
        assert config.cursor_policy == 'max_observed'
        assert list(config.to_dict())[:3] == ['batch_size', 'extraction_strategy', 'cursor_policy']

    def test_overrides_default_to_environment(self):
        from ch_pg_replication.table_config import ReplicationConfig

        config = ReplicationConfig.from_dict({'tables': [_table_dict()]})

        assert config.extraction_strategy is None
        assert 'cursor_policy' not in config.to_dict()

    def test_rejects_unknown_strategy(self):
        from ch_pg_replication.errors import ConfigurationError
        from ch_pg_replication.table_config import ReplicationConfig

        with pytest.raises(ConfigurationError, match='extraction_strategy'):
            ReplicationConfig.from_dict({'extraction_strategy': 'bulk', 'tables': []})
