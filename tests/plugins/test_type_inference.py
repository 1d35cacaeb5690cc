"""
Tests for Row Type Inference

These tests validate:
- ClickHouse type string parsing into scan shapes
- Prototype (zero) values per shape
- Row scanning: fresh values, NULL handling, width checks
"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from ipaddress import IPv4Address
from uuid import UUID


class TestSplitTypeArguments:
    """Test splitting of parameterised type arguments."""

    def test_simple_arguments(self):
        from ch_pg_replication.type_inference import split_type_arguments

        assert split_type_arguments('String, UInt64') == ['String', 'UInt64']

    def test_nested_arguments(self):
        from ch_pg_replication.type_inference import split_type_arguments

        assert split_type_arguments('String, Array(Nullable(UInt8))') == [
            'String', 'Array(Nullable(UInt8))'
        ]

    def test_quoted_commas_are_not_split(self):
        from ch_pg_replication.type_inference import split_type_arguments

        assert split_type_arguments("'a,b' = 1, 'c' = 2") == ["'a,b' = 1", "'c' = 2"]


class TestParseScanType:
    """Test mapping of ClickHouse types to scan shapes."""

    def test_scalar_types(self):
        from ch_pg_replication.type_inference import ScanKind, parse_scan_type

        expected = {
            'UInt8': int,
            'Int64': int,
            'Float64': float,
            'Decimal(18, 4)': Decimal,
            'String': str,
            'FixedString(16)': str,
            "Enum8('a' = 1, 'b' = 2)": str,
            'Date': date,
            "DateTime('UTC')": datetime,
            "DateTime64(3, 'UTC')": datetime,
            'UUID': UUID,
            'Bool': bool,
            'IPv4': IPv4Address,
        }
        for type_name, python_type in expected.items():
            scan_type = parse_scan_type(type_name)
            assert scan_type.kind is ScanKind.SCALAR, type_name
            assert scan_type.python_type is python_type, type_name

    def test_nullable_unwraps_one_level(self):
        from ch_pg_replication.type_inference import ScanKind, parse_scan_type

        scan_type = parse_scan_type('Nullable(Int32)')

        assert scan_type.kind is ScanKind.OPTIONAL
        assert scan_type.nullable
        assert scan_type.inner.kind is ScanKind.SCALAR
        assert scan_type.inner.python_type is int

    def test_array_of_nullable(self):
        from ch_pg_replication.type_inference import ScanKind, parse_scan_type

        scan_type = parse_scan_type('Array(Nullable(String))')

        assert scan_type.kind is ScanKind.SEQUENCE
        assert scan_type.inner.kind is ScanKind.OPTIONAL

    def test_map(self):
        from ch_pg_replication.type_inference import ScanKind, parse_scan_type

        scan_type = parse_scan_type('Map(String, UInt64)')

        assert scan_type.kind is ScanKind.MAPPING
        assert scan_type.key.python_type is str
        assert scan_type.value.python_type is int

    def test_low_cardinality_is_transparent(self):
        from ch_pg_replication.type_inference import parse_scan_type

        assert parse_scan_type('LowCardinality(String)') == parse_scan_type('String')
        assert parse_scan_type('LowCardinality(Nullable(String))') == parse_scan_type('Nullable(String)')

    def test_simple_aggregate_function_scans_as_value_type(self):
        from ch_pg_replication.type_inference import parse_scan_type

        assert parse_scan_type('SimpleAggregateFunction(max, UInt64)') == parse_scan_type('UInt64')

    def test_unknown_type_scans_as_string(self, caplog):
        from ch_pg_replication.type_inference import parse_scan_type

        scan_type = parse_scan_type('Object(\'json\')')

        assert scan_type.python_type is str
        assert 'Unknown ClickHouse type' in caplog.text


class TestPrototypes:
    """Test the reusable zero values for each shape."""

    def test_prototypes_per_shape(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([
            ('id', 'UInt64'),
            ('score', 'Nullable(Float64)'),
            ('tags', 'Array(String)'),
            ('attrs', 'Map(String, String)'),
            ('created', 'DateTime'),
            ('name', 'String'),
        ])

        assert scanner.prototypes == [0, 0.0, [], {}, datetime(1970, 1, 1), '']

    def test_sequence_prototypes_are_fresh(self):
        from ch_pg_replication.type_inference import parse_scan_type

        scan_type = parse_scan_type('Array(UInt8)')
        first = scan_type.prototype()
        first.append(1)

        assert scan_type.prototype() == []


class TestRowScanner:
    """Test scanning driver rows through the inferred shapes."""

    def test_infers_once_and_scans_rows(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([('id', 'UInt64'), ('name', 'String')])
        rows = scanner.scan_all([(1, 'a'), (2, 'b')])

        assert rows == [(1, 'a'), (2, 'b')]
        assert scanner.column_names == ['id', 'name']

    def test_nullable_none_stays_none(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([('id', 'UInt64'), ('note', 'Nullable(String)')])

        assert scanner.scan((1, None)) == (1, None)

    def test_none_in_non_nullable_slot_uses_prototype(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([('id', 'UInt64'), ('tags', 'Array(String)')])

        assert scanner.scan((None, None)) == (0, [])

    def test_sequences_and_mappings_are_fresh_copies(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([('tags', 'Array(String)'), ('attrs', 'Map(String, UInt8)')])
        source_tags = ['x', 'y']
        source_attrs = {'k': 1}

        tags, attrs = scanner.scan((source_tags, source_attrs))
        source_tags.append('z')
        source_attrs['j'] = 2

        assert tags == ['x', 'y']
        assert attrs == {'k': 1}

    def test_tuple_values_become_tuples(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([('pair', 'Tuple(String, UInt8)')])

        assert scanner.scan((['a', 1],)) == (('a', 1),)

    def test_width_mismatch_raises(self):
        from ch_pg_replication.type_inference import RowScanner

        scanner = RowScanner([('id', 'UInt64'), ('name', 'String')])

        with pytest.raises(ValueError, match='2 columns'):
            scanner.scan((1,))
