"""
Row Type Inference Module

ClickHouse reports a type string per result column (e.g. "Nullable(Int64)",
"Array(String)", "Map(String, UInt64)"). This module turns that metadata into
a small closed set of scan shapes, built once per extraction, and uses them to
scan every subsequent row of the same result set into fresh typed values.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID
import logging
import re

logger = logging.getLogger(__name__)


class ScanKind(Enum):
    SCALAR = "scalar"
    OPTIONAL = "optional"
    SEQUENCE = "sequence"
    MAPPING = "mapping"


# Zero values for scalar Python types produced by clickhouse-driver
ZERO_VALUES = {
    int: 0,
    float: 0.0,
    str: '',
    bool: False,
    Decimal: Decimal(0),
    date: date(1970, 1, 1),
    datetime: datetime(1970, 1, 1),
    UUID: UUID(int=0),
    IPv4Address: IPv4Address('0.0.0.0'),
    IPv6Address: IPv6Address('::'),
    tuple: (),
}

_INT_PATTERN = re.compile(r'^U?Int(8|16|32|64|128|256)$')
_DECIMAL_PATTERN = re.compile(r'^Decimal(32|64|128|256)?$')

# Wrappers that do not change how a value is scanned
_TRANSPARENT_WRAPPERS = ('LowCardinality',)


class ScanType:
    """
    Scan shape of one result column.

    kind SCALAR uses python_type; OPTIONAL and SEQUENCE use inner;
    MAPPING uses key and value.
    """

    def __init__(
        self,
        kind: ScanKind,
        type_name: str,
        python_type: Optional[type] = None,
        inner: Optional["ScanType"] = None,
        key: Optional["ScanType"] = None,
        value: Optional["ScanType"] = None,
    ):
        self.kind = kind
        self.type_name = type_name
        self.python_type = python_type
        self.inner = inner
        self.key = key
        self.value = value

    def __repr__(self) -> str:
        return f"ScanType({self.kind.value}, {self.type_name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScanType):
            return NotImplemented
        return (
            self.kind == other.kind
            and self.python_type == other.python_type
            and self.inner == other.inner
            and self.key == other.key
            and self.value == other.value
        )

    @property
    def nullable(self) -> bool:
        return self.kind is ScanKind.OPTIONAL

    def prototype(self) -> Any:
        """
        Reusable prototype value for this column.

        Optional columns unwrap one level and use the inner zero value,
        sequences an empty list, mappings an empty dict.
        """
        if self.kind is ScanKind.OPTIONAL:
            return self.inner.prototype()
        if self.kind is ScanKind.SEQUENCE:
            return []
        if self.kind is ScanKind.MAPPING:
            return {}
        return ZERO_VALUES.get(self.python_type, '')

    def scan(self, value: Any) -> Any:
        """Allocate a fresh value of this shape from a driver value."""
        if value is None:
            if self.kind is ScanKind.OPTIONAL:
                return None
            return self.prototype()

        if self.kind is ScanKind.OPTIONAL:
            return self.inner.scan(value)
        if self.kind is ScanKind.SEQUENCE:
            return [self.inner.scan(item) for item in value]
        if self.kind is ScanKind.MAPPING:
            return {self.key.scan(k): self.value.scan(v) for k, v in dict(value).items()}
        if self.python_type is tuple and isinstance(value, list):
            return tuple(value)
        return value


def split_type_arguments(arguments: str) -> List[str]:
    """
    Split the inside of a parameterised type on top-level commas.

    Example:
        "String, Array(Nullable(UInt8))" -> ["String", "Array(Nullable(UInt8))"]
    """
    parts = []
    depth = 0
    quoted = False
    current = []
    for char in arguments:
        if char == "'" and (not current or current[-1] != '\\'):
            quoted = not quoted
        elif not quoted and char == '(':
            depth += 1
        elif not quoted and char == ')':
            depth -= 1
        elif not quoted and char == ',' and depth == 0:
            parts.append(''.join(current).strip())
            current = []
            continue
        current.append(char)
    tail = ''.join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _split_type(type_name: str) -> Tuple[str, List[str]]:
    """Split a type into its base name and arguments: Map(String, UInt64) -> ('Map', [...])."""
    type_name = type_name.strip()
    paren = type_name.find('(')
    if paren == -1 or not type_name.endswith(')'):
        return type_name, []
    return type_name[:paren].strip(), split_type_arguments(type_name[paren + 1:-1])


def _scalar_python_type(base: str, arguments: List[str]) -> type:
    if _INT_PATTERN.match(base):
        return int
    if base in ('Float32', 'Float64'):
        return float
    if _DECIMAL_PATTERN.match(base):
        return Decimal
    if base in ('String', 'FixedString') or base.startswith('Enum'):
        return str
    if base in ('Date', 'Date32'):
        return date
    if base in ('DateTime', 'DateTime64'):
        return datetime
    if base == 'UUID':
        return UUID
    if base == 'Bool':
        return bool
    if base == 'IPv4':
        return IPv4Address
    if base == 'IPv6':
        return IPv6Address
    if base == 'Tuple':
        return tuple

    logger.warning(f"Unknown ClickHouse type '{base}', scanning as string")
    return str


def parse_scan_type(type_name: str) -> ScanType:
    """
    Build the scan shape for a ClickHouse type string.

    Args:
        type_name: Type as reported by the server, e.g. "Nullable(DateTime64(3, 'UTC'))"

    Returns:
        ScanType describing how to scan values of that column
    """
    base, arguments = _split_type(type_name)

    if base in _TRANSPARENT_WRAPPERS and arguments:
        return parse_scan_type(arguments[0])

    if base == 'SimpleAggregateFunction' and len(arguments) == 2:
        return parse_scan_type(arguments[1])

    if base == 'Nullable' and arguments:
        return ScanType(ScanKind.OPTIONAL, type_name, inner=parse_scan_type(arguments[0]))

    if base == 'Array' and arguments:
        return ScanType(ScanKind.SEQUENCE, type_name, inner=parse_scan_type(arguments[0]))

    if base == 'Map' and len(arguments) == 2:
        return ScanType(
            ScanKind.MAPPING,
            type_name,
            key=parse_scan_type(arguments[0]),
            value=parse_scan_type(arguments[1]),
        )

    return ScanType(ScanKind.SCALAR, type_name, python_type=_scalar_python_type(base, arguments))


def infer_scan_types(columns: Sequence[Tuple[str, str]]) -> List[ScanType]:
    """
    Infer one scan shape per result column.

    Args:
        columns: (name, type) pairs as returned with with_column_types=True

    Returns:
        List of ScanType aligned with the columns
    """
    logger.info("Guessing scan types from column metadata")
    scan_types = []
    for index, (name, type_name) in enumerate(columns):
        scan_type = parse_scan_type(type_name)
        scan_types.append(scan_type)
        logger.debug(
            f"Guessed scan type: index={index} name={name} type={type_name} kind={scan_type.kind.value}"
        )
    return scan_types


class RowScanner:
    """
    Scans rows of one result set into fresh tuples using the inferred shapes.

    The shapes are inferred once (on the first row) and reused for every
    following row of the same extraction.
    """

    def __init__(self, columns: Sequence[Tuple[str, str]]):
        self.column_names = [name for name, _ in columns]
        self.scan_types = infer_scan_types(columns)

    @property
    def prototypes(self) -> List[Any]:
        return [scan_type.prototype() for scan_type in self.scan_types]

    def scan(self, row: Sequence[Any]) -> Tuple[Any, ...]:
        """
        Scan one driver row.

        Raises:
            ValueError: If the row width does not match the inferred shape
        """
        if len(row) != len(self.scan_types):
            raise ValueError(
                f"Row has {len(row)} values but {len(self.scan_types)} columns were inferred"
            )
        return tuple(scan_type.scan(value) for scan_type, value in zip(self.scan_types, row))

    def scan_all(self, rows: Iterable[Sequence[Any]]) -> List[Tuple[Any, ...]]:
        return [self.scan(row) for row in rows]
