import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Union


class ColumnType(str, Enum):
    INTEGER = "integer"
    DECIMAL = "decimal"
    TIMESTAMP = "timestamp"
    DATE = "date"
    TEXT = "text"


# -------------------------------------------------------
# Parsed cell values (closed set, produced by parse_value)
# -------------------------------------------------------
@dataclass(frozen=True)
class IntegerValue:
    raw: str
    value: int


@dataclass(frozen=True)
class DecimalValue:
    raw: str
    value: Decimal


@dataclass(frozen=True)
class TimestampValue:
    raw: str
    value: datetime


@dataclass(frozen=True)
class DateValue:
    raw: str
    value: date


@dataclass(frozen=True)
class TextValue:
    raw: str


ParsedValue = Union[IntegerValue, DecimalValue, TimestampValue, DateValue, TextValue]


_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_DECIMAL_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?$"
)


def _parse_timestamp(text: str) -> Optional[datetime]:
    if not _TIMESTAMP_RE.match(text):
        return None
    # fromisoformat only learned "Z" in 3.11
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _parse_date(text: str) -> Optional[date]:
    if not _DATE_RE.match(text):
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def parse_value(raw: Optional[str]) -> Optional[ParsedValue]:
    """
    Classify one raw CSV cell. Empty cells are null and return None.
    The original text is kept on every value; nothing is rounded.
    """
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None

    if _INTEGER_RE.match(text):
        return IntegerValue(raw=raw, value=int(text))
    if _DECIMAL_RE.match(text):
        try:
            return DecimalValue(raw=raw, value=Decimal(text))
        except InvalidOperation:
            return TextValue(raw=raw)

    ts = _parse_timestamp(text)
    if ts is not None:
        return TimestampValue(raw=raw, value=ts)

    d = _parse_date(text)
    if d is not None:
        return DateValue(raw=raw, value=d)

    return TextValue(raw=raw)


def is_integer(value: ParsedValue) -> bool:
    return isinstance(value, IntegerValue)


def is_numeric(value: ParsedValue) -> bool:
    return isinstance(value, (IntegerValue, DecimalValue))


def is_timestamp(value: ParsedValue) -> bool:
    return isinstance(value, TimestampValue)


def is_date(value: ParsedValue) -> bool:
    return isinstance(value, DateValue)


# Ordered narrowest first; first predicate every value satisfies wins
_TYPE_CHECKS: Sequence[tuple] = (
    (ColumnType.INTEGER, is_integer),
    (ColumnType.DECIMAL, is_numeric),
    (ColumnType.TIMESTAMP, is_timestamp),
    (ColumnType.DATE, is_date),
)


def infer_column_type(raw_values: Iterable[Optional[str]]) -> ColumnType:
    """
    Narrowest ColumnType consistent with every non-null value of a column.
    A column without any non-null value is TEXT.
    """
    parsed: List[ParsedValue] = []
    for raw in dict.fromkeys(raw_values):
        value = parse_value(raw)
        if value is not None:
            parsed.append(value)

    if not parsed:
        return ColumnType.TEXT

    for column_type, check in _TYPE_CHECKS:
        if all(check(v) for v in parsed):
            return column_type
    return ColumnType.TEXT


def infer_column_types(rows: Sequence[Sequence[Optional[str]]], width: int) -> List[ColumnType]:
    """
    One type per column position. Short rows count as nulls for the
    missing trailing cells.
    """
    return [
        infer_column_type(row[i] if i < len(row) else None for row in rows)
        for i in range(width)
    ]
