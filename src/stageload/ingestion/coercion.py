"""
Type coercion of decoded fields into declared column types.

Delimited files produce strings (or None for absent values); JSON files
produce trees. Both are coerced through the same rules so a column's
declared type means the same thing regardless of source format.
"""

import json
import math
import re
from collections.abc import Sequence
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from stageload.config.settings import AUTO, ColumnSpec, ColumnType, FileFormat, TableSchema
from stageload.errors import ConstraintViolation, TypeCoercionError

_TRUE = frozenset({"true", "t", "yes", "y", "on", "1"})
_FALSE = frozenset({"false", "f", "no", "n", "off", "0"})
_INTEGER = re.compile(r"^[+-]?\d+$")
_EPOCH = re.compile(r"^\d{9,19}$")

# Storage bounds: Int64 columns and datetime64[ns] columns, at microsecond precision
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_DATETIME_MIN = datetime(1677, 9, 21, 0, 12, 43, 145225)
_DATETIME_MAX = datetime(2262, 4, 11, 23, 47, 16, 854775)


def _iso_patterns() -> list[str]:
    patterns: list[str] = []
    for sep in (" ", "T"):
        for seconds in (":%S.%f", ":%S", ""):
            for tz in ("", "%z"):
                patterns.append(f"%Y-%m-%d{sep}%H:%M{seconds}{tz}")
    return patterns


# Ordered: the first pattern that parses wins. Day-first slash dates are
# never tried, so no string is accepted by two patterns with different meanings.
AUTO_DATE_FORMATS: tuple[str, ...] = ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d", "%d-%b-%Y")
AUTO_TIMESTAMP_FORMATS: tuple[str, ...] = (
    *_iso_patterns(),
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%a, %d %b %Y %H:%M:%S %z",
)

# Warehouse-style format tokens, longest first.
_SQL_TOKENS: tuple[tuple[str, str], ...] = (
    ("YYYY", "%Y"),
    ("HH24", "%H"),
    ("HH12", "%I"),
    ("MON", "%b"),
    ("DY", "%a"),
    ("FF", "%f"),
    ("TZH:TZM", "%z"),
    ("AM", "%p"),
    ("PM", "%p"),
    ("YY", "%y"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("HH", "%H"),
    ("MI", "%M"),
    ("SS", "%S"),
)


def to_strptime(pattern: str) -> str:
    """
    Translate a warehouse format string (YYYY-MM-DD HH24:MI:SS) to strptime.

    Patterns already containing '%' are returned unchanged.
    """
    if "%" in pattern:
        return pattern
    out: list[str] = []
    i = 0
    while i < len(pattern):
        for token, directive in _SQL_TOKENS:
            if pattern.startswith(token, i):
                out.append(directive)
                i += len(token)
                break
        else:
            out.append(pattern[i])
            i += 1
    return "".join(out)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_epoch(text: str) -> datetime:
    number = int(text)
    digits = len(text)
    if digits <= 10:
        seconds = float(number)
    elif digits <= 13:
        seconds = number / 1_000
    elif digits <= 16:
        seconds = number / 1_000_000
    else:
        seconds = number / 1_000_000_000
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def parse_temporal(text: str, pattern: str, *, date_only: bool) -> datetime:
    """
    Parse a date or timestamp string.

    Args:
        text: Field text.
        pattern: AUTO or an explicit format.
        date_only: Truncate to midnight (DATE columns).

    Returns:
        Naive UTC datetime.

    Raises:
        ValueError: If no format matches.
    """
    text = text.strip()
    if pattern.upper() != AUTO:
        parsed = _naive_utc(datetime.strptime(text, to_strptime(pattern)))
    else:
        parsed = None
        if not date_only and _EPOCH.match(text):
            parsed = _from_epoch(text)
        candidates = AUTO_DATE_FORMATS if date_only else AUTO_TIMESTAMP_FORMATS
        for fmt in candidates:
            if parsed is not None:
                break
            try:
                parsed = _naive_utc(datetime.strptime(text, fmt))
            except ValueError:
                continue
        if parsed is None:
            msg = f"no known {'date' if date_only else 'timestamp'} format matches {text!r}"
            raise ValueError(msg)
    if date_only:
        return datetime(parsed.year, parsed.month, parsed.day)
    return parsed


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        msg = "boolean is not an integer"
        raise ValueError(msg)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            msg = f"{value!r} has a fractional part"
            raise ValueError(msg)
        return int(value)
    text = _to_string(value).strip()
    if _INTEGER.match(text):
        return int(text)
    try:
        number = Decimal(text)
    except InvalidOperation as e:
        msg = f"{text!r} is not a number"
        raise ValueError(msg) from e
    if not number.is_finite() or number != number.to_integral_value():
        msg = f"{text!r} is not an integer"
        raise ValueError(msg)
    return int(number)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        msg = "boolean is not a number"
        raise ValueError(msg)
    number = float(value) if isinstance(value, int | float) else float(_to_string(value).strip())
    if not math.isfinite(number):
        msg = f"{value!r} is not a finite number"
        raise ValueError(msg)
    return number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = _to_string(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    msg = f"{value!r} is not a boolean"
    raise ValueError(msg)


def _to_variant(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _convert(value: Any, column_type: ColumnType, date_format: str, timestamp_format: str) -> Any:
    if column_type == ColumnType.STRING:
        return _to_string(value)
    if column_type == ColumnType.INTEGER:
        return _to_integer(value)
    if column_type == ColumnType.NUMBER:
        return _to_number(value)
    if column_type == ColumnType.BOOLEAN:
        return _to_boolean(value)
    if column_type == ColumnType.DATE:
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return parse_temporal(_to_string(value), date_format, date_only=True)
    if column_type == ColumnType.TIMESTAMP:
        if isinstance(value, datetime):
            return _naive_utc(value)
        if isinstance(value, int | float) and not isinstance(value, bool):
            return _from_epoch(str(int(value)))
        return parse_temporal(_to_string(value), timestamp_format, date_only=False)
    return _to_variant(value)


def _check_range(value: Any, column_type: ColumnType) -> Any:
    """Reject values the column's pandas dtype cannot hold."""
    if column_type == ColumnType.INTEGER:
        if not _INT64_MIN <= value <= _INT64_MAX:
            msg = "integer out of 64-bit range"
            raise ValueError(msg)
    elif column_type in (ColumnType.DATE, ColumnType.TIMESTAMP):
        if not _DATETIME_MIN <= value <= _DATETIME_MAX:
            msg = f"outside the storable range {_DATETIME_MIN} .. {_DATETIME_MAX}"
            raise ValueError(msg)
    return value


def coerce_value(
    value: Any,
    column: ColumnSpec,
    *,
    date_format: str = AUTO,
    timestamp_format: str = AUTO,
) -> Any:
    """
    Coerce one field to its column's declared type.

    Args:
        value: Decoded field (string, JSON value, or None when absent).
        column: Target column.
        date_format: AUTO or explicit format for DATE columns.
        timestamp_format: AUTO or explicit format for TIMESTAMP columns.

    Returns:
        Python value suitable for the column's pandas dtype, or None.

    Raises:
        ConstraintViolation: If None lands in a not-null column.
        TypeCoercionError: If the value cannot be cast.
    """
    if value is None:
        if not column.nullable:
            msg = f"NULL result in a non-nullable column '{column.name}'"
            raise ConstraintViolation(msg, column=column.name)
        return None

    try:
        converted = _convert(value, column.type, date_format, timestamp_format)
        return _check_range(converted, column.type)
    except (ValueError, TypeError, OverflowError) as e:
        msg = f"Cannot convert {value!r} to {column.type.value} for column '{column.name}': {e}"
        raise TypeCoercionError(msg, column=column.name) from e


class RowCoercer:
    """Coerces whole rows for one (schema, format) pair."""

    def __init__(self, schema: TableSchema, file_format: FileFormat) -> None:
        self.schema = schema
        self._date_format = file_format.date_format
        self._timestamp_format = file_format.timestamp_format

    def coerce(self, values: Sequence[Any]) -> tuple[Any, ...]:
        """
        Coerce positional fields; raises the first column's RowError.

        The caller guarantees len(values) == schema width.
        """
        return tuple(
            coerce_value(
                value,
                column,
                date_format=self._date_format,
                timestamp_format=self._timestamp_format,
            )
            for value, column in zip(values, self.schema.columns, strict=True)
        )

