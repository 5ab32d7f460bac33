"""
Format encoding: typed rows -> delimited or JSON text.

The inverse of the decoder, used to unload tables to files. Values are
enclosed whenever their plain form would decode differently (delimiters,
quotes, newlines, or a collision with a null sentinel).
"""

import json
import math
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

import numpy as np
import pandas as pd

from stageload.config.settings import ColumnType, FileFormat, FormatType, TableSchema


def _is_absent(value: Any) -> bool:
    if value is None or value is pd.NaT or value is pd.NA:
        return True
    return isinstance(value, float) and math.isnan(value)


def _native(value: Any) -> Any:
    """Unwrap numpy scalars into Python values."""
    return value.item() if isinstance(value, np.generic) else value


def _plain(value: Any, column_type: ColumnType | None) -> str:
    """Canonical text form of a typed value."""
    value = _native(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime | pd.Timestamp):
        if column_type == ColumnType.DATE:
            return value.strftime("%Y-%m-%d")
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


class DelimitedEncoder:
    """Encodes rows for one delimited FileFormat."""

    def __init__(self, file_format: FileFormat) -> None:
        if file_format.type != FormatType.CSV:
            msg = f"Format '{file_format.name}' is not a delimited format"
            raise ValueError(msg)
        self.file_format = file_format

    @property
    def null_text(self) -> str:
        """Text written for absent values."""
        fmt = self.file_format
        if fmt.null_if:
            return fmt.null_if[0]
        if fmt.empty_field_as_null:
            return ""
        msg = f"Format '{fmt.name}' has no way to express NULL"
        raise ValueError(msg)

    def _needs_enclosing(self, text: str) -> bool:
        fmt = self.file_format
        specials = {fmt.field_delimiter, "\n", "\r"}
        if fmt.field_optionally_enclosed_by:
            specials.add(fmt.field_optionally_enclosed_by)
        if fmt.escape and fmt.escape_unenclosed_field:
            specials.add(fmt.escape)
        if any(ch in text for ch in specials):
            return True
        if text in fmt.null_if or (text == "" and fmt.empty_field_as_null):
            return True
        return fmt.trim_space and text != text.strip(" \t")

    def encode_field(self, value: Any, column_type: ColumnType | None = None) -> str:
        """
        Encode one value.

        Raises:
            ValueError: If the value cannot be written unambiguously.
        """
        if _is_absent(value):
            return self.null_text

        fmt = self.file_format
        text = _plain(value, column_type)
        if not self._needs_enclosing(text):
            return text

        quote = fmt.field_optionally_enclosed_by
        if quote is None:
            msg = (
                f"Value {text!r} collides with format '{fmt.name}' delimiters or null "
                "sentinels and the format has no quote character"
            )
            raise ValueError(msg)
        if fmt.escape:
            text = text.replace(fmt.escape, fmt.escape * 2)
        return quote + text.replace(quote, quote * 2) + quote

    def encode(
        self,
        rows: Iterable[Sequence[Any]],
        *,
        header: Sequence[str] | None = None,
        types: Sequence[ColumnType] | None = None,
    ) -> str:
        """
        Encode rows into one delimited document.

        Args:
            rows: Row tuples in column order.
            header: Column names written as the header record when the
                format skips header records.
            types: Declared column types (controls DATE rendering).

        Returns:
            Encoded text, every record terminated.

        Raises:
            ValueError: If the format skips header records and no header is given.
        """
        fmt = self.file_format
        lines: list[str] = []
        if fmt.skip_header > 0:
            if header is None:
                msg = (
                    f"Format '{fmt.name}' skips {fmt.skip_header} header record(s); "
                    "a header is required to encode it"
                )
                raise ValueError(msg)
            lines.append(fmt.field_delimiter.join(self.encode_field(h) for h in header))
            lines.extend("" for _ in range(fmt.skip_header - 1))
        for row in rows:
            col_types: Sequence[ColumnType | None] = types or [None] * len(row)
            lines.append(
                fmt.field_delimiter.join(
                    self.encode_field(v, t) for v, t in zip(row, col_types, strict=True)
                )
            )
        return "".join(line + fmt.record_delimiter for line in lines)


def encode_rows(
    rows: Iterable[Sequence[Any]],
    file_format: FileFormat,
    schema: TableSchema | None = None,
) -> str:
    """
    Encode typed rows under a file format.

    Delimited formats write a header record when the format skips one;
    JSON formats write newline-delimited objects keyed by column name.

    Args:
        rows: Row tuples in schema column order.
        file_format: Target format.
        schema: Column names and types (required for JSON).

    Returns:
        Encoded document.
    """
    if file_format.type == FormatType.JSON:
        if schema is None:
            msg = "JSON encoding needs a schema for column names"
            raise ValueError(msg)
        out: list[str] = []
        for row in rows:
            doc = {
                col.name: _json_value(v, col.type) for col, v in zip(schema.columns, row, strict=True)
            }
            out.append(json.dumps(doc, sort_keys=False))
        return "".join(line + "\n" for line in out)

    encoder = DelimitedEncoder(file_format)
    return encoder.encode(
        rows,
        header=schema.column_names if schema else None,
        types=[c.type for c in schema.columns] if schema else None,
    )


def _json_value(value: Any, column_type: ColumnType) -> Any:
    if _is_absent(value):
        return None
    value = _native(value)
    if column_type == ColumnType.VARIANT:
        return value
    if isinstance(value, bool | int | float | str):
        return value
    return _plain(value, column_type)
