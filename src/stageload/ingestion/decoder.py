"""
Format decoding: raw bytes -> RawRow sequence.

Delimited text is tokenized by a small state machine so quoting,
escaping and null sentinels follow the options of each named
FileFormat rather than a global dialect. JSON files are read as a
sequence of top-level documents, with optional outer-array unwrapping.
"""

import io
import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, BinaryIO

from stageload.config.settings import FileFormat, FormatType
from stageload.errors import ColumnCountMismatch, DecodeError, RowError
from stageload.utils.logging import get_logger

log = get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class RawRow:
    """
    One decoded record.

    Delimited records carry ``fields`` (strings, or None for absent
    values); JSON records carry a tree-shaped ``document``. A record that
    failed to decode carries ``error`` and whatever was recovered.
    """

    uri: str
    record: int
    fields: tuple[str | None, ...] = ()
    document: Any = None
    error: RowError | None = None

    @property
    def original(self) -> Any:
        """Original decoded values, for rejection reports."""
        return self.fields if self.fields else self.document


@dataclass
class _Field:
    text: str
    quoted: bool


class _DelimitedTokenizer:
    """Character-level tokenizer for one delimited stream."""

    def __init__(self, file_format: FileFormat) -> None:
        self.delimiter = file_format.field_delimiter
        self.quote = file_format.field_optionally_enclosed_by
        self.escape = file_format.escape
        self.escape_unenclosed = file_format.escape_unenclosed_field
        self.trim = file_format.trim_space

    def records(self, text: io.TextIOBase) -> Iterator[tuple[list[_Field], str | None]]:
        """
        Yield (fields, error message) per record.

        A record terminates at an unquoted newline; a preceding carriage
        return is dropped. The final record need not be terminated.
        """
        fields: list[_Field] = []
        buf: list[str] = []
        quoted = False  # current field was enclosed
        in_quotes = False
        quote_seen = False  # a quote inside quotes, awaiting its follower
        escaped = False
        cr_pending = False
        at_start = True  # nothing but optional blanks consumed for this field
        record_open = False

        def end_field() -> None:
            nonlocal buf, quoted, at_start
            fields.append(_Field("".join(buf), quoted))
            buf = []
            quoted = False
            at_start = True

        while chunk := text.read(_CHUNK_SIZE):
            for c in chunk:
                record_open = True
                if cr_pending:
                    cr_pending = False
                    if c != "\n":
                        buf.append("\r")
                        at_start = False

                if in_quotes:
                    if escaped:
                        buf.append(c)
                        escaped = False
                    elif quote_seen:
                        quote_seen = False
                        if c == self.quote:
                            buf.append(c)
                            continue
                        in_quotes = False
                        # fall through: c follows the closing quote
                    elif self.escape is not None and c == self.escape:
                        escaped = True
                        continue
                    elif c == self.quote:
                        quote_seen = True
                        continue
                    else:
                        buf.append(c)
                        continue
                    if in_quotes:
                        continue

                if escaped:
                    buf.append(c)
                    escaped = False
                    at_start = False
                elif c == self.delimiter:
                    end_field()
                elif c == "\n":
                    end_field()
                    yield fields, None
                    fields = []
                    record_open = False
                elif c == "\r":
                    cr_pending = True
                elif self.escape_unenclosed and self.escape is not None and c == self.escape:
                    escaped = True
                elif self.quote is not None and c == self.quote and at_start and not quoted:
                    in_quotes = True
                    quoted = True
                    if self.trim:
                        buf = []
                elif quoted:
                    # text after a closing quote: blanks are dropped, anything else kept
                    if c not in " \t":
                        buf.append(c)
                elif self.trim and at_start and c in " \t":
                    buf.append(c)
                else:
                    buf.append(c)
                    at_start = False

        if in_quotes and not quote_seen:
            end_field()
            yield fields, "unterminated quoted field at end of file"
            return
        if cr_pending and not in_quotes:
            buf.append("\r")
        if record_open:
            end_field()
            yield fields, None


class FormatDecoder:
    """
    Decodes staged files under one FileFormat.

    ``decode`` is a generator: nothing is read until iteration starts, and
    a fresh call on the same bytes yields the same sequence.
    """

    def __init__(self, file_format: FileFormat) -> None:
        self.file_format = file_format

    def decode(
        self,
        stream: BinaryIO,
        *,
        uri: str = "<stream>",
        expected_columns: int | None = None,
    ) -> Iterator[RawRow]:
        """
        Decode a binary stream into RawRows.

        Args:
            stream: Binary file stream.
            uri: Source URI recorded on every row.
            expected_columns: Target schema width for column-count checks
                (delimited formats only).

        Yields:
            RawRow per data record.
        """
        if self.file_format.type == FormatType.JSON:
            yield from self._decode_json(stream, uri)
        else:
            yield from self._decode_delimited(stream, uri, expected_columns)

    # -- delimited ---------------------------------------------------------

    def _finish_field(self, field: _Field) -> str | None:
        fmt = self.file_format
        if field.quoted:
            return field.text
        text = field.text.strip(" \t") if fmt.trim_space else field.text
        if text in fmt.null_if:
            return None
        if text == "" and fmt.empty_field_as_null:
            return None
        return text

    def _fit_width(self, values: list[str | None], expected: int) -> list[str | None]:
        """Pad with nulls on the right or truncate from the right."""
        if len(values) < expected:
            return values + [None] * (expected - len(values))
        return values[:expected]

    def _decode_delimited(
        self, stream: BinaryIO, uri: str, expected_columns: int | None
    ) -> Iterator[RawRow]:
        fmt = self.file_format
        text = io.TextIOWrapper(stream, encoding=fmt.encoding, newline="")
        tokenizer = _DelimitedTokenizer(fmt)
        record = 0
        try:
            for raw_fields, problem in tokenizer.records(text):
                record += 1
                if record <= fmt.skip_header:
                    continue
                if (
                    fmt.skip_blank_lines
                    and len(raw_fields) == 1
                    and not raw_fields[0].quoted
                    and raw_fields[0].text.strip() == ""
                ):
                    continue

                values = [self._finish_field(f) for f in raw_fields]
                if problem is not None:
                    yield RawRow(uri, record, tuple(values), error=DecodeError(problem))
                    continue

                error: RowError | None = None
                if expected_columns is not None and len(values) != expected_columns:
                    if fmt.error_on_column_count_mismatch:
                        msg = (
                            f"Number of columns in file ({len(values)}) does not match "
                            f"that of the corresponding table ({expected_columns})"
                        )
                        error = ColumnCountMismatch(msg)
                    else:
                        values = self._fit_width(values, expected_columns)
                yield RawRow(uri, record, tuple(values), error=error)
        except UnicodeDecodeError as e:
            msg = f"Invalid {fmt.encoding} byte sequence after record {record}: {e.reason}"
            yield RawRow(uri, record + 1, error=DecodeError(msg))
        finally:
            text.detach()

    # -- JSON --------------------------------------------------------------

    def _decode_json(self, stream: BinaryIO, uri: str) -> Iterator[RawRow]:
        fmt = self.file_format
        try:
            content = stream.read().decode(fmt.encoding)
        except UnicodeDecodeError as e:
            msg = f"Invalid {fmt.encoding} byte sequence: {e.reason}"
            yield RawRow(uri, 1, error=DecodeError(msg))
            return

        decoder = json.JSONDecoder()
        record = 0
        pos = 0
        end = len(content)
        while True:
            while pos < end and content[pos] in " \t\r\n":
                pos += 1
            if pos >= end:
                break
            try:
                document, pos = decoder.raw_decode(content, pos)
            except json.JSONDecodeError as e:
                record += 1
                msg = f"Malformed JSON at line {e.lineno} column {e.colno}: {e.msg}"
                next_line = content.find("\n", pos)
                snippet = content[pos : next_line if next_line != -1 else end]
                yield RawRow(uri, record, fields=(snippet,), error=DecodeError(msg))
                if next_line == -1:
                    break
                pos = next_line + 1
                continue

            if fmt.strip_outer_array and isinstance(document, list):
                for element in document:
                    record += 1
                    yield self._json_row(uri, record, element)
            else:
                record += 1
                yield self._json_row(uri, record, document)

        log.debug("Decoded JSON file", uri=uri, records=record)

    @staticmethod
    def _json_row(uri: str, record: int, document: Any) -> RawRow:
        if document is None:
            return RawRow(uri, record, error=DecodeError("JSON document is null"))
        return RawRow(uri, record, document=document)
