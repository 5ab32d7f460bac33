"""
Load execution: RawRows -> typed rows appended to a table.

A load invocation decodes each staged file, coerces every record into
the target schema and applies the error policy to rejected records.
Accepted rows are buffered and appended in a single commit while the
table's append lock is held, so readers never observe a half-finished
load.
"""

import io
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO

import pandas as pd

from stageload.config.settings import ErrorPolicy, FileFormat, FormatType, TableSchema
from stageload.errors import ConfigError, RowError
from stageload.ingestion.coercion import RowCoercer
from stageload.ingestion.decoder import FormatDecoder, RawRow
from stageload.ingestion.paths import extract_path
from stageload.schemas.load import FileLoadSchema, RejectionSchema
from stageload.schemas.registry import pandas_dtype
from stageload.storage.store import TableStore
from stageload.utils.hashing import hash_bytes
from stageload.utils.logging import get_logger, log_context

log = get_logger(__name__)

Opener = Callable[[str], BinaryIO]


class LoadStatus(str, Enum):
    """Overall outcome of a load invocation."""

    SUCCESS = "success"
    PARTIAL = "partial_success"
    FAILURE = "failure"


class FileStatus(str, Enum):
    """Outcome for one staged file."""

    LOADED = "loaded"
    PARTIALLY_LOADED = "partially_loaded"
    LOAD_FAILED = "load_failed"
    SKIPPED = "skipped"
    ALREADY_LOADED = "already_loaded"


@dataclass(frozen=True)
class Rejection:
    """A record that was not loaded, with its original values."""

    uri: str
    record: int
    kind: str
    message: str
    column: str | None
    values: Any

    @classmethod
    def from_row(cls, row: RawRow, error: RowError) -> "Rejection":
        """Build a rejection from a decoded row and its error."""
        return cls(
            uri=row.uri,
            record=row.record,
            kind=error.kind,
            message=str(error),
            column=error.column,
            values=row.original,
        )

    def reason(self) -> str:
        """One-line description: file, record and message."""
        return f"{self.uri}:{self.record}: {self.message}"


@dataclass
class FileLoadResult:
    """Per-file counters of a load invocation."""

    uri: str
    status: FileStatus = FileStatus.LOADED
    rows_parsed: int = 0
    rows_loaded: int = 0
    errors_seen: int = 0
    first_error: str | None = None
    checksum: str = ""


@dataclass
class LoadResult:
    """
    Audit record of one load invocation.

    Every attempted row ends up inserted, rejected, or discarded (kept
    back because an ABORT rolled the invocation back).
    """

    table: str
    policy: ErrorPolicy
    attempted: int = 0
    inserted: int = 0
    rejected: int = 0
    discarded: int = 0
    aborted: bool = False
    files: list[FileLoadResult] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)
    max_reported_errors: int = 100

    @property
    def status(self) -> LoadStatus:
        """success, partial_success or failure."""
        if self.aborted:
            return LoadStatus.FAILURE
        if self.rejected == 0:
            return LoadStatus.SUCCESS
        if self.inserted > 0:
            return LoadStatus.PARTIAL
        return LoadStatus.FAILURE

    @property
    def first_error(self) -> Rejection | None:
        """The first rejection, if any."""
        return self.rejections[0] if self.rejections else None

    @property
    def reasons(self) -> list[str]:
        """The first max_reported_errors rejection reasons."""
        return [r.reason() for r in self.rejections[: self.max_reported_errors]]

    def rejections_frame(self) -> pd.DataFrame:
        """Rejections as a validated DataFrame."""
        frame = pd.DataFrame(
            {
                "file": [r.uri for r in self.rejections],
                "record": [r.record for r in self.rejections],
                "kind": [r.kind for r in self.rejections],
                "column": [r.column for r in self.rejections],
                "message": [r.message for r in self.rejections],
                "values": [repr(r.values) for r in self.rejections],
            }
        )
        return RejectionSchema.validate(frame)

    def files_frame(self) -> pd.DataFrame:
        """Per-file results as a validated DataFrame."""
        frame = pd.DataFrame(
            {
                "file": [f.uri for f in self.files],
                "status": [f.status.value for f in self.files],
                "rows_parsed": [f.rows_parsed for f in self.files],
                "rows_loaded": [f.rows_loaded for f in self.files],
                "errors_seen": [f.errors_seen for f in self.files],
                "first_error": [f.first_error for f in self.files],
            }
        )
        return FileLoadSchema.validate(frame)

    def summary(self) -> dict[str, Any]:
        """Counters and status for logging and display."""
        return {
            "table": self.table,
            "status": self.status.value,
            "policy": self.policy.value,
            "files": len(self.files),
            "attempted": self.attempted,
            "inserted": self.inserted,
            "rejected": self.rejected,
            "discarded": self.discarded,
        }


class LoadExecutor:
    """
    Applies decoded rows to a target table under an error policy.

    Policies:
        ABORT: stop at the first rejected row; nothing from the invocation
            is committed.
        CONTINUE: record the rejection and keep going.
        SKIP_FILE: record the rejection and abandon the rest of the current
            file; rows of that file before the failure are kept.
    """

    def __init__(
        self,
        store: TableStore,
        opener: Opener,
        *,
        max_reported_errors: int = 100,
    ) -> None:
        """
        Initialize the executor.

        Args:
            store: Table store rows are appended to.
            opener: Opens a file URI as a binary stream.
            max_reported_errors: Rejection reasons kept in summaries.
        """
        self.store = store
        self.opener = opener
        self.max_reported_errors = max_reported_errors

    def _ensure_table(self, schema: TableSchema) -> None:
        registry = self.store.registry
        if schema.name in registry:
            if registry.get(schema.name) != schema:
                msg = f"Table '{schema.name}' is registered with a different definition"
                raise ConfigError(msg)
        else:
            registry.register(schema)
        self.store.create_table(schema.name)

    @staticmethod
    def _row_values(row: RawRow, schema: TableSchema, file_format: FileFormat) -> Sequence[Any]:
        if file_format.type == FormatType.CSV:
            return row.fields
        if schema.is_single_variant:
            return (row.document,)
        return tuple(extract_path(row.document, col.path or col.name) for col in schema.columns)

    def _to_frame(self, schema: TableSchema, rows: list[tuple[Any, ...]]) -> pd.DataFrame:
        data: dict[str, pd.Series] = {}
        for i, col in enumerate(schema.columns):
            series = pd.Series([r[i] for r in rows], dtype=object)
            dtype = pandas_dtype(col.type)
            data[col.name] = series.astype(dtype) if dtype is not None else series
        return pd.DataFrame(data, columns=schema.column_names)

    def load(
        self,
        schema: TableSchema,
        uris: Sequence[str],
        file_format: FileFormat,
        policy: ErrorPolicy = ErrorPolicy.ABORT,
        *,
        force: bool = False,
    ) -> LoadResult:
        """
        Load files into a table.

        Args:
            schema: Target table schema (the table is created if missing).
            uris: Files to load, in order.
            file_format: Format the files are decoded with.
            policy: Error policy for rejected rows.
            force: Reload files already loaded with identical content.

        Returns:
            LoadResult describing the invocation.
        """
        self._ensure_table(schema)
        result = LoadResult(
            table=schema.name, policy=policy, max_reported_errors=self.max_reported_errors
        )
        decoder = FormatDecoder(file_format)
        coercer = RowCoercer(schema, file_format)
        expected = schema.width if file_format.type == FormatType.CSV else None
        buffer: list[tuple[Any, ...]] = []

        with log_context(table=schema.name, policy=policy.value), self.store.append_lock(schema.name):
            history = self.store.loaded_files(schema.name)

            for uri in uris:
                with self.opener(uri) as stream:
                    content = stream.read()
                file_result = FileLoadResult(uri=uri, checksum=hash_bytes(content))
                result.files.append(file_result)

                previous = history.get(uri)
                if not force and previous is not None and previous.checksum == file_result.checksum:
                    file_result.status = FileStatus.ALREADY_LOADED
                    log.info("Skipping file already loaded", uri=uri)
                    continue

                for row in decoder.decode(io.BytesIO(content), uri=uri, expected_columns=expected):
                    result.attempted += 1
                    file_result.rows_parsed += 1
                    error = row.error
                    if error is None:
                        try:
                            buffer.append(coercer.coerce(self._row_values(row, schema, file_format)))
                            file_result.rows_loaded += 1
                            continue
                        except RowError as e:
                            error = e

                    rejection = Rejection.from_row(row, error)
                    result.rejections.append(rejection)
                    result.rejected += 1
                    file_result.errors_seen += 1
                    if file_result.first_error is None:
                        file_result.first_error = rejection.message

                    if policy == ErrorPolicy.ABORT:
                        result.aborted = True
                        break
                    if policy == ErrorPolicy.SKIP_FILE:
                        file_result.status = FileStatus.SKIPPED
                        break

                if result.aborted:
                    break
                if file_result.status != FileStatus.SKIPPED and file_result.errors_seen:
                    file_result.status = (
                        FileStatus.PARTIALLY_LOADED
                        if file_result.rows_loaded
                        else FileStatus.LOAD_FAILED
                    )

            if result.aborted:
                result.discarded = len(buffer)
                for file_result in result.files:
                    if file_result.status != FileStatus.ALREADY_LOADED:
                        file_result.rows_loaded = 0
                        file_result.status = FileStatus.LOAD_FAILED
                first = result.first_error
                log.error(
                    "Load aborted",
                    error=first.reason() if first else None,
                    discarded=result.discarded,
                )
                return result

            frame = (
                self._to_frame(schema, buffer)
                if buffer
                else self.store.registry.empty_frame(schema.name)
            )
            result.inserted = self.store.append_rows(schema.name, frame)
            for file_result in result.files:
                # files that committed nothing stay eligible for a later run
                if file_result.status == FileStatus.LOADED or file_result.rows_loaded > 0:
                    self.store.record_load(
                        schema.name, file_result.uri, file_result.checksum, file_result.rows_loaded
                    )

        log.info("Load finished", **result.summary())
        return result
