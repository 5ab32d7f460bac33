"""
Typed configuration models using Pydantic.

Table schemas, file formats, stages, load jobs and transforms are all
declared here as frozen models. Replacing a definition means building a
new model; nothing is mutated during a run.
"""

from datetime import date
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stageload.errors import NotFoundError


class ColumnType(str, Enum):
    """Declared column types understood by the load executor."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    VARIANT = "variant"  # nested JSON value


class ErrorPolicy(str, Enum):
    """What a load does when a row is rejected."""

    ABORT = "abort"
    CONTINUE = "continue"
    SKIP_FILE = "skip_file"


class FormatType(str, Enum):
    """Physical layout of staged files."""

    CSV = "csv"
    JSON = "json"


AUTO = "AUTO"


# ---------------------------------------------------------------------------
# Schema registry records
# ---------------------------------------------------------------------------


class ColumnSpec(BaseModel):
    """One column of a table schema."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Column name")
    type: ColumnType = Field(default=ColumnType.STRING, description="Declared type")
    nullable: bool = Field(default=True, description="Whether nulls are accepted")
    path: str | None = Field(
        default=None,
        description="Path into a JSON document (e.g. 'station.id'); JSON loads only",
    )


class TableSchema(BaseModel):
    """
    Target table shape.

    Column order defines the positional mapping from decoded delimited rows.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    columns: tuple[ColumnSpec, ...]
    description: str = ""

    @field_validator("columns")
    @classmethod
    def validate_columns(cls, v: tuple[ColumnSpec, ...]) -> tuple[ColumnSpec, ...]:
        """Require at least one column and unique column names."""
        if not v:
            msg = "A table schema needs at least one column"
            raise ValueError(msg)
        names = [c.name for c in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            msg = f"Duplicate column names: {', '.join(duplicates)}"
            raise ValueError(msg)
        return v

    @property
    def column_names(self) -> list[str]:
        """Column names in declared order."""
        return [c.name for c in self.columns]

    @property
    def width(self) -> int:
        """Number of declared columns."""
        return len(self.columns)

    @property
    def is_single_variant(self) -> bool:
        """True for the raw-JSON shape: one VARIANT column without a path."""
        return (
            self.width == 1
            and self.columns[0].type == ColumnType.VARIANT
            and self.columns[0].path is None
        )

    def column(self, name: str) -> ColumnSpec:
        """Look up a column by name."""
        for col in self.columns:
            if col.name == name:
                return col
        msg = f"Table '{self.name}' has no column '{name}'"
        raise NotFoundError(msg)


class FileFormat(BaseModel):
    """
    Named file format.

    Mirrors the options a warehouse COPY statement takes: delimiters,
    header skipping, quoting and escaping, null sentinels and
    date/timestamp parsing mode.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    type: FormatType = FormatType.CSV
    field_delimiter: str = Field(default=",", min_length=1, max_length=1)
    record_delimiter: str = Field(default="\n")
    skip_header: int = Field(default=0, ge=0)
    field_optionally_enclosed_by: str | None = Field(
        default=None, min_length=1, max_length=1, description="Quote character"
    )
    escape: str | None = Field(
        default=None, min_length=1, max_length=1, description="Escape character"
    )
    escape_unenclosed_field: bool = Field(
        default=False, description="Whether the escape character applies outside quotes"
    )
    null_if: tuple[str, ...] = Field(
        default=("\\N",), description="Unenclosed field values decoded as null"
    )
    empty_field_as_null: bool = True
    trim_space: bool = False
    skip_blank_lines: bool = False
    error_on_column_count_mismatch: bool = True
    date_format: str = AUTO
    timestamp_format: str = AUTO
    strip_outer_array: bool = False
    encoding: str = "utf-8"

    @field_validator("record_delimiter")
    @classmethod
    def validate_record_delimiter(cls, v: str) -> str:
        """Only newline-style record delimiters are supported."""
        if v not in ("\n", "\r\n"):
            msg = f"record_delimiter must be '\\n' or '\\r\\n', got {v!r}"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_special_characters(self) -> "FileFormat":
        """Delimiter, quote and escape characters must be distinct."""
        specials = [
            c
            for c in (self.field_delimiter, self.field_optionally_enclosed_by, self.escape)
            if c is not None
        ]
        if len(specials) != len(set(specials)):
            msg = "field_delimiter, field_optionally_enclosed_by and escape must differ"
            raise ValueError(msg)
        return self


class StageLocation(BaseModel):
    """
    Read-only reference to external storage.

    The url is a local path (relative paths resolve against data_root),
    a file:// URI or an s3:// prefix.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    pattern: str | None = Field(default=None, description="Glob on file names")
    allow_empty: bool = False


class LoadJob(BaseModel):
    """One configured load: stage -> table under a format and error policy."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(description="Stage name")
    table: str = Field(description="Target schema/table name")
    format: str = Field(description="File format name")
    on_error: ErrorPolicy = ErrorPolicy.ABORT
    truncate: bool = Field(default=False, description="Clear the table before loading")
    force: bool = Field(default=False, description="Reload files already loaded")


# ---------------------------------------------------------------------------
# Transform steps
# ---------------------------------------------------------------------------


class SelectStep(BaseModel):
    """Keep and/or rename columns."""

    model_config = ConfigDict(frozen=True)

    op: Literal["select"] = "select"
    columns: tuple[str, ...] | None = None
    rename: dict[str, str] = Field(default_factory=dict)


class ExtractStep(BaseModel):
    """Pull a value out of a VARIANT column into a typed column."""

    model_config = ConfigDict(frozen=True)

    op: Literal["extract"] = "extract"
    column: str
    source: str
    path: str
    type: ColumnType = ColumnType.STRING


class CastStep(BaseModel):
    """Coerce a column to a declared type; uncastable values become null."""

    model_config = ConfigDict(frozen=True)

    op: Literal["cast"] = "cast"
    column: str
    type: ColumnType


class RemapStep(BaseModel):
    """Controlled-vocabulary substitution with a fallback for unknown codes."""

    model_config = ConfigDict(frozen=True)

    op: Literal["remap"] = "remap"
    column: str
    mapping: dict[str, Any]
    fallback: Any = None
    keep_unknown: bool = Field(
        default=False, description="Keep unmapped values instead of using fallback"
    )
    target: str | None = Field(default=None, description="Output column (default: in place)")

    @field_validator("mapping", mode="before")
    @classmethod
    def stringify_keys(cls, v: Any) -> Any:
        """Codes are matched by their string form (YAML may parse them as ints)."""
        if isinstance(v, dict):
            return {str(k): val for k, val in v.items()}
        return v


class FillStep(BaseModel):
    """Substitute a fixed value where a column is absent."""

    model_config = ConfigDict(frozen=True)

    op: Literal["fill"] = "fill"
    column: str
    value: Any


class AgeStep(BaseModel):
    """Derive an age in years from a stored year and a reference date."""

    model_config = ConfigDict(frozen=True)

    op: Literal["age"] = "age"
    column: str
    year_column: str
    reference_date: date


class ComputeStep(BaseModel):
    """Computed column from a pandas eval expression."""

    model_config = ConfigDict(frozen=True)

    op: Literal["compute"] = "compute"
    column: str
    expression: str


class FilterStep(BaseModel):
    """Keep rows matching a pandas query expression."""

    model_config = ConfigDict(frozen=True)

    op: Literal["filter"] = "filter"
    expression: str


class JoinStep(BaseModel):
    """Join the working frame with another source table."""

    model_config = ConfigDict(frozen=True)

    op: Literal["join"] = "join"
    right: str
    on: tuple[str, ...] | None = None
    left_on: tuple[str, ...] | None = None
    right_on: tuple[str, ...] | None = None
    how: Literal["inner", "left", "right", "outer"] = "inner"
    suffix: str = "_right"

    @model_validator(mode="after")
    def validate_keys(self) -> "JoinStep":
        """Either on, or both left_on and right_on of equal length."""
        if self.on:
            return self
        if not self.left_on or not self.right_on or len(self.left_on) != len(self.right_on):
            msg = "join needs 'on' or matching 'left_on'/'right_on'"
            raise ValueError(msg)
        return self


class DedupStep(BaseModel):
    """Collapse duplicate rows, keeping the first occurrence."""

    model_config = ConfigDict(frozen=True)

    op: Literal["dedup"] = "dedup"
    subset: tuple[str, ...] | None = None


class OrderStep(BaseModel):
    """Sort output rows."""

    model_config = ConfigDict(frozen=True)

    op: Literal["order"] = "order"
    by: tuple[str, ...]
    descending: bool = False


TransformStep = Annotated[
    SelectStep
    | ExtractStep
    | CastStep
    | RemapStep
    | FillStep
    | AgeStep
    | ComputeStep
    | FilterStep
    | JoinStep
    | DedupStep
    | OrderStep,
    Field(discriminator="op"),
]


class TransformSpec(BaseModel):
    """
    Named derived view or materialized table.

    The first source is the working frame; further sources are only
    reachable through join steps.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    kind: Literal["view", "table"] = "table"
    sources: tuple[str, ...] = Field(min_length=1)
    steps: tuple[TransformStep, ...] = ()

    @model_validator(mode="after")
    def validate_join_sources(self) -> "TransformSpec":
        """Joined tables must be declared as sources."""
        for step in self.steps:
            if isinstance(step, JoinStep) and step.right not in self.sources:
                msg = (
                    f"Transform '{self.name}' joins '{step.right}' "
                    f"which is not listed in sources"
                )
                raise ValueError(msg)
        if self.name in self.sources:
            msg = f"Transform '{self.name}' cannot read from itself"
            raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Ambient configuration
# ---------------------------------------------------------------------------


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_output: bool = Field(default=False, description="Emit JSON log lines")


class ExecutionConfig(BaseModel):
    """Run-time execution knobs."""

    model_config = ConfigDict(frozen=True)

    parallel: bool = Field(default=True, description="Run independent loads in parallel")
    max_workers: int = Field(default=4, ge=1, le=32)
    max_reported_errors: int = Field(
        default=100, ge=1, description="Rejection reasons kept in a load summary"
    )


class Grant(BaseModel):
    """Static permission record: principal may perform action on resource."""

    model_config = ConfigDict(frozen=True)

    principal: str
    action: Literal["load", "transform", "read", "*"] = "*"
    resource: str = "*"


class PipelineConfig(BaseModel):
    """Complete pipeline configuration."""

    model_config = ConfigDict(frozen=True)

    project: str = Field(description="Project identifier (e.g., 'citibike')")
    data_root: Path = Field(default=Path("./data"))
    principal: str = Field(default="loader", description="Identity used for grants")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)

    schemas: dict[str, TableSchema] = Field(default_factory=dict)
    formats: dict[str, FileFormat] = Field(default_factory=dict)
    stages: dict[str, StageLocation] = Field(default_factory=dict)
    loads: tuple[LoadJob, ...] = ()
    transforms: tuple[TransformSpec, ...] = ()
    grants: tuple[Grant, ...] | None = Field(
        default=None, description="Static grants; None allows everything"
    )

    @model_validator(mode="after")
    def validate_references(self) -> "PipelineConfig":
        """Every load must name a known stage, schema and format."""
        problems: list[str] = []
        for job in self.loads:
            if job.source not in self.stages:
                problems.append(f"load into '{job.table}': unknown stage '{job.source}'")
            if job.table not in self.schemas:
                problems.append(f"load from '{job.source}': unknown table '{job.table}'")
            if job.format not in self.formats:
                problems.append(f"load into '{job.table}': unknown format '{job.format}'")
        names = [t.name for t in self.transforms]
        for name in sorted({n for n in names if names.count(n) > 1}):
            problems.append(f"transform '{name}' is defined more than once")
        for spec in self.transforms:
            if spec.name in self.schemas:
                problems.append(f"transform '{spec.name}' shadows a loaded table")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def schema(self, name: str) -> TableSchema:
        """Get a table schema by name."""
        if name not in self.schemas:
            available = ", ".join(self.schemas) or "none"
            msg = f"Unknown table '{name}'. Available: {available}"
            raise NotFoundError(msg)
        return self.schemas[name]

    def file_format(self, name: str) -> FileFormat:
        """Get a file format by name."""
        if name not in self.formats:
            available = ", ".join(self.formats) or "none"
            msg = f"Unknown file format '{name}'. Available: {available}"
            raise NotFoundError(msg)
        return self.formats[name]

    def stage(self, name: str) -> StageLocation:
        """Get a stage location by name."""
        if name not in self.stages:
            available = ", ".join(self.stages) or "none"
            msg = f"Unknown stage '{name}'. Available: {available}"
            raise NotFoundError(msg)
        return self.stages[name]

    def transform(self, name: str) -> TransformSpec:
        """Get a transform definition by name."""
        for spec in self.transforms:
            if spec.name == name:
                return spec
        msg = f"Unknown transform '{name}'"
        raise NotFoundError(msg)
