"""
Pandera schemas for load audit output.

A load's rejections are exported as a DataFrame so they can be written
next to the loaded table and inspected like any other data.
"""

import pandera.pandas as pa
from pandera.typing import Series

REJECTION_KINDS = [
    "decode_error",
    "column_count_mismatch",
    "type_coercion_error",
    "constraint_violation",
]

FILE_STATUSES = ["loaded", "partially_loaded", "load_failed", "skipped", "already_loaded"]


class RejectionSchema(pa.DataFrameModel):
    """One rejected record per row."""

    file: Series[str] = pa.Field(description="URI of the staged file")
    record: Series[int] = pa.Field(ge=0, description="1-based record number in the file")
    kind: Series[str] = pa.Field(isin=REJECTION_KINDS)
    column: Series[str] = pa.Field(nullable=True, description="Offending column")
    message: Series[str] = pa.Field(description="Human-readable reason")
    values: Series[str] = pa.Field(description="Original field values (repr)")

    class Config:
        """Schema configuration."""

        name = "RejectionSchema"
        strict = True
        coerce = True


class FileLoadSchema(pa.DataFrameModel):
    """Per-file load outcome, in the shape of a warehouse COPY report."""

    file: Series[str]
    status: Series[str] = pa.Field(isin=FILE_STATUSES)
    rows_parsed: Series[int] = pa.Field(ge=0)
    rows_loaded: Series[int] = pa.Field(ge=0)
    errors_seen: Series[int] = pa.Field(ge=0)
    first_error: Series[str] = pa.Field(nullable=True)

    class Config:
        """Schema configuration."""

        name = "FileLoadSchema"
        strict = True
        coerce = True
