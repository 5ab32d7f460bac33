"""
Schema definitions using Pandera for data validation.

Target tables are declared in configuration and validated through the
registry; audit frames produced by loads have fixed models here.
"""

from stageload.schemas.load import FileLoadSchema, RejectionSchema
from stageload.schemas.registry import (
    SchemaRegistry,
    empty_frame,
    pandas_dtype,
    to_dataframe_schema,
)

__all__ = [
    "FileLoadSchema",
    "RejectionSchema",
    "SchemaRegistry",
    "empty_frame",
    "pandas_dtype",
    "to_dataframe_schema",
]
