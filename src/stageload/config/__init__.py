"""
Configuration management with typed Pydantic models.

Schemas, formats, stages, loads and transforms are named configuration
records, loaded once at startup and immutable during a run.
"""

from stageload.config.loader import build_config, load_config
from stageload.config.settings import (
    ColumnSpec,
    ColumnType,
    ErrorPolicy,
    ExecutionConfig,
    FileFormat,
    FormatType,
    LoadJob,
    LoggingConfig,
    PipelineConfig,
    StageLocation,
    TableSchema,
    TransformSpec,
)

__all__ = [
    "ColumnSpec",
    "ColumnType",
    "ErrorPolicy",
    "ExecutionConfig",
    "FileFormat",
    "FormatType",
    "LoadJob",
    "LoggingConfig",
    "PipelineConfig",
    "StageLocation",
    "TableSchema",
    "TransformSpec",
    "build_config",
    "load_config",
]
