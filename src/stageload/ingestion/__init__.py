"""
Data ingestion layer: stage resolution, decoding, coercion and loading.

All raw file reading happens through this package so every row reaching
a table has passed the same decode, coercion and error-policy path.
"""

from stageload.ingestion.decoder import FormatDecoder, RawRow
from stageload.ingestion.encoder import encode_rows
from stageload.ingestion.loader import (
    FileLoadResult,
    FileStatus,
    LoadExecutor,
    LoadResult,
    LoadStatus,
    Rejection,
)
from stageload.ingestion.stage import LocalObjectStore, S3ObjectStore, StageResolver

__all__ = [
    "FileLoadResult",
    "FileStatus",
    "FormatDecoder",
    "LoadExecutor",
    "LoadResult",
    "LoadStatus",
    "LocalObjectStore",
    "RawRow",
    "Rejection",
    "S3ObjectStore",
    "StageResolver",
    "encode_rows",
]
