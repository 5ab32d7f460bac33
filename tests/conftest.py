"""Pytest configuration and shared fixtures."""

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog

from stageload.config.settings import ColumnSpec, ColumnType, FileFormat, TableSchema
from stageload.ingestion.loader import LoadExecutor
from stageload.ingestion.stage import LocalObjectStore
from stageload.schemas.registry import SchemaRegistry
from stageload.storage.store import TableStore


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Undo logging configuration done by CLI commands."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, str | bytes], str]:
    """Write a staged file under tmp_path and return its path."""

    def _write(name: str, content: str | bytes) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_bytes(content.encode("utf-8"))
        else:
            path.write_bytes(content)
        return str(path)

    return _write


@pytest.fixture
def people_schema() -> TableSchema:
    """Three-column schema with a non-nullable key."""
    return TableSchema(
        name="people",
        columns=(
            ColumnSpec(name="id", type=ColumnType.INTEGER, nullable=False),
            ColumnSpec(name="name", type=ColumnType.STRING),
            ColumnSpec(name="score", type=ColumnType.NUMBER),
        ),
    )


@pytest.fixture
def csv_format() -> FileFormat:
    """Comma-delimited format with a header and double-quote enclosure."""
    return FileFormat(
        name="csv",
        skip_header=1,
        field_optionally_enclosed_by='"',
    )


@pytest.fixture
def store() -> TableStore:
    """Empty in-memory table store."""
    return TableStore(SchemaRegistry())


@pytest.fixture
def executor(store: TableStore) -> LoadExecutor:
    """Load executor reading local files."""
    return LoadExecutor(store, LocalObjectStore().open)


@pytest.fixture
def config_dict(tmp_path: Path) -> dict[str, Any]:
    """Minimal pipeline configuration with one CSV load."""
    stage_dir = tmp_path / "data" / "people"
    stage_dir.mkdir(parents=True)
    (stage_dir / "part-1.csv").write_text("id,name,score\n1,ada,9.5\n2,grace,8.0\n")
    return {
        "project": "test",
        "data_root": str(tmp_path / "data"),
        "schemas": {
            "people": {
                "columns": [
                    {"name": "id", "type": "integer", "nullable": False},
                    {"name": "name", "type": "string"},
                    {"name": "score", "type": "number"},
                ]
            }
        },
        "formats": {"csv": {"type": "csv", "skip_header": 1}},
        "stages": {"people": {"url": "people", "pattern": "*.csv"}},
        "loads": [{"source": "people", "table": "people", "format": "csv"}],
    }
