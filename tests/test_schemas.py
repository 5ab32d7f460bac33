"""Tests for the schema registry and audit schemas."""

import pandas as pd
import pandera.errors
import pytest

from stageload.config.settings import ColumnSpec, ColumnType, TableSchema
from stageload.errors import ConfigError, NotFoundError
from stageload.schemas import (
    FileLoadSchema,
    RejectionSchema,
    SchemaRegistry,
    pandas_dtype,
)


class TestPandasDtypes:
    """Tests for declared type -> pandas dtype mapping."""

    def test_nullable_extension_dtypes(self) -> None:
        """Test that scalar types use nullable pandas dtypes."""
        assert pandas_dtype(ColumnType.INTEGER) == "Int64"
        assert pandas_dtype(ColumnType.NUMBER) == "Float64"
        assert pandas_dtype(ColumnType.BOOLEAN) == "boolean"
        assert pandas_dtype(ColumnType.STRING) == "string"
        assert pandas_dtype(ColumnType.VARIANT) is None


class TestSchemaRegistry:
    """Tests for SchemaRegistry."""

    def test_register_and_get(self, people_schema: TableSchema) -> None:
        """Test registering and retrieving a schema."""
        registry = SchemaRegistry([people_schema])
        assert "people" in registry
        assert registry.get("people") is people_schema
        assert registry.list_schemas() == ["people"]

    def test_duplicate_registration(self, people_schema: TableSchema) -> None:
        """Test that re-registering without replace fails."""
        registry = SchemaRegistry([people_schema])
        with pytest.raises(ConfigError, match="already registered"):
            registry.register(people_schema)
        registry.register(people_schema, replace=True)

    def test_unknown_schema(self) -> None:
        """Test that unknown names raise NotFoundError."""
        with pytest.raises(NotFoundError, match="Unknown schema 'nope'"):
            SchemaRegistry().get("nope")

    def test_empty_frame(self, people_schema: TableSchema) -> None:
        """Test that empty frames carry declared columns and dtypes."""
        frame = SchemaRegistry([people_schema]).empty_frame("people")
        assert list(frame.columns) == ["id", "name", "score"]
        assert str(frame["id"].dtype) == "Int64"
        assert frame.empty

    def test_validate_rejects_null_key(self, people_schema: TableSchema) -> None:
        """Test that a null in a non-nullable column fails validation."""
        registry = SchemaRegistry([people_schema])
        frame = pd.DataFrame(
            {
                "id": pd.Series([1, None], dtype="Int64"),
                "name": pd.Series(["a", "b"], dtype="string"),
                "score": pd.Series([1.0, 2.0], dtype="Float64"),
            }
        )
        with pytest.raises(pandera.errors.SchemaError):
            registry.validate(frame, "people")

    def test_validate_rejects_extra_column(self, people_schema: TableSchema) -> None:
        """Test that tables are strict about their columns."""
        registry = SchemaRegistry([people_schema])
        frame = registry.empty_frame("people").assign(extra=pd.Series(dtype="string"))
        with pytest.raises(pandera.errors.SchemaError):
            registry.validate(frame, "people")

    def test_variant_column_accepts_documents(self) -> None:
        """Test that VARIANT columns hold arbitrary JSON values."""
        schema = TableSchema(name="raw", columns=(ColumnSpec(name="v", type=ColumnType.VARIANT),))
        registry = SchemaRegistry([schema])
        frame = pd.DataFrame({"v": pd.Series([{"a": 1}, [1, 2], "x"], dtype=object)})
        assert len(registry.validate(frame, "raw")) == 3


class TestAuditSchemas:
    """Tests for the load audit schemas."""

    def test_rejection_schema(self) -> None:
        """Test a valid rejection frame."""
        frame = pd.DataFrame(
            {
                "file": ["a.csv"],
                "record": [3],
                "kind": ["type_coercion_error"],
                "column": [None],
                "message": ["bad"],
                "values": ["('x',)"],
            }
        )
        RejectionSchema.validate(frame)

    def test_rejection_kind_checked(self) -> None:
        """Test that unknown rejection kinds are refused."""
        frame = pd.DataFrame(
            {
                "file": ["a.csv"],
                "record": [3],
                "kind": ["oops"],
                "column": ["c"],
                "message": ["bad"],
                "values": ["()"],
            }
        )
        with pytest.raises(pandera.errors.SchemaError):
            RejectionSchema.validate(frame)

    def test_file_load_schema(self) -> None:
        """Test a valid per-file frame."""
        frame = pd.DataFrame(
            {
                "file": ["a.csv"],
                "status": ["partially_loaded"],
                "rows_parsed": [3],
                "rows_loaded": [2],
                "errors_seen": [1],
                "first_error": ["bad"],
            }
        )
        FileLoadSchema.validate(frame)
