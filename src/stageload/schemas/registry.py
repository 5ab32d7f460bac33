"""
Schema registry for target tables.

Holds the named TableSchemas of a run and translates them into pandas
dtypes and Pandera DataFrameSchemas, so every committed table is
validated against its declaration.
"""

from collections.abc import Iterable, Mapping

import pandas as pd
import pandera.pandas as pa

from stageload.config.settings import ColumnType, TableSchema
from stageload.errors import ConfigError, NotFoundError
from stageload.utils.logging import get_logger

log = get_logger(__name__)

# pandas extension dtypes keep nulls distinct from values (pd.NA)
PANDAS_DTYPES: dict[ColumnType, str | None] = {
    ColumnType.STRING: "string",
    ColumnType.INTEGER: "Int64",
    ColumnType.NUMBER: "Float64",
    ColumnType.BOOLEAN: "boolean",
    ColumnType.DATE: "datetime64[ns]",
    ColumnType.TIMESTAMP: "datetime64[ns]",
    ColumnType.VARIANT: None,  # object column holding dicts/lists/scalars
}


def pandas_dtype(column_type: ColumnType) -> str | None:
    """Return the pandas dtype used to store a declared column type."""
    return PANDAS_DTYPES[column_type]


def to_dataframe_schema(schema: TableSchema) -> pa.DataFrameSchema:
    """
    Build a Pandera DataFrameSchema from a TableSchema.

    Args:
        schema: Table declaration.

    Returns:
        Strict, ordered DataFrameSchema.
    """
    columns = {
        col.name: pa.Column(
            pandas_dtype(col.type),
            nullable=col.nullable,
            description=f"{col.type.value} column",
        )
        for col in schema.columns
    }
    return pa.DataFrameSchema(columns, name=schema.name, strict=True, ordered=True)


def empty_frame(schema: TableSchema) -> pd.DataFrame:
    """Create an empty DataFrame with the schema's columns and dtypes."""
    data = {
        col.name: pd.Series(dtype=pandas_dtype(col.type) or object) for col in schema.columns
    }
    return pd.DataFrame(data)


class SchemaRegistry:
    """
    Registry of table schemas for one pipeline run.

    Schemas are registered once; replacing one requires an explicit
    redefinition.
    """

    def __init__(self, schemas: Mapping[str, TableSchema] | Iterable[TableSchema] = ()) -> None:
        """
        Initialize the registry.

        Args:
            schemas: Mapping of name -> schema, or an iterable of schemas.
        """
        self._schemas: dict[str, TableSchema] = {}
        self._pandera: dict[str, pa.DataFrameSchema] = {}
        items = schemas.values() if isinstance(schemas, Mapping) else schemas
        for schema in items:
            self.register(schema)

    def register(self, schema: TableSchema, *, replace: bool = False) -> None:
        """
        Register a schema.

        Args:
            schema: Table declaration.
            replace: Allow redefining an existing name.

        Raises:
            ConfigError: If the name exists and replace is False.
        """
        if schema.name in self._schemas and not replace:
            msg = f"Schema '{schema.name}' is already registered"
            raise ConfigError(msg)
        self._schemas[schema.name] = schema
        self._pandera.pop(schema.name, None)
        log.debug("Registered schema", table=schema.name, columns=schema.column_names)

    def __contains__(self, name: object) -> bool:
        return name in self._schemas

    def get(self, name: str) -> TableSchema:
        """
        Get a schema by name.

        Raises:
            NotFoundError: If schema not found.
        """
        if name not in self._schemas:
            available = ", ".join(self._schemas) or "none"
            msg = f"Unknown schema '{name}'. Available: {available}"
            raise NotFoundError(msg)
        return self._schemas[name]

    def list_schemas(self) -> list[str]:
        """List all registered schema names."""
        return list(self._schemas)

    def dataframe_schema(self, name: str) -> pa.DataFrameSchema:
        """Pandera schema for a registered table (built once, then reused)."""
        if name not in self._pandera:
            self._pandera[name] = to_dataframe_schema(self.get(name))
        return self._pandera[name]

    def empty_frame(self, name: str) -> pd.DataFrame:
        """Empty, correctly typed frame for a registered table."""
        return empty_frame(self.get(name))

    def validate(self, df: pd.DataFrame, name: str) -> pd.DataFrame:
        """
        Validate a DataFrame against a registered schema.

        Raises:
            pandera.errors.SchemaError: If validation fails.
        """
        return self.dataframe_schema(name).validate(df)
