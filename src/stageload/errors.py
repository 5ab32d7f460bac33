"""
Stageload exception hierarchy.

Fatal errors stop the current operation. Row errors are recoverable
under the CONTINUE and SKIP_FILE policies and are accumulated into a
LoadResult instead of being raised.
"""


class StageloadError(Exception):
    """Base exception for all stageload failures."""


class ConfigError(StageloadError):
    """Raised for invalid or inconsistent configuration."""


class NotFoundError(StageloadError):
    """Raised when a source, stage, table or definition does not exist."""


class DependencyError(StageloadError):
    """Raised when a transform references a table that has not been loaded."""


class PermissionDeniedError(StageloadError):
    """Raised when the authorizer refuses an action."""


class NondeterministicOrderError(StageloadError):
    """Raised by strict window queries whose ordering key has ties."""


class RowError(StageloadError):
    """
    Base class for per-row load failures.

    Attributes:
        column: Name of the offending column, if the error is column-specific.
    """

    kind = "row_error"

    def __init__(self, message: str, *, column: str | None = None) -> None:
        super().__init__(message)
        self.column = column


class DecodeError(RowError):
    """Raised for a record that is malformed under its declared format."""

    kind = "decode_error"


class ColumnCountMismatch(RowError):
    """Raised when a record's field count differs from the target schema."""

    kind = "column_count_mismatch"


class TypeCoercionError(RowError):
    """Raised when a field cannot be cast to its declared column type."""

    kind = "type_coercion_error"


class ConstraintViolation(RowError):
    """Raised when a null lands in a not-null column."""

    kind = "constraint_violation"
