"""
Read-only query layer over the table store.

Joins, range joins, grouped aggregation and ordered window functions,
expressed with pandas. Window results depend on row order, so every
window query sorts stably and reports orderings that leave ties.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import pandas as pd

from stageload.access import AllowAllAuthorizer, Authorizer
from stageload.errors import NondeterministicOrderError, NotFoundError
from stageload.storage.store import Predicate, TableStore
from stageload.utils.logging import get_logger

log = get_logger(__name__)

WINDOW_FUNCTIONS = (
    "running_total",
    "row_number",
    "rank",
    "dense_rank",
    "lag",
    "lead",
    "moving",
)
MOVING_AGGREGATES = ("sum", "mean", "min", "max", "count")

# rank and dense_rank give tied rows the same value, so ties cannot change them
_ORDER_SENSITIVE = frozenset({"running_total", "row_number", "lag", "lead", "moving"})

FrameOrName = pd.DataFrame | str


@dataclass(frozen=True)
class WindowFunction:
    """
    One window function to compute.

    Attributes:
        function: One of WINDOW_FUNCTIONS.
        output: Name of the result column.
        column: Input column (running_total, lag, lead, moving).
        offset: Rows back (lag) or ahead (lead).
        size: Rows in a moving window, current row included.
        aggregate: Moving aggregate, one of MOVING_AGGREGATES.
        default: Value for lag/lead positions outside the partition.
    """

    function: str
    output: str
    column: str | None = None
    offset: int = 1
    size: int = 3
    aggregate: str = "sum"
    default: Any = None

    def __post_init__(self) -> None:
        if self.function not in WINDOW_FUNCTIONS:
            msg = f"Unknown window function '{self.function}'. Available: {', '.join(WINDOW_FUNCTIONS)}"
            raise ValueError(msg)
        if self.function in ("running_total", "lag", "lead", "moving") and self.column is None:
            msg = f"Window function '{self.function}' needs an input column"
            raise ValueError(msg)
        if self.offset < 1 or self.size < 1:
            msg = "offset and size must be at least 1"
            raise ValueError(msg)
        if self.aggregate not in MOVING_AGGREGATES:
            msg = f"Unknown moving aggregate '{self.aggregate}'"
            raise ValueError(msg)


def _key_text(frame: pd.DataFrame, columns: Sequence[str]) -> pd.Series:
    """Comparable text form of a composite key (NA-safe)."""
    if not columns:
        return pd.Series("", index=frame.index)
    text = frame[list(columns)].astype(str)
    return pd.Series(
        ["\x1f".join(row) for row in text.itertuples(index=False, name=None)],
        index=frame.index,
        dtype=object,
    )


class QueryLayer:
    """Read-only analytical queries against a TableStore."""

    def __init__(
        self,
        store: TableStore,
        *,
        authorizer: Authorizer | None = None,
        principal: str = "reader",
    ) -> None:
        """
        Initialize the query layer.

        Args:
            store: Store to read from.
            authorizer: Checked with action ``read`` for every named table.
            principal: Identity presented to the authorizer.
        """
        self.store = store
        self.authorizer = authorizer or AllowAllAuthorizer()
        self.principal = principal

    def read(
        self,
        name: str,
        predicate: Predicate | None = None,
        columns: list[str] | None = None,
    ) -> pd.DataFrame:
        """Read a table or view, optionally filtered and projected."""
        self.authorizer.check(self.principal, "read", name)
        return self.store.read_rows(name, predicate, columns)

    def _frame(self, source: FrameOrName) -> pd.DataFrame:
        return self.read(source) if isinstance(source, str) else source.reset_index(drop=True)

    def join(
        self,
        left: FrameOrName,
        right: FrameOrName,
        *,
        on: Sequence[str] | None = None,
        left_on: Sequence[str] | None = None,
        right_on: Sequence[str] | None = None,
        how: Literal["inner", "left", "right", "outer"] = "inner",
        suffix: str = "_right",
    ) -> pd.DataFrame:
        """
        Equality join of two tables or frames.

        Left row order is preserved for inner and left joins.
        """
        left_frame = self._frame(left)
        right_frame = self._frame(right)
        if on:
            return left_frame.merge(right_frame, on=list(on), how=how, suffixes=("", suffix))
        if not left_on or not right_on:
            msg = "join needs 'on' or both 'left_on' and 'right_on'"
            raise ValueError(msg)
        return left_frame.merge(
            right_frame,
            left_on=list(left_on),
            right_on=list(right_on),
            how=how,
            suffixes=("", suffix),
        )

    def range_join(
        self,
        left: FrameOrName,
        right: FrameOrName,
        *,
        value: str,
        lower: str,
        upper: str,
        on: Sequence[str] | None = None,
        suffix: str = "_right",
    ) -> pd.DataFrame:
        """
        Join each left row to the right rows whose [lower, upper) range holds it.

        Args:
            left: Table or frame holding ``value``.
            right: Table or frame holding ``lower`` and ``upper`` bounds.
            value: Left column to test.
            lower: Right column with the inclusive lower bound.
            upper: Right column with the exclusive upper bound.
            on: Optional equality keys that must also match.
            suffix: Suffix for clashing right-hand column names.

        Returns:
            Matching row pairs; rows with a null value or bound never match.
        """
        left_frame = self._frame(left)
        right_frame = self._frame(right)
        if on:
            merged = left_frame.merge(right_frame, on=list(on), how="inner", suffixes=("", suffix))
        else:
            merged = left_frame.merge(right_frame, how="cross", suffixes=("", suffix))

        # bounds that clash with a left column carry the suffix after merging
        lower_col = lower + suffix if lower in left_frame.columns else lower
        upper_col = upper + suffix if upper in left_frame.columns else upper
        for col in (value, lower_col, upper_col):
            if col not in merged.columns:
                msg = f"range_join: unknown column '{col}'"
                raise NotFoundError(msg)

        mask = (merged[value] >= merged[lower_col]) & (merged[value] < merged[upper_col])
        return merged[mask.fillna(False).astype(bool)].reset_index(drop=True)

    def aggregate(
        self,
        source: FrameOrName,
        by: Sequence[str],
        aggregations: Mapping[str, tuple[str, str]],
    ) -> pd.DataFrame:
        """
        Grouped aggregation.

        Args:
            source: Table name or frame.
            by: Grouping columns (result is sorted by them).
            aggregations: output column -> (input column, aggregate name).

        Returns:
            One row per group.
        """
        frame = self._frame(source)
        if not by:
            return pd.DataFrame(
                {out: [frame[col].agg(fn)] for out, (col, fn) in aggregations.items()}
            )
        grouped = frame.groupby(list(by), sort=True, dropna=False)
        return grouped.agg(**{out: (col, fn) for out, (col, fn) in aggregations.items()}).reset_index()

    def window(
        self,
        source: FrameOrName,
        *,
        partition_by: Sequence[str] = (),
        order_by: Sequence[str],
        functions: Sequence[WindowFunction],
        tie_breaker: str | None = None,
        strict: bool = False,
    ) -> pd.DataFrame:
        """
        Compute ordered window functions.

        Rows are returned sorted by partition, then ordering key. The sort
        is stable, so rows with equal keys keep their input order.

        Args:
            source: Table name or frame.
            partition_by: Partitioning columns.
            order_by: Ordering columns (ascending, nulls last).
            functions: Window functions to add as columns.
            tie_breaker: Extra ordering column making the key unique.
            strict: Raise instead of warning when the ordering has ties.

        Returns:
            Sorted frame with one extra column per window function.

        Raises:
            NondeterministicOrderError: If strict and an order-sensitive
                function is computed over a key with ties.
        """
        frame = self._frame(source)
        keys = list(order_by) + ([tie_breaker] if tie_breaker else [])
        missing = [c for c in [*partition_by, *keys] if c not in frame.columns]
        if missing:
            msg = f"window: unknown column(s) {', '.join(missing)}"
            raise NotFoundError(msg)

        ordered = frame.sort_values(
            [*partition_by, *keys], kind="mergesort", na_position="last"
        ).reset_index(drop=True)

        if partition_by:
            part = ordered.groupby(list(partition_by), sort=False, dropna=False).ngroup()
        else:
            part = pd.Series(0, index=ordered.index)

        full_key = _key_text(ordered, keys)
        ties = pd.DataFrame({"part": part, "key": full_key}).duplicated().any()
        sensitive = sorted({f.function for f in functions} & _ORDER_SENSITIVE)
        if ties and sensitive:
            if strict:
                msg = (
                    f"Ordering by {', '.join(keys)} has ties within a partition; "
                    f"{', '.join(sensitive)} would depend on input order. Add a tie_breaker."
                )
                raise NondeterministicOrderError(msg)
            log.warning("nondeterministic_ordering", order_by=keys, functions=sensitive)

        row_number = ordered.groupby(part).cumcount() + 1
        rank_key = _key_text(ordered, order_by)
        changed = rank_key.ne(rank_key.shift()) | part.ne(part.shift())

        for fn in functions:
            ordered[fn.output] = self._window_column(ordered, fn, part, row_number, changed)

        return ordered

    @staticmethod
    def _window_column(
        frame: pd.DataFrame,
        fn: WindowFunction,
        part: pd.Series,
        row_number: pd.Series,
        changed: pd.Series,
    ) -> pd.Series:
        if fn.function == "row_number":
            return row_number.astype("int64")
        if fn.function == "dense_rank":
            return changed.astype("int64").groupby(part).cumsum()
        if fn.function == "rank":
            return row_number.where(changed).groupby(part).ffill().astype("int64")

        if fn.column not in frame.columns:
            msg = f"window: unknown column '{fn.column}'"
            raise NotFoundError(msg)
        values = frame[fn.column]

        if fn.function == "running_total":
            return values.groupby(part).cumsum()
        if fn.function == "lag":
            shifted = values.groupby(part).shift(fn.offset)
            return shifted if fn.default is None else shifted.where(row_number > fn.offset, fn.default)
        if fn.function == "lead":
            shifted = values.groupby(part).shift(-fn.offset)
            if fn.default is None:
                return shifted
            sizes = part.map(part.value_counts())
            return shifted.where(row_number <= sizes - fn.offset, fn.default)

        numeric = pd.to_numeric(values, errors="coerce").astype("float64")
        rolled = numeric.groupby(part).rolling(window=fn.size, min_periods=1).agg(fn.aggregate)
        return rolled.reset_index(level=0, drop=True).sort_index()
