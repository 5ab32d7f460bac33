"""Read-only query layer: joins, aggregation and window functions."""

from stageload.query.layer import (
    MOVING_AGGREGATES,
    WINDOW_FUNCTIONS,
    QueryLayer,
    WindowFunction,
)

__all__ = ["MOVING_AGGREGATES", "WINDOW_FUNCTIONS", "QueryLayer", "WindowFunction"]
