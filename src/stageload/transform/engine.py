"""
Transform layer.

Derives cleaned views and materialized tables from loaded tables by
applying declarative steps. Every run recomputes its output from the
current source contents; materialized outputs are swapped in whole.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import pandas as pd

from stageload.config.settings import (
    AgeStep,
    CastStep,
    ColumnSpec,
    ColumnType,
    ComputeStep,
    DedupStep,
    ExtractStep,
    FillStep,
    FilterStep,
    JoinStep,
    OrderStep,
    RemapStep,
    SelectStep,
    TransformSpec,
)
from stageload.errors import DependencyError, NotFoundError, RowError
from stageload.ingestion.coercion import coerce_value
from stageload.ingestion.paths import extract_path
from stageload.schemas.registry import pandas_dtype
from stageload.storage.store import TableStore
from stageload.utils.hashing import hash_dataframe
from stageload.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class TransformResult:
    """Outcome of one transform run."""

    name: str
    kind: str
    rows: int | None
    columns: list[str]
    content_hash: str | None


def resolve_order(specs: Sequence[TransformSpec], available: Iterable[str]) -> list[TransformSpec]:
    """
    Order transforms so every source exists before it is read.

    Args:
        specs: Transform definitions.
        available: Tables that exist (or will be loaded) before transforms run.

    Returns:
        Transforms in a valid execution order (stable for independent ones).

    Raises:
        DependencyError: If a source is never produced or the graph has a cycle.
    """
    known = set(available)
    produced = {spec.name for spec in specs}
    for spec in specs:
        missing = [s for s in spec.sources if s not in known and s not in produced]
        if missing:
            msg = f"Transform '{spec.name}' references unknown table(s): {', '.join(missing)}"
            raise DependencyError(msg)

    ordered: list[TransformSpec] = []
    done = set(known)
    pending = list(specs)
    while pending:
        ready = [s for s in pending if all(src in done for src in s.sources)]
        if not ready:
            names = ", ".join(s.name for s in pending)
            msg = f"Transforms form a dependency cycle: {names}"
            raise DependencyError(msg)
        for spec in ready:
            ordered.append(spec)
            done.add(spec.name)
            pending.remove(spec)
    return ordered


def _is_absent(value: Any) -> bool:
    return value is None or value is pd.NA or value is pd.NaT or (
        isinstance(value, float) and value != value
    )


def _native(value: Any) -> Any:
    if _is_absent(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    return value.item() if hasattr(value, "item") and not isinstance(value, dict | list) else value


def _code(value: Any) -> str | None:
    """String form used to match controlled-vocabulary codes."""
    value = _native(value)
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _typed_series(values: list[Any], column_type: ColumnType, index: pd.Index) -> pd.Series:
    series = pd.Series(values, index=index, dtype=object)
    dtype = pandas_dtype(column_type)
    return series.astype(dtype) if dtype is not None else series


def _try_coerce(value: Any, column: ColumnSpec) -> Any:
    """Coerce a value, yielding None instead of failing."""
    try:
        return coerce_value(_native(value), column)
    except RowError:
        return None


class TransformEngine:
    """
    Applies TransformSpecs against a table store.

    Views are registered and recomputed on each read; tables are built
    under a temporary name and swapped into place.
    """

    def __init__(self, store: TableStore) -> None:
        """
        Initialize the engine.

        Args:
            store: Store holding source tables and receiving outputs.
        """
        self.store = store

    def _require_sources(self, spec: TransformSpec) -> None:
        missing = [s for s in spec.sources if not self.store.exists(s)]
        if missing:
            msg = (
                f"Transform '{spec.name}' depends on table(s) that are not loaded: "
                f"{', '.join(missing)}"
            )
            raise DependencyError(msg)

    def evaluate(self, spec: TransformSpec) -> pd.DataFrame:
        """
        Compute a transform's output from current source contents.

        Raises:
            DependencyError: If a source table does not exist.
        """
        self._require_sources(spec)
        frame = self.store.read_rows(spec.sources[0])
        for step in spec.steps:
            frame = self._apply(frame, step)
        return frame.reset_index(drop=True)

    def run(self, spec: TransformSpec) -> TransformResult:
        """
        Run one transform.

        Args:
            spec: Transform definition.

        Returns:
            TransformResult (row count and content hash for tables).
        """
        self._require_sources(spec)

        if spec.kind == "view":
            # evaluate once so broken definitions fail at creation time
            preview = self.evaluate(spec)
            self.store.register_view(spec.name, lambda _store: self.evaluate(spec))
            log.info("Created view", view=spec.name, sources=list(spec.sources))
            return TransformResult(spec.name, "view", None, list(preview.columns), None)

        frame = self.evaluate(spec)
        if self.store.is_view(spec.name):
            msg = f"Cannot materialize '{spec.name}': a view with that name exists"
            raise DependencyError(msg)
        self.store.replace_contents(spec.name, frame)
        content_hash = hash_dataframe(frame)
        log.info(
            "Materialized table",
            table=spec.name,
            rows=len(frame),
            content_hash=content_hash,
        )
        return TransformResult(spec.name, "table", len(frame), list(frame.columns), content_hash)

    def run_all(self, specs: Sequence[TransformSpec]) -> list[TransformResult]:
        """Run transforms in dependency order."""
        available = [*self.store.list_tables(), *self.store.list_views()]
        return [self.run(spec) for spec in resolve_order(specs, available)]

    # -- steps -------------------------------------------------------------

    @staticmethod
    def _require_columns(frame: pd.DataFrame, columns: Iterable[str], step: str) -> None:
        missing = [c for c in columns if c not in frame.columns]
        if missing:
            msg = f"{step}: unknown column(s) {', '.join(missing)}"
            raise NotFoundError(msg)

    def _apply(self, frame: pd.DataFrame, step: Any) -> pd.DataFrame:
        if isinstance(step, SelectStep):
            return self._select(frame, step)
        if isinstance(step, ExtractStep):
            return self._extract(frame, step)
        if isinstance(step, CastStep):
            return self._cast(frame, step)
        if isinstance(step, RemapStep):
            return self._remap(frame, step)
        if isinstance(step, FillStep):
            self._require_columns(frame, [step.column], "fill")
            frame = frame.copy()
            frame[step.column] = frame[step.column].fillna(step.value)
            return frame
        if isinstance(step, AgeStep):
            return self._age(frame, step)
        if isinstance(step, ComputeStep):
            frame = frame.copy()
            frame[step.column] = frame.eval(step.expression, engine="python")
            return frame
        if isinstance(step, FilterStep):
            mask = pd.Series(frame.eval(step.expression, engine="python"), index=frame.index)
            return frame[mask.fillna(False).astype(bool)]
        if isinstance(step, JoinStep):
            return self._join(frame, step)
        if isinstance(step, DedupStep):
            return self._dedup(frame, step)
        if isinstance(step, OrderStep):
            self._require_columns(frame, step.by, "order")
            return frame.sort_values(
                list(step.by), ascending=not step.descending, kind="mergesort", na_position="last"
            )
        msg = f"Unsupported transform step {step!r}"
        raise TypeError(msg)

    def _select(self, frame: pd.DataFrame, step: SelectStep) -> pd.DataFrame:
        if step.columns is not None:
            self._require_columns(frame, step.columns, "select")
            frame = frame[list(step.columns)]
        if step.rename:
            self._require_columns(frame, step.rename, "select.rename")
            frame = frame.rename(columns=step.rename)
        return frame

    def _extract(self, frame: pd.DataFrame, step: ExtractStep) -> pd.DataFrame:
        self._require_columns(frame, [step.source], "extract")
        column = ColumnSpec(name=step.column, type=step.type)
        values = [
            _try_coerce(extract_path(doc, step.path), column) if not _is_absent(doc) else None
            for doc in frame[step.source]
        ]
        frame = frame.copy()
        frame[step.column] = _typed_series(values, step.type, frame.index)
        return frame

    def _cast(self, frame: pd.DataFrame, step: CastStep) -> pd.DataFrame:
        self._require_columns(frame, [step.column], "cast")
        column = ColumnSpec(name=step.column, type=step.type)
        values = [_try_coerce(v, column) for v in frame[step.column]]
        frame = frame.copy()
        frame[step.column] = _typed_series(values, step.type, frame.index)
        return frame

    def _remap(self, frame: pd.DataFrame, step: RemapStep) -> pd.DataFrame:
        self._require_columns(frame, [step.column], "remap")
        values: list[Any] = []
        for original in frame[step.column]:
            code = _code(original)
            if code is not None and code in step.mapping:
                values.append(step.mapping[code])
            elif step.keep_unknown:
                values.append(_native(original))
            else:
                values.append(step.fallback)
        frame = frame.copy()
        frame[step.target or step.column] = (
            pd.Series(values, index=frame.index, dtype=object).convert_dtypes()
        )
        return frame

    def _age(self, frame: pd.DataFrame, step: AgeStep) -> pd.DataFrame:
        self._require_columns(frame, [step.year_column], "age")
        years = pd.to_numeric(frame[step.year_column], errors="coerce").astype("Float64")
        age = step.reference_date.year - years
        age = age.where((age >= 0).fillna(False))
        frame = frame.copy()
        frame[step.column] = age.round().astype("Int64")
        return frame

    def _join(self, frame: pd.DataFrame, step: JoinStep) -> pd.DataFrame:
        right = self.store.read_rows(step.right)
        if step.on:
            self._require_columns(frame, step.on, "join")
            self._require_columns(right, step.on, f"join {step.right}")
            return frame.merge(
                right, on=list(step.on), how=step.how, suffixes=("", step.suffix)
            )
        left_on = list(step.left_on or ())
        right_on = list(step.right_on or ())
        self._require_columns(frame, left_on, "join")
        self._require_columns(right, right_on, f"join {step.right}")
        return frame.merge(
            right, left_on=left_on, right_on=right_on, how=step.how, suffixes=("", step.suffix)
        )

    def _dedup(self, frame: pd.DataFrame, step: DedupStep) -> pd.DataFrame:
        subset = list(step.subset) if step.subset else list(frame.columns)
        self._require_columns(frame, subset, "dedup")
        keys = frame[subset].copy()
        for col in keys.columns:
            if keys[col].dtype == object:
                # VARIANT values are unhashable
                keys[col] = keys[col].map(repr)
        return frame[~keys.duplicated(keep="first")]
