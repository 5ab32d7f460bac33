"""
Pipeline orchestration.

Wires stage resolution, decoding, loading, transforms and queries from a
PipelineConfig. Independent loads run in parallel; transforms run once
all loads finish, in dependency order.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd

from stageload.access import Authorizer, authorizer_for
from stageload.config.settings import (
    ColumnSpec,
    ColumnType,
    ErrorPolicy,
    FileFormat,
    LoadJob,
    PipelineConfig,
    TableSchema,
)
from stageload.ingestion.encoder import encode_rows
from stageload.ingestion.loader import LoadExecutor, LoadResult, LoadStatus
from stageload.ingestion.stage import ObjectStore, StageResolver
from stageload.query.layer import QueryLayer
from stageload.schemas.registry import SchemaRegistry
from stageload.storage.store import TableStore
from stageload.transform.engine import TransformEngine, TransformResult
from stageload.utils.logging import get_logger, log_context

log = get_logger(__name__)


@dataclass
class PipelineResult:
    """
    Result of a full pipeline run.

    Attributes:
        loads: LoadResult per configured load, in configuration order.
        transforms: TransformResult per transform, in execution order.
        transforms_skipped: True if transforms did not run because a load failed.
    """

    loads: list[LoadResult] = field(default_factory=list)
    transforms: list[TransformResult] = field(default_factory=list)
    transforms_skipped: bool = False

    @property
    def status(self) -> LoadStatus:
        """Worst load status (success when nothing was loaded)."""
        statuses = {r.status for r in self.loads}
        if LoadStatus.FAILURE in statuses or self.transforms_skipped:
            return LoadStatus.FAILURE
        if LoadStatus.PARTIAL in statuses:
            return LoadStatus.PARTIAL
        return LoadStatus.SUCCESS


def _infer_schema(name: str, frame: pd.DataFrame) -> TableSchema:
    """Column types for a table with no registered schema (derived tables)."""
    columns = []
    for col in frame.columns:
        dtype = frame[col].dtype
        if pd.api.types.is_bool_dtype(dtype):
            col_type = ColumnType.BOOLEAN
        elif pd.api.types.is_integer_dtype(dtype):
            col_type = ColumnType.INTEGER
        elif pd.api.types.is_float_dtype(dtype):
            col_type = ColumnType.NUMBER
        elif pd.api.types.is_datetime64_any_dtype(dtype):
            col_type = ColumnType.TIMESTAMP
        elif dtype == object and frame[col].map(lambda v: isinstance(v, dict | list)).any():
            col_type = ColumnType.VARIANT
        else:
            col_type = ColumnType.STRING
        columns.append(ColumnSpec(name=str(col), type=col_type))
    return TableSchema(name=name, columns=tuple(columns))


class Pipeline:
    """
    File-to-table pipeline for one configuration.

    Every operation takes explicit source, target, format and policy
    arguments; the pipeline only holds the shared table store.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        store: TableStore | None = None,
        stores: dict[str, ObjectStore] | None = None,
        authorizer: Authorizer | None = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            config: Pipeline configuration.
            store: Table store (a fresh in-memory store by default).
            stores: Object store backends by URI scheme.
            authorizer: Access control (built from config grants by default).
        """
        self.config = config
        self.store = store or TableStore(SchemaRegistry())
        self.resolver = StageResolver(config.stages, data_root=config.data_root, stores=stores)
        self.executor = LoadExecutor(
            self.store,
            self.resolver.open,
            max_reported_errors=config.execution.max_reported_errors,
        )
        self.transforms = TransformEngine(self.store)
        self.authorizer = authorizer or authorizer_for(config.grants)
        self.query = QueryLayer(
            self.store, authorizer=self.authorizer, principal=config.principal
        )

    def _resolve_format(self, file_format: FileFormat | str) -> FileFormat:
        if isinstance(file_format, FileFormat):
            return file_format
        return self.config.file_format(file_format)

    def run_load(
        self,
        source: str,
        table: str,
        file_format: FileFormat | str,
        policy: ErrorPolicy = ErrorPolicy.ABORT,
        *,
        force: bool = False,
    ) -> LoadResult:
        """
        Load every file of a stage into a table.

        Args:
            source: Stage name.
            table: Target table (must have a configured schema).
            file_format: FileFormat or its configured name.
            policy: Error policy for rejected rows.
            force: Reload files already loaded with identical content.

        Returns:
            LoadResult for the invocation.
        """
        self.authorizer.check(self.config.principal, "load", table)
        schema = self.config.schema(table)
        fmt = self._resolve_format(file_format)
        with log_context(source=source, table=table, format=fmt.name):
            uris = self.resolver.resolve(source)
            return self.executor.load(schema, uris, fmt, policy, force=force)

    def run_job(self, job: LoadJob) -> LoadResult:
        """Run one configured load job."""
        return self.run_load(job.source, job.table, job.format, job.on_error, force=job.force)

    def run_transforms(self) -> list[TransformResult]:
        """Run all configured transforms in dependency order."""
        for spec in self.config.transforms:
            self.authorizer.check(self.config.principal, "transform", spec.name)
        return self.transforms.run_all(self.config.transforms)

    def _truncate_targets(self) -> None:
        for job in self.config.loads:
            if job.truncate and self.store.exists(job.table):
                self.store.truncate(job.table)

    def _run_loads_parallel(self) -> list[LoadResult]:
        jobs = list(self.config.loads)
        workers = min(self.config.execution.max_workers, len(jobs))
        log.info("Running loads in parallel", jobs=len(jobs), workers=workers)

        results: dict[int, LoadResult] = {}
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.run_job, job): i for i, job in enumerate(jobs)}
            for future in as_completed(futures):
                i = futures[future]
                try:
                    results[i] = future.result()
                except Exception as e:
                    log.error("Load failed", table=jobs[i].table, source=jobs[i].source, error=str(e))
                    raise
        return [results[i] for i in range(len(jobs))]

    def run(self) -> PipelineResult:
        """
        Run every configured load, then every transform.

        Transforms are skipped when any load fails, so derived tables are
        never rebuilt from a table whose load was rolled back.

        Returns:
            PipelineResult with per-load and per-transform results.
        """
        log.info(
            "Starting pipeline",
            project=self.config.project,
            loads=len(self.config.loads),
            transforms=len(self.config.transforms),
            parallel=self.config.execution.parallel,
        )
        self._truncate_targets()

        result = PipelineResult()
        if self.config.execution.parallel and len(self.config.loads) > 1:
            result.loads = self._run_loads_parallel()
        else:
            result.loads = [self.run_job(job) for job in self.config.loads]

        failed = [r.table for r in result.loads if r.status == LoadStatus.FAILURE]
        if failed and self.config.transforms:
            log.error("Skipping transforms after failed loads", tables=failed)
            result.transforms_skipped = True
            return result

        result.transforms = self.run_transforms()
        log.info("Pipeline finished", status=result.status.value)
        return result

    def unload(self, table: str, file_format: FileFormat | str, path: Path) -> int:
        """
        Write a table or view to a file.

        Args:
            table: Table or view name.
            file_format: FileFormat or its configured name.
            path: Output file.

        Returns:
            Number of rows written.
        """
        fmt = self._resolve_format(file_format)
        frame = self.query.read(table)
        schema = (
            self.store.registry.get(table)
            if table in self.store.registry
            else _infer_schema(table, frame)
        )
        rows: list[tuple[Any, ...]] = list(
            frame[schema.column_names].itertuples(index=False, name=None)
        )
        text = encode_rows(rows, fmt, schema)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(text.encode(fmt.encoding))
        log.info("Unloaded table", table=table, format=fmt.name, path=str(path), rows=len(rows))
        return len(rows)
