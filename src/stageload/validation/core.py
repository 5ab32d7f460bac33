"""
Plan validation.

Checks a configuration before anything is loaded: stages resolve to
files, each load's format fits its table, and transforms can run in
dependency order.
"""

from dataclasses import dataclass
from itertools import islice

from stageload.config.settings import FormatType, LoadJob, PipelineConfig
from stageload.errors import StageloadError
from stageload.ingestion.decoder import FormatDecoder
from stageload.ingestion.stage import StageResolver
from stageload.transform.engine import resolve_order
from stageload.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class ValidationResult:
    """Result of a single plan check."""

    check: str
    subject: str
    passed: bool | None
    files: int | None = None
    error_message: str | None = None


class ValidationRunner:
    """
    Runs all plan checks for a configuration.

    Checks never raise; every problem becomes a failed ValidationResult.
    """

    def __init__(self, config: PipelineConfig, resolver: StageResolver | None = None) -> None:
        """
        Initialize validation runner.

        Args:
            config: Pipeline configuration to check.
            resolver: Stage resolver (built from config by default).
        """
        self.config = config
        self.resolver = resolver or StageResolver(config.stages, data_root=config.data_root)

    def run(self) -> list[ValidationResult]:
        """
        Run every check.

        Returns:
            Results in order: stages, loads, transform order.
        """
        results = [self._check_stage(name) for name in self.config.stages]
        results.extend(self._check_load(job) for job in self.config.loads)
        results.append(self._check_transform_order())
        failed = sum(1 for r in results if r.passed is False)
        log.info("Plan validation finished", checks=len(results), failed=failed)
        return results

    def _check_stage(self, name: str) -> ValidationResult:
        try:
            uris = self.resolver.resolve(name)
        except StageloadError as e:
            log.warning("Stage check failed", stage=name, error=str(e))
            return ValidationResult("stage", name, False, error_message=str(e))
        return ValidationResult("stage", name, True, files=len(uris))

    def _check_load(self, job: LoadJob) -> ValidationResult:
        """
        Check that a load's format fits its table.

        Delimited loads must not declare JSON paths, and the first data
        record of the first staged file must have the table's width when
        the format rejects column-count mismatches.
        """
        subject = f"{job.source} -> {job.table}"
        schema = self.config.schema(job.table)
        fmt = self.config.file_format(job.format)

        if fmt.type == FormatType.JSON:
            return ValidationResult("load", subject, True)

        with_paths = [c.name for c in schema.columns if c.path]
        if with_paths:
            msg = f"Delimited format '{fmt.name}' cannot use JSON paths ({', '.join(with_paths)})"
            return ValidationResult("load", subject, False, error_message=msg)

        try:
            uris = self.resolver.resolve(job.source)
        except StageloadError as e:
            return ValidationResult("load", subject, None, error_message=f"Stage unavailable: {e}")
        if not uris or not fmt.error_on_column_count_mismatch:
            return ValidationResult("load", subject, True, files=len(uris))

        decoder = FormatDecoder(fmt)
        with self.resolver.open(uris[0]) as stream:
            rows = list(islice(decoder.decode(stream, uri=uris[0], expected_columns=schema.width), 1))
        if rows and rows[0].error is not None:
            msg = f"{uris[0]}: {rows[0].error}"
            log.warning("Load check failed", source=job.source, table=job.table, error=msg)
            return ValidationResult("load", subject, False, files=len(uris), error_message=msg)
        return ValidationResult("load", subject, True, files=len(uris))

    def _check_transform_order(self) -> ValidationResult:
        if not self.config.transforms:
            return ValidationResult("transforms", "dependency order", None, error_message="No transforms")
        try:
            ordered = resolve_order(self.config.transforms, self.config.schemas)
        except StageloadError as e:
            return ValidationResult("transforms", "dependency order", False, error_message=str(e))
        return ValidationResult(
            "transforms",
            " -> ".join(spec.name for spec in ordered),
            True,
        )
