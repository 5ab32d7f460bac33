"""Pipeline orchestration."""

from stageload.etl.pipeline import Pipeline, PipelineResult

__all__ = ["Pipeline", "PipelineResult"]
