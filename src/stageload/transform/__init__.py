"""Transform layer: derived views and materialized tables."""

from stageload.transform.engine import TransformEngine, TransformResult, resolve_order

__all__ = ["TransformEngine", "TransformResult", "resolve_order"]
