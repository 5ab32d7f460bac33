"""Table store: the sink collaborator loads and transforms write through."""

from stageload.storage.store import LoadRecord, TableStore

__all__ = ["LoadRecord", "TableStore"]
