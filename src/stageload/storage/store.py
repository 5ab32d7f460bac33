"""
In-process table store.

The sink collaborator the pipeline writes through: append rows, read
rows, and atomically swap two tables. Committed tables are pandas
DataFrames that are replaced wholesale and never mutated in place, so a
reader holding a frame keeps a consistent snapshot while a writer
commits the next version.
"""

import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

import pandas as pd
import pandera.errors

from stageload.errors import ConstraintViolation, DependencyError, NotFoundError
from stageload.schemas.registry import SchemaRegistry
from stageload.utils.logging import get_logger

log = get_logger(__name__)

Predicate = Callable[[pd.DataFrame], "pd.Series[bool]"]
ViewFunction = Callable[["TableStore"], pd.DataFrame]


@dataclass(frozen=True)
class LoadRecord:
    """A file that has been loaded into a table."""

    uri: str
    checksum: str
    rows_loaded: int
    loaded_at: datetime


class TableStore:
    """
    Thread-safe in-memory store of named tables and views.

    One lock guards the name -> frame mapping; each table additionally
    has an append lock so at most one load writes to it at a time.
    """

    def __init__(self, registry: SchemaRegistry | None = None) -> None:
        """
        Initialize the store.

        Args:
            registry: Schemas used to validate appended rows. Tables with
                no registered schema (derived tables) are not validated.
        """
        self.registry = registry or SchemaRegistry()
        self._tables: dict[str, pd.DataFrame] = {}
        self._views: dict[str, ViewFunction] = {}
        self._versions: dict[str, int] = {}
        self._history: dict[str, dict[str, LoadRecord]] = {}
        self._append_locks: dict[str, threading.RLock] = {}
        self._lock = threading.RLock()

    # -- catalog -----------------------------------------------------------

    def exists(self, name: str) -> bool:
        """True if a table or view with this name exists."""
        with self._lock:
            return name in self._tables or name in self._views

    def is_view(self, name: str) -> bool:
        """True if name is a registered view."""
        with self._lock:
            return name in self._views

    def list_tables(self) -> list[str]:
        """Names of materialized tables (temporary build tables excluded)."""
        with self._lock:
            return sorted(n for n in self._tables if not n.startswith("__"))

    def list_views(self) -> list[str]:
        """Names of registered views."""
        with self._lock:
            return sorted(self._views)

    def version(self, name: str) -> int:
        """Commit counter of a table (0 for a freshly created one)."""
        with self._lock:
            self._require_table(name)
            return self._versions[name]

    def _require_table(self, name: str) -> None:
        if name not in self._tables:
            if name in self._views:
                msg = f"'{name}' is a view, not a table"
                raise NotFoundError(msg)
            msg = f"Table '{name}' does not exist"
            raise NotFoundError(msg)

    # -- DDL ---------------------------------------------------------------

    def create_table(self, name: str, frame: pd.DataFrame | None = None, *, replace: bool = False) -> None:
        """
        Create a table.

        Without a frame the table is created empty from its registered
        schema. Existing tables are kept unless replace is set.
        """
        with self._lock:
            if name in self._views:
                msg = f"Cannot create table '{name}': a view with that name exists"
                raise DependencyError(msg)
            if name in self._tables and not replace:
                return
            if frame is None:
                frame = self.registry.empty_frame(name)
            self._tables[name] = frame.reset_index(drop=True)
            self._versions[name] = self._versions.get(name, -1) + 1
            self._history.setdefault(name, {})
            self._append_locks.setdefault(name, threading.RLock())
        log.debug("Created table", table=name, rows=len(frame))

    def drop(self, name: str) -> None:
        """Drop a table or view."""
        with self._lock:
            if name in self._views:
                del self._views[name]
                return
            self._require_table(name)
            del self._tables[name]
            self._versions.pop(name, None)
            self._history.pop(name, None)

    def truncate(self, name: str) -> None:
        """Remove all rows of a table and forget its load history."""
        with self.append_lock(name), self._lock:
            current = self._tables[name]
            self._tables[name] = current.iloc[0:0].copy()
            self._versions[name] += 1
            self._history[name] = {}
        log.info("Truncated table", table=name)

    def register_view(self, name: str, function: ViewFunction, *, replace: bool = True) -> None:
        """Register a view, recomputed by calling function on every read."""
        with self._lock:
            if name in self._tables:
                msg = f"Cannot create view '{name}': a table with that name exists"
                raise DependencyError(msg)
            if name in self._views and not replace:
                msg = f"View '{name}' already exists"
                raise DependencyError(msg)
            self._views[name] = function

    # -- DML ---------------------------------------------------------------

    @contextmanager
    def append_lock(self, name: str) -> Iterator[None]:
        """Hold the exclusive append lock of a table."""
        with self._lock:
            self._require_table(name)
            lock = self._append_locks[name]
        with lock:
            yield

    def append_rows(self, name: str, rows: pd.DataFrame) -> int:
        """
        Append rows to a table in one commit.

        Rows are validated against the registered schema first; a
        failure leaves the table unchanged.

        Returns:
            Number of rows appended.

        Raises:
            ConstraintViolation: If the rows do not match the schema.
        """
        if rows.empty:
            return 0
        if name in self.registry:
            try:
                rows = self.registry.validate(rows, name)
            except pandera.errors.SchemaError as e:
                msg = f"Rows for '{name}' violate the table schema: {e}"
                raise ConstraintViolation(msg) from e

        with self.append_lock(name):
            with self._lock:
                current = self._tables[name]
            combined = (
                rows.reset_index(drop=True)
                if current.empty
                else pd.concat([current, rows], ignore_index=True)
            )
            with self._lock:
                self._tables[name] = combined
                self._versions[name] += 1
        log.debug("Appended rows", table=name, rows=len(rows), total=len(combined))
        return len(rows)

    def read_rows(
        self,
        name: str,
        predicate: Predicate | None = None,
        columns: list[str] | None = None,
    ) -> pd.DataFrame:
        """
        Read a table or view.

        Args:
            name: Table or view name.
            predicate: Function returning a boolean mask over the frame.
            columns: Optional column subset.

        Returns:
            A copy of the committed rows (views are recomputed).
        """
        with self._lock:
            view = self._views.get(name)
            frame = self._tables.get(name)
        if view is not None:
            frame = view(self)
        elif frame is None:
            msg = f"Table or view '{name}' does not exist"
            raise NotFoundError(msg)

        if predicate is not None:
            frame = frame[predicate(frame)]
        if columns is not None:
            frame = frame[columns]
        return frame.reset_index(drop=True).copy()

    def swap(self, table_a: str, table_b: str) -> None:
        """Atomically exchange the contents of two tables."""
        with self._lock:
            self._require_table(table_a)
            self._require_table(table_b)
            self._tables[table_a], self._tables[table_b] = (
                self._tables[table_b],
                self._tables[table_a],
            )
            self._versions[table_a] += 1
            self._versions[table_b] += 1
        log.debug("Swapped tables", a=table_a, b=table_b)

    def replace_contents(self, name: str, frame: pd.DataFrame) -> None:
        """
        Replace a table's contents via build-then-swap.

        The new contents are built under a temporary name and swapped in;
        readers see the old or the new contents, never a mixture.
        """
        temp = f"__build_{name}_{uuid.uuid4().hex[:8]}"
        self.create_table(temp, frame)
        try:
            if self.exists(name):
                self.swap(name, temp)
            else:
                self.create_table(name, self._tables[temp])
        finally:
            self.drop(temp)

    # -- versioned-storage collaborator -------------------------------------

    def snapshot(self, name: str) -> pd.DataFrame:
        """Copy of the currently committed contents of a table."""
        with self._lock:
            self._require_table(name)
            return self._tables[name].copy()

    def clone(self, source: str, target: str) -> None:
        """Create target as a copy of source's committed contents."""
        self.create_table(target, self.snapshot(source), replace=True)

    # -- load history ------------------------------------------------------

    def loaded_files(self, name: str) -> dict[str, LoadRecord]:
        """Files loaded into a table since it was created or truncated."""
        with self._lock:
            self._require_table(name)
            return dict(self._history[name])

    def record_load(self, name: str, uri: str, checksum: str, rows_loaded: int) -> None:
        """Remember that a file was loaded into a table."""
        with self._lock:
            self._require_table(name)
            self._history[name][uri] = LoadRecord(uri, checksum, rows_loaded, datetime.now())
