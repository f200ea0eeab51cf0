# src/tasklane/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The graph engine, workflow machine and relationship facade depend on Protocols
instead of concrete implementations. This keeps the storage swappable and makes
testing easier.
"""

from collections.abc import Iterable
from contextlib import AbstractContextManager
from typing import Any, Protocol

from ..tasks.task_models import DependencyEdge, DependencyType, NoteKind, Task, TaskStatus, TimelineNote


class TaskRepo(Protocol):
    """
    Task store adapter: keyed reads and writes plus atomic transactions.

    transaction() must be re-entrant on the calling thread: nested blocks join
    the outermost one, and every read/write inside it sees the same snapshot.
    """

    def transaction(self) -> AbstractContextManager[Any]: ...

    # Tasks
    def get_task(self, task_id: int) -> Task | None: ...
    def get_tasks(self, task_ids: Iterable[int]) -> dict[int, Task]: ...
    def list_tasks(
            self,
            *,
            statuses: Iterable[TaskStatus] | None = None,
            limit: int | None = None,
    ) -> list[Task]: ...
    def add_task(self, *, name: str, **fields: Any) -> int: ...
    def update_task(self, task_id: int, **fields: Any) -> None: ...
    def delete_task(self, task_id: int) -> bool: ...

    # Edges
    def list_edges(
            self,
            *,
            task_id: int | None = None,
            depends_on_id: int | None = None,
            dep_type: DependencyType | None = None,
    ) -> list[DependencyEdge]: ...
    def get_edge(
            self,
            task_id: int,
            depends_on_id: int,
            dep_type: DependencyType | None = None,
    ) -> DependencyEdge | None: ...
    def add_edge(self, task_id: int, depends_on_id: int, dep_type: DependencyType) -> DependencyEdge: ...
    def delete_edge(self, edge_id: int) -> bool: ...
    def retarget_edge(self, edge_id: int, new_depends_on_id: int) -> None: ...

    # Notes (used by the store-backed timeline)
    def add_note(self, task_id: int, text: str, kind: NoteKind, author: str | None) -> TimelineNote: ...
    def list_notes(self, task_id: int, *, limit: int | None = None) -> list[TimelineNote]: ...


class TimelineSink(Protocol):
    """Append-only note/event log. Returns None when the append was dropped."""

    def append(
            self,
            task_id: int,
            text: str,
            kind: NoteKind = NoteKind.SYSTEM,
            author: str | None = None,
    ) -> TimelineNote | None: ...
