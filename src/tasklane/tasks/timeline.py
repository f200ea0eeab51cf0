# src/tasklane/tasks/timeline.py

from __future__ import annotations

import logging

from ..core.ports import TaskRepo
from .task_models import NoteKind, TimelineNote

logger = logging.getLogger(__name__)


class StoreTimeline:
    """
    Timeline sink writing notes into the task store.

    Best-effort: a failed append is logged and swallowed so it never rolls back
    the mutation it describes. When called inside a store transaction the note
    commits (or rolls back) together with that transaction.
    """

    def __init__(self, store: TaskRepo, *, default_author: str | None = None) -> None:
        self._store = store
        self._default_author = default_author

    def append(
        self,
        task_id: int,
        text: str,
        kind: NoteKind = NoteKind.SYSTEM,
        author: str | None = None,
    ) -> TimelineNote | None:
        text = (text or "").strip()
        if not text:
            logger.warning("Dropping empty timeline note task_id=%s", task_id)
            return None

        try:
            note = self._store.add_note(task_id, text, kind, author or self._default_author)
        except Exception:
            logger.exception("Timeline append failed task_id=%s kind=%s", task_id, kind.value)
            return None

        logger.debug("Timeline note task_id=%s kind=%s text=%r", task_id, kind.value, text)
        return note

    def notes(self, task_id: int, *, limit: int | None = None) -> list[TimelineNote]:
        return self._store.list_notes(task_id, limit=limit)
