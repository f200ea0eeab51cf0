# src/tasklane/tasks/task_api.py

from __future__ import annotations

import logging

from ..core.state import AppState
from ..errors import ValidationError
from .task_models import NoteKind, Priority, Task, TaskStatus, TimelineNote

logger = logging.getLogger(__name__)


def create_task(
    state: AppState,
    name: str,
    *,
    description: str = "",
    priority: Priority | str = Priority.MEDIUM,
    assignee: str | None = None,
    estimate: float | None = None,
    actor: str | None = None,
) -> Task:
    """
    Convenience helper: insert a new todo task and log its creation on the timeline.
    Uses state.store (already constructed in bootstrap).
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Task name is required", "NAME_REQUIRED")

    try:
        prio = Priority(priority)
    except ValueError:
        valid = ", ".join(p.value for p in Priority)
        raise ValidationError(f"Unknown priority {priority!r} (valid: {valid})", "INVALID_PRIORITY") from None

    if estimate is not None and float(estimate) < 0:
        raise ValidationError("Estimate cannot be negative", "INVALID_ESTIMATE", estimate=estimate)

    with state.store.transaction():
        task_id = state.store.add_task(
            name=name,
            description=description,
            priority=prio,
            assignee=assignee,
            estimate=estimate,
        )
        state.timeline.append(task_id, f"Task created ({prio} priority)", NoteKind.SYSTEM, actor or state.actor)

    logger.info("Task created id=%s name=%r", task_id, name)
    return state.graph.require_task(task_id)


def set_progress(state: AppState, task_id: int, progress: int, *, actor: str | None = None) -> Task:
    """
    Set progress (0..100).

    A completed task keeps its progress monotonic: lowering it is rejected.
    """
    progress = int(progress)
    if not 0 <= progress <= 100:
        raise ValidationError(
            f"Progress must be within 0..100 (got {progress})",
            "PROGRESS_OUT_OF_RANGE",
            task_id=task_id,
            progress=progress,
        )

    with state.store.transaction():
        task = state.graph.require_task(task_id)
        if task.status == TaskStatus.COMPLETED and progress < task.progress:
            raise ValidationError(
                f"Cannot lower progress of completed task {task.label} ({task.progress}% -> {progress}%)",
                "PROGRESS_REGRESSION",
                task_id=task.id,
                progress=progress,
                current=task.progress,
            )
        if progress == task.progress:
            return task

        state.store.update_task(task.id, progress=progress)
        state.timeline.append(
            task.id,
            f"Progress {task.progress}% -> {progress}%",
            NoteKind.STATE_CHANGE,
            actor or state.actor,
        )

    logger.info("Progress task_id=%s %s -> %s", task_id, task.progress, progress)
    return state.graph.require_task(task_id)


def add_note(
    state: AppState,
    task_id: int,
    text: str,
    *,
    kind: NoteKind | str = NoteKind.COMMENT,
    author: str | None = None,
) -> TimelineNote:
    """
    Manual note from a caller.

    Unlike automatic notes, the note is the whole operation here, so store
    failures propagate instead of being swallowed by the timeline sink.
    """
    text = (text or "").strip()
    if not text:
        raise ValidationError("Note text is required", "EMPTY_NOTE", task_id=task_id)
    try:
        note_kind = NoteKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in NoteKind)
        raise ValidationError(f"Unknown note kind {kind!r} (valid: {valid})", "INVALID_NOTE_KIND") from None

    with state.store.transaction():
        state.graph.require_task(task_id)
        note = state.store.add_note(task_id, text, note_kind, author or state.actor)

    logger.debug("Manual note task_id=%s kind=%s", task_id, note_kind.value)
    return note


def list_notes(state: AppState, task_id: int, *, limit: int | None = None) -> list[TimelineNote]:
    state.graph.require_task(task_id)
    return state.timeline.notes(task_id, limit=limit)
