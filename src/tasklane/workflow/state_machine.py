# src/tasklane/workflow/state_machine.py

from __future__ import annotations

"""
Workflow state machine.

Named actions move a task through the status table in task_models.STATUS_TRANSITIONS:

    start     todo        -> in_progress
    pause     in_progress -> paused
    resume    paused      -> in_progress
    complete  in_progress -> completed
    block     in_progress -> blocked
    unblock   blocked     -> todo (or in_progress with resume=True)
    archive   todo/completed -> archived
    reset     in_progress/paused -> todo

Only one task may be active (in_progress with a live session). Starting or resuming
another one is rejected with a ConflictError naming the active task, unless
force=True, in which case the active task is paused automatically first.

The active task and the session start live in the store, not in this object.
Each action runs in a single store transaction together with its timeline note.
block and archive take cascade=True to push the change down to requires-children
(in-progress children get blocked, completed children get archived).
"""

import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..core.ports import TaskRepo, TimelineSink
from ..errors import ConflictError, ValidationError
from ..graph.engine import DependencyGraph
from ..tasks.task_models import NoteKind, Task, TaskStatus, can_transition

logger = logging.getLogger(__name__)


class WorkflowAction(StrEnum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    BLOCK = "block"
    UNBLOCK = "unblock"
    ARCHIVE = "archive"
    RESET = "reset"


# Statuses each action may be applied from.
ACTION_SOURCES: dict[WorkflowAction, frozenset[TaskStatus]] = {
    WorkflowAction.START: frozenset({TaskStatus.TODO}),
    WorkflowAction.PAUSE: frozenset({TaskStatus.IN_PROGRESS}),
    WorkflowAction.RESUME: frozenset({TaskStatus.PAUSED}),
    WorkflowAction.COMPLETE: frozenset({TaskStatus.IN_PROGRESS}),
    WorkflowAction.BLOCK: frozenset({TaskStatus.IN_PROGRESS}),
    WorkflowAction.UNBLOCK: frozenset({TaskStatus.BLOCKED}),
    WorkflowAction.ARCHIVE: frozenset({TaskStatus.TODO, TaskStatus.COMPLETED}),
    WorkflowAction.RESET: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.PAUSED}),
}

# Child status moved by a cascading parent action: {action: (child sources, child target)}.
CASCADES: dict[WorkflowAction, tuple[frozenset[TaskStatus], TaskStatus]] = {
    WorkflowAction.BLOCK: (frozenset({TaskStatus.TODO, TaskStatus.IN_PROGRESS}), TaskStatus.BLOCKED),
    WorkflowAction.ARCHIVE: (frozenset({TaskStatus.COMPLETED}), TaskStatus.ARCHIVED),
}


@dataclass(slots=True)
class WorkflowStats:
    by_status: dict[TaskStatus, int] = field(default_factory=dict)
    active_task: Task | None = None
    session_minutes: int = 0


class WorkflowMachine:
    def __init__(
        self,
        store: TaskRepo,
        graph: DependencyGraph,
        timeline: TimelineSink,
        *,
        completion_threshold: int = 90,
        actor: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._graph = graph
        self._timeline = timeline
        self.completion_threshold = int(completion_threshold)
        self.actor = actor
        self._clock = clock

    # ---- queries ----

    def active_task(self) -> Task | None:
        active = self._store.list_tasks(statuses=[TaskStatus.IN_PROGRESS], limit=1)
        return active[0] if active else None

    def allowed_actions(self, task_id: int) -> list[WorkflowAction]:
        task = self._graph.require_task(task_id)
        return [a for a, sources in ACTION_SOURCES.items() if task.status in sources]

    def elapsed_minutes(self, task: Task, now: float | None = None) -> int:
        """Whole minutes in the current session (0 without a live session)."""
        if task.session_started_at is None:
            return 0
        now = self._clock() if now is None else now
        return max(0, round((now - task.session_started_at) / 60.0))

    def stats(self) -> WorkflowStats:
        """Task counts per status plus the active task and its current session time."""
        by_status = dict.fromkeys(TaskStatus, 0)
        for task in self._store.list_tasks():
            by_status[task.status] += 1
        active = self.active_task()
        return WorkflowStats(
            by_status=by_status,
            active_task=active,
            session_minutes=self.elapsed_minutes(active) if active else 0,
        )

    # ---- dispatch ----

    def transition(self, task_id: int, action: WorkflowAction | str, **options: Any) -> Task:
        try:
            act = WorkflowAction(action)
        except ValueError:
            valid = ", ".join(a.value for a in WorkflowAction)
            raise ValidationError(f"Unknown action {action!r} (valid: {valid})", "UNKNOWN_ACTION") from None

        handler: Callable[..., Task] = getattr(self, act.value)
        accepted = [p for p in inspect.signature(handler).parameters if p != "task_id"]
        unknown = sorted(set(options) - set(accepted))
        if unknown:
            raise ValidationError(
                f"{act} does not take {', '.join(unknown)} (options: {', '.join(accepted)})",
                "INVALID_OPTION",
                task_id=task_id,
                action=act.value,
                options=unknown,
            )
        return handler(task_id, **options)

    # ---- actions ----

    def start(
        self,
        task_id: int,
        *,
        force: bool = False,
        skip_dependencies: bool = False,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Task:
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.START)
            self._gate(task, TaskStatus.IN_PROGRESS, check_blockers=not skip_dependencies)
            self._claim_active(task, force=force, actor=actor)

            now = self._clock()
            self._store.update_task(
                task.id,
                status=TaskStatus.IN_PROGRESS,
                started_at=now,
                session_started_at=now,
            )
            self._note(task.id, _with_reason("Task started", reason), actor)
            logger.info("Task %s started (force=%s)", task.id, force)
            return self._reload(task.id)

    def pause(
        self,
        task_id: int,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Task:
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.PAUSE)
            self._pause(task, automatic=False, reason=reason, actor=actor)
            return self._reload(task.id)

    def resume(
        self,
        task_id: int,
        *,
        force: bool = False,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Task:
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.RESUME)
            self._claim_active(task, force=force, actor=actor)

            self._store.update_task(
                task.id,
                status=TaskStatus.IN_PROGRESS,
                session_started_at=self._clock(),
            )
            self._note(task.id, _with_reason("Task resumed", reason), actor)
            logger.info("Task %s resumed (force=%s)", task.id, force)
            return self._reload(task.id)

    def complete(
        self,
        task_id: int,
        *,
        force: bool = False,
        note: str | None = None,
        actor: str | None = None,
    ) -> Task:
        """
        Finish an in-progress task.

        Requires resolved blockers and finished subtasks. Progress must reach
        completion_threshold unless force=True (force does not bypass the graph gates).
        """
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.COMPLETE)
            self._gate(task, TaskStatus.COMPLETED)

            if not force and task.progress < self.completion_threshold:
                raise ValidationError(
                    f"{task.label} is at {task.progress}% progress; "
                    f"completion needs {self.completion_threshold}% (use force to override)",
                    "PROGRESS_BELOW_THRESHOLD",
                    task_id=task.id,
                    progress=task.progress,
                    threshold=self.completion_threshold,
                )

            now = self._clock()
            total = task.actual_minutes + self.elapsed_minutes(task, now)
            self._store.update_task(
                task.id,
                status=TaskStatus.COMPLETED,
                progress=100,
                completed_at=now,
                session_started_at=None,
                actual_minutes=total,
            )
            self._note(task.id, _with_reason(f"Task completed ({total} min spent)", note), actor)
            logger.info("Task %s completed minutes=%s", task.id, total)
            return self._reload(task.id)

    def block(
        self,
        task_id: int,
        *,
        reason: str | None = None,
        blocked_by: int | None = None,
        cascade: bool = False,
        actor: str | None = None,
    ) -> Task:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to block a task", "BLOCK_REASON_REQUIRED", task_id=task_id)

        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.BLOCK)

            blocker: Task | None = None
            if blocked_by is not None:
                if int(blocked_by) == task.id:
                    raise ValidationError(f"{task.label} cannot block itself", "SELF_DEPENDENCY", task_id=task.id)
                blocker = self._graph.require_task(int(blocked_by))

            now = self._clock()
            self._store.update_task(
                task.id,
                status=TaskStatus.BLOCKED,
                blocked_at=now,
                blocked_reason=reason,
                blocked_by=blocker.id if blocker else None,
                session_started_at=None,
                actual_minutes=task.actual_minutes + self.elapsed_minutes(task, now),
            )
            text = f"Task blocked: {reason}"
            if blocker is not None:
                text += f" (waiting on {blocker.label})"
            self._note(task.id, text, actor)
            moved = self._cascade(task, WorkflowAction.BLOCK, actor) if cascade else []
            logger.info("Task %s blocked by=%s cascaded=%s", task.id, blocked_by, len(moved))
            return self._reload(task.id)

    def unblock(
        self,
        task_id: int,
        *,
        resume: bool = False,
        force: bool = False,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Task:
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.UNBLOCK)

            target = TaskStatus.IN_PROGRESS if resume else TaskStatus.TODO
            if resume:
                self._claim_active(task, force=force, actor=actor)

            self._store.update_task(
                task.id,
                status=target,
                blocked_reason=None,
                blocked_by=None,
                session_started_at=self._clock() if resume else None,
            )
            self._note(task.id, _with_reason(f"Task unblocked ({target})", reason), actor)
            logger.info("Task %s unblocked -> %s", task.id, target)
            return self._reload(task.id)

    def archive(
        self,
        task_id: int,
        *,
        reason: str | None = None,
        cascade: bool = False,
        actor: str | None = None,
    ) -> Task:
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.ARCHIVE)
            self._gate(task, TaskStatus.ARCHIVED)

            self._store.update_task(task.id, status=TaskStatus.ARCHIVED, archived_at=self._clock())
            self._note(task.id, _with_reason("Task archived", reason), actor)
            moved = self._cascade(task, WorkflowAction.ARCHIVE, actor) if cascade else []
            logger.info("Task %s archived cascaded=%s", task.id, len(moved))
            return self._reload(task.id)

    def reset(
        self,
        task_id: int,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Task:
        with self._store.transaction():
            task = self._load(task_id, WorkflowAction.RESET)

            now = self._clock()
            self._store.update_task(
                task.id,
                status=TaskStatus.TODO,
                session_started_at=None,
                actual_minutes=task.actual_minutes + self.elapsed_minutes(task, now),
            )
            self._note(task.id, _with_reason("Task moved back to todo", reason), actor)
            logger.info("Task %s reset to todo", task.id)
            return self._reload(task.id)

    # ---- helpers ----

    def _load(self, task_id: int, action: WorkflowAction) -> Task:
        task = self._graph.require_task(task_id)
        sources = ACTION_SOURCES[action]
        if task.status not in sources:
            allowed = ", ".join(a.value for a, s in ACTION_SOURCES.items() if task.status in s) or "none"
            raise ValidationError(
                f"Cannot {action} {task.label} in {task.status} state (allowed actions: {allowed})",
                "INVALID_TRANSITION",
                task_id=task.id,
                action=action.value,
                status=task.status.value,
            )
        return task

    def _reload(self, task_id: int) -> Task:
        return self._graph.require_task(task_id)

    def _gate(self, task: Task, target: TaskStatus, *, check_blockers: bool = True) -> None:
        violations = self._graph.transition_violations(task, target, check_blockers=check_blockers)
        if not violations:
            return
        first = violations[0]
        raise ValidationError(
            first.message,
            first.code,
            task_id=task.id,
            target=target.value,
            violations=[v.code for v in violations],
        )

    def _claim_active(self, task: Task, *, force: bool, actor: str | None) -> None:
        others = [t for t in self._store.list_tasks(statuses=[TaskStatus.IN_PROGRESS]) if t.id != task.id]
        if not others:
            return

        if not force:
            current = others[0]
            raise ConflictError(
                f"Task {current.label} is already in progress; pause it first or use force to switch",
                "ACTIVE_TASK_CONFLICT",
                task_id=task.id,
                active_task_id=current.id,
            )

        for other in others:
            self._pause(other, automatic=True, reason=f"switching to {task.label}", actor=actor)

    def _pause(self, task: Task, *, automatic: bool, reason: str | None, actor: str | None) -> None:
        now = self._clock()
        minutes = self.elapsed_minutes(task, now)
        self._store.update_task(
            task.id,
            status=TaskStatus.PAUSED,
            paused_at=now,
            session_started_at=None,
            actual_minutes=task.actual_minutes + minutes,
        )
        head = "Task paused automatically" if automatic else "Task paused"
        self._note(task.id, _with_reason(f"{head} after {minutes} min", reason), actor)
        logger.info("Task %s paused automatic=%s minutes=%s", task.id, automatic, minutes)

    def _note(self, task_id: int, text: str, actor: str | None) -> None:
        self._timeline.append(task_id, text, NoteKind.SYSTEM, actor or self.actor)

    def _cascade(self, parent: Task, action: WorkflowAction, actor: str | None) -> list[Task]:
        """Apply the parent's change to requires-children, recursively, where the table allows it."""
        sources, target = CASCADES[action]
        moved: list[Task] = []
        seen = {parent.id}
        stack = [parent]
        while stack:
            node = stack.pop()
            for child in self._graph.children(node.id):
                if child.id in seen:
                    continue
                seen.add(child.id)
                if child.status not in sources or not can_transition(child.status, target):
                    continue

                now = self._clock()
                reason = f"parent {node.label} is {target}"
                if target == TaskStatus.BLOCKED:
                    self._store.update_task(
                        child.id,
                        status=TaskStatus.BLOCKED,
                        blocked_at=now,
                        blocked_reason=reason,
                        blocked_by=node.id,
                        session_started_at=None,
                        actual_minutes=child.actual_minutes + self.elapsed_minutes(child, now),
                    )
                    self._note(child.id, f"Task blocked: {reason}", actor)
                else:
                    self._store.update_task(child.id, status=target, archived_at=now)
                    self._note(child.id, f"Task archived: {reason}", actor)

                logger.debug("Cascade %s: task %s -> %s", action, child.id, target)
                moved.append(child)
                stack.append(child)
        return moved


def _with_reason(text: str, reason: str | None) -> str:
    reason = (reason or "").strip()
    return f"{text}: {reason}" if reason else text
