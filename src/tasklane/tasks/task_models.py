# src/tasklane/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Notes:
    - "error" is never entered by the workflow machine; rows may carry it when an
      external writer flags a broken task. It has no outgoing transitions.
    """

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    ERROR = "error"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TODO
        try:
            return cls(raw)
        except ValueError:
            return cls.ERROR

    @property
    def is_resolved(self) -> bool:
        """A dependency on a task in this status no longer holds anything up."""
        return self in (TaskStatus.COMPLETED, TaskStatus.ARCHIVED)

    @property
    def is_open(self) -> bool:
        return self in (TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.PAUSED, TaskStatus.BLOCKED)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_db(cls, raw: str | None) -> Priority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class DependencyType(StrEnum):
    """
    blocks:   the source cannot complete until the target completes.
    requires: the source needs the target; a requires edge child -> parent is the subtask hierarchy.
    """

    BLOCKS = "blocks"
    REQUIRES = "requires"


class NoteKind(StrEnum):
    COMMENT = "comment"
    STATE_CHANGE = "state_change"
    DECISION = "decision"
    REMINDER = "reminder"
    SYSTEM = "system"


# Legal status transitions. Anything not listed here is illegal.
STATUS_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ARCHIVED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PAUSED, TaskStatus.BLOCKED, TaskStatus.COMPLETED, TaskStatus.TODO}
    ),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.TODO}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.TODO}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.ARCHIVED}),
    TaskStatus.ARCHIVED: frozenset(),
    TaskStatus.ERROR: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in STATUS_TRANSITIONS.get(current, frozenset())


@dataclass(slots=True)
class Task:
    id: int
    name: str
    status: TaskStatus
    priority: Priority
    progress: int
    created_at: float
    updated_at: float

    description: str = ""
    assignee: str | None = None
    estimate: float | None = None  # hours; critical path duration

    started_at: float | None = None
    paused_at: float | None = None
    completed_at: float | None = None
    blocked_at: float | None = None
    archived_at: float | None = None

    blocked_reason: str | None = None
    blocked_by: int | None = None

    session_started_at: float | None = None  # live session marker (active task)
    actual_minutes: int = 0

    @property
    def label(self) -> str:
        return f"#{self.id} '{self.name}'"

    @property
    def duration(self) -> float:
        if self.estimate is None or self.estimate <= 0:
            return 1.0
        return float(self.estimate)


@dataclass(frozen=True, slots=True)
class DependencyEdge:
    id: int
    task_id: int  # source: the dependent task
    depends_on_id: int  # target: the task depended upon
    dep_type: DependencyType
    created_at: float

    @property
    def key(self) -> tuple[int, int]:
        return (self.task_id, self.depends_on_id)


@dataclass(frozen=True, slots=True)
class TimelineNote:
    id: int
    task_id: int
    text: str
    kind: NoteKind
    author: str | None
    created_at: float
