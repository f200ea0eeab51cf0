# src/tasklane/graph/rules.py

"""
Per-type business rules for dependency edges.

Rules look only at the two endpoint tasks (plus the hierarchy depths the caller
already measured). Structural checks (self-edge, existence, cycles) live in the
engine and run around these.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..tasks.task_models import DependencyType, Task, TaskStatus


@dataclass(frozen=True, slots=True)
class RuleViolation:
    code: str
    message: str
    fatal: bool = True


def check_blocks(task: Task, blocker: Task, *, strict_priority: bool = False) -> list[RuleViolation]:
    """`task` would be blocked by `blocker`."""
    out: list[RuleViolation] = []

    if task.status == TaskStatus.COMPLETED:
        out.append(
            RuleViolation(
                "COMPLETED_TASK_BLOCKED",
                f"Cannot add a blocker to completed task {task.label}",
            )
        )

    if blocker.status == TaskStatus.ARCHIVED:
        out.append(
            RuleViolation(
                "ARCHIVED_BLOCKER",
                f"Archived task {blocker.label} cannot block other tasks",
            )
        )

    if blocker.priority.weight < task.priority.weight:
        out.append(
            RuleViolation(
                "PRIORITY_INVERSION",
                f"Lower-priority {blocker.label} ({blocker.priority}) should not block "
                f"higher-priority {task.label} ({task.priority})",
                fatal=strict_priority,
            )
        )

    return out


def check_requires(
    task: Task,
    required: Task,
    *,
    parent_depth: int = 0,
    child_height: int = 0,
    max_depth: int | None = None,
) -> list[RuleViolation]:
    """`task` would require `required` (for subtasks: child requires parent)."""
    out: list[RuleViolation] = []

    if required.status == TaskStatus.ARCHIVED:
        out.append(
            RuleViolation(
                "ARCHIVED_DEPENDENCY",
                f"Cannot depend on archived task {required.label}",
            )
        )

    task_done = task.status == TaskStatus.COMPLETED
    required_done = required.status == TaskStatus.COMPLETED

    if task_done and not required_done:
        out.append(
            RuleViolation(
                "COMPLETED_REQUIRES_INCOMPLETE",
                f"Completed task {task.label} cannot require incomplete task {required.label}",
            )
        )
    elif not task_done and required_done:
        out.append(
            RuleViolation(
                "INCOMPLETE_REQUIRES_COMPLETED",
                f"Incomplete task {task.label} cannot require (be a subtask of) "
                f"completed task {required.label}",
            )
        )

    # parent_depth counts the levels above `required`, child_height the levels already
    # below `task`; the new edge adds one more in between.
    deepest = parent_depth + 1 + child_height
    if max_depth is not None and deepest > max_depth:
        out.append(
            RuleViolation(
                "HIERARCHY_TOO_DEEP",
                f"Maximum hierarchy depth ({max_depth} levels) would be exceeded ({deepest} levels)",
            )
        )

    return out


def check_edge(
    dep_type: DependencyType,
    task: Task,
    target: Task,
    *,
    strict_priority: bool = False,
    parent_depth: int = 0,
    child_height: int = 0,
    max_depth: int | None = None,
) -> list[RuleViolation]:
    if dep_type == DependencyType.BLOCKS:
        return check_blocks(task, target, strict_priority=strict_priority)
    return check_requires(
        task,
        target,
        parent_depth=parent_depth,
        child_height=child_height,
        max_depth=max_depth,
    )
