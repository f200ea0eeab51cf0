# src/tasklane/relationships/api.py

from __future__ import annotations

"""
Relationship facade.

Public operations over dependency edges and the subtask hierarchy. Every mutation
runs as: open transaction -> validate through the graph engine -> write -> one
timeline note -> commit. Any failure before commit rolls back the write and the note.
"""

import logging
from dataclasses import dataclass, field

from ..core.ports import TaskRepo, TimelineSink
from ..errors import ConflictError, NotFoundError, ValidationError
from ..graph.engine import Bottleneck, CriticalPath, CycleRisk, DependencyGraph, ImpactReport
from ..tasks.task_models import DependencyEdge, DependencyType, NoteKind, Task, TaskStatus

logger = logging.getLogger(__name__)

_VERBS = {
    DependencyType.BLOCKS: "is blocked by",
    DependencyType.REQUIRES: "requires",
}


@dataclass(slots=True)
class Dependencies:
    task_id: int
    depends_on: list[DependencyEdge] = field(default_factory=list)
    dependents: list[DependencyEdge] = field(default_factory=list)


@dataclass(slots=True)
class TaskHierarchy:
    task: Task
    parent: Task | None
    children: list[Task] = field(default_factory=list)
    ancestors: list[Task] = field(default_factory=list)
    descendants: list[Task] = field(default_factory=list)
    depth: int = 3


@dataclass(slots=True)
class DependencyChainAnalysis:
    task_id: int
    blocking_chain: list[Task] = field(default_factory=list)
    blocked_by_chain: list[Task] = field(default_factory=list)
    critical_path: CriticalPath | None = None
    critical_path_error: str | None = None
    cycle_risks: list[CycleRisk] = field(default_factory=list)


class RelationshipService:
    def __init__(
        self,
        store: TaskRepo,
        graph: DependencyGraph,
        timeline: TimelineSink,
        *,
        hierarchy_depth: int = 3,
        actor: str | None = None,
    ) -> None:
        self._store = store
        self._graph = graph
        self._timeline = timeline
        self.hierarchy_depth = int(hierarchy_depth)
        self.actor = actor

    # ---- dependencies ----

    def add_dependency(
        self,
        task_id: int,
        depends_on_id: int,
        dep_type: DependencyType | str = DependencyType.BLOCKS,
        *,
        actor: str | None = None,
    ) -> DependencyEdge:
        dep_type = _dep_type(dep_type)
        with self._store.transaction():
            edge, task, target, warnings = self._link(task_id, depends_on_id, dep_type)

            text = f"Dependency added: {task.label} {_VERBS[dep_type]} {target.label}"
            if warnings:
                text += f" (warning: {'; '.join(warnings)})"
            self._note(task.id, text, actor)

        logger.info("Dependency added %s -[%s]-> %s", task_id, dep_type.value, depends_on_id)
        return edge

    def remove_dependency(
        self,
        task_id: int,
        depends_on_id: int,
        dep_type: DependencyType | str | None = None,
        *,
        actor: str | None = None,
    ) -> DependencyEdge:
        """Remove the edge task_id -> depends_on_id. Missing edge -> NotFoundError."""
        wanted = _dep_type(dep_type) if dep_type is not None else None
        with self._store.transaction():
            edge = self._store.get_edge(task_id, depends_on_id, wanted)
            if edge is None:
                kind = f" {wanted.value}" if wanted else ""
                raise NotFoundError(
                    f"No{kind} dependency from task {task_id} to task {depends_on_id}",
                    "DEPENDENCY_NOT_FOUND",
                    task_id=task_id,
                    depends_on_id=depends_on_id,
                )

            self._store.delete_edge(edge.id)
            task, target = self._pair(edge)
            self._note(task_id, f"Dependency removed: {task} no longer {_VERBS[edge.dep_type]} {target}", actor)

        logger.info("Dependency removed %s -[%s]-> %s", task_id, edge.dep_type.value, depends_on_id)
        return edge

    def get_dependencies(self, task_id: int, include_reverse: bool = False) -> Dependencies:
        self._graph.require_task(task_id)
        return Dependencies(
            task_id=task_id,
            depends_on=self._graph.dependencies(task_id),
            dependents=self._graph.dependents(task_id) if include_reverse else [],
        )

    # ---- hierarchy ----

    def add_subtask(self, parent_id: int, child_id: int, *, actor: str | None = None) -> DependencyEdge:
        """Make child_id a subtask of parent_id (child requires parent)."""
        return self._attach(parent_id, child_id, "Subtask added", actor)

    def demote_task(self, task_id: int, parent_id: int, *, actor: str | None = None) -> DependencyEdge:
        """Turn a top-level task into a subtask of parent_id."""
        return self._attach(parent_id, task_id, "Demoted", actor)

    def remove_subtask(self, parent_id: int, child_id: int, *, actor: str | None = None) -> DependencyEdge:
        with self._store.transaction():
            edge = self._store.get_edge(child_id, parent_id, DependencyType.REQUIRES)
            if edge is None:
                raise NotFoundError(
                    f"Task {child_id} is not a subtask of task {parent_id}",
                    "DEPENDENCY_NOT_FOUND",
                    task_id=child_id,
                    depends_on_id=parent_id,
                )
            self._store.delete_edge(edge.id)
            child, parent = self._pair(edge)
            self._note(child_id, f"Subtask removed: {child} detached from {parent}", actor)

        logger.info("Subtask removed child=%s parent=%s", child_id, parent_id)
        return edge

    def promote_subtask(
        self,
        task_id: int,
        parent_id: int | None = None,
        *,
        actor: str | None = None,
    ) -> DependencyEdge:
        """
        Remove the task's requires-parent edge, making it top-level.

        With several requires edges the parent to detach from must be named.
        """
        with self._store.transaction():
            task = self._graph.require_task(task_id)
            edge = self._parent_edge(task, parent_id)
            self._store.delete_edge(edge.id)
            _, parent = self._pair(edge)
            self._note(task.id, f"Promoted to top-level task (was a subtask of {parent})", actor)

        logger.info("Subtask promoted task=%s former_parent=%s", task_id, edge.depends_on_id)
        return edge

    def move_subtask(
        self,
        task_id: int,
        new_parent_id: int,
        *,
        old_parent_id: int | None = None,
        actor: str | None = None,
    ) -> DependencyEdge:
        """Retarget the task's requires-parent edge to new_parent_id in one step."""
        with self._store.transaction():
            task = self._graph.require_task(task_id)
            edge = self._parent_edge(task, old_parent_id)

            if edge.depends_on_id == new_parent_id:
                raise ConflictError(
                    f"{task.label} is already a subtask of task {new_parent_id}",
                    "DUPLICATE_DEPENDENCY",
                    task_id=task.id,
                    depends_on_id=new_parent_id,
                )
            self._reject_duplicate(task.id, new_parent_id)

            warnings = self._graph.validate_edge(task.id, new_parent_id, DependencyType.REQUIRES)
            self._store.retarget_edge(edge.id, new_parent_id)
            moved = self._store.get_edge(task.id, new_parent_id, DependencyType.REQUIRES)
            if moved is None:
                raise NotFoundError(f"Edge {edge.id} vanished during move", "DEPENDENCY_NOT_FOUND", edge_id=edge.id)

            _, old_parent = self._pair(edge)
            new_parent = self._graph.require_task(new_parent_id)
            text = f"Moved from {old_parent} to {new_parent.label}"
            if warnings:
                text += f" (warning: {'; '.join(warnings)})"
            self._note(task.id, text, actor)

        logger.info("Subtask moved task=%s %s -> %s", task_id, edge.depends_on_id, new_parent_id)
        return moved

    def get_task_hierarchy(self, task_id: int, depth: int | None = None) -> TaskHierarchy:
        """
        Parent and children, plus ancestors/descendants beyond them.

        depth counts the levels shown including the direct parent/children, so
        depth=1 gives no ancestors or descendants; ancestors start at the grandparent.
        """
        depth = self.hierarchy_depth if depth is None else max(0, int(depth))
        task = self._graph.require_task(task_id)
        parents = self._graph.parents(task_id)
        parent = parents[0] if parents else None
        return TaskHierarchy(
            task=task,
            parent=parent,
            children=self._graph.children(task_id),
            ancestors=self._graph.ancestors(parent.id, depth - 1) if parent else [],
            descendants=self._graph.descendants(task_id, depth - 1),
            depth=depth,
        )

    # ---- analyses ----

    def analyze_dependency_chain(self, task_id: int) -> DependencyChainAnalysis:
        self._graph.require_task(task_id)
        out = DependencyChainAnalysis(
            task_id=task_id,
            blocking_chain=self._graph.blocking_chain(task_id),
            blocked_by_chain=self._graph.blocked_by_chain(task_id),
            cycle_risks=self._graph.cycle_risks(task_id),
        )
        try:
            out.critical_path = self._graph.find_critical_path(task_id)
        except ValidationError as e:
            # A cycle in legacy data should not hide the rest of the report.
            logger.warning("Critical path unavailable for task %s: %s", task_id, e)
            out.critical_path_error = str(e)
        return out

    def compute_impact(self, task_id: int, proposed_status: TaskStatus | str) -> ImpactReport:
        return self._graph.compute_impact(task_id, proposed_status)

    def find_redundant_edges(self) -> list[DependencyEdge]:
        return self._graph.find_redundant_edges()

    def find_bottlenecks(self, threshold: int | None = None) -> list[Bottleneck]:
        return self._graph.find_bottlenecks(threshold)

    def find_critical_path(self, root_id: int) -> CriticalPath:
        return self._graph.find_critical_path(root_id)

    def find_parallelizable(self) -> list[Task]:
        return self._graph.find_parallelizable()

    # ---- helpers ----

    def _link(
        self,
        task_id: int,
        depends_on_id: int,
        dep_type: DependencyType,
    ) -> tuple[DependencyEdge, Task, Task, list[str]]:
        """Validate and insert one edge. Caller owns the transaction."""
        if task_id != depends_on_id:
            self._reject_duplicate(task_id, depends_on_id)
        warnings = self._graph.validate_edge(task_id, depends_on_id, dep_type)
        task = self._graph.require_task(task_id)
        target = self._graph.require_task(depends_on_id)
        edge = self._store.add_edge(task_id, depends_on_id, dep_type)
        return edge, task, target, warnings

    def _attach(self, parent_id: int, child_id: int, verb: str, actor: str | None) -> DependencyEdge:
        with self._store.transaction():
            existing = self._graph.dependencies(child_id, DependencyType.REQUIRES)
            if existing and child_id != parent_id:
                current = existing[0]
                if current.depends_on_id == parent_id:
                    raise ConflictError(
                        f"Task {child_id} is already a subtask of task {parent_id}",
                        "DUPLICATE_DEPENDENCY",
                        task_id=child_id,
                        depends_on_id=parent_id,
                    )
                raise ConflictError(
                    f"Task {child_id} already has parent task {current.depends_on_id}; use move instead",
                    "ALREADY_HAS_PARENT",
                    task_id=child_id,
                    parent_id=current.depends_on_id,
                )

            edge, child, parent, warnings = self._link(child_id, parent_id, DependencyType.REQUIRES)
            text = f"{verb}: {child.label} is now a subtask of {parent.label}"
            if warnings:
                text += f" (warning: {'; '.join(warnings)})"
            self._note(child.id, text, actor)

        logger.info("%s child=%s parent=%s", verb, child_id, parent_id)
        return edge

    def _reject_duplicate(self, task_id: int, depends_on_id: int) -> None:
        existing = self._store.get_edge(task_id, depends_on_id)
        if existing is not None:
            raise ConflictError(
                f"Task {task_id} already has a {existing.dep_type.value} dependency on task {depends_on_id}",
                "DUPLICATE_DEPENDENCY",
                task_id=task_id,
                depends_on_id=depends_on_id,
                dep_type=existing.dep_type.value,
            )

    def _parent_edge(self, task: Task, parent_id: int | None) -> DependencyEdge:
        edges = self._graph.dependencies(task.id, DependencyType.REQUIRES)
        if parent_id is not None:
            edges = [e for e in edges if e.depends_on_id == parent_id]

        if not edges:
            where = f" of task {parent_id}" if parent_id is not None else ""
            raise ValidationError(
                f"{task.label} is not a subtask{where}",
                "NOT_A_SUBTASK",
                task_id=task.id,
            )
        if len(edges) > 1:
            raise ConflictError(
                f"{task.label} has several parents ({', '.join(str(e.depends_on_id) for e in edges)}); name one",
                "AMBIGUOUS_PARENT",
                task_id=task.id,
                parent_ids=[e.depends_on_id for e in edges],
            )
        return edges[0]

    def _pair(self, edge: DependencyEdge) -> tuple[str, str]:
        found = self._store.get_tasks([edge.task_id, edge.depends_on_id])
        return (
            found[edge.task_id].label if edge.task_id in found else f"#{edge.task_id}",
            found[edge.depends_on_id].label if edge.depends_on_id in found else f"#{edge.depends_on_id}",
        )

    def _note(self, task_id: int, text: str, actor: str | None) -> None:
        self._timeline.append(task_id, text, NoteKind.STATE_CHANGE, actor or self.actor)


def _dep_type(raw: DependencyType | str) -> DependencyType:
    try:
        return DependencyType(raw)
    except ValueError:
        valid = ", ".join(t.value for t in DependencyType)
        raise ValidationError(f"Unknown dependency type {raw!r} (valid: {valid})", "INVALID_DEPENDENCY_TYPE") from None
