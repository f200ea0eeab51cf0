# src/tasklane/graph/engine.py

from __future__ import annotations

"""
Dependency graph engine.

Owns edge validation (self-edges, existence, per-type business rules, cycles)
and the read-only graph analyses (impact, redundancy, bottlenecks, critical path,
chains, hierarchy walks).

There is no in-memory graph: every query re-reads edges through the store adapter,
so callers that need validate-then-write atomicity wrap both in store.transaction().
All traversals are iterative with a visited set scoped to the single call.
"""

import logging
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from ..core.ports import TaskRepo
from ..errors import NotFoundError, ValidationError
from ..tasks.task_models import (
    STATUS_TRANSITIONS,
    DependencyEdge,
    DependencyType,
    Task,
    TaskStatus,
    can_transition,
)
from . import rules
from .rules import RuleViolation

logger = logging.getLogger(__name__)

_SLACK_EPSILON = 1e-9


class ImpactKind(StrEnum):
    UNBLOCKED = "unblocked"
    NEWLY_BLOCKED = "newly_blocked"
    DEPENDENCY_REGRESSED = "dependency_regressed"
    PARENT_PROGRESS_CANDIDATE = "parent_progress_candidate"


@dataclass(frozen=True, slots=True)
class AffectedTask:
    task_id: int
    name: str
    status: TaskStatus
    dep_type: DependencyType
    impact: ImpactKind
    suggested_action: str


@dataclass(slots=True)
class ImpactReport:
    task_id: int
    current_status: TaskStatus
    proposed_status: TaskStatus
    affected: list[AffectedTask] = field(default_factory=list)
    violations: list[RuleViolation] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        """Dry-run verdict: would the transition itself pass the gates?"""
        return not self.violations

    def by_kind(self, kind: ImpactKind) -> list[AffectedTask]:
        return [a for a in self.affected if a.impact == kind]


@dataclass(frozen=True, slots=True)
class Bottleneck:
    task_id: int
    name: str
    dependent_count: int

    @property
    def reason(self) -> str:
        return f"{self.dependent_count} tasks depend on it"


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    task_id: int
    name: str
    status: TaskStatus
    duration: float
    earliest_start: float
    earliest_finish: float
    latest_start: float
    latest_finish: float

    @property
    def slack(self) -> float:
        return self.latest_start - self.earliest_start

    @property
    def critical(self) -> bool:
        return abs(self.slack) < _SLACK_EPSILON


@dataclass(slots=True)
class CriticalPath:
    root_id: int
    duration: float
    path: list[ScheduledTask]
    tasks: list[ScheduledTask]

    @property
    def task_ids(self) -> list[int]:
        return [s.task_id for s in self.path]


@dataclass(frozen=True, slots=True)
class CycleRisk:
    task_id: int
    name: str
    risk_type: str
    description: str


class DependencyGraph:
    """Validation and analysis over the dependency edges held by a TaskRepo."""

    def __init__(
        self,
        store: TaskRepo,
        *,
        bottleneck_threshold: int = 2,
        max_hierarchy_depth: int | None = 5,
        strict_priority: bool = False,
    ) -> None:
        self._store = store
        self.bottleneck_threshold = int(bottleneck_threshold)
        self.max_hierarchy_depth = max_hierarchy_depth
        self.strict_priority = bool(strict_priority)

    # ---- lookups ----

    def require_task(self, task_id: int) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", "TASK_NOT_FOUND", task_id=task_id)
        return task

    def dependencies(self, task_id: int, dep_type: DependencyType | None = None) -> list[DependencyEdge]:
        """Edges leaving task_id (what it depends on)."""
        return self._store.list_edges(task_id=task_id, dep_type=dep_type)

    def dependents(self, task_id: int, dep_type: DependencyType | None = None) -> list[DependencyEdge]:
        """Edges entering task_id (what depends on it)."""
        return self._store.list_edges(depends_on_id=task_id, dep_type=dep_type)

    def _targets(self, dep_type: DependencyType | None = None) -> Callable[[int], list[int]]:
        return lambda node: [e.depends_on_id for e in self.dependencies(node, dep_type)]

    def _sources(self, dep_type: DependencyType | None = None) -> Callable[[int], list[int]]:
        return lambda node: [e.task_id for e in self.dependents(node, dep_type)]

    @staticmethod
    def _preorder(
        start: int,
        neighbours: Callable[[int], Iterable[int]],
        max_depth: int | None,
    ) -> list[int]:
        visited = {start}
        order: list[int] = []
        stack: list[tuple[int, int]] = [(start, 0)]
        while stack:
            node, depth = stack.pop()
            if node != start:
                order.append(node)
            if max_depth is not None and depth >= max_depth:
                continue
            children = [n for n in neighbours(node) if n not in visited]
            visited.update(children)
            stack.extend((n, depth + 1) for n in reversed(children))
        return order

    def _tasks_in_order(self, ids: list[int]) -> list[Task]:
        found = self._store.get_tasks(ids)
        return [found[i] for i in ids if i in found]

    # ---- validation ----

    def would_create_cycle(self, task_id: int, depends_on_id: int) -> bool:
        """
        True if an edge task_id -> depends_on_id would close a directed cycle.

        Walks every outgoing edge (both types) from depends_on_id looking for task_id.
        """
        if task_id == depends_on_id:
            return True

        visited: set[int] = set()
        stack = [depends_on_id]
        while stack:
            node = stack.pop()
            if node == task_id:
                return True
            if node in visited:
                continue
            visited.add(node)
            for edge in self.dependencies(node):
                if edge.depends_on_id not in visited:
                    stack.append(edge.depends_on_id)
        return False

    @staticmethod
    def _longest_chain(start: int, neighbours: Callable[[int], list[int]]) -> int:
        nexts: dict[int, list[int]] = {}
        length: dict[int, int] = {}
        # Post-order: a node's length is known once all of its neighbours have one.
        stack: list[tuple[int, bool]] = [(start, False)]
        while stack:
            node, expanded = stack.pop()
            if node in length:
                continue
            if expanded:
                length[node] = 1 + max((length.get(n, 0) for n in nexts[node]), default=-1)
                continue
            if node not in nexts:
                nexts[node] = neighbours(node)
            stack.append((node, True))
            stack.extend((n, False) for n in nexts[node] if n not in length and n not in nexts)
        return length.get(start, 0)

    def hierarchy_depth(self, task_id: int) -> int:
        """Length of the longest requires-chain above task_id."""
        return self._longest_chain(task_id, self._targets(DependencyType.REQUIRES))

    def subtree_height(self, task_id: int) -> int:
        """Length of the longest requires-chain below task_id (0 for a leaf)."""
        return self._longest_chain(task_id, self._sources(DependencyType.REQUIRES))

    def validate_edge(self, task_id: int, depends_on_id: int, dep_type: DependencyType) -> list[str]:
        """
        Check a candidate edge without writing anything.

        Raises ValidationError / NotFoundError on the first fatal problem.
        Returns the non-fatal warnings (e.g. priority inversion in lenient mode).
        """
        dep_type = DependencyType(dep_type)

        if task_id == depends_on_id:
            raise ValidationError(
                f"Task {task_id} cannot depend on itself",
                "SELF_DEPENDENCY",
                task_id=task_id,
            )

        task = self.require_task(task_id)
        target = self.require_task(depends_on_id)

        parent_depth = child_height = 0
        if dep_type == DependencyType.REQUIRES and self.max_hierarchy_depth is not None:
            parent_depth = self.hierarchy_depth(depends_on_id)
            child_height = self.subtree_height(task_id)

        violations = rules.check_edge(
            dep_type,
            task,
            target,
            strict_priority=self.strict_priority,
            parent_depth=parent_depth,
            child_height=child_height,
            max_depth=self.max_hierarchy_depth,
        )
        fatal = [v for v in violations if v.fatal]
        if fatal:
            first = fatal[0]
            raise ValidationError(
                first.message,
                first.code,
                task_id=task_id,
                depends_on_id=depends_on_id,
                violations=[v.code for v in fatal],
            )

        if self.would_create_cycle(task_id, depends_on_id):
            if dep_type == DependencyType.REQUIRES:
                raise ValidationError(
                    f"Making {task.label} require {target.label} would create a circular hierarchy",
                    "HIERARCHY_CYCLE",
                    task_id=task_id,
                    depends_on_id=depends_on_id,
                )
            raise ValidationError(
                f"Making {task.label} depend on {target.label} would create a circular dependency",
                "DEPENDENCY_CYCLE",
                task_id=task_id,
                depends_on_id=depends_on_id,
            )

        warnings = [v.message for v in violations if not v.fatal]
        for w in warnings:
            logger.warning("Edge %s -[%s]-> %s: %s", task_id, dep_type.value, depends_on_id, w)
        return warnings

    # ---- gating ----

    def unresolved_blockers(self, task_id: int) -> list[Task]:
        ids = [e.depends_on_id for e in self.dependencies(task_id, DependencyType.BLOCKS)]
        return [t for t in self._tasks_in_order(ids) if not t.status.is_resolved]

    def incomplete_children(self, task_id: int) -> list[Task]:
        ids = [e.task_id for e in self.dependents(task_id, DependencyType.REQUIRES)]
        return [t for t in self._tasks_in_order(ids) if not t.status.is_resolved]

    def active_dependents(self, task_id: int) -> list[Task]:
        ids = [e.task_id for e in self.dependents(task_id)]
        return [t for t in self._tasks_in_order(ids) if t.status.is_open]

    def transition_violations(
        self,
        task: Task,
        proposed: TaskStatus,
        *,
        check_blockers: bool = True,
    ) -> list[RuleViolation]:
        """Everything that would stop `task` from moving to `proposed` right now."""
        out: list[RuleViolation] = []

        if not can_transition(task.status, proposed):
            allowed = ", ".join(sorted(s.value for s in STATUS_TRANSITIONS.get(task.status, ()))) or "none"
            out.append(
                RuleViolation(
                    "INVALID_TRANSITION",
                    f"Cannot move {task.label} from {task.status} to {proposed} (allowed: {allowed})",
                )
            )

        entering_work = proposed == TaskStatus.IN_PROGRESS and task.status == TaskStatus.TODO
        if check_blockers and (proposed == TaskStatus.COMPLETED or entering_work):
            blockers = self.unresolved_blockers(task.id)
            if blockers:
                names = ", ".join(f"{b.label} ({b.status})" for b in blockers)
                out.append(RuleViolation("UNRESOLVED_DEPENDENCIES", f"{task.label} is blocked by {names}"))

        if proposed == TaskStatus.COMPLETED:
            children = self.incomplete_children(task.id)
            if children:
                names = ", ".join(f"{c.label} ({c.status})" for c in children)
                out.append(RuleViolation("INCOMPLETE_SUBTASKS", f"{task.label} has incomplete subtasks: {names}"))

        if proposed == TaskStatus.ARCHIVED:
            dependents = self.active_dependents(task.id)
            if dependents:
                names = ", ".join(f"{d.label} ({d.status})" for d in dependents)
                out.append(RuleViolation("ACTIVE_DEPENDENTS", f"Cannot archive {task.label}: still needed by {names}"))

        return out

    # ---- analyses ----

    def compute_impact(self, task_id: int, proposed_status: TaskStatus | str) -> ImpactReport:
        task = self.require_task(task_id)
        proposed = TaskStatus(proposed_status)
        report = ImpactReport(task_id=task.id, current_status=task.status, proposed_status=proposed)

        regresses = task.status.is_resolved and not proposed.is_resolved
        resolves = proposed.is_resolved and not task.status.is_resolved

        incoming = self.dependents(task.id)
        outgoing_parents = self.dependencies(task.id, DependencyType.REQUIRES)
        related = self._store.get_tasks(
            [e.task_id for e in incoming] + [e.depends_on_id for e in outgoing_parents]
        )

        for edge in incoming:
            dep = related.get(edge.task_id)
            if dep is None:
                continue

            kind: ImpactKind | None = None
            action = ""
            if regresses:
                kind = ImpactKind.DEPENDENCY_REGRESSED
                action = "Review task status"
                report.recommendations.append(f"Review {dep.label}: {task.label} is no longer {task.status}")
            elif resolves and dep.status == TaskStatus.BLOCKED:
                kind = ImpactKind.UNBLOCKED
                action = "Task can now proceed"
                report.recommendations.append(f"Unblock {dep.label}")
            elif (
                edge.dep_type == DependencyType.BLOCKS
                and proposed == TaskStatus.BLOCKED
                and dep.status == TaskStatus.IN_PROGRESS
            ):
                kind = ImpactKind.NEWLY_BLOCKED
                action = "Task should be paused"
                report.recommendations.append(f"Pause {dep.label}: its blocker is blocked")

            if kind is not None:
                report.affected.append(
                    AffectedTask(
                        task_id=dep.id,
                        name=dep.name,
                        status=dep.status,
                        dep_type=edge.dep_type,
                        impact=kind,
                        suggested_action=action,
                    )
                )

        if proposed == TaskStatus.COMPLETED and task.status != TaskStatus.COMPLETED:
            for edge in outgoing_parents:
                parent = related.get(edge.depends_on_id)
                if parent is None:
                    continue
                report.affected.append(
                    AffectedTask(
                        task_id=parent.id,
                        name=parent.name,
                        status=parent.status,
                        dep_type=edge.dep_type,
                        impact=ImpactKind.PARENT_PROGRESS_CANDIDATE,
                        suggested_action="Update parent progress",
                    )
                )
                report.recommendations.append(f"Update progress on parent {parent.label}")

        report.violations = self.transition_violations(task, proposed)
        logger.debug(
            "Impact task_id=%s %s->%s affected=%d violations=%d",
            task.id,
            task.status,
            proposed,
            len(report.affected),
            len(report.violations),
        )
        return report

    def find_redundant_edges(self) -> list[DependencyEdge]:
        """
        Edges A->B for which another path A->...->B exists without that edge.

        One edge snapshot per call; BFS per edge.
        """
        edges = self._store.list_edges()
        adjacency: dict[int, list[int]] = defaultdict(list)
        for e in edges:
            adjacency[e.task_id].append(e.depends_on_id)

        redundant: list[DependencyEdge] = []
        for edge in edges:
            start, goal = edge.task_id, edge.depends_on_id
            visited = {start}
            queue = deque(n for n in adjacency[start] if n != goal)
            found = False
            while queue:
                node = queue.popleft()
                if node == goal:
                    found = True
                    break
                if node in visited:
                    continue
                visited.add(node)
                queue.extend(n for n in adjacency[node] if n not in visited)
            if found:
                redundant.append(edge)
        return redundant

    def find_bottlenecks(self, threshold: int | None = None) -> list[Bottleneck]:
        limit = self.bottleneck_threshold if threshold is None else int(threshold)
        counts: dict[int, int] = defaultdict(int)
        for e in self._store.list_edges():
            counts[e.depends_on_id] += 1

        hot = {tid: n for tid, n in counts.items() if n > limit}
        tasks = self._store.get_tasks(hot)
        out = [
            Bottleneck(task_id=tid, name=tasks[tid].name, dependent_count=n)
            for tid, n in hot.items()
            if tid in tasks
        ]
        out.sort(key=lambda b: (-b.dependent_count, b.task_id))
        return out

    def find_parallelizable(self) -> list[Task]:
        """Open todo/in_progress tasks with no dependencies of their own; empty unless 2+."""
        candidates = self._store.list_tasks(statuses=[TaskStatus.TODO, TaskStatus.IN_PROGRESS])
        free = [t for t in candidates if not self.dependencies(t.id)]
        return free if len(free) > 1 else []

    def find_critical_path(self, root_id: int) -> CriticalPath:
        """
        CPM over everything root_id (transitively) depends on.

        Duration per task is its estimate or 1 unit. Raises ValidationError
        DEPENDENCY_CYCLE if the reachable subgraph is not a DAG.
        """
        self.require_task(root_id)

        deps: dict[int, list[int]] = {}
        stack = [root_id]
        while stack:
            node = stack.pop()
            if node in deps:
                continue
            deps[node] = [e.depends_on_id for e in self.dependencies(node)]
            stack.extend(n for n in deps[node] if n not in deps)

        dependents: dict[int, list[int]] = defaultdict(list)
        remaining = {n: len(targets) for n, targets in deps.items()}
        for n, targets in deps.items():
            for t in targets:
                dependents[t].append(n)

        # Kahn: dependencies come before their dependents.
        ready = deque(sorted(n for n, c in remaining.items() if c == 0))
        order: list[int] = []
        while ready:
            node = ready.popleft()
            order.append(node)
            for m in dependents[node]:
                remaining[m] -= 1
                if remaining[m] == 0:
                    ready.append(m)

        if len(order) != len(deps):
            stuck = sorted(n for n, c in remaining.items() if c > 0)
            raise ValidationError(
                f"Dependency cycle reachable from task {root_id}",
                "DEPENDENCY_CYCLE",
                task_id=root_id,
                tasks=stuck,
            )

        tasks = self._store.get_tasks(deps)
        duration = {n: tasks[n].duration for n in order}

        es: dict[int, float] = {}
        ef: dict[int, float] = {}
        for n in order:
            es[n] = max((ef[d] for d in deps[n]), default=0.0)
            ef[n] = es[n] + duration[n]

        total = max(ef.values(), default=0.0)

        ls: dict[int, float] = {}
        lf: dict[int, float] = {}
        for n in reversed(order):
            lf[n] = min((ls[m] for m in dependents[n]), default=total)
            ls[n] = lf[n] - duration[n]

        scheduled = [
            ScheduledTask(
                task_id=n,
                name=tasks[n].name,
                status=tasks[n].status,
                duration=duration[n],
                earliest_start=es[n],
                earliest_finish=ef[n],
                latest_start=ls[n],
                latest_finish=lf[n],
            )
            for n in order
        ]
        scheduled.sort(key=lambda s: (s.earliest_start, s.task_id))
        path = [s for s in scheduled if s.critical]
        return CriticalPath(root_id=root_id, duration=total, path=path, tasks=scheduled)

    # ---- chains & hierarchy ----

    def blocking_chain(self, task_id: int) -> list[Task]:
        """Tasks transitively blocked by task_id (downstream)."""
        return self._tasks_in_order(self._preorder(task_id, self._sources(DependencyType.BLOCKS), None))

    def blocked_by_chain(self, task_id: int) -> list[Task]:
        """Tasks transitively blocking task_id (upstream)."""
        return self._tasks_in_order(self._preorder(task_id, self._targets(DependencyType.BLOCKS), None))

    def parents(self, task_id: int) -> list[Task]:
        ids = [e.depends_on_id for e in self.dependencies(task_id, DependencyType.REQUIRES)]
        return self._tasks_in_order(ids)

    def children(self, task_id: int) -> list[Task]:
        ids = [e.task_id for e in self.dependents(task_id, DependencyType.REQUIRES)]
        return self._tasks_in_order(ids)

    def ancestors(self, task_id: int, depth: int) -> list[Task]:
        if depth <= 0:
            return []
        return self._tasks_in_order(self._preorder(task_id, self._targets(DependencyType.REQUIRES), depth))

    def descendants(self, task_id: int, depth: int) -> list[Task]:
        if depth <= 0:
            return []
        return self._tasks_in_order(self._preorder(task_id, self._sources(DependencyType.REQUIRES), depth))

    def cycle_risks(self, task_id: int) -> list[CycleRisk]:
        """Directly related tasks that task_id could not take a new dependency on."""
        related: list[int] = []
        for e in self.dependencies(task_id) + self.dependents(task_id):
            other = e.depends_on_id if e.task_id == task_id else e.task_id
            if other != task_id and other not in related:
                related.append(other)

        out: list[CycleRisk] = []
        for other in self._tasks_in_order(related):
            if self.would_create_cycle(task_id, other.id):
                out.append(
                    CycleRisk(
                        task_id=other.id,
                        name=other.name,
                        risk_type="POTENTIAL_CYCLE",
                        description=f"Adding a dependency on {other.label} would create a cycle",
                    )
                )
        return out
