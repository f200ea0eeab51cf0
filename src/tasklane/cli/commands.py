# src/tasklane/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import cast

from ..core.state import AppState
from ..errors import TaskError
from ..tasks import task_api
from ..tasks.task_models import DependencyEdge, Task, TaskStatus

CommandEmitter = Callable[[str], None]
CommandHandler3 = Callable[[AppState, list[str], str | None], str]
CommandHandler4 = Callable[[AppState, list[str], str | None, CommandEmitter | None], str]
CommandHandler = CommandHandler3 | CommandHandler4

logger = logging.getLogger(__name__)


class UsageError(ValueError):
    """Bad command arguments; the message is shown to the user as-is."""


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /add, /start, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def names(self) -> list[str]:
        return list(self._help)

    def handle(
        self,
        state: AppState,
        line: str,
        actor: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 4

        try:
            if nparams >= 4:
                h4 = cast(CommandHandler4, handler)
                return h4(state, args, actor, emit)
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, actor)
        except TaskError as e:
            logger.info("/%s rejected: %s", name, e.to_dict())
            return str(e)
        except UsageError as e:
            return f"Usage: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- argument helpers ----


def _ts_local(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _int(raw: str, usage: str) -> int:
    try:
        return int(raw.lstrip("#"))
    except ValueError:
        raise UsageError(usage) from None


def _ids(args: list[str], count: int, usage: str) -> list[int]:
    if len(args) < count:
        raise UsageError(usage)
    return [_int(a, usage) for a in args[:count]]


def _split_flags(args: list[str]) -> tuple[list[str], set[str], dict[str, str]]:
    """Split args into positional words, --flags and key=value options."""
    words: list[str] = []
    flags: set[str] = set()
    opts: dict[str, str] = {}
    for a in args:
        if a.startswith("--") and len(a) > 2:
            flags.add(a[2:].lower())
        elif "=" in a and not a.startswith("="):
            k, _, v = a.partition("=")
            opts[k.lower()] = v
        else:
            words.append(a)
    return words, flags, opts


def _fmt_task(t: Task) -> str:
    who = f" @{t.assignee}" if t.assignee else ""
    return f"#{t.id} [{t.status}] {t.name} ({t.priority}, {t.progress}%){who}"


def _fmt_edge(state: AppState, e: DependencyEdge) -> str:
    found = state.store.get_tasks([e.task_id, e.depends_on_id])
    src = found[e.task_id].label if e.task_id in found else f"#{e.task_id}"
    dst = found[e.depends_on_id].label if e.depends_on_id in found else f"#{e.depends_on_id}"
    return f"{src} -[{e.dep_type}]-> {dst}"


# ---- task commands ----


def cmd_help(state: AppState, args: list[str], actor: str | None) -> str:
    return registry.build_help()


def cmd_add(state: AppState, args: list[str], actor: str | None) -> str:
    """
    /add <name...> [priority=high] [estimate=3] [assignee=bob]
    """
    words, _, opts = _split_flags(args)
    usage = "/add <name...> [priority=low|medium|high|critical] [estimate=<hours>] [assignee=<name>]"
    if not words:
        raise UsageError(usage)

    estimate: float | None = None
    if "estimate" in opts:
        try:
            estimate = float(opts["estimate"])
        except ValueError:
            raise UsageError(usage) from None

    task = task_api.create_task(
        state,
        " ".join(words),
        priority=opts.get("priority", "medium"),
        assignee=opts.get("assignee"),
        estimate=estimate,
        actor=actor,
    )
    return f"Created {_fmt_task(task)}"


def cmd_show(state: AppState, args: list[str], actor: str | None) -> str:
    (task_id,) = _ids(args, 1, "/show <id>")
    t = state.graph.require_task(task_id)
    lines = [
        _fmt_task(t),
        f"  created: {_ts_local(t.created_at)}  updated: {_ts_local(t.updated_at)}",
        f"  time spent: {t.actual_minutes + state.workflow.elapsed_minutes(t)} min",
    ]
    if t.description:
        lines.append(f"  {t.description}")
    if t.estimate is not None:
        lines.append(f"  estimate: {t.estimate:g}h")
    if t.status == TaskStatus.BLOCKED:
        by = f" (waiting on #{t.blocked_by})" if t.blocked_by else ""
        lines.append(f"  blocked: {t.blocked_reason}{by}")
    actions = ", ".join(a.value for a in state.workflow.allowed_actions(t.id)) or "none"
    lines.append(f"  actions: {actions}")
    return "\n".join(lines)


def cmd_list(state: AppState, args: list[str], actor: str | None) -> str:
    """
    /list          -> open tasks
    /list all      -> every task
    /list <status> -> tasks in that status
    """
    if not args:
        statuses = [s for s in TaskStatus if s.is_open]
    elif args[0].lower() == "all":
        statuses = None
    else:
        try:
            statuses = [TaskStatus(args[0].lower())]
        except ValueError:
            raise UsageError("/list [all|" + "|".join(s.value for s in TaskStatus) + "]") from None

    tasks = state.store.list_tasks(statuses=statuses)
    if not tasks:
        return "No tasks."
    return "\n".join(_fmt_task(t) for t in tasks)


def cmd_progress(state: AppState, args: list[str], actor: str | None) -> str:
    task_id, pct = _ids(args, 2, "/progress <id> <0-100>")
    task = task_api.set_progress(state, task_id, pct, actor=actor)
    return f"Progress updated: {_fmt_task(task)}"


def cmd_note(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/note <id> <text...> [kind=comment|decision|reminder]"
    if len(args) < 2:
        raise UsageError(usage)
    task_id = _int(args[0], usage)
    words = args[1:]
    kind = "comment"
    if len(words) > 1 and words[-1].lower().startswith("kind="):
        kind = words[-1].partition("=")[2]
        words = words[:-1]
    note = task_api.add_note(state, task_id, " ".join(words), kind=kind, author=actor)
    return f"Note #{note.id} added to task #{task_id}."


def cmd_notes(state: AppState, args: list[str], actor: str | None) -> str:
    (task_id,) = _ids(args, 1, "/notes <id>")
    notes = task_api.list_notes(state, task_id)
    if not notes:
        return f"No notes for task #{task_id}."
    lines = [f"Timeline of task #{task_id}:"]
    for n in notes:
        who = f" {n.author}" if n.author else ""
        lines.append(f"  [{_ts_local(n.created_at)}] ({n.kind}){who}: {n.text}")
    return "\n".join(lines)


# ---- workflow commands ----


def cmd_start(state: AppState, args: list[str], actor: str | None, emit: CommandEmitter | None = None) -> str:
    words, flags, _ = _split_flags(args)
    (task_id,) = _ids(words, 1, "/start <id> [--force] [--skip-deps]")

    previous = state.workflow.active_task()
    task = state.workflow.start(
        task_id,
        force="force" in flags,
        skip_dependencies="skip-deps" in flags,
        actor=actor,
    )
    if emit is not None and previous is not None and previous.id != task.id:
        emit(f"Paused {previous.label} to switch tasks.")
    return f"Started {_fmt_task(task)}"


def cmd_pause(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/pause <id> [reason...]"
    if not args:
        raise UsageError(usage)
    task = state.workflow.pause(_int(args[0], usage), reason=" ".join(args[1:]), actor=actor)
    return f"Paused {_fmt_task(task)} ({task.actual_minutes} min total)"


def cmd_resume(state: AppState, args: list[str], actor: str | None) -> str:
    words, flags, _ = _split_flags(args)
    (task_id,) = _ids(words, 1, "/resume <id> [--force]")
    task = state.workflow.resume(task_id, force="force" in flags, actor=actor)
    return f"Resumed {_fmt_task(task)}"


def cmd_done(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/done <id> [--force] [note...]"
    words, flags, _ = _split_flags(args)
    if not words:
        raise UsageError(usage)
    task = state.workflow.complete(
        _int(words[0], usage),
        force="force" in flags,
        note=" ".join(words[1:]),
        actor=actor,
    )
    return f"Completed {_fmt_task(task)} ({task.actual_minutes} min total)"


def cmd_block(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/block <id> <reason...> [by=<task id>] [--cascade]"
    words, flags, opts = _split_flags(args)
    if not words:
        raise UsageError(usage)
    blocked_by = _int(opts["by"], usage) if "by" in opts else None
    task = state.workflow.block(
        _int(words[0], usage),
        reason=" ".join(words[1:]),
        blocked_by=blocked_by,
        cascade="cascade" in flags,
        actor=actor,
    )
    return f"Blocked {_fmt_task(task)}: {task.blocked_reason}"


def cmd_unblock(state: AppState, args: list[str], actor: str | None) -> str:
    words, flags, _ = _split_flags(args)
    (task_id,) = _ids(words, 1, "/unblock <id> [--resume] [--force]")
    task = state.workflow.unblock(task_id, resume="resume" in flags, force="force" in flags, actor=actor)
    return f"Unblocked {_fmt_task(task)}"


def cmd_archive(state: AppState, args: list[str], actor: str | None) -> str:
    words, flags, _ = _split_flags(args)
    (task_id,) = _ids(words, 1, "/archive <id> [--cascade]")
    task = state.workflow.archive(task_id, cascade="cascade" in flags, actor=actor)
    return f"Archived {_fmt_task(task)}"


def cmd_reset(state: AppState, args: list[str], actor: str | None) -> str:
    (task_id,) = _ids(args, 1, "/reset <id>")
    task = state.workflow.reset(task_id, actor=actor)
    return f"Moved back to todo: {_fmt_task(task)}"


def cmd_stats(state: AppState, args: list[str], actor: str | None) -> str:
    s = state.workflow.stats()
    counts = ", ".join(f"{status}={n}" for status, n in s.by_status.items() if n)
    lines = [f"Tasks by status: {counts or 'none'}"]
    if s.active_task is not None:
        lines.append(f"Active: {_fmt_task(s.active_task)} ({s.session_minutes} min this session)")
    else:
        lines.append("Active: none")
    return "\n".join(lines)


# ---- relationship commands ----


def cmd_dep(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/dep <task id> <depends-on id> [blocks|requires]"
    task_id, depends_on_id = _ids(args, 2, usage)
    dep_type = args[2].lower() if len(args) > 2 else "blocks"
    edge = state.relationships.add_dependency(task_id, depends_on_id, dep_type, actor=actor)
    return f"Dependency added: {_fmt_edge(state, edge)}"


def cmd_undep(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/undep <task id> <depends-on id> [blocks|requires]"
    task_id, depends_on_id = _ids(args, 2, usage)
    dep_type = args[2].lower() if len(args) > 2 else None
    edge = state.relationships.remove_dependency(task_id, depends_on_id, dep_type, actor=actor)
    return f"Dependency removed: #{edge.task_id} -[{edge.dep_type}]-> #{edge.depends_on_id}"


def cmd_deps(state: AppState, args: list[str], actor: str | None) -> str:
    (task_id,) = _ids(args, 1, "/deps <id>")
    deps = state.relationships.get_dependencies(task_id, include_reverse=True)
    lines = [f"Task #{task_id} depends on:"]
    lines += [f"  {_fmt_edge(state, e)}" for e in deps.depends_on] or ["  (nothing)"]
    lines.append("Depended on by:")
    lines += [f"  {_fmt_edge(state, e)}" for e in deps.dependents] or ["  (nothing)"]
    return "\n".join(lines)


def cmd_sub(state: AppState, args: list[str], actor: str | None) -> str:
    """
    /sub <parent> <child>          -> make child a subtask of parent
    /sub remove <parent> <child>   -> detach child from parent
    """
    if args and args[0].lower() in ("remove", "rm"):
        parent_id, child_id = _ids(args[1:], 2, "/sub remove <parent id> <child id>")
        state.relationships.remove_subtask(parent_id, child_id, actor=actor)
        return f"Task #{child_id} is no longer a subtask of #{parent_id}."

    parent_id, child_id = _ids(args, 2, "/sub <parent id> <child id> | /sub remove <parent id> <child id>")
    state.relationships.add_subtask(parent_id, child_id, actor=actor)
    return f"Task #{child_id} is now a subtask of #{parent_id}."


def cmd_promote(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/promote <id> [parent id]"
    (task_id,) = _ids(args, 1, usage)
    parent_id = _int(args[1], usage) if len(args) > 1 else None
    edge = state.relationships.promote_subtask(task_id, parent_id, actor=actor)
    return f"Task #{task_id} promoted (was a subtask of #{edge.depends_on_id})."


def cmd_demote(state: AppState, args: list[str], actor: str | None) -> str:
    task_id, parent_id = _ids(args, 2, "/demote <id> <parent id>")
    state.relationships.demote_task(task_id, parent_id, actor=actor)
    return f"Task #{task_id} is now a subtask of #{parent_id}."


def cmd_move(state: AppState, args: list[str], actor: str | None) -> str:
    task_id, new_parent_id = _ids(args, 2, "/move <id> <new parent id>")
    edge = state.relationships.move_subtask(task_id, new_parent_id, actor=actor)
    return f"Task #{task_id} moved under #{edge.depends_on_id}."


def cmd_tree(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/tree <id> [depth]"
    (task_id,) = _ids(args, 1, usage)
    depth = _int(args[1], usage) if len(args) > 1 else None
    h = state.relationships.get_task_hierarchy(task_id, depth)

    lines = [_fmt_task(h.task)]
    lines.append(f"  parent: {_fmt_task(h.parent) if h.parent else '(top-level)'}")
    lines.append(f"  ancestors (depth {h.depth}): " + (", ".join(t.label for t in h.ancestors) or "-"))
    lines.append("  children:")
    lines += [f"    {_fmt_task(c)}" for c in h.children] or ["    -"]
    lines.append(f"  descendants (depth {h.depth}): " + (", ".join(t.label for t in h.descendants) or "-"))
    return "\n".join(lines)


# ---- analysis commands ----


def cmd_chain(state: AppState, args: list[str], actor: str | None) -> str:
    (task_id,) = _ids(args, 1, "/chain <id>")
    a = state.relationships.analyze_dependency_chain(task_id)
    lines = [f"Dependency chain of task #{task_id}:"]
    lines.append("  blocks: " + (", ".join(t.label for t in a.blocking_chain) or "-"))
    lines.append("  blocked by: " + (", ".join(t.label for t in a.blocked_by_chain) or "-"))
    if a.critical_path is not None:
        path = " -> ".join(f"#{i}" for i in a.critical_path.task_ids) or "-"
        lines.append(f"  critical path ({a.critical_path.duration:g}): {path}")
    else:
        lines.append(f"  critical path unavailable: {a.critical_path_error}")
    if a.cycle_risks:
        lines.append("  cycle risks:")
        lines += [f"    {r.description}" for r in a.cycle_risks]
    return "\n".join(lines)


def cmd_impact(state: AppState, args: list[str], actor: str | None) -> str:
    usage = "/impact <id> <status>"
    (task_id,) = _ids(args, 1, usage)
    if len(args) < 2:
        raise UsageError(usage)
    try:
        proposed = TaskStatus(args[1].lower())
    except ValueError:
        raise UsageError(usage) from None

    report = state.relationships.compute_impact(task_id, proposed)
    verdict = "allowed" if report.allowed else "NOT allowed"
    lines = [f"Task #{task_id}: {report.current_status} -> {report.proposed_status} is {verdict}"]
    lines += [f"  [{v.code}] {v.message}" for v in report.violations]
    for a in report.affected:
        lines.append(f"  #{a.task_id} {a.name} ({a.status}, {a.dep_type}): {a.impact} - {a.suggested_action}")
    if report.recommendations:
        lines.append("Recommendations:")
        lines += [f"  - {r}" for r in report.recommendations]
    return "\n".join(lines)


def cmd_redundant(state: AppState, args: list[str], actor: str | None) -> str:
    edges = state.relationships.find_redundant_edges()
    if not edges:
        return "No redundant dependencies."
    return "Redundant dependencies (implied by another path):\n" + "\n".join(
        f"  {_fmt_edge(state, e)}" for e in edges
    )


def cmd_bottlenecks(state: AppState, args: list[str], actor: str | None) -> str:
    threshold = _int(args[0], "/bottlenecks [threshold]") if args else None
    found = state.relationships.find_bottlenecks(threshold)
    if not found:
        return "No bottlenecks."
    return "Bottlenecks:\n" + "\n".join(f"  #{b.task_id} {b.name}: {b.reason}" for b in found)


def cmd_critical(state: AppState, args: list[str], actor: str | None) -> str:
    (task_id,) = _ids(args, 1, "/critical <id>")
    cp = state.relationships.find_critical_path(task_id)
    lines = [f"Critical path to task #{task_id} (total {cp.duration:g}):"]
    for s in cp.tasks:
        mark = "*" if s.critical else " "
        lines.append(
            f" {mark} #{s.task_id} {s.name}: start {s.earliest_start:g}-{s.latest_start:g}, slack {s.slack:g}"
        )
    return "\n".join(lines)


def cmd_parallel(state: AppState, args: list[str], actor: str | None) -> str:
    free = state.relationships.find_parallelizable()
    if not free:
        return "No independent tasks to run in parallel."
    return "Can run in parallel:\n" + "\n".join(f"  {_fmt_task(t)}" for t in free)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("add", cmd_add, help_text="Create a task: /add <name> [priority=high] [estimate=2].")
registry.register("show", cmd_show, help_text="Show one task: /show <id>.")
registry.register("list", cmd_list, help_text="List tasks: /list [all|<status>].", aliases=["ls"])
registry.register("progress", cmd_progress, help_text="Set progress: /progress <id> <0-100>.")
registry.register("note", cmd_note, help_text="Add a note: /note <id> <text>.")
registry.register("notes", cmd_notes, help_text="Show the timeline: /notes <id>.")
registry.register("start", cmd_start, help_text="Start a task: /start <id> [--force] [--skip-deps].")
registry.register("pause", cmd_pause, help_text="Pause a task: /pause <id> [reason].")
registry.register("resume", cmd_resume, help_text="Resume a paused task: /resume <id> [--force].")
registry.register("done", cmd_done, help_text="Complete a task: /done <id> [--force] [note].", aliases=["complete"])
registry.register("block", cmd_block, help_text="Block a task: /block <id> <reason> [by=<id>] [--cascade].")
registry.register("unblock", cmd_unblock, help_text="Unblock a task: /unblock <id> [--resume] [--force].")
registry.register("archive", cmd_archive, help_text="Archive a todo/completed task: /archive <id> [--cascade].")
registry.register("reset", cmd_reset, help_text="Move a started task back to todo: /reset <id>.")
registry.register("stats", cmd_stats, help_text="Task counts per status and the active session.")
registry.register("dep", cmd_dep, help_text="Add a dependency: /dep <task> <depends-on> [blocks|requires].")
registry.register("undep", cmd_undep, help_text="Remove a dependency: /undep <task> <depends-on> [type].")
registry.register("deps", cmd_deps, help_text="Show dependencies both ways: /deps <id>.")
registry.register("sub", cmd_sub, help_text="Subtasks: /sub <parent> <child> | /sub remove <parent> <child>.")
registry.register("promote", cmd_promote, help_text="Make a subtask top-level: /promote <id> [parent].")
registry.register("demote", cmd_demote, help_text="Make a task a subtask: /demote <id> <parent>.")
registry.register("move", cmd_move, help_text="Move a subtask: /move <id> <new parent>.")
registry.register("tree", cmd_tree, help_text="Show the hierarchy: /tree <id> [depth].")
registry.register("chain", cmd_chain, help_text="Dependency chain analysis: /chain <id>.")
registry.register("impact", cmd_impact, help_text="Dry-run a status change: /impact <id> <status>.")
registry.register("redundant", cmd_redundant, help_text="List dependencies implied by other paths.")
registry.register("bottlenecks", cmd_bottlenecks, help_text="Tasks many others depend on: /bottlenecks [threshold].")
registry.register("critical", cmd_critical, help_text="Critical path to a task: /critical <id>.")
registry.register("parallel", cmd_parallel, help_text="Independent open tasks that can run in parallel.")
