# tests/test_commands.py

from __future__ import annotations

import logging

from tasklane.cli.commands import CommandRegistry, registry
from tasklane.tasks.task_models import TaskStatus


def test_command_registry_routes_3_and_4_params(state) -> None:
    reg = CommandRegistry()
    called = {"h3": 0, "h4": 0}

    def h3(state, args, actor):
        called["h3"] += 1
        return "h3"

    def h4(state, args, actor, emit):
        called["h4"] += 1
        if emit is not None:
            emit("note")
        return "h4"

    reg.register("a", h3, "a")
    reg.register("b", h4, "b")

    assert reg.handle(state, "/a x", actor="u") == "h3"
    assert reg.handle(state, "/b y", actor="u", emit=lambda _: None) == "h4"
    assert called["h3"] == 1
    assert called["h4"] == 1


def test_command_registry_unknown_and_non_command(state) -> None:
    reg = CommandRegistry()
    assert reg.handle(state, "hello") is None
    assert "Unknown command" in (reg.handle(state, "/nope") or "")
    assert "Empty command" in (reg.handle(state, "/") or "")


def test_every_documented_command_is_registered() -> None:
    expected = {
        "help", "add", "show", "list", "progress", "note", "notes",
        "start", "pause", "resume", "done", "block", "unblock", "archive", "reset", "stats",
        "dep", "undep", "deps", "sub", "promote", "demote", "move", "tree",
        "chain", "impact", "redundant", "bottlenecks", "critical", "parallel",
    }
    assert expected <= set(registry.names())
    assert "/dep - Add a dependency" in registry.build_help()


def test_task_errors_are_rendered_with_code(state) -> None:
    registry.handle(state, "/add Solo")
    reply = registry.handle(state, "/dep 1 1")
    assert reply is not None
    assert reply.startswith("[SELF_DEPENDENCY]")

    reply = registry.handle(state, "/show 77")
    assert reply is not None and reply.startswith("[TASK_NOT_FOUND]")


def test_usage_errors(state) -> None:
    assert (registry.handle(state, "/show abc") or "").startswith("Usage: /show <id>")
    assert (registry.handle(state, "/add") or "").startswith("Usage: /add")


def test_console_flow(state) -> None:
    out = registry.handle(state, "/add Write release notes priority=high estimate=2", actor="cli")
    assert out is not None and "Created #1" in out
    registry.handle(state, "/add Tag release")
    assert "Dependency added" in (registry.handle(state, "/dep 2 1") or "")

    reply = registry.handle(state, "/start 2")
    assert reply is not None and reply.startswith("[UNRESOLVED_DEPENDENCIES]")

    emitted: list[str] = []
    registry.handle(state, "/start 1")
    registry.handle(state, "/start 2 --force --skip-deps", emit=emitted.append)
    assert emitted == ["Paused #1 'Write release notes' to switch tasks."]
    assert state.store.get_task(1).status == TaskStatus.PAUSED

    assert "Blocked" in (registry.handle(state, "/block 2 waiting for QA by=1") or "")
    assert state.store.get_task(2).blocked_by == 1

    listing = registry.handle(state, "/list") or ""
    assert "#1 [paused]" in listing and "#2 [blocked]" in listing

    notes = registry.handle(state, "/notes 2") or ""
    assert "Task blocked: waiting for QA" in notes


def test_hierarchy_commands(state) -> None:
    for name in ("Epic", "Story", "Other epic"):
        registry.handle(state, f"/add {name}")

    assert "now a subtask" in (registry.handle(state, "/sub 1 2") or "")
    tree = registry.handle(state, "/tree 1") or ""
    assert "#2 [todo] Story" in tree

    assert "moved under #3" in (registry.handle(state, "/move 2 3") or "")
    assert "promoted" in (registry.handle(state, "/promote 2") or "")
    assert (registry.handle(state, "/promote 2") or "").startswith("[NOT_A_SUBTASK]")


def test_analysis_commands(state) -> None:
    for name in ("A", "B", "C"):
        registry.handle(state, f"/add {name}")
    registry.handle(state, "/dep 1 2")
    registry.handle(state, "/dep 2 3")
    registry.handle(state, "/dep 1 3")

    assert "#1 'A' -[blocks]-> #3 'C'" in (registry.handle(state, "/redundant") or "")
    assert "critical path" in (registry.handle(state, "/chain 1") or "")
    assert "total 3" in (registry.handle(state, "/critical 1") or "")
    assert "No bottlenecks." == registry.handle(state, "/bottlenecks")
    assert "NOT allowed" in (registry.handle(state, "/impact 3 archived") or "")


def test_note_keeps_words_with_equals_signs(state) -> None:
    registry.handle(state, "/add Tune cache")
    registry.handle(state, "/note 1 set ttl=300 for now kind=decision")
    registry.handle(state, "/note 1 retry=3 looks enough")

    notes = state.store.list_notes(1)
    assert [(n.kind.value, n.text) for n in notes[-2:]] == [
        ("decision", "set ttl=300 for now"),
        ("comment", "retry=3 looks enough"),
    ]


def test_cascade_and_stats_commands(state) -> None:
    for name in ("Release", "Changelog"):
        registry.handle(state, f"/add {name}")
    registry.handle(state, "/sub 1 2")
    registry.handle(state, "/start 2")
    registry.handle(state, "/progress 2 100")
    registry.handle(state, "/done 2")
    registry.handle(state, "/start 1")
    registry.handle(state, "/progress 1 100")
    registry.handle(state, "/done 1")

    assert (registry.handle(state, "/stats") or "").startswith("Tasks by status: completed=2")
    assert "Archived #1" in (registry.handle(state, "/archive 1 --cascade") or "")
    assert state.store.get_task(2).status == TaskStatus.ARCHIVED
    assert "Active: none" in (registry.handle(state, "/stats") or "")


def test_rejected_commands_are_logged_with_error_details(state, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="tasklane.cli.commands"):
        registry.handle(state, "/show 77")
    assert "'code': 'TASK_NOT_FOUND'" in caplog.text
