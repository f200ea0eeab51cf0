# tests/test_workflow.py

from __future__ import annotations

import pytest

from tasklane.errors import ConflictError, NotFoundError, ValidationError
from tasklane.tasks import task_api
from tasklane.tasks.task_models import DependencyType, NoteKind, TaskStatus
from tasklane.workflow.state_machine import ACTION_SOURCES, WorkflowAction

# Resulting status per action (unblock without resume).
_TARGETS = {
    WorkflowAction.START: TaskStatus.IN_PROGRESS,
    WorkflowAction.PAUSE: TaskStatus.PAUSED,
    WorkflowAction.RESUME: TaskStatus.IN_PROGRESS,
    WorkflowAction.COMPLETE: TaskStatus.COMPLETED,
    WorkflowAction.BLOCK: TaskStatus.BLOCKED,
    WorkflowAction.UNBLOCK: TaskStatus.TODO,
    WorkflowAction.ARCHIVE: TaskStatus.ARCHIVED,
    WorkflowAction.RESET: TaskStatus.TODO,
}


@pytest.mark.parametrize("status", list(TaskStatus))
@pytest.mark.parametrize("action", list(WorkflowAction))
def test_every_status_action_pair(workflow, store, make_task, status, action) -> None:
    task = make_task("t", status=status, progress=100)
    options = {"reason": "waiting on vendor"} if action == WorkflowAction.BLOCK else {}

    if status in ACTION_SOURCES[action]:
        result = workflow.transition(task.id, action, **options)
        assert result.status == _TARGETS[action]
        assert store.get_task(task.id).status == _TARGETS[action]
    else:
        with pytest.raises(ValidationError) as exc:
            workflow.transition(task.id, action, **options)
        assert exc.value.code == "INVALID_TRANSITION"
        assert store.get_task(task.id).status == status


def test_unknown_action(workflow, make_task) -> None:
    task = make_task("t")
    with pytest.raises(ValidationError) as exc:
        workflow.transition(task.id, "teleport")
    assert exc.value.code == "UNKNOWN_ACTION"


def test_missing_task(workflow) -> None:
    with pytest.raises(NotFoundError):
        workflow.start(42)


def test_allowed_actions(workflow, make_task) -> None:
    todo = make_task("t")
    paused = make_task("p", status=TaskStatus.PAUSED)
    assert workflow.allowed_actions(todo.id) == [WorkflowAction.START, WorkflowAction.ARCHIVE]
    assert workflow.allowed_actions(paused.id) == [WorkflowAction.RESUME, WorkflowAction.RESET]


def test_start_requires_resolved_blockers_unless_skipped(state, workflow, relationships, store, make_task) -> None:
    blocker = make_task("blocker")
    task = make_task("task")
    relationships.add_dependency(task.id, blocker.id, DependencyType.BLOCKS)

    with pytest.raises(ValidationError) as exc:
        workflow.start(task.id)
    assert exc.value.code == "UNRESOLVED_DEPENDENCIES"
    assert "blocker" in exc.value.message
    assert store.get_task(task.id).status == TaskStatus.TODO

    started = workflow.start(task.id, skip_dependencies=True)
    assert started.status == TaskStatus.IN_PROGRESS

    # Skipping at start does not waive the gate at completion.
    task_api.set_progress(state, task.id, 100)
    with pytest.raises(ValidationError) as exc:
        workflow.complete(task.id)
    assert exc.value.code == "UNRESOLVED_DEPENDENCIES"

    store.update_task(blocker.id, status=TaskStatus.COMPLETED)
    assert workflow.complete(task.id).status == TaskStatus.COMPLETED


def test_completion_waits_for_subtasks(state, workflow, relationships, make_task) -> None:
    parent = make_task("parent")
    child = make_task("child")
    relationships.add_subtask(parent.id, child.id)
    workflow.start(parent.id)
    task_api.set_progress(state, parent.id, 100)

    with pytest.raises(ValidationError) as exc:
        workflow.complete(parent.id)
    assert exc.value.code == "INCOMPLETE_SUBTASKS"
    assert "child" in exc.value.message

    workflow.archive(child.id)
    assert workflow.complete(parent.id).status == TaskStatus.COMPLETED


def test_completion_threshold(state, workflow, make_task) -> None:
    task = make_task("t")
    workflow.start(task.id)
    task_api.set_progress(state, task.id, 50)

    with pytest.raises(ValidationError) as exc:
        workflow.complete(task.id)
    assert exc.value.code == "PROGRESS_BELOW_THRESHOLD"
    assert exc.value.details["threshold"] == 90

    done = workflow.complete(task.id, force=True)
    assert done.status == TaskStatus.COMPLETED
    assert done.progress == 100
    assert done.completed_at is not None
    assert done.session_started_at is None


def test_single_active_task(workflow, store, make_task) -> None:
    a = make_task("Alpha")
    b = make_task("Beta")
    workflow.start(a.id)

    with pytest.raises(ConflictError) as exc:
        workflow.start(b.id)
    assert exc.value.code == "ACTIVE_TASK_CONFLICT"
    assert "Alpha" in exc.value.message
    assert exc.value.details["active_task_id"] == a.id
    assert store.get_task(b.id).status == TaskStatus.TODO

    workflow.start(b.id, force=True)
    assert store.get_task(a.id).status == TaskStatus.PAUSED
    assert store.get_task(b.id).status == TaskStatus.IN_PROGRESS
    assert workflow.active_task().id == b.id

    notes = store.list_notes(a.id)
    assert "paused automatically" in notes[-1].text
    assert "Beta" in notes[-1].text


def test_resume_enters_contention(workflow, store, make_task) -> None:
    a = make_task("A")
    b = make_task("B")
    workflow.start(a.id)
    workflow.pause(a.id)
    workflow.start(b.id)

    with pytest.raises(ConflictError):
        workflow.resume(a.id)

    workflow.resume(a.id, force=True)
    assert store.get_task(a.id).status == TaskStatus.IN_PROGRESS
    assert store.get_task(b.id).status == TaskStatus.PAUSED


def test_session_minutes_accumulate(state, workflow, clock, store, make_task) -> None:
    task = make_task("t")
    workflow.start(task.id)
    clock.advance(25)
    assert workflow.elapsed_minutes(store.get_task(task.id)) == 25

    paused = workflow.pause(task.id, reason="lunch")
    assert paused.actual_minutes == 25
    assert paused.session_started_at is None
    assert workflow.active_task() is None

    clock.advance(60)
    workflow.resume(task.id)
    clock.advance(10)
    task_api.set_progress(state, task.id, 95)
    done = workflow.complete(task.id)
    assert done.actual_minutes == 35

    texts = [n.text for n in store.list_notes(task.id) if n.kind == NoteKind.SYSTEM]
    assert "Task paused after 25 min: lunch" in texts
    assert any(t.startswith("Task completed (35 min spent)") for t in texts)


def test_block_requires_reason(workflow, store, make_task) -> None:
    task = make_task("t")
    workflow.start(task.id)

    for reason in (None, "", "   "):
        with pytest.raises(ValidationError) as exc:
            workflow.block(task.id, reason=reason)
        assert exc.value.code == "BLOCK_REASON_REQUIRED"
    assert store.get_task(task.id).status == TaskStatus.IN_PROGRESS

    with pytest.raises(NotFoundError):
        workflow.block(task.id, reason="waiting", blocked_by=999)


def test_block_and_unblock(workflow, store, clock, make_task) -> None:
    other = make_task("vendor")
    task = make_task("t")
    workflow.start(task.id)
    clock.advance(5)

    blocked = workflow.block(task.id, reason="waiting on vendor", blocked_by=other.id)
    assert blocked.status == TaskStatus.BLOCKED
    assert blocked.blocked_reason == "waiting on vendor"
    assert blocked.blocked_by == other.id
    assert blocked.session_started_at is None
    assert blocked.actual_minutes == 5
    assert workflow.active_task() is None

    back = workflow.unblock(task.id)
    assert back.status == TaskStatus.TODO
    assert back.blocked_reason is None
    assert back.blocked_by is None


def test_unblock_with_resume(workflow, store, make_task) -> None:
    a = make_task("A")
    b = make_task("B")
    workflow.start(a.id)
    workflow.block(a.id, reason="stuck")
    workflow.start(b.id)

    with pytest.raises(ConflictError):
        workflow.unblock(a.id, resume=True)
    assert store.get_task(a.id).status == TaskStatus.BLOCKED

    resumed = workflow.unblock(a.id, resume=True, force=True)
    assert resumed.status == TaskStatus.IN_PROGRESS
    assert resumed.session_started_at is not None
    assert store.get_task(b.id).status == TaskStatus.PAUSED


def test_archive_refuses_active_dependents(workflow, relationships, make_task) -> None:
    base = make_task("base")
    user = make_task("user")
    relationships.add_dependency(user.id, base.id)

    with pytest.raises(ValidationError) as exc:
        workflow.archive(base.id)
    assert exc.value.code == "ACTIVE_DEPENDENTS"

    workflow.archive(user.id)
    assert workflow.archive(base.id).status == TaskStatus.ARCHIVED


def test_actions_write_system_notes(workflow, store, make_task) -> None:
    task = make_task("t")
    workflow.start(task.id, reason="kickoff")
    workflow.reset(task.id, actor="alice")

    notes = store.list_notes(task.id)
    assert [(n.kind, n.text, n.author) for n in notes] == [
        (NoteKind.SYSTEM, "Task started: kickoff", "tester"),
        (NoteKind.SYSTEM, "Task moved back to todo", "alice"),
    ]


def test_failed_action_leaves_no_note(workflow, store, make_task) -> None:
    task = make_task("t")
    workflow.start(task.id)
    with pytest.raises(ValidationError):
        workflow.complete(task.id)
    assert [n.text for n in store.list_notes(task.id)] == ["Task started"]


def test_transition_rejects_options_the_action_does_not_take(workflow, store, make_task) -> None:
    task = make_task("t", status=TaskStatus.IN_PROGRESS)

    with pytest.raises(ValidationError) as exc:
        workflow.transition(task.id, "pause", force=True)
    assert exc.value.code == "INVALID_OPTION"
    assert exc.value.details["options"] == ["force"]
    assert store.get_task(task.id).status == TaskStatus.IN_PROGRESS

    assert workflow.transition(task.id, "pause", reason="lunch").status == TaskStatus.PAUSED


def test_block_cascades_to_active_children(workflow, store, make_task) -> None:
    parent = make_task("parent", status=TaskStatus.IN_PROGRESS)
    child = make_task("child", status=TaskStatus.IN_PROGRESS)
    grandchild = make_task("grandchild", status=TaskStatus.IN_PROGRESS)
    waiting = make_task("waiting")
    store.add_edge(child.id, parent.id, DependencyType.REQUIRES)
    store.add_edge(grandchild.id, child.id, DependencyType.REQUIRES)
    store.add_edge(waiting.id, parent.id, DependencyType.REQUIRES)

    workflow.transition(parent.id, "block", reason="vendor outage", cascade=True)

    assert store.get_task(parent.id).status == TaskStatus.BLOCKED
    blocked = store.get_task(child.id)
    assert blocked.status == TaskStatus.BLOCKED
    assert blocked.blocked_by == parent.id
    assert store.get_task(grandchild.id).status == TaskStatus.BLOCKED
    # todo -> blocked is not in the transition table.
    assert store.get_task(waiting.id).status == TaskStatus.TODO

    notes = store.list_notes(grandchild.id)
    assert [(n.kind, n.text) for n in notes] == [(NoteKind.SYSTEM, "Task blocked: parent #2 'child' is blocked")]
    assert store.list_notes(waiting.id) == []


def test_block_without_cascade_leaves_children_alone(workflow, store, make_task) -> None:
    parent = make_task("parent", status=TaskStatus.IN_PROGRESS)
    child = make_task("child", status=TaskStatus.IN_PROGRESS)
    store.add_edge(child.id, parent.id, DependencyType.REQUIRES)

    workflow.block(parent.id, reason="vendor outage")

    assert store.get_task(child.id).status == TaskStatus.IN_PROGRESS


def test_archive_cascades_to_completed_children(workflow, store, make_task) -> None:
    parent = make_task("parent", status=TaskStatus.COMPLETED, progress=100)
    child = make_task("child", status=TaskStatus.COMPLETED, progress=100)
    grandchild = make_task("grandchild", status=TaskStatus.COMPLETED, progress=100)
    old = make_task("old", status=TaskStatus.ARCHIVED)
    store.add_edge(child.id, parent.id, DependencyType.REQUIRES)
    store.add_edge(grandchild.id, child.id, DependencyType.REQUIRES)
    store.add_edge(old.id, parent.id, DependencyType.REQUIRES)

    workflow.archive(parent.id, cascade=True, actor="alice")

    for t in (parent, child, grandchild, old):
        assert store.get_task(t.id).status == TaskStatus.ARCHIVED
    assert store.get_task(child.id).archived_at is not None
    assert [(n.text, n.author) for n in store.list_notes(child.id)] == [
        ("Task archived: parent #1 'parent' is archived", "alice")
    ]
    assert store.list_notes(old.id) == []


def test_failed_cascade_parent_leaves_children_untouched(workflow, store, make_task) -> None:
    parent = make_task("parent", status=TaskStatus.COMPLETED, progress=100)
    done = make_task("done", status=TaskStatus.COMPLETED, progress=100)
    open_child = make_task("open")
    store.add_edge(done.id, parent.id, DependencyType.REQUIRES)
    store.add_edge(open_child.id, parent.id, DependencyType.REQUIRES)

    with pytest.raises(ValidationError) as exc:
        workflow.archive(parent.id, cascade=True)
    assert exc.value.code == "ACTIVE_DEPENDENTS"
    assert store.get_task(done.id).status == TaskStatus.COMPLETED


def test_stats(workflow, clock, make_task) -> None:
    a = make_task("a")
    make_task("b")
    make_task("c", status=TaskStatus.COMPLETED, progress=100)

    idle = workflow.stats()
    assert idle.active_task is None
    assert idle.session_minutes == 0
    assert idle.by_status[TaskStatus.TODO] == 2
    assert idle.by_status[TaskStatus.BLOCKED] == 0

    workflow.start(a.id)
    clock.advance(25)
    busy = workflow.stats()
    assert busy.active_task is not None and busy.active_task.id == a.id
    assert busy.session_minutes == 25
    assert busy.by_status[TaskStatus.IN_PROGRESS] == 1
    assert sum(busy.by_status.values()) == 3
