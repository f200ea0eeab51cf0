# tests/test_task_api.py

from __future__ import annotations

import pytest

from tasklane.errors import ConflictError, NotFoundError, ValidationError
from tasklane.tasks import task_api
from tasklane.tasks.task_models import NoteKind, Priority, TaskStatus


def test_create_task(state) -> None:
    task = task_api.create_task(state, "  Write docs ", priority="high", estimate=2.5)

    assert task.name == "Write docs"
    assert task.status == TaskStatus.TODO
    assert task.priority == Priority.HIGH
    assert task.estimate == 2.5
    notes = state.store.list_notes(task.id)
    assert [(n.kind, n.author) for n in notes] == [(NoteKind.SYSTEM, "tester")]


@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"name": ""}, "NAME_REQUIRED"),
        ({"name": "x", "priority": "urgent"}, "INVALID_PRIORITY"),
        ({"name": "x", "estimate": -1}, "INVALID_ESTIMATE"),
    ],
)
def test_create_task_validation(state, kwargs, code) -> None:
    name = kwargs.pop("name")
    with pytest.raises(ValidationError) as exc:
        task_api.create_task(state, name, **kwargs)
    assert exc.value.code == code
    assert state.store.count_tasks() == 0


@pytest.mark.parametrize("value", [-1, 101])
def test_progress_range(state, make_task, value) -> None:
    task = make_task("t")
    with pytest.raises(ValidationError) as exc:
        task_api.set_progress(state, task.id, value)
    assert exc.value.code == "PROGRESS_OUT_OF_RANGE"


def test_progress_cannot_drop_once_completed(state, make_task) -> None:
    done = make_task("done", status=TaskStatus.COMPLETED, progress=100)

    with pytest.raises(ValidationError) as exc:
        task_api.set_progress(state, done.id, 40)
    assert exc.value.code == "PROGRESS_REGRESSION"
    assert state.store.get_task(done.id).progress == 100

    # Open tasks may go both ways.
    task = make_task("open", progress=60)
    assert task_api.set_progress(state, task.id, 30).progress == 30


def test_progress_note_only_on_change(state, make_task) -> None:
    task = make_task("t")
    task_api.set_progress(state, task.id, 50)
    task_api.set_progress(state, task.id, 50)

    notes = state.store.list_notes(task.id)
    assert [n.text for n in notes] == ["Progress 0% -> 50%"]
    assert notes[0].kind == NoteKind.STATE_CHANGE


def test_manual_notes(state, make_task) -> None:
    task = make_task("t")
    note = task_api.add_note(state, task.id, "Chose SQLite", kind="decision", author="bob")
    assert note.kind == NoteKind.DECISION
    assert note.author == "bob"

    with pytest.raises(ValidationError) as exc:
        task_api.add_note(state, task.id, "  ")
    assert exc.value.code == "EMPTY_NOTE"

    with pytest.raises(ValidationError) as exc:
        task_api.add_note(state, task.id, "x", kind="rumour")
    assert exc.value.code == "INVALID_NOTE_KIND"

    with pytest.raises(NotFoundError):
        task_api.add_note(state, 999, "x")

    assert [n.text for n in task_api.list_notes(state, task.id)] == ["Chose SQLite"]


def test_errors_serialise_with_code_and_details() -> None:
    err = ConflictError("Task #1 'a' is already in progress", "ACTIVE_TASK_CONFLICT", active_task_id=1)

    assert err.to_dict() == {
        "type": "ConflictError",
        "code": "ACTIVE_TASK_CONFLICT",
        "message": "Task #1 'a' is already in progress",
        "details": {"active_task_id": 1},
    }
    assert str(err) == "[ACTIVE_TASK_CONFLICT] Task #1 'a' is already in progress"
    assert NotFoundError("gone").code == "NOT_FOUND"
