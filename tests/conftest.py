# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import pytest

from tasklane.cli.bootstrap import create_initial_state
from tasklane.core.state import AppState
from tasklane.tasks.task_models import Priority, Task, TaskStatus

from .fakes import FakeClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and bootstrap.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="tasklane-test",
        log_level="DEBUG",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        # Workflow / graph tunables
        completion_threshold=90,
        bottleneck_threshold=2,
        hierarchy_depth=3,
        max_hierarchy_depth=5,
        strict_priority=False,
        actor="tester",
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state(settings: SimpleNamespace, clock: FakeClock) -> AppState:
    """
    AppState wired through the real composition root.

    NOTE: We keep a real SQLite TaskStore here because transaction and
    rollback behaviour is part of what we want to test.
    """
    return create_initial_state(settings=settings, clock=clock)


@pytest.fixture()
def store(state: AppState):
    return state.store


@pytest.fixture()
def graph(state: AppState):
    return state.graph


@pytest.fixture()
def workflow(state: AppState):
    return state.workflow


@pytest.fixture()
def relationships(state: AppState):
    return state.relationships


@pytest.fixture()
def make_task(state: AppState) -> Callable[..., Task]:
    """Insert a task straight into the store (optionally in a given status)."""

    def _make(
        name: str,
        *,
        status: TaskStatus = TaskStatus.TODO,
        priority: Priority = Priority.MEDIUM,
        progress: int = 0,
        estimate: float | None = None,
    ) -> Task:
        task_id = state.store.add_task(
            name=name,
            priority=priority,
            progress=progress,
            estimate=estimate,
            status=status,
        )
        task = state.store.get_task(task_id)
        assert task is not None
        return task

    return _make
