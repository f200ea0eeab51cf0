# tests/test_config.py

from __future__ import annotations

from pathlib import Path

from tasklane.config import Settings


def test_defaults(monkeypatch) -> None:
    for key in (
        "TASKLANE_DATA_DIR",
        "TASKLANE_DB_PATH",
        "TASKLANE_COMPLETION_THRESHOLD",
        "TASKLANE_STRICT_PRIORITY",
        "TASKLANE_ACTOR",
    ):
        monkeypatch.delenv(key, raising=False)

    s = Settings.from_env()
    assert s.data_dir == Path(".local/tasklane")
    assert s.tasks_db_path == Path(".local/tasklane/tasks.sqlite3")
    assert s.completion_threshold == 90
    assert s.strict_priority is False
    assert s.actor is None


def test_env_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("TASKLANE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TASKLANE_COMPLETION_THRESHOLD", "150")
    monkeypatch.setenv("TASKLANE_BOTTLENECK_THRESHOLD", "not-a-number")
    monkeypatch.setenv("TASKLANE_STRICT_PRIORITY", "yes")
    monkeypatch.setenv("TASKLANE_ACTOR", " alice ")

    s = Settings.from_env()
    assert s.tasks_db_path == tmp_path / "tasks.sqlite3"
    assert s.completion_threshold == 100
    assert s.bottleneck_threshold == 2
    assert s.strict_priority is True
    assert s.actor == "alice"
