# src/tasklane/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- Nothing required at import time; every value has a default.
- Engine tunables (thresholds, depth limits, priority policy) live here, not in code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKLANE"

# Local .env never overrides variables already set in the process environment.
load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path

    # ---- Workflow ----
    completion_threshold: int
    actor: str | None

    # ---- Graph engine ----
    bottleneck_threshold: int
    hierarchy_depth: int
    max_hierarchy_depth: int
    strict_priority: bool

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "tasklane").strip() or "tasklane"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/tasklane"))
        tasks_db_path = _env_path(_k("DB_PATH"), data_dir / "tasks.sqlite3")

        completion_threshold = min(100, max(0, _env_int(_k("COMPLETION_THRESHOLD"), 90)))
        actor = _env(_k("ACTOR"), "").strip() or None

        bottleneck_threshold = max(0, _env_int(_k("BOTTLENECK_THRESHOLD"), 2))
        hierarchy_depth = max(0, _env_int(_k("HIERARCHY_DEPTH"), 3))
        max_hierarchy_depth = max(1, _env_int(_k("MAX_HIERARCHY_DEPTH"), 5))
        strict_priority = _env_bool(_k("STRICT_PRIORITY"), False)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            completion_threshold=completion_threshold,
            actor=actor,
            bottleneck_threshold=bottleneck_threshold,
            hierarchy_depth=hierarchy_depth,
            max_hierarchy_depth=max_hierarchy_depth,
            strict_priority=strict_priority,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
