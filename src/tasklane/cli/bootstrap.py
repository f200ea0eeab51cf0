# src/tasklane/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the store, timeline, graph engine, workflow machine and relationship facade into AppState.
"""

from __future__ import annotations

import logging
import time

from ..config import get_settings
from ..core.state import AppState
from ..graph.engine import DependencyGraph
from ..relationships.api import RelationshipService
from ..tasks.task_store import TaskStore
from ..tasks.timeline import StoreTimeline
from ..workflow.state_machine import WorkflowMachine

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None, clock=time.time) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    actor = getattr(settings, "actor", None)
    store = TaskStore(settings.tasks_db_path)
    timeline = StoreTimeline(store, default_author=actor)
    graph = DependencyGraph(
        store,
        bottleneck_threshold=settings.bottleneck_threshold,
        max_hierarchy_depth=settings.max_hierarchy_depth,
        strict_priority=settings.strict_priority,
    )

    state = AppState(
        settings=settings,
        store=store,
        timeline=timeline,
        graph=graph,
        workflow=WorkflowMachine(
            store,
            graph,
            timeline,
            completion_threshold=settings.completion_threshold,
            actor=actor,
            clock=clock,
        ),
        relationships=RelationshipService(
            store,
            graph,
            timeline,
            hierarchy_depth=settings.hierarchy_depth,
            actor=actor,
        ),
        actor=actor,
    )
    logger.debug("State ready db=%s tasks=%d", settings.tasks_db_path, store.count_tasks())
    return state
