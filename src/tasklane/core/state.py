# src/tasklane/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..graph.engine import DependencyGraph
from ..relationships.api import RelationshipService
from ..tasks.task_store import TaskStore
from ..tasks.timeline import StoreTimeline
from ..workflow.state_machine import WorkflowMachine


@dataclass
class AppState:
    """
    Global application state (composition container).

    Built once by cli/bootstrap.py and passed to command handlers and task_api helpers.
    The components hold no graph or active-task state of their own; everything lives in the store.
    """

    settings: Any

    store: TaskStore
    timeline: StoreTimeline
    graph: DependencyGraph
    workflow: WorkflowMachine
    relationships: RelationshipService

    # Default author for notes written from this process.
    actor: str | None = None
