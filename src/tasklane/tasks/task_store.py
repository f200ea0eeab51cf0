# src/tasklane/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator
from enum import Enum
from pathlib import Path
from typing import Any

from .task_models import (
    DependencyEdge,
    DependencyType,
    NoteKind,
    Priority,
    Task,
    TaskStatus,
    TimelineNote,
)

logger = logging.getLogger(__name__)

# Columns a caller may change through update_task(). id/created_at are immutable.
_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "status",
        "priority",
        "progress",
        "assignee",
        "estimate",
        "started_at",
        "paused_at",
        "completed_at",
        "blocked_at",
        "archived_at",
        "blocked_reason",
        "blocked_by",
        "session_started_at",
        "actual_minutes",
    }
)


class TaskStore:
    """
    SQLite task store (tasks, dependency edges, timeline notes).

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Transactions:
    - outside transaction(): each method opens its own short-lived connection
    - inside transaction(): every call on the same thread reuses one connection
      opened with BEGIN IMMEDIATE, so read-validate-write sequences are atomic
      against other writers. Nested transaction() blocks join the outer one.
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves.
        conn = sqlite3.connect(str(self._db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        Commits on normal exit, rolls back on any exception (which is re-raised).
        """
        outer = getattr(self._local, "conn", None)
        if outer is not None:
            yield outer
            return

        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE")
        self._local.conn = conn
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            logger.debug("TaskStore transaction rolled back db=%s", self._db_path)
            raise
        finally:
            self._local.conn = None
            conn.close()

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        shared = getattr(self._local, "conn", None)
        if shared is not None:
            yield shared
            return

        conn = self._get_conn()
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    progress INTEGER NOT NULL DEFAULT 0,
                    assignee TEXT,
                    estimate REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("started_at", "REAL")
            add_col("paused_at", "REAL")
            add_col("completed_at", "REAL")
            add_col("blocked_at", "REAL")
            add_col("archived_at", "REAL")
            add_col("blocked_reason", "TEXT")
            add_col("blocked_by", "INTEGER")
            add_col("session_started_at", "REAL")
            add_col("actual_minutes", "INTEGER NOT NULL DEFAULT 0")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_dependencies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL,
                    depends_on_id INTEGER NOT NULL,
                    dependency_type TEXT NOT NULL DEFAULT 'blocks'
                        CHECK (dependency_type IN ('blocks', 'requires')),
                    created_at REAL NOT NULL,
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE,
                    FOREIGN KEY (depends_on_id) REFERENCES tasks(id) ON DELETE CASCADE,
                    UNIQUE (task_id, depends_on_id),
                    CHECK (task_id != depends_on_id)
                )
                """
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_notes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL,
                    note TEXT NOT NULL,
                    note_type TEXT NOT NULL DEFAULT 'comment'
                        CHECK (note_type IN ('comment', 'state_change', 'decision', 'reminder', 'system')),
                    author TEXT,
                    created_at REAL NOT NULL,
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
                """
            )

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_deps_task ON task_dependencies(task_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_deps_target ON task_dependencies(depends_on_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_notes_task ON task_notes(task_id, created_at)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _db_value(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    @staticmethod
    def _opt_float(v: Any) -> float | None:
        return float(v) if v is not None else None

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            name=str(row["name"] or ""),
            status=TaskStatus.from_db(row["status"]),
            priority=Priority.from_db(row["priority"]),
            progress=int(row["progress"] or 0),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
            description=str(row["description"] or ""),
            assignee=row["assignee"],
            estimate=self._opt_float(row["estimate"]),
            started_at=self._opt_float(row["started_at"]),
            paused_at=self._opt_float(row["paused_at"]),
            completed_at=self._opt_float(row["completed_at"]),
            blocked_at=self._opt_float(row["blocked_at"]),
            archived_at=self._opt_float(row["archived_at"]),
            blocked_reason=row["blocked_reason"],
            blocked_by=int(row["blocked_by"]) if row["blocked_by"] is not None else None,
            session_started_at=self._opt_float(row["session_started_at"]),
            actual_minutes=int(row["actual_minutes"] or 0),
        )

    @staticmethod
    def _row_to_edge(row: sqlite3.Row) -> DependencyEdge:
        return DependencyEdge(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            depends_on_id=int(row["depends_on_id"]),
            dep_type=DependencyType(row["dependency_type"]),
            created_at=float(row["created_at"] or 0.0),
        )

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> TimelineNote:
        return TimelineNote(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            text=str(row["note"]),
            kind=NoteKind(row["note_type"]),
            author=row["author"],
            created_at=float(row["created_at"] or 0.0),
        )

    # ---- tasks ----

    def count_tasks(self) -> int:
        with self._conn() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def add_task(
        self,
        *,
        name: str,
        description: str = "",
        priority: Priority = Priority.MEDIUM,
        progress: int = 0,
        assignee: str | None = None,
        estimate: float | None = None,
        status: TaskStatus = TaskStatus.TODO,
    ) -> int:
        if not name or not name.strip():
            raise ValueError("name is required")
        if not 0 <= int(progress) <= 100:
            raise ValueError("progress must be within 0..100")

        now = time.time()
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO tasks(
                    name, description, status, priority, progress,
                    assignee, estimate, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name.strip(),
                    (description or "").strip(),
                    status.value,
                    priority.value,
                    int(progress),
                    assignee,
                    float(estimate) if estimate is not None else None,
                    now,
                    now,
                ),
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for tasks insert")
            task_id = int(rowid)
            logger.debug("Task added id=%s name=%r priority=%s", task_id, name, priority.value)
            return task_id

    def get_task(self, task_id: int) -> Task | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
            return self._row_to_task(row) if row else None

    def get_tasks(self, task_ids: Iterable[int]) -> dict[int, Task]:
        ids = sorted({int(i) for i in task_ids})
        if not ids:
            return {}
        with self._conn() as conn:
            placeholders = ",".join("?" for _ in ids)
            rows = conn.execute(f"SELECT * FROM tasks WHERE id IN ({placeholders})", ids).fetchall()
            return {int(r["id"]): self._row_to_task(r) for r in rows}

    def list_tasks(
        self,
        *,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        sql = "SELECT * FROM tasks"
        params: list[Any] = []
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            sql += f" WHERE status IN ({','.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._conn() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def update_task(self, task_id: int, **fields: Any) -> None:
        """
        Set the given columns. Passing None writes NULL.

        Unknown field names raise ValueError.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        cols = list(fields)
        params = [self._db_value(fields[c]) for c in cols]
        assignments = [f"{c} = ?" for c in cols]

        assignments.append("updated_at = ?")
        params.append(time.time())
        params.append(int(task_id))

        sql = f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?"
        with self._conn() as conn:
            conn.execute(sql, params)

    def delete_task(self, task_id: int) -> bool:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (int(task_id),))
            return cur.rowcount == 1

    # ---- dependency edges ----

    def list_edges(
        self,
        *,
        task_id: int | None = None,
        depends_on_id: int | None = None,
        dep_type: DependencyType | None = None,
    ) -> list[DependencyEdge]:
        clauses: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(int(task_id))
        if depends_on_id is not None:
            clauses.append("depends_on_id = ?")
            params.append(int(depends_on_id))
        if dep_type is not None:
            clauses.append("dependency_type = ?")
            params.append(dep_type.value)

        sql = "SELECT * FROM task_dependencies"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY dependency_type ASC, created_at ASC, id ASC"

        with self._conn() as conn:
            return [self._row_to_edge(r) for r in conn.execute(sql, params).fetchall()]

    def get_edge(
        self,
        task_id: int,
        depends_on_id: int,
        dep_type: DependencyType | None = None,
    ) -> DependencyEdge | None:
        edges = self.list_edges(task_id=task_id, depends_on_id=depends_on_id, dep_type=dep_type)
        return edges[0] if edges else None

    def add_edge(self, task_id: int, depends_on_id: int, dep_type: DependencyType) -> DependencyEdge:
        now = time.time()
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO task_dependencies (task_id, depends_on_id, dependency_type, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (int(task_id), int(depends_on_id), dep_type.value, now),
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for task_dependencies insert")
            logger.debug("Edge added id=%s %s -[%s]-> %s", rowid, task_id, dep_type.value, depends_on_id)
            return DependencyEdge(
                id=int(rowid),
                task_id=int(task_id),
                depends_on_id=int(depends_on_id),
                dep_type=dep_type,
                created_at=now,
            )

    def delete_edge(self, edge_id: int) -> bool:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM task_dependencies WHERE id = ?", (int(edge_id),))
            return cur.rowcount == 1

    def retarget_edge(self, edge_id: int, new_depends_on_id: int) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE task_dependencies SET depends_on_id = ?, created_at = ? WHERE id = ?",
                (int(new_depends_on_id), time.time(), int(edge_id)),
            )

    # ---- timeline notes ----

    def add_note(self, task_id: int, text: str, kind: NoteKind, author: str | None) -> TimelineNote:
        now = time.time()
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO task_notes (task_id, note, note_type, author, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (int(task_id), text, kind.value, author, now),
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for task_notes insert")
            return TimelineNote(
                id=int(rowid),
                task_id=int(task_id),
                text=text,
                kind=kind,
                author=author,
                created_at=now,
            )

    def list_notes(self, task_id: int, *, limit: int | None = None) -> list[TimelineNote]:
        sql = "SELECT * FROM task_notes WHERE task_id = ? ORDER BY created_at ASC, id ASC"
        params: list[Any] = [int(task_id)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._conn() as conn:
            return [self._row_to_note(r) for r in conn.execute(sql, params).fetchall()]
