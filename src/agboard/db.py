"""SQLite database for agboard state."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from agboard.paths import DEFAULT_DB_PATH

BACKLOG = "backlog"
EXPLORE = "explore"
PLANNING = "planning"
RUNNING = "running"
REVIEW = "review"
DONE = "done"

# Board columns, left to right.
TASK_COLUMNS = (BACKLOG, EXPLORE, PLANNING, RUNNING, REVIEW, DONE)
VALID_TASK_STATUSES = set(TASK_COLUMNS)
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# Bump when adding migrations. 0 = legacy (pre-versioning).
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    dir TEXT UNIQUE NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'backlog',
    agent TEXT NOT NULL,
    session_name TEXT,
    worktree_path TEXT,
    branch_name TEXT,
    pr_number INTEGER,
    pr_url TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_logs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'engine',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""


# -- Row TypedDicts matching table schemas --


class ProjectRow(TypedDict):
    id: str
    name: str
    dir: str
    created_at: str


class TaskRow(TypedDict):
    id: str
    project_id: str
    title: str
    description: str | None
    status: str
    agent: str
    session_name: str | None
    worktree_path: str | None
    branch_name: str | None
    pr_number: int | None
    pr_url: str | None
    created_at: str
    updated_at: str


class TaskLogRow(TypedDict):
    id: str
    task_id: str
    level: str
    message: str
    source: str
    created_at: str


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Unversioned databases may predate the branch and pull-request columns."""
    cols = _table_columns(conn, "tasks")
    _add_column_if_missing(conn, "tasks", "branch_name", "TEXT", cols)
    _add_column_if_missing(conn, "tasks", "pr_number", "INTEGER", cols)
    _add_column_if_missing(conn, "tasks", "pr_url", "TEXT", cols)


_MIGRATIONS = {
    1: _migrate_to_v1,
}


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    for version in range(from_version + 1, SCHEMA_VERSION + 1):
        _MIGRATIONS[version](conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_task_logs_task ON task_logs(task_id)")


# -- Projects --


def get_project_by_dir(conn: sqlite3.Connection, directory: str) -> ProjectRow | None:
    """Look up a project by its directory path."""
    row = conn.execute("SELECT * FROM projects WHERE dir = ?", (directory,)).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def add_project(conn: sqlite3.Connection, name: str, directory: str) -> ProjectRow:
    # Check for duplicate directory before insert for a clear error message
    existing = get_project_by_dir(conn, directory)
    if existing:
        raise ValueError(
            f"Directory '{directory}' is already registered as project '{existing['name']}'"
        )
    if get_project(conn, name):
        raise ValueError(f"Project name '{name}' is already taken")
    project_id = uuid.uuid4().hex[:12]
    now = _utcnow()
    conn.execute(
        "INSERT INTO projects (id, name, dir, created_at) VALUES (?, ?, ?, ?)",
        (project_id, name, directory, now),
    )
    conn.commit()
    return {"id": project_id, "name": name, "dir": directory, "created_at": now}


def list_projects(conn: sqlite3.Connection) -> list[ProjectRow]:
    rows = conn.execute("SELECT * FROM projects ORDER BY created_at, rowid").fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def get_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ?",
        (name_or_id, name_or_id),
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


# -- Tasks --


def _validate_status(status: str) -> None:
    if status not in VALID_TASK_STATUSES:
        raise ValueError(
            f"Invalid task status '{status}'. Valid: {', '.join(TASK_COLUMNS)}"
        )


def new_task(
    project_id: str,
    title: str,
    agent: str,
    description: str | None = None,
) -> TaskRow:
    """Build an unsaved Backlog task row."""
    title = title.strip()
    if not title:
        raise ValueError("Task title must not be empty")
    now = _utcnow()
    return {
        "id": str(uuid.uuid4()),
        "project_id": project_id,
        "title": title,
        "description": description or None,
        "status": BACKLOG,
        "agent": agent,
        "session_name": None,
        "worktree_path": None,
        "branch_name": None,
        "pr_number": None,
        "pr_url": None,
        "created_at": now,
        "updated_at": now,
    }


def insert_task(conn: sqlite3.Connection, task: TaskRow) -> TaskRow:
    _validate_status(task["status"])
    conn.execute(
        "INSERT INTO tasks (id, project_id, title, description, status, agent, session_name,"
        " worktree_path, branch_name, pr_number, pr_url, created_at, updated_at)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            task["id"],
            task["project_id"],
            task["title"],
            task["description"],
            task["status"],
            task["agent"],
            task["session_name"],
            task["worktree_path"],
            task["branch_name"],
            task["pr_number"],
            task["pr_url"],
            task["created_at"],
            task["updated_at"],
        ),
    )
    conn.commit()
    return task


def create_task(
    conn: sqlite3.Connection,
    project_id: str,
    title: str,
    agent: str,
    description: str | None = None,
) -> TaskRow:
    if not get_project(conn, project_id):
        raise ValueError(f"Project '{project_id}' not found")
    return insert_task(conn, new_task(project_id, title, agent, description))


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def resolve_task_id(conn: sqlite3.Connection, prefix: str) -> str | None:
    """Resolve a full task id from a unique prefix."""
    rows = conn.execute(
        "SELECT id FROM tasks WHERE id LIKE ? LIMIT 2", (f"{prefix}%",)
    ).fetchall()
    if len(rows) == 1:
        return rows[0]["id"]
    return None


def list_tasks(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[TaskRow]:
    """List tasks ordered by creation time, optionally filtered."""
    clauses: list[str] = []
    params: list[str] = []
    if project_id is not None:
        clauses.append("project_id = ?")
        params.append(project_id)
    if status is not None:
        _validate_status(status)
        clauses.append("status = ?")
        params.append(status)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM tasks{where} ORDER BY created_at, rowid", params
    ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def update_task(conn: sqlite3.Connection, task: TaskRow) -> TaskRow:
    """Persist every mutable field of a task and bump ``updated_at``."""
    _validate_status(task["status"])
    task["updated_at"] = _utcnow()
    cur = conn.execute(
        "UPDATE tasks SET title = ?, description = ?, status = ?, agent = ?,"
        " session_name = ?, worktree_path = ?, branch_name = ?, pr_number = ?,"
        " pr_url = ?, updated_at = ? WHERE id = ?",
        (
            task["title"],
            task["description"],
            task["status"],
            task["agent"],
            task["session_name"],
            task["worktree_path"],
            task["branch_name"],
            task["pr_number"],
            task["pr_url"],
            task["updated_at"],
            task["id"],
        ),
    )
    if cur.rowcount == 0:
        raise ValueError(f"Task '{task['id']}' not found")
    conn.commit()
    return task


def delete_task(conn: sqlite3.Connection, task_id: str) -> bool:
    conn.execute("DELETE FROM task_logs WHERE task_id = ?", (task_id,))
    cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    conn.commit()
    return cur.rowcount > 0


# -- Task logs --


def add_task_log(
    conn: sqlite3.Connection,
    *,
    task_id: str,
    level: str,
    message: str,
    source: str = "engine",
) -> None:
    if level not in VALID_LOG_LEVELS:
        level = "INFO"
    conn.execute(
        "INSERT INTO task_logs (id, task_id, level, message, source, created_at)"
        " VALUES (?, ?, ?, ?, ?, ?)",
        (uuid.uuid4().hex, task_id, level, message, source, _utcnow()),
    )
    conn.commit()


def list_task_logs(
    conn: sqlite3.Connection, task_id: str, level: str | None = None
) -> list[TaskLogRow]:
    if level:
        rows = conn.execute(
            "SELECT * FROM task_logs WHERE task_id = ? AND level = ? ORDER BY created_at, rowid",
            (task_id, level),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM task_logs WHERE task_id = ? ORDER BY created_at, rowid",
            (task_id,),
        ).fetchall()
    return [cast(TaskLogRow, dict(row)) for row in rows]


class TaskDBHandler(logging.Handler):
    """Logging handler that persists log records to the task_logs table."""

    def __init__(self, conn: sqlite3.Connection, task_id: str, *, source: str = "engine"):
        super().__init__()
        self.conn = conn
        self.task_id = task_id
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        try:
            add_task_log(
                self.conn,
                task_id=self.task_id,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


class SqliteTaskStore:
    """Task record store scoped to a single project."""

    def __init__(self, conn: sqlite3.Connection, project_id: str):
        self.conn = conn
        self.project_id = project_id

    def create(self, task: TaskRow) -> TaskRow:
        return insert_task(self.conn, task)

    def update(self, task: TaskRow) -> TaskRow:
        return update_task(self.conn, task)

    def delete(self, task_id: str) -> None:
        delete_task(self.conn, task_id)

    def get_by_id(self, task_id: str) -> TaskRow | None:
        task = get_task(self.conn, task_id)
        if task is None or task["project_id"] != self.project_id:
            return None
        return task

    def get_by_status(self, status: str) -> list[TaskRow]:
        return list_tasks(self.conn, project_id=self.project_id, status=status)

    def get_all(self) -> list[TaskRow]:
        return list_tasks(self.conn, project_id=self.project_id)

    def log_handler(self, task_id: str) -> logging.Handler:
        return TaskDBHandler(self.conn, task_id)
