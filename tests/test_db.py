"""Tests for the database layer."""

import logging
import sqlite3
import tempfile
from pathlib import Path

import pytest

from agboard.db import (
    BACKLOG,
    PLANNING,
    REVIEW,
    SCHEMA,
    SCHEMA_VERSION,
    SqliteTaskStore,
    TaskDBHandler,
    add_project,
    add_task_log,
    connect,
    create_task,
    delete_task,
    get_connection,
    get_project,
    get_project_by_dir,
    get_task,
    list_projects,
    list_task_logs,
    list_tasks,
    new_task,
    resolve_task_id,
    update_task,
)


def tmp_conn():
    db_path = Path(tempfile.mktemp(suffix=".db"))
    return get_connection(db_path)


def test_add_and_list():
    conn = tmp_conn()
    add_project(conn, "myapp", "/tmp/myapp")
    projects = list_projects(conn)
    assert len(projects) == 1
    assert projects[0]["name"] == "myapp"
    assert projects[0]["dir"] == "/tmp/myapp"


def test_add_duplicate_dir_rejected():
    conn = tmp_conn()
    add_project(conn, "myapp", "/tmp/myapp")
    with pytest.raises(ValueError, match="already registered"):
        add_project(conn, "other", "/tmp/myapp")


def test_add_duplicate_name_rejected():
    conn = tmp_conn()
    add_project(conn, "myapp", "/tmp/myapp")
    with pytest.raises(ValueError, match="already taken"):
        add_project(conn, "myapp", "/tmp/elsewhere")


def test_get_project_by_name_id_and_dir():
    conn = tmp_conn()
    p = add_project(conn, "myapp", "/tmp/myapp")
    assert get_project(conn, "myapp")["id"] == p["id"]
    assert get_project(conn, p["id"])["name"] == "myapp"
    assert get_project_by_dir(conn, "/tmp/myapp")["id"] == p["id"]
    assert get_project_by_dir(conn, "/tmp/nope") is None


def test_schema_version_recorded(db_conn):
    assert db_conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION


def test_fresh_schema_has_branch_and_pr_columns():
    conn = sqlite3.connect(":memory:")
    conn.executescript(SCHEMA)
    cols = {row[1] for row in conn.execute("PRAGMA table_info(tasks)").fetchall()}
    assert {"branch_name", "pr_number", "pr_url"} <= cols
    conn.close()


def test_migration_adds_branch_and_pr_columns(tmp_path):
    """A pre-versioning database gains the branch/PR columns on open."""
    db_path = tmp_path / "legacy.db"
    legacy = sqlite3.connect(str(db_path))
    legacy.executescript(
        """
        CREATE TABLE projects (id TEXT PRIMARY KEY, name TEXT UNIQUE NOT NULL,
            dir TEXT UNIQUE NOT NULL, created_at TEXT NOT NULL);
        CREATE TABLE tasks (id TEXT PRIMARY KEY, project_id TEXT NOT NULL, title TEXT NOT NULL,
            description TEXT, status TEXT NOT NULL DEFAULT 'backlog', agent TEXT NOT NULL,
            session_name TEXT, worktree_path TEXT, created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL);
        """
    )
    legacy.close()

    conn = get_connection(db_path)
    cols = {row[1] for row in conn.execute("PRAGMA table_info(tasks)").fetchall()}
    assert {"branch_name", "pr_number", "pr_url"} <= cols
    assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    conn.close()


def test_connect_closes_connection(tmp_path):
    with connect(tmp_path / "ctx.db") as conn:
        conn.execute("SELECT 1")
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")


def test_create_task_defaults(db_conn, project_id):
    t = create_task(db_conn, project_id, "Add login feature", "claude")
    assert t["status"] == BACKLOG
    assert t["session_name"] is None
    assert t["worktree_path"] is None
    assert t["branch_name"] is None
    assert t["pr_number"] is None
    assert get_task(db_conn, t["id"]) == t


def test_create_task_rejects_empty_title(db_conn, project_id):
    with pytest.raises(ValueError, match="title"):
        create_task(db_conn, project_id, "   ", "claude")


def test_create_task_unknown_project(db_conn):
    with pytest.raises(ValueError, match="not found"):
        create_task(db_conn, "nope", "Title", "claude")


def test_list_tasks_ordered_by_creation(db_conn, project_id):
    """Tasks created within the same second keep insertion order."""
    titles = ["first", "second", "third"]
    for title in titles:
        create_task(db_conn, project_id, title, "claude")
    assert [t["title"] for t in list_tasks(db_conn, project_id=project_id)] == titles


def test_list_tasks_filters_by_status(db_conn, project_id):
    a = create_task(db_conn, project_id, "a", "claude")
    create_task(db_conn, project_id, "b", "claude")
    a["status"] = PLANNING
    update_task(db_conn, a)
    assert [t["id"] for t in list_tasks(db_conn, status=PLANNING)] == [a["id"]]


def test_list_tasks_invalid_status(db_conn):
    with pytest.raises(ValueError, match="Invalid task status"):
        list_tasks(db_conn, status="bogus")


def test_update_task_round_trips_all_fields(db_conn, project_id):
    t = create_task(db_conn, project_id, "Title", "claude", "desc")
    t.update(
        status=REVIEW,
        session_name="proj:task-title",
        worktree_path="/tmp/testproj/.agboard/worktrees/title",
        branch_name="task/title",
        pr_number=42,
        pr_url="https://github.com/o/r/pull/42",
    )
    update_task(db_conn, t)
    stored = get_task(db_conn, t["id"])
    assert stored["status"] == REVIEW
    assert stored["pr_number"] == 42
    assert stored["branch_name"] == "task/title"
    assert stored["description"] == "desc"


def test_update_missing_task_raises(db_conn, project_id):
    t = new_task(project_id, "ghost", "claude")
    with pytest.raises(ValueError, match="not found"):
        update_task(db_conn, t)


def test_resolve_task_id_prefix(db_conn, project_id):
    t = create_task(db_conn, project_id, "Title", "claude")
    assert resolve_task_id(db_conn, t["id"][:8]) == t["id"]
    assert resolve_task_id(db_conn, "zzzz") is None


def test_delete_task_removes_logs(db_conn, project_id):
    t = create_task(db_conn, project_id, "Title", "claude")
    add_task_log(db_conn, task_id=t["id"], level="INFO", message="hello")
    assert delete_task(db_conn, t["id"]) is True
    assert get_task(db_conn, t["id"]) is None
    assert list_task_logs(db_conn, t["id"]) == []


def test_task_log_invalid_level_falls_back_to_info(db_conn, project_id):
    t = create_task(db_conn, project_id, "Title", "claude")
    add_task_log(db_conn, task_id=t["id"], level="LOUD", message="x")
    logs = list_task_logs(db_conn, t["id"])
    assert logs[0]["level"] == "INFO"
    assert list_task_logs(db_conn, t["id"], level="ERROR") == []


def test_task_db_handler_persists_records(db_conn, project_id):
    t = create_task(db_conn, project_id, "Title", "claude")
    logger = logging.getLogger("agboard.tests.handler")
    handler = TaskDBHandler(db_conn, t["id"])
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        logger.warning("worktree %s is odd", "x")
    finally:
        logger.removeHandler(handler)
    logs = list_task_logs(db_conn, t["id"])
    assert logs[0]["level"] == "WARNING"
    assert logs[0]["message"] == "worktree x is odd"
    assert logs[0]["source"] == "engine"


def test_sqlite_store_is_project_scoped(db_conn, project_id):
    other = add_project(db_conn, "other", "/tmp/other")
    store = SqliteTaskStore(db_conn, project_id)
    mine = store.create(new_task(project_id, "mine", "claude"))
    theirs = create_task(db_conn, other["id"], "theirs", "claude")

    assert store.get_by_id(mine["id"]) == mine
    assert store.get_by_id(theirs["id"]) is None
    assert [t["id"] for t in store.get_all()] == [mine["id"]]
    assert [t["id"] for t in store.get_by_status(BACKLOG)] == [mine["id"]]

    store.delete(mine["id"])
    assert store.get_all() == []


def test_sqlite_store_log_handler(db_conn, project_id):
    store = SqliteTaskStore(db_conn, project_id)
    handler = store.log_handler("abc")
    assert isinstance(handler, TaskDBHandler)
    assert handler.task_id == "abc"
