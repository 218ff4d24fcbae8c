"""Tests for the CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from agboard.cli import _ensure_gitignore_entry, main
from agboard.db import (
    add_task_log,
    create_task,
    get_connection,
    get_project,
    get_task,
    update_task,
)
from agboard.engine import ReviewDraft, TransitionResult
from agboard.git_ops import WorktreeInfo

PROJECT_DIR = Path("/tmp/testproj")


def _payload(result):
    """Parse the JSON document printed last, skipping prompts echoed before it."""
    out = result.output
    return json.loads(out[out.index("{") :])


@pytest.fixture()
def cli_db(db_conn_path, tmp_path, monkeypatch):
    """CLI wired to the per-test DB, running inside the testproj project."""
    conn, db_path = db_conn_path
    monkeypatch.setattr("agboard.config.global_config_path", lambda: tmp_path / "none.toml")
    with (
        patch("agboard.db.get_connection", side_effect=lambda *_: get_connection(db_path)),
        patch("agboard.cli.repo_root", return_value=PROJECT_DIR),
    ):
        yield conn


@pytest.fixture()
def project_task(cli_db):
    project = get_project(cli_db, "testproj")
    return create_task(cli_db, project["id"], "Add login feature", "claude")


def _in_session(conn, task):
    task["status"] = "running"
    task["session_name"] = "testproj:task-add-login-feature"
    task["worktree_path"] = "/tmp/testproj/.agboard/worktrees/add-login-feature"
    task["branch_name"] = "task/add-login-feature"
    return update_task(conn, task)


# -- JSON error handling --


def test_unknown_option_is_json_error():
    result = CliRunner().invoke(main, ["status", "--no-such-flag"])
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert "no-such-flag" in payload["error"].lower() or "no such option" in payload["error"]


def test_unknown_command_suggests_match():
    result = CliRunner().invoke(main, ["stauts"])
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert "Did you mean: status" in payload["error"]


def test_missing_argument_is_json_error():
    result = CliRunner().invoke(main, ["task", "show"])
    assert result.exit_code != 0
    assert json.loads(result.output)["ok"] is False


def test_outside_registered_project(cli_db):
    with patch("agboard.cli.repo_root", return_value=Path("/tmp/elsewhere")):
        result = CliRunner().invoke(main, ["task", "list"])
    assert result.exit_code != 0
    error = json.loads(result.output)["error"]
    assert "not found" in error
    assert "agboard init" in error


# -- init --


def test_init_registers_project_and_gitignore(db_conn_path, tmp_path):
    _conn, db_path = db_conn_path
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / ".gitignore").write_text("node_modules/")

    with (
        patch("agboard.db.get_connection", side_effect=lambda *_: get_connection(db_path)),
        patch("agboard.cli.is_git_repo", return_value=True),
        patch("agboard.cli.repo_root", return_value=repo),
    ):
        runner = CliRunner()
        first = runner.invoke(main, ["init", str(repo)])
        second = runner.invoke(main, ["init", str(repo)])

    assert first.exit_code == 0, first.output
    project = json.loads(first.output)
    assert project["name"] == "repo"
    assert project["dir"] == str(repo)
    assert json.loads(second.output)["id"] == project["id"]
    assert (repo / ".agboard").is_dir()
    assert (repo / ".gitignore").read_text() == "node_modules/\n.agboard/\n"


def test_init_custom_name(db_conn_path, tmp_path):
    _conn, db_path = db_conn_path
    repo = tmp_path / "repo"
    repo.mkdir()
    with (
        patch("agboard.db.get_connection", side_effect=lambda *_: get_connection(db_path)),
        patch("agboard.cli.is_git_repo", return_value=True),
        patch("agboard.cli.repo_root", return_value=repo),
    ):
        result = CliRunner().invoke(main, ["init", str(repo), "--name", "webapp"])
    assert json.loads(result.output)["name"] == "webapp"


def test_init_name_collision_is_json_error(db_conn_path, tmp_path):
    _conn, db_path = db_conn_path
    repo = tmp_path / "repo"
    repo.mkdir()
    with (
        patch("agboard.db.get_connection", side_effect=lambda *_: get_connection(db_path)),
        patch("agboard.cli.is_git_repo", return_value=True),
        patch("agboard.cli.repo_root", return_value=repo),
    ):
        result = CliRunner().invoke(main, ["init", str(repo), "--name", "testproj"])
    assert result.exit_code != 0
    assert "already taken" in json.loads(result.output)["error"]


def test_init_requires_git_repo(tmp_path):
    with patch("agboard.cli.is_git_repo", return_value=False):
        result = CliRunner().invoke(main, ["init", str(tmp_path)])
    assert result.exit_code != 0
    assert "not a git repository" in json.loads(result.output)["error"]


def test_gitignore_entry_created_once(tmp_path):
    _ensure_gitignore_entry(tmp_path)
    _ensure_gitignore_entry(tmp_path)
    assert (tmp_path / ".gitignore").read_text() == ".agboard/\n"


def test_gitignore_entry_respects_bare_name(tmp_path):
    (tmp_path / ".gitignore").write_text(".agboard\n")
    _ensure_gitignore_entry(tmp_path)
    assert (tmp_path / ".gitignore").read_text() == ".agboard\n"


# -- task records --


def test_task_add_list_show(cli_db):
    runner = CliRunner()
    added = runner.invoke(main, ["task", "add", "Add login feature", "-d", "Use OAuth"])
    assert added.exit_code == 0, added.output
    task = json.loads(added.output)
    assert task["status"] == "backlog"
    assert task["description"] == "Use OAuth"
    assert task["agent"] == "claude"

    listed = json.loads(runner.invoke(main, ["task", "list"]).output)
    assert [t["id"] for t in listed] == [task["id"]]
    assert json.loads(runner.invoke(main, ["task", "list", "--status", "done"]).output) == []

    shown = json.loads(runner.invoke(main, ["task", "show", task["id"][:8]]).output)
    assert shown["title"] == "Add login feature"


def test_task_add_unknown_agent(cli_db):
    result = CliRunner().invoke(main, ["task", "add", "x", "--agent", "nope"])
    assert result.exit_code != 0
    assert "Unknown agent" in json.loads(result.output)["error"]


def test_task_list_rejects_unknown_status(cli_db):
    result = CliRunner().invoke(main, ["task", "list", "--status", "archived"])
    assert result.exit_code != 0
    assert json.loads(result.output)["ok"] is False


def test_task_show_unknown(cli_db):
    result = CliRunner().invoke(main, ["task", "show", "deadbeef"])
    assert result.exit_code != 0
    error = json.loads(result.output)["error"]
    assert "Task 'deadbeef' not found" in error
    assert "agboard task list" in error


def test_task_edit(cli_db, project_task):
    result = CliRunner().invoke(main, ["task", "edit", project_task["id"], "--title", "Add SSO"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["title"] == "Add SSO"


def test_task_edit_requires_fields(cli_db, project_task):
    result = CliRunner().invoke(main, ["task", "edit", project_task["id"]])
    assert result.exit_code != 0
    assert "Nothing to edit" in json.loads(result.output)["error"]


def test_task_edit_outside_backlog(cli_db, project_task):
    _in_session(cli_db, project_task)
    result = CliRunner().invoke(main, ["task", "edit", project_task["id"], "-t", "New"])
    assert result.exit_code != 0
    assert "only backlog" in json.loads(result.output)["error"]


def test_task_logs(cli_db, project_task):
    add_task_log(cli_db, task_id=project_task["id"], level="INFO", message="moved")
    add_task_log(cli_db, task_id=project_task["id"], level="ERROR", message="boom")
    runner = CliRunner()
    logs = json.loads(runner.invoke(main, ["task", "logs", project_task["id"]]).output)
    assert [row["message"] for row in logs] == ["moved", "boom"]
    errors = json.loads(
        runner.invoke(main, ["task", "logs", project_task["id"], "--level", "ERROR"]).output
    )
    assert [row["message"] for row in errors] == ["boom"]


def test_task_diff_without_worktree(cli_db, project_task):
    result = CliRunner().invoke(main, ["task", "diff", project_task["id"]])
    assert result.exit_code != 0
    assert "no worktree" in json.loads(result.output)["error"]


def test_task_diff(cli_db, project_task):
    _in_session(cli_db, project_task)
    with patch("agboard.cli.collect_task_diff", return_value="(no changes)\n") as diff:
        result = CliRunner().invoke(main, ["task", "diff", project_task["id"]])
    diff.assert_called_once_with("/tmp/testproj/.agboard/worktrees/add-login-feature")
    assert json.loads(result.output) == {"task_id": project_task["id"], "diff": "(no changes)\n"}


# -- transitions (engine mocked) --


def test_task_advance(cli_db, project_task):
    engine = MagicMock()
    engine.advance.return_value = TransitionResult(
        moved=True, task=project_task, from_status="backlog", to_status="planning"
    )
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(main, ["task", "advance", project_task["id"][:8]])
    assert result.exit_code == 0, result.output
    engine.advance.assert_called_once_with(project_task["id"])
    payload = json.loads(result.output)
    assert payload["ok"] is True
    assert (payload["from"], payload["to"]) == ("backlog", "planning")


def test_task_advance_refusal_is_reported(cli_db, project_task):
    engine = MagicMock()
    engine.advance.return_value = TransitionResult(
        moved=False,
        task=project_task,
        from_status="review",
        to_status="done",
        reason="PR #42 is not merged (state: open)",
    )
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(main, ["task", "advance", project_task["id"]])
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert payload["moved"] is False
    assert "not merged" in payload["reason"]


def _draft_engine(task):
    engine = MagicMock()
    engine.advance.return_value = TransitionResult(
        moved=False,
        task=task,
        from_status="running",
        to_status="review",
        draft=ReviewDraft("Add login feature", "## Changes\n```\n a | 1 +\n```\n"),
    )
    engine.confirm_review.return_value = TransitionResult(
        moved=True, task=task, from_status="running", to_status="review"
    )
    return engine


def test_task_advance_running_with_yes(cli_db, project_task):
    engine = _draft_engine(project_task)
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(
            main, ["task", "advance", project_task["id"], "--yes", "--title", "Login"]
        )
    assert result.exit_code == 0, result.output
    engine.confirm_review.assert_called_once_with(
        project_task["id"], "Login", "## Changes\n```\n a | 1 +\n```\n"
    )
    assert _payload(result)["moved"] is True


def test_task_advance_running_confirmed(cli_db, project_task):
    engine = _draft_engine(project_task)
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(main, ["task", "advance", project_task["id"]], input="y\n")
    assert result.exit_code == 0, result.output
    engine.confirm_review.assert_called_once()
    assert _payload(result)["to"] == "review"


def test_task_advance_running_cancelled(cli_db, project_task):
    engine = _draft_engine(project_task)
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(main, ["task", "advance", project_task["id"]], input="n\n")
    engine.confirm_review.assert_not_called()
    payload = _payload(result)
    assert payload["moved"] is False
    assert payload["reason"] == "Cancelled"


def test_task_advance_engine_error_is_json(cli_db, project_task):
    engine = MagicMock()
    engine.advance.side_effect = RuntimeError("CreateWorktree failed for task 1234abcd: boom")
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(main, ["task", "advance", project_task["id"]])
    assert result.exit_code != 0
    assert "CreateWorktree failed" in json.loads(result.output)["error"]


def test_task_revert_error(cli_db, project_task):
    engine = MagicMock()
    engine.revert.side_effect = ValueError("only review tasks can be reverted")
    with patch("agboard.cli._build_engine", return_value=engine):
        result = CliRunner().invoke(main, ["task", "revert", project_task["id"]])
    assert result.exit_code != 0
    assert "only review" in json.loads(result.output)["error"]


def test_task_delete(cli_db, project_task):
    sessions = MagicMock()
    sessions.kill_window.side_effect = RuntimeError("can't find window")
    _in_session(cli_db, project_task)
    with (
        patch("agboard.cli.TmuxSessions", return_value=sessions),
        patch("agboard.cli.GitCli"),
    ):
        result = CliRunner().invoke(main, ["task", "delete", project_task["id"]])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["ok"] is True
    assert payload["warnings"] == ["KillWindow: can't find window"]
    assert get_task(cli_db, project_task["id"]) is None


# -- session interaction --


def test_task_send_keys(cli_db, project_task):
    _in_session(cli_db, project_task)
    sessions = MagicMock()
    with patch("agboard.cli.TmuxSessions", return_value=sessions):
        result = CliRunner().invoke(
            main, ["task", "send", project_task["id"], "--text", "yes please", "enter", "f5"]
        )
    assert result.exit_code == 0, result.output
    sessions.send_keys.assert_called_once_with("testproj:task-add-login-feature", "yes please")
    sent = [c.args[1] for c in sessions.send_keys_literal.call_args_list]
    assert sent == ["Enter", "F5"]


def test_task_send_unknown_key(cli_db, project_task):
    result = CliRunner().invoke(main, ["task", "send", project_task["id"], "ctrl+x"])
    assert result.exit_code != 0
    assert "Unknown key 'ctrl+x'" in json.loads(result.output)["error"]


def test_task_send_without_session(cli_db, project_task):
    result = CliRunner().invoke(main, ["task", "send", project_task["id"], "enter"])
    assert result.exit_code != 0
    assert "no tmux window" in json.loads(result.output)["error"]


def test_task_peek(cli_db, project_task):
    _in_session(cli_db, project_task)
    sessions = MagicMock()
    sessions.window_exists.return_value = True
    sessions.capture_pane_with_history.return_value = b"\x1b[32mhello\x1b[0m\n> \n"
    sessions.get_cursor_info.return_value = (1, 2)
    with patch("agboard.cli.TmuxSessions", return_value=sessions):
        result = CliRunner().invoke(main, ["task", "peek", project_task["id"], "--height", "5"])
    assert result.exit_code == 0, result.output
    assert "hello" in result.output
    assert "At bottom" in result.output


def test_task_peek_missing_window(cli_db, project_task):
    _in_session(cli_db, project_task)
    sessions = MagicMock()
    sessions.window_exists.return_value = False
    with patch("agboard.cli.TmuxSessions", return_value=sessions):
        result = CliRunner().invoke(main, ["task", "peek", project_task["id"]])
    assert result.exit_code != 0
    assert "does not exist" in json.loads(result.output)["error"]


def test_status(cli_db, project_task):
    _in_session(cli_db, project_task)
    cache = MagicMock()
    cache.refresh.return_value = {"testproj:task-add-login-feature": "idle"}
    with (
        patch("agboard.cli.TmuxSessions"),
        patch("agboard.cli.StatusCache.for_sessions", return_value=cache),
    ):
        result = CliRunner().invoke(main, ["status"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == [
        {
            "task_id": project_task["id"],
            "target": "testproj:task-add-login-feature",
            "status": "idle",
        }
    ]


def test_worktrees_lists_task_checkouts(cli_db):
    infos = [
        WorktreeInfo("/tmp/testproj", "main"),
        WorktreeInfo("/tmp/testproj/.agboard/worktrees/add-login", "task/add-login"),
    ]
    with patch("agboard.cli.list_worktrees", return_value=infos):
        result = CliRunner().invoke(main, ["worktrees"])
    assert json.loads(result.output) == [
        {
            "path": "/tmp/testproj/.agboard/worktrees/add-login",
            "branch": "task/add-login",
            "slug": "add-login",
        }
    ]


def test_doctor_failure_exits_nonzero():
    report = {"status": "fail", "summary": "0 checks passed, 0 warnings, 1 failed.", "checks": []}
    with (
        patch("agboard.doctor.run_doctor", return_value=report),
        patch("agboard.cli.repo_root", return_value=PROJECT_DIR),
    ):
        result = CliRunner().invoke(main, ["doctor"])
    assert result.exit_code != 0
    assert "Doctor checks failed." in result.output
