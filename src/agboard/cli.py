from __future__ import annotations

import json
import logging
import sqlite3
import sys
import time
from pathlib import Path

import click
from rich.console import Console
from rich.style import Style
from rich.text import Text

from agboard import __version__
from agboard.agents import CodingAgent
from agboard.config import BoardConfig, load_config
from agboard.db import (
    TASK_COLUMNS,
    VALID_LOG_LEVELS,
    ProjectRow,
    SqliteTaskStore,
    TaskRow,
    add_project,
    connect,
    get_project_by_dir,
    get_task,
    list_task_logs,
    list_tasks,
    resolve_task_id,
)
from agboard.engine import TaskEngine, TransitionResult
from agboard.git_ops import GitCli, collect_task_diff, is_git_repo, list_worktrees, repo_root
from agboard.paths import DATA_DIR_NAME, project_data_dir
from agboard.provider import GitHubProvider
from agboard.status import StatusCache
from agboard.terminal import capture_task_view, compute_visible_lines, footer_text, tmux_key_name
from agboard.tmux import TmuxSessions, session_name_for_project

log = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Commands print
    JSON on stdout, so errors do too: ``{"ok": false, "error": ...}``.
    Unknown commands get fuzzy-matched suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=_LOG_FORMAT, stream=sys.stderr)
    # Task transitions lower the agboard logger to DEBUG for the per-task log;
    # stderr keeps the requested verbosity.
    for handler in logging.getLogger().handlers:
        handler.setLevel(level)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("-v", "--verbose", count=True, help="Log to stderr (-v info, -vv debug).")
def main(verbose: int):
    """Run coding agents on a task board, one worktree and tmux window per task.

    \b
    Quick start:
      agboard init                         Register the current git repo
      agboard task add "Add login"         Create a backlog task
      agboard task advance ID              Move it along the board
      agboard task peek ID                 Look at the agent's terminal
      agboard status --watch               Follow agent activity

    \b
    Board:
      backlog -> planning -> running -> review -> done
    """
    _configure_logging(verbose)


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    hints = {
        "task": "Run 'agboard task list' to see tasks.",
        "project": "Run 'agboard init' in the repository first.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


# -- init --


def _ensure_gitignore_entry(cwd: Path) -> None:
    """Add .agboard/ to .gitignore if not already present."""
    gitignore = cwd / ".gitignore"
    entry = f"{DATA_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text()
        for line in content.splitlines():
            stripped = line.strip()
            if stripped == entry or stripped == DATA_DIR_NAME:
                return
        with open(gitignore, "a") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"{entry}\n")
    else:
        gitignore.write_text(f"{entry}\n")


@main.command()
@click.argument(
    "path",
    required=False,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option("--name", "-n", default=None, help="Project name (default: directory name).")
def init(path: str | None, name: str | None):
    """Register a git repository as an agboard project."""
    target = Path(path) if path else Path.cwd().resolve()
    if not is_git_repo(target):
        raise click.ClickException(f"{target} is not a git repository.")
    root = repo_root(target) or target

    with connect() as conn:
        project = get_project_by_dir(conn, str(root))
        if project is None:
            try:
                project = add_project(conn, name or root.name, str(root))
            except ValueError as e:
                raise click.ClickException(str(e)) from e

    project_data_dir(root).mkdir(parents=True, exist_ok=True)
    _ensure_gitignore_entry(root)
    _echo_json(project)


# -- project and engine wiring --


def _current_project(conn: sqlite3.Connection) -> ProjectRow:
    cwd = Path.cwd().resolve()
    root = repo_root(cwd) or cwd
    project = get_project_by_dir(conn, str(root))
    if project is None:
        raise _not_found("project", str(root))
    return project


def _build_engine(conn: sqlite3.Connection, project: ProjectRow, config: BoardConfig) -> TaskEngine:
    project_dir = Path(project["dir"])
    return TaskEngine(
        SqliteTaskStore(conn, project["id"]),
        GitCli(),
        TmuxSessions(config.tmux_server),
        GitHubProvider(),
        project_id=project["id"],
        project_dir=project_dir,
        project_session=session_name_for_project(project_dir),
        config=config,
        agents=CodingAgent.by_name,
    )


def _resolve_task(conn: sqlite3.Connection, project: ProjectRow, task_id: str) -> TaskRow:
    full_id = resolve_task_id(conn, task_id)
    task = get_task(conn, full_id) if full_id else None
    if task is None or task["project_id"] != project["id"]:
        raise _not_found("task", task_id)
    return task


def _emit_result(result: TransitionResult) -> None:
    _echo_json({"ok": result.moved or result.draft is not None, **result.to_dict()})


# -- task --


@main.group()
def task():
    """Create, move and inspect tasks."""


@task.command("add")
@click.argument("title")
@click.option("--description", "-d", default=None, help="Longer task description / prompt.")
@click.option("--agent", "-a", default=None, help="Coding agent (default: config default_agent).")
def task_add(title: str, description: str | None, agent: str | None):
    """Create a task in the backlog."""
    with connect() as conn:
        project = _current_project(conn)
        engine = _build_engine(conn, project, load_config(project["dir"]))
        try:
            created = engine.create_task(title, description, agent)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
    _echo_json(created)


@task.command("list")
@click.option("--status", "-s", type=click.Choice(TASK_COLUMNS), default=None)
def task_list(status: str | None):
    """List tasks in board order (oldest first)."""
    with connect() as conn:
        project = _current_project(conn)
        tasks = list_tasks(conn, project_id=project["id"], status=status)
    _echo_json(tasks)


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show task details."""
    with connect() as conn:
        t = _resolve_task(conn, _current_project(conn), task_id)
    _echo_json(t)


@task.command("edit")
@click.argument("task_id")
@click.option("--title", "-t", default=None)
@click.option("--description", "-d", default=None)
def task_edit(task_id: str, title: str | None, description: str | None):
    """Edit a backlog task's title or description."""
    if title is None and description is None:
        raise click.ClickException("Nothing to edit: pass --title and/or --description.")
    with connect() as conn:
        project = _current_project(conn)
        t = _resolve_task(conn, project, task_id)
        engine = _build_engine(conn, project, load_config(project["dir"]))
        try:
            updated = engine.edit_task(t["id"], title, description)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
    _echo_json(updated)


def _edit_draft(title: str, body: str) -> tuple[str, str]:
    """Open $EDITOR on the draft: first line is the title, the rest the body."""
    edited = click.edit(f"{title}\n\n{body}")
    if edited is None:
        return title, body
    first, _, rest = edited.partition("\n")
    return first.strip() or title, rest.strip("\n")


@task.command("advance")
@click.argument("task_id")
@click.option("--yes", "-y", is_flag=True, help="Open the pull request without asking.")
@click.option("--title", default=None, help="Pull request title (running tasks).")
@click.option("--body", default=None, help="Pull request body (running tasks).")
@click.option("--edit", "edit_draft", is_flag=True, help="Edit the PR draft in $EDITOR.")
def task_advance(
    task_id: str, yes: bool, title: str | None, body: str | None, edit_draft: bool
):
    """Move a task to the next column.

    \b
    backlog  -> planning   worktree + tmux window, agent asked for a plan
    planning -> running    plan approved (Enter sent to the agent)
    running  -> review     commit, push and open a PR (asks for confirmation)
    review   -> done       only once the PR is merged; cleans up
    """
    with connect() as conn:
        project = _current_project(conn)
        t = _resolve_task(conn, project, task_id)
        engine = _build_engine(conn, project, load_config(project["dir"]))
        try:
            result = engine.advance(t["id"])
            if result.draft is not None and not result.moved:
                pr_title = title or result.draft.title
                pr_body = body if body is not None else result.draft.body
                if edit_draft:
                    pr_title, pr_body = _edit_draft(pr_title, pr_body)
                if not yes:
                    click.echo(f"{pr_title}\n\n{pr_body}", err=True)
                    if not click.confirm("Open this pull request?", err=True):
                        _emit_result(
                            TransitionResult(
                                moved=False,
                                task=result.task,
                                from_status=result.from_status,
                                to_status=result.to_status,
                                reason="Cancelled",
                            )
                        )
                        return
                result = engine.confirm_review(t["id"], pr_title, pr_body)
        except (ValueError, RuntimeError) as e:
            raise click.ClickException(str(e)) from e
    _emit_result(result)


@task.command("revert")
@click.argument("task_id")
def task_revert(task_id: str):
    """Send a task in review back to running in its existing worktree."""
    with connect() as conn:
        project = _current_project(conn)
        t = _resolve_task(conn, project, task_id)
        engine = _build_engine(conn, project, load_config(project["dir"]))
        try:
            result = engine.revert(t["id"])
        except (ValueError, RuntimeError) as e:
            raise click.ClickException(str(e)) from e
    _emit_result(result)


@task.command("delete")
@click.argument("task_id")
def task_delete(task_id: str):
    """Delete a task, killing its window and removing its worktree."""
    with connect() as conn:
        project = _current_project(conn)
        t = _resolve_task(conn, project, task_id)
        engine = _build_engine(conn, project, load_config(project["dir"]))
        result = engine.delete(t["id"])
    _echo_json({"ok": True, "id": t["id"], "warnings": result.warnings})


@task.command("diff")
@click.argument("task_id")
def task_diff(task_id: str):
    """Show uncommitted changes in a task's worktree."""
    with connect() as conn:
        t = _resolve_task(conn, _current_project(conn), task_id)
    if not t["worktree_path"]:
        raise click.ClickException(f"Task {t['id'][:8]} has no worktree.")
    _echo_json({"task_id": t["id"], "diff": collect_task_diff(t["worktree_path"])})


@task.command("logs")
@click.argument("task_id")
@click.option("--level", type=click.Choice(sorted(VALID_LOG_LEVELS)), default=None)
def task_logs(task_id: str, level: str | None):
    """Show the transition log of a task."""
    with connect() as conn:
        t = _resolve_task(conn, _current_project(conn), task_id)
        logs = list_task_logs(conn, t["id"], level=level)
    _echo_json(logs)


def _require_session(t: TaskRow) -> str:
    if not t["session_name"]:
        raise click.ClickException(f"Task {t['id'][:8]} has no tmux window.")
    return t["session_name"]


@task.command("peek")
@click.argument("task_id")
@click.option("--scroll", default=0, type=click.IntRange(min=0), help="Lines back into history.")
@click.option("--height", default=None, type=click.IntRange(min=1), help="Lines to show.")
def task_peek(task_id: str, scroll: int, height: int | None):
    """Render the agent's terminal for a task."""
    with connect() as conn:
        project = _current_project(conn)
        t = _resolve_task(conn, project, task_id)
    target = _require_session(t)
    config = load_config(project["dir"])
    sessions = TmuxSessions(config.tmux_server)
    if not sessions.window_exists(target):
        raise click.ClickException(f"tmux window {target} does not exist.")

    console = Console(highlight=False)
    visible_height = height or max(console.size.height - 2, 1)
    lines = capture_task_view(sessions, target, config.history_lines)
    visible, start_line, _total = compute_visible_lines(lines, visible_height, -scroll)
    for line in visible:
        console.print(line.to_text())
    console.print(Text(footer_text(-scroll, start_line), style=Style(reverse=True)))


@task.command("send")
@click.argument("task_id")
@click.argument("keys", nargs=-1)
@click.option("--text", default=None, help="Type TEXT and press Enter before any KEYS.")
def task_send(task_id: str, keys: tuple[str, ...], text: str | None):
    """Forward keys (enter, escape, up, f5, y, ...) to a task's agent."""
    if not keys and text is None:
        raise click.ClickException("Nothing to send: pass KEYS or --text.")
    names = []
    for key in keys:
        name = tmux_key_name(key)
        if name is None:
            raise click.ClickException(f"Unknown key '{key}'.")
        names.append(name)

    with connect() as conn:
        project = _current_project(conn)
        t = _resolve_task(conn, project, task_id)
    target = _require_session(t)
    sessions = TmuxSessions(load_config(project["dir"]).tmux_server)
    try:
        if text is not None:
            sessions.send_keys(target, text)
        for name in names:
            sessions.send_keys_literal(target, name)
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e
    _echo_json({"ok": True, "target": target, "sent": names})


# -- status --


def _session_targets(tasks: list[TaskRow]) -> dict[str, str]:
    return {t["session_name"]: t["id"] for t in tasks if t["session_name"]}


@main.command()
@click.option("--watch", "-w", is_flag=True, help="Keep polling; print a line per change.")
def status(watch: bool):
    """Live status (active, idle, exited, unknown) of every task window."""
    with connect() as conn:
        project = _current_project(conn)
        config = load_config(project["dir"])
        cache = StatusCache.for_sessions(TmuxSessions(config.tmux_server), config.status_ttl)
        targets = _session_targets(list_tasks(conn, project_id=project["id"]))

        if not watch:
            statuses = cache.refresh(targets)
            _echo_json(
                [
                    {"task_id": task_id, "target": target, "status": statuses[target]}
                    for target, task_id in targets.items()
                ]
            )
            return

        last: dict[str, str] = {}
        try:
            while True:
                # Tasks move between polls; re-read so new windows show up.
                targets = _session_targets(list_tasks(conn, project_id=project["id"]))
                for target, current in cache.refresh(targets).items():
                    if last.get(target) != current:
                        click.echo(
                            json.dumps(
                                {"task_id": targets[target], "target": target, "status": current}
                            )
                        )
                        last[target] = current
                time.sleep(config.poll_interval)
        except KeyboardInterrupt:
            return


# -- worktrees / doctor --


@main.command()
def worktrees():
    """List git worktrees that belong to tasks."""
    with connect() as conn:
        project = _current_project(conn)
    infos = list_worktrees(project["dir"])
    _echo_json(
        [
            {"path": info.path, "branch": info.branch, "slug": info.task_slug}
            for info in infos
            if info.task_slug is not None
        ]
    )


@main.command()
@click.option("--fix", is_flag=True, help="Remove worktrees no task refers to.")
def doctor(fix: bool):
    """Check prerequisites and worktree consistency."""
    from agboard.doctor import run_doctor

    cwd = Path.cwd().resolve()
    report = run_doctor(repo_root(cwd) or cwd, fix=fix)
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")
