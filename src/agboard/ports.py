"""Structural interfaces for the engine's external collaborators.

The orchestration engine and the session-health detector only talk to
these protocols, so tests can hand in mocks instead of spawning git, tmux,
gh or agent processes. The real adapters are :class:`agboard.db.SqliteTaskStore`,
:class:`agboard.git_ops.GitCli`, :class:`agboard.tmux.TmuxSessions`,
:class:`agboard.provider.GitHubProvider` and :class:`agboard.agents.CodingAgent`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from agboard.db import TaskRow


@runtime_checkable
class TaskStore(Protocol):
    def create(self, task: TaskRow) -> TaskRow: ...

    def update(self, task: TaskRow) -> TaskRow: ...

    def delete(self, task_id: str) -> None: ...

    def get_by_id(self, task_id: str) -> TaskRow | None: ...

    def get_by_status(self, status: str) -> list[TaskRow]: ...

    def get_all(self) -> list[TaskRow]: ...

    def log_handler(self, task_id: str) -> logging.Handler | None: ...


@runtime_checkable
class GitOps(Protocol):
    def create_worktree(self, project_dir: Path, slug: str) -> str: ...

    def remove_worktree(self, project_dir: Path, worktree_path: str) -> None: ...

    def initialize_worktree(
        self,
        project_dir: Path,
        worktree_path: Path,
        copy_files: str | None,
        init_script: str | None,
    ) -> list[str]: ...

    def delete_branch(self, project_dir: Path, branch: str) -> None: ...

    def diff_stat_from_default(self, worktree_path: Path) -> str: ...

    def add_all(self, worktree_path: Path) -> None: ...

    def has_changes(self, worktree_path: Path) -> bool: ...

    def commit(self, worktree_path: Path, message: str) -> None: ...

    def push(self, worktree_path: Path, branch: str, set_upstream: bool) -> None: ...


@runtime_checkable
class SessionOps(Protocol):
    def has_session(self, session: str) -> bool: ...

    def create_session(self, session: str, workdir: str) -> None: ...

    def create_window(
        self, session: str, window_name: str, workdir: str, command: str | None = None
    ) -> None: ...

    def kill_window(self, target: str) -> None: ...

    def window_exists(self, target: str) -> bool: ...

    def is_pane_alive(self, target: str) -> bool: ...

    def send_keys(self, target: str, text: str) -> None: ...

    def send_keys_literal(self, target: str, text: str) -> None: ...

    def capture_pane(self, target: str) -> str: ...

    def capture_pane_with_history(self, target: str, history_lines: int) -> bytes: ...

    def get_cursor_info(self, target: str) -> tuple[int, int] | None: ...

    def resize_window(self, target: str, width: int, height: int) -> None: ...


@runtime_checkable
class ProviderOps(Protocol):
    def get_pr_state(self, project_dir: Path, pr_number: int) -> str: ...

    def create_pr(
        self, project_dir: Path, title: str, body: str, head_branch: str
    ) -> tuple[int, str]: ...


@runtime_checkable
class AgentOps(Protocol):
    def generate_text(self, working_dir: Path, prompt: str) -> str: ...

    def co_author_string(self) -> str: ...

    def build_interactive_command(self, prompt: str) -> str: ...
