"""Terminal sessions on a private tmux server.

Every call passes ``-L <server>`` so agboard's sessions live in their own
tmux server and never touch the user's personal sessions. Naming:

- one tmux session per project, named after the project directory
- one window per active task, named ``task-<slug>``
- target = ``<project-session>:<window-name>``

Read-style calls return a safe empty/False value when tmux fails (no
server or no session is a normal state). Mutating calls raise RuntimeError.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from agboard.config import DEFAULT_TMUX_SERVER

log = logging.getLogger(__name__)

WINDOW_PREFIX = "task-"


def window_name_for_slug(slug: str) -> str:
    return f"{WINDOW_PREFIX}{slug}"


def session_name_for_project(project_dir: str | Path) -> str:
    # tmux treats '.' and ':' in target names specially.
    return Path(project_dir).resolve().name.replace(".", "_").replace(":", "_")


def make_target(session: str, window_name: str) -> str:
    return f"{session}:{window_name}"


class TmuxSessions:
    """SessionOps implementation for one tmux server label."""

    def __init__(self, server: str = DEFAULT_TMUX_SERVER):
        self.server = server

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[bytes]:
        return subprocess.run(
            ["tmux", "-L", self.server, *args],
            capture_output=True,
        )

    def _query(self, args: list[str]) -> subprocess.CompletedProcess[bytes] | None:
        try:
            return self._run(args)
        except OSError as exc:
            log.debug("tmux %s failed: %s", args[0], exc)
            return None

    def _mutate(self, args: list[str], what: str) -> None:
        try:
            result = self._run(args)
        except OSError as exc:
            raise RuntimeError(f"Failed to {what}: {exc}") from None
        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip()
            raise RuntimeError(f"Failed to {what}: {stderr}")

    # -- Sessions and windows --

    def has_session(self, session: str) -> bool:
        result = self._query(["has-session", "-t", session])
        return result is not None and result.returncode == 0

    def create_session(self, session: str, workdir: str) -> None:
        self._mutate(
            ["new-session", "-d", "-s", session, "-c", workdir],
            f"create tmux session {session}",
        )

    def create_window(
        self, session: str, window_name: str, workdir: str, command: str | None = None
    ) -> None:
        args = ["new-window", "-d", "-t", session, "-n", window_name, "-c", workdir]
        if command:
            args.extend(["sh", "-c", command])
        self._mutate(args, f"create tmux window {window_name}")

    def kill_window(self, target: str) -> None:
        self._mutate(["kill-window", "-t", target], f"kill tmux window {target}")

    def window_exists(self, target: str) -> bool:
        result = self._query(["list-windows", "-t", target])
        return result is not None and result.returncode == 0

    def is_pane_alive(self, target: str) -> bool:
        result = self._query(["display-message", "-p", "-t", target, "#{pane_dead}"])
        if result is None or result.returncode != 0:
            return False
        return result.stdout.decode(errors="replace").strip() == "0"

    # -- Input --

    def send_keys(self, target: str, text: str) -> None:
        """Type text into the pane, then press Enter as a separate keystroke."""
        self._mutate(["send-keys", "-t", target, "-l", text], f"send keys to {target}")
        self._mutate(["send-keys", "-t", target, "Enter"], f"send Enter to {target}")

    def send_keys_literal(self, target: str, text: str) -> None:
        """Send a key or key name without a trailing Enter."""
        self._mutate(["send-keys", "-t", target, text], f"send keys to {target}")

    # -- Output --

    def capture_pane(self, target: str) -> str:
        result = self._query(["capture-pane", "-t", target, "-p"])
        if result is None or result.returncode != 0:
            return ""
        return result.stdout.decode(errors="replace")

    def capture_pane_with_history(self, target: str, history_lines: int) -> bytes:
        """Raw pane bytes including escape sequences and scrollback."""
        result = self._query(
            ["capture-pane", "-t", target, "-p", "-e", "-S", f"-{history_lines}"]
        )
        if result is None or result.returncode != 0:
            return b""
        return result.stdout

    def get_cursor_info(self, target: str) -> tuple[int, int] | None:
        """Return (cursor_row, pane_height) or None if tmux can't tell."""
        result = self._query(
            ["display-message", "-p", "-t", target, "#{cursor_y} #{pane_height}"]
        )
        if result is None or result.returncode != 0:
            return None
        parts = result.stdout.decode(errors="replace").split()
        if len(parts) != 2:
            return None
        try:
            return int(parts[0]), int(parts[1])
        except ValueError:
            return None

    def resize_window(self, target: str, width: int, height: int) -> None:
        self._mutate(
            ["resize-window", "-t", target, "-x", str(width), "-y", str(height)],
            f"resize tmux window {target}",
        )
