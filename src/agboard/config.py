"""Global and per-project configuration.

Settings live in two TOML files, merged with project values winning::

    ~/.config/agboard/config.toml       (global)
    <project>/.agboard/config.toml      (project)

Example::

    default_agent = "claude"
    copy_files = ".env, web/.env.local"
    init_script = "npm install"

    [tmux]
    server = "agboard"

    [timing]
    settle_seconds = 5.0
    poll_interval = 0.1
    status_ttl = 1.5
    history_lines = 500
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agboard.paths import AGBOARD_CONFIG_DIR, project_data_dir

log = logging.getLogger(__name__)

DEFAULT_AGENT = "claude"
DEFAULT_TMUX_SERVER = "agboard"
DEFAULT_SETTLE_SECONDS = 5.0
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_STATUS_TTL = 1.5
DEFAULT_HISTORY_LINES = 500


@dataclass
class BoardConfig:
    """Effective settings for one project."""

    default_agent: str = DEFAULT_AGENT
    copy_files: str | None = None
    init_script: str | None = None
    tmux_server: str = DEFAULT_TMUX_SERVER
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    status_ttl: float = DEFAULT_STATUS_TTL
    history_lines: int = DEFAULT_HISTORY_LINES


def global_config_path() -> Path:
    return AGBOARD_CONFIG_DIR / "config.toml"


def project_config_path(project_dir: str | Path) -> Path:
    return project_data_dir(project_dir) / "config.toml"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    if not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _flatten(document: dict[str, Any]) -> dict[str, Any]:
    """Map the nested TOML layout onto BoardConfig field names."""
    flat: dict[str, Any] = {}
    for key in ("default_agent", "copy_files", "init_script"):
        value = document.get(key)
        if isinstance(value, str) and value.strip():
            flat[key] = value.strip()

    tmux_section = document.get("tmux", {})
    if isinstance(tmux_section, dict):
        server = tmux_section.get("server")
        if isinstance(server, str) and server.strip():
            flat["tmux_server"] = server.strip()

    timing = document.get("timing", {})
    if isinstance(timing, dict):
        for key in ("settle_seconds", "poll_interval", "status_ttl"):
            value = timing.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
                flat[key] = float(value)
        history = timing.get("history_lines")
        if isinstance(history, int) and not isinstance(history, bool) and history > 0:
            flat["history_lines"] = history
    return flat


def load_config(project_dir: str | Path | None = None) -> BoardConfig:
    """Load global config, then overlay the project's config when given."""
    merged = _flatten(_read_toml_file(global_config_path()))
    if project_dir is not None:
        merged.update(_flatten(_read_toml_file(project_config_path(project_dir))))
    return BoardConfig(**merged)
