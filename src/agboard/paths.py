"""Canonical filesystem paths for agboard configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

AGBOARD_CONFIG_DIR = Path.home() / ".config" / "agboard"

# Per-project data directory, relative to the project root.
DATA_DIR_NAME = ".agboard"
WORKTREES_DIR_NAME = "worktrees"

_env_db = os.environ.get("AGBOARD_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else AGBOARD_CONFIG_DIR / "agboard.db"


def project_data_dir(project_dir: str | Path) -> Path:
    return Path(project_dir) / DATA_DIR_NAME


def worktrees_root(project_dir: str | Path) -> Path:
    return project_data_dir(project_dir) / WORKTREES_DIR_NAME
