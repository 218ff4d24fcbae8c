"""Git operations: task worktrees, branches, diffs and publishing.

Mutating functions raise RuntimeError on failure (not ClickException),
so they can be used from both cli.py and the engine. Read-only helpers
degrade to empty results when git fails.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from agboard.paths import WORKTREES_DIR_NAME, worktrees_root

log = logging.getLogger(__name__)

BRANCH_PREFIX = "task/"
SLUG_MAX_LEN = 30


def slugify_title(title: str, max_len: int = SLUG_MAX_LEN) -> str:
    """Turn a task title into a filesystem- and branch-safe slug."""
    slug = "".join(c if c.isalnum() or c in "-_" else "-" for c in title.lower())
    return slug[:max_len].strip("-")


def branch_for_slug(slug: str) -> str:
    return f"{BRANCH_PREFIX}{slug}"


def worktree_path(project_dir: str | Path, slug: str) -> Path:
    return worktrees_root(project_dir) / slug


def _is_checkout(path: Path) -> bool:
    # A linked worktree carries a ``.git`` file pointing back at the main repo.
    return (path / ".git").exists()


def _git(
    args: list[str], cwd: str | Path, *, check: bool = False
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=check,
        capture_output=True,
        text=True,
    )


def _git_output(args: list[str], cwd: str | Path) -> str:
    """Run a read-only git command; return stdout or "" on any failure."""
    try:
        result = _git(args, cwd)
    except OSError:
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout


# -- Repository inspection --


def is_git_repo(path: str | Path) -> bool:
    try:
        return _git(["rev-parse", "--git-dir"], path).returncode == 0
    except OSError:
        return False


def repo_root(path: str | Path) -> Path | None:
    out = _git_output(["rev-parse", "--show-toplevel"], path).strip()
    return Path(out) if out else None


def current_branch(path: str | Path) -> str:
    return _git_output(["rev-parse", "--abbrev-ref", "HEAD"], path).strip()


def branch_exists(project_dir: str | Path, branch: str) -> bool:
    try:
        return _git(["rev-parse", "--verify", "--quiet", branch], project_dir).returncode == 0
    except OSError:
        return False


def detect_default_branch(project_dir: str | Path) -> str:
    """Return ``main`` or ``master`` if present, else the current branch."""
    for candidate in ("main", "master"):
        if branch_exists(project_dir, candidate):
            return candidate
    return current_branch(project_dir)


def delete_branch(project_dir: str | Path, branch: str) -> None:
    """Force-delete a local branch. Raises RuntimeError on failure."""
    try:
        _git(["branch", "-D", branch], project_dir, check=True)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to delete branch {branch}: {e.stderr.strip()}") from None
    except OSError as e:
        raise RuntimeError(f"Failed to delete branch {branch}: {e}") from None


# -- Worktrees --


def create_worktree(project_dir: str | Path, slug: str) -> str:
    """Create (or reuse) the worktree for a task slug on branch ``task/<slug>``.

    Returns the worktree path. Raises RuntimeError if ``git worktree add`` fails.
    """
    project = Path(project_dir)
    path = worktree_path(project, slug)

    if path.exists() and _is_checkout(path):
        # Already exists (e.g. retry): reuse it
        return str(path)

    if path.exists():
        log.info("Removing partial worktree directory %s", path)
        shutil.rmtree(path, ignore_errors=True)

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    base_branch = detect_default_branch(project)
    branch = branch_for_slug(slug)

    # Leftovers from an earlier failed attempt would make `worktree add -b` fail.
    with contextlib.suppress(subprocess.CalledProcessError, OSError):
        _git(["worktree", "prune"], project, check=True)
    with contextlib.suppress(RuntimeError):
        delete_branch(project, branch)

    try:
        _git(["worktree", "add", str(path), "-b", branch, base_branch], project, check=True)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to create worktree: {e.stderr.strip()}") from None
    except OSError as e:
        raise RuntimeError(f"Failed to create worktree: {e}") from None

    log.info("Created worktree %s on %s (from %s)", path, branch, base_branch)
    return str(path)


def remove_worktree(project_dir: str | Path, path: str) -> None:
    """Force-remove a worktree. Best-effort, falls back to a prune sweep."""
    try:
        _git(["worktree", "remove", "--force", path], project_dir, check=True)
        return
    except subprocess.CalledProcessError as exc:
        log.warning("Failed to remove worktree %s: %s", path, exc.stderr.strip())
    except OSError as exc:
        log.warning("Failed to remove worktree %s: %s", path, exc)

    # Prune stale worktree records left by manually deleted directories
    with contextlib.suppress(subprocess.CalledProcessError, OSError):
        _git(["worktree", "prune"], project_dir, check=True)


def initialize_worktree(
    project_dir: str | Path,
    worktree: str | Path,
    copy_files: str | None,
    init_script: str | None,
) -> list[str]:
    """Copy configured files into a new worktree, then run the init script.

    Never raises: every problem is returned as a warning string.
    """
    project = Path(project_dir)
    target_root = Path(worktree)
    warnings: list[str] = []

    for name in (copy_files or "").split(","):
        name = name.strip()
        if not name:
            continue
        source = project / name
        if not source.exists():
            warnings.append(f"copy_files: '{name}' not found in project root, skipped")
            continue
        if source.is_dir():
            warnings.append(
                f"copy_files: '{name}' is a directory, only single files are supported"
            )
            continue
        dest = target_root / name
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as exc:
            warnings.append(f"copy_files: failed to copy '{name}': {exc}")

    if init_script and init_script.strip():
        try:
            result = subprocess.run(
                ["sh", "-c", init_script],
                cwd=str(target_root),
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            warnings.append(f"init_script: failed to start: {exc}")
        else:
            if result.returncode != 0:
                detail = (result.stderr or result.stdout).strip()
                suffix = f": {detail}" if detail else ""
                warnings.append(f"init_script: exited with code {result.returncode}{suffix}")

    for warning in warnings:
        log.warning("Worktree init (%s): %s", target_root.name, warning)
    return warnings


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""

    path: str
    branch: str | None = None
    is_bare: bool = False

    @property
    def task_slug(self) -> str | None:
        """Slug of an agboard-managed worktree, or None for other checkouts."""
        path = Path(self.path)
        if path.parent.name == WORKTREES_DIR_NAME:
            return path.name
        return None


def parse_worktree_porcelain(text: str) -> list[WorktreeInfo]:
    worktrees: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None
    for line in text.splitlines():
        if line.startswith("worktree "):
            if current is not None:
                worktrees.append(current)
            current = WorktreeInfo(path=line[len("worktree ") :])
        elif current is None:
            continue
        elif line.startswith("branch "):
            ref = line[len("branch ") :]
            current.branch = ref.removeprefix("refs/heads/")
        elif line == "bare":
            current.is_bare = True
    if current is not None:
        worktrees.append(current)
    return worktrees


def list_worktrees(project_dir: str | Path) -> list[WorktreeInfo]:
    return parse_worktree_porcelain(_git_output(["worktree", "list", "--porcelain"], project_dir))


# -- Diffs --


def diff_stat(path: str | Path, base: str, target: str) -> str:
    return _git_output(["diff", base, target, "--stat"], path)


def diff_full(path: str | Path, base: str, target: str) -> str:
    return _git_output(["diff", base, target], path)


def diff_stat_from_default(worktree: str | Path) -> str:
    """Stat of everything the worktree's branch changed since the default branch."""
    base = detect_default_branch(worktree)
    if not base:
        return ""
    return _git_output(["diff", f"{base}...HEAD", "--stat"], worktree)


def diff_unstaged(worktree: str | Path) -> str:
    return _git_output(["diff"], worktree)


def diff_staged(worktree: str | Path) -> str:
    return _git_output(["diff", "--cached"], worktree)


def list_untracked_files(worktree: str | Path) -> list[str]:
    out = _git_output(["ls-files", "--others", "--exclude-standard"], worktree)
    return [line.strip() for line in out.splitlines() if line.strip()]


def list_files(worktree: str | Path) -> list[str]:
    """Tracked plus untracked files, respecting ignore rules."""
    out = _git_output(["ls-files", "--cached", "--others", "--exclude-standard"], worktree)
    return sorted({line.strip() for line in out.splitlines() if line.strip()})


def diff_untracked_file(worktree: str | Path, file: str) -> str:
    try:
        result = _git(["diff", "--no-index", "--", "/dev/null", file], worktree)
    except OSError:
        return ""
    # --no-index exits 1 when the inputs differ, which is the normal case here.
    if result.returncode not in (0, 1):
        return ""
    return result.stdout


def collect_task_diff(worktree: str | Path) -> str:
    """Unstaged, staged and untracked changes of a worktree as one text."""
    sections: list[str] = []

    unstaged = diff_unstaged(worktree)
    if unstaged.strip():
        sections.append(f"=== Unstaged Changes ===\n\n{unstaged}")

    staged = diff_staged(worktree)
    if staged.strip():
        sections.append(f"=== Staged Changes ===\n\n{staged}")

    untracked = list_untracked_files(worktree)
    if untracked:
        parts = ["=== Untracked Files ==="]
        for file in untracked:
            file_diff = diff_untracked_file(worktree, file)
            parts.append(file_diff if file_diff.strip() else f"+++ new file: {file}\n")
        sections.append("\n".join(parts))

    if not sections:
        return f"(no changes)\n\nWorktree: {worktree}"
    return "\n\n".join(sections)


# -- Publishing --


def add_all(worktree: str | Path) -> None:
    try:
        _git(["add", "-A"], worktree, check=True)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to stage changes: {e.stderr.strip()}") from None


def has_changes(worktree: str | Path) -> bool:
    """True if the index holds staged changes."""
    try:
        return _git(["diff", "--cached", "--quiet"], worktree).returncode == 1
    except OSError:
        return False


def commit(worktree: str | Path, message: str) -> None:
    try:
        _git(["commit", "-m", message], worktree, check=True)
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise RuntimeError(f"Failed to commit: {detail}") from None


def push(worktree: str | Path, branch: str, set_upstream: bool = True) -> None:
    args = ["push", "-u", "origin", branch] if set_upstream else ["push", "origin", branch]
    try:
        _git(args, worktree, check=True)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to push {branch}: {e.stderr.strip()}") from None


class GitCli:
    """GitOps implementation backed by the ``git`` binary."""

    def create_worktree(self, project_dir: Path, slug: str) -> str:
        return create_worktree(project_dir, slug)

    def remove_worktree(self, project_dir: Path, worktree_path: str) -> None:
        remove_worktree(project_dir, worktree_path)

    def initialize_worktree(
        self,
        project_dir: Path,
        worktree_path: Path,
        copy_files: str | None,
        init_script: str | None,
    ) -> list[str]:
        return initialize_worktree(project_dir, worktree_path, copy_files, init_script)

    def delete_branch(self, project_dir: Path, branch: str) -> None:
        delete_branch(project_dir, branch)

    def diff_stat_from_default(self, worktree_path: Path) -> str:
        return diff_stat_from_default(worktree_path)

    def add_all(self, worktree_path: Path) -> None:
        add_all(worktree_path)

    def has_changes(self, worktree_path: Path) -> bool:
        return has_changes(worktree_path)

    def commit(self, worktree_path: Path, message: str) -> None:
        commit(worktree_path, message)

    def push(self, worktree_path: Path, branch: str, set_upstream: bool) -> None:
        push(worktree_path, branch, set_upstream)
