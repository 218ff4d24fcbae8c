"""Health checks and optional remediation for an agboard project."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Literal, TypedDict

from agboard.agents import KNOWN_AGENTS
from agboard.db import DEFAULT_DB_PATH, connect, get_project_by_dir, list_tasks
from agboard.git_ops import is_git_repo, remove_worktree
from agboard.paths import worktrees_root

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class FixAction(TypedDict):
    attempted: int
    fixed: int
    failed: int
    failures: list[dict[str, str]]


class _DoctorReportRequired(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


class DoctorReport(_DoctorReportRequired, total=False):
    fix_actions: dict[str, FixAction]


def run_doctor(
    project_dir: Path, db_path: Path | None = None, *, fix: bool = False
) -> DoctorReport:
    """Run all health checks and optionally remove stale worktrees."""
    resolved_db_path = Path(db_path).expanduser() if db_path is not None else DEFAULT_DB_PATH
    project_dir = Path(project_dir).resolve()
    checks = [
        _check_tools(),
        _check_gh(),
        _check_agents(),
        _check_sqlite_integrity(resolved_db_path),
        _check_repository(project_dir),
        _check_stale_worktrees(project_dir, resolved_db_path),
    ]

    fix_actions: dict[str, FixAction] = {}
    if fix:
        stale = next(c for c in checks if c["name"] == "worktrees")
        if stale["status"] != "pass":
            fix_actions["stale_worktrees"] = _fix_stale_worktrees(project_dir, stale)
            checks[-1] = _check_stale_worktrees(project_dir, resolved_db_path)

    report: DoctorReport = {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "checks": checks,
    }
    if fix:
        report["fix_actions"] = fix_actions
    return report


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _tool_version(binary: str) -> str | None:
    """First line of ``<binary> --version``, or None when it can't be run."""
    try:
        result = subprocess.run(
            [binary, "-V" if binary == "tmux" else "--version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    lines = (result.stdout or result.stderr).strip().splitlines()
    return lines[0] if lines else ""


def _check_tools() -> CheckReport:
    """git and tmux are required for every transition."""
    findings: list[CheckFinding] = []
    missing = []
    for binary in ("git", "tmux"):
        version = _tool_version(binary) if shutil.which(binary) else None
        if version is None:
            missing.append(binary)
            findings.append({"status": "fail", "message": f"{binary} not found on PATH"})
        else:
            findings.append(
                {
                    "status": "pass",
                    "message": f"{binary}: {version}",
                    "details": {"tool": binary, "version": version},
                }
            )
    if missing:
        return {
            "name": "tools",
            "status": "fail",
            "summary": f"Missing required tool(s): {', '.join(missing)}.",
            "findings": findings,
        }
    return {
        "name": "tools",
        "status": "pass",
        "summary": "git and tmux are available.",
        "findings": findings,
    }


def _check_gh() -> CheckReport:
    version = _tool_version("gh") if shutil.which("gh") else None
    if version is None:
        return {
            "name": "gh",
            "status": "warning",
            "summary": "gh not found; pull requests can't be created or checked.",
            "findings": [{"status": "warning", "message": "gh not found on PATH"}],
        }
    return {
        "name": "gh",
        "status": "pass",
        "summary": "GitHub CLI is available.",
        "findings": [{"status": "pass", "message": f"gh: {version}"}],
    }


def _check_agents() -> CheckReport:
    findings: list[CheckFinding] = []
    for spec in KNOWN_AGENTS:
        if spec.is_available():
            findings.append(
                {"status": "pass", "message": f"{spec.name}: {spec.description}"}
            )
        else:
            findings.append(
                {
                    "status": "warning",
                    "message": f"{spec.command} not found on PATH",
                    "details": {"agent": spec.name},
                }
            )
    available = sum(1 for f in findings if f["status"] == "pass")
    if available == 0:
        return {
            "name": "agents",
            "status": "fail",
            "summary": "No coding agents available.",
            "findings": findings,
        }
    return {
        "name": "agents",
        "status": "pass",
        "summary": f"{available} agent(s) available.",
        "findings": findings,
    }


def _check_sqlite_integrity(db_path: Path) -> CheckReport:
    try:
        with connect(db_path) as conn:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
            messages = [str(row[0]) for row in rows if row]
    except Exception as exc:
        return {
            "name": "sqlite",
            "status": "fail",
            "summary": "SQLite is unavailable.",
            "findings": [{"status": "fail", "message": f"Failed to open database {db_path}: {exc}"}],
        }

    if messages == ["ok"]:
        return {
            "name": "sqlite",
            "status": "pass",
            "summary": "SQLite integrity check passed.",
            "findings": [{"status": "pass", "message": f"Database integrity is OK: {db_path}"}],
        }
    return {
        "name": "sqlite",
        "status": "fail",
        "summary": f"SQLite integrity check failed with {len(messages)} issue(s).",
        "findings": [
            {"status": "fail", "message": message, "details": {"database": str(db_path)}}
            for message in messages
        ],
    }


def _check_repository(project_dir: Path) -> CheckReport:
    if is_git_repo(project_dir):
        return {
            "name": "repository",
            "status": "pass",
            "summary": "Current directory is a git repository.",
            "findings": [{"status": "pass", "message": str(project_dir)}],
        }
    return {
        "name": "repository",
        "status": "fail",
        "summary": "Current directory is not a git repository.",
        "findings": [{"status": "fail", "message": f"{project_dir} is not a git repository"}],
    }


def _referenced_worktrees(project_dir: Path, db_path: Path) -> set[str]:
    with connect(db_path) as conn:
        project = get_project_by_dir(conn, str(project_dir))
        if project is None:
            return set()
        return {
            str(Path(task["worktree_path"]).resolve(strict=False))
            for task in list_tasks(conn, project_id=project["id"])
            if task["worktree_path"]
        }


def _check_stale_worktrees(project_dir: Path, db_path: Path) -> CheckReport:
    root = worktrees_root(project_dir)
    on_disk = sorted(p for p in root.iterdir() if p.is_dir()) if root.is_dir() else []
    try:
        referenced = _referenced_worktrees(project_dir, db_path)
    except Exception as exc:
        return {
            "name": "worktrees",
            "status": "fail",
            "summary": "Worktree check could not run.",
            "findings": [{"status": "fail", "message": f"Failed to load tasks: {exc}"}],
        }

    findings: list[CheckFinding] = [
        {
            "status": "warning",
            "message": f"Worktree {path.name} is not referenced by any task",
            "details": {"path": str(path)},
        }
        for path in on_disk
        if str(path.resolve(strict=False)) not in referenced
    ]
    if findings:
        return {
            "name": "worktrees",
            "status": "warning",
            "summary": f"Found {len(findings)} stale worktree(s).",
            "findings": findings,
        }
    return {
        "name": "worktrees",
        "status": "pass",
        "summary": "Every worktree belongs to a task.",
        "findings": [
            {"status": "pass", "message": f"Checked {len(on_disk)} on-disk worktree(s)."}
        ],
    }


def _fix_stale_worktrees(project_dir: Path, check: CheckReport) -> FixAction:
    action: FixAction = {"attempted": 0, "fixed": 0, "failed": 0, "failures": []}
    for finding in check["findings"]:
        path = (finding.get("details") or {}).get("path")
        if not isinstance(path, str):
            continue
        action["attempted"] += 1
        remove_worktree(project_dir, path)
        if Path(path).exists():
            shutil.rmtree(path, ignore_errors=True)
        if Path(path).exists():
            action["failed"] += 1
            action["failures"].append({"path": path, "error": "directory still present"})
        else:
            action["fixed"] += 1
    return action
