"""Pull-request hosting provider, backed by the GitHub ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)

PR_OPEN = "open"
PR_MERGED = "merged"
PR_CLOSED = "closed"
PR_UNKNOWN = "unknown"

_GH_STATES = {"OPEN": PR_OPEN, "MERGED": PR_MERGED, "CLOSED": PR_CLOSED}


def parse_pr_number(pr_url: str) -> int:
    """Extract the number from a PR URL like ``https://github.com/o/r/pull/123``."""
    tail = pr_url.rstrip("/").rsplit("/", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return 0


class GitHubProvider:
    """ProviderOps implementation using ``gh``."""

    def get_pr_state(self, project_dir: Path, pr_number: int) -> str:
        try:
            result = subprocess.run(
                ["gh", "pr", "view", str(pr_number), "--json", "state"],
                cwd=str(project_dir),
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.warning("gh pr view %s failed: %s", pr_number, exc)
            return PR_UNKNOWN
        if result.returncode != 0:
            log.warning("gh pr view %s failed: %s", pr_number, result.stderr.strip())
            return PR_UNKNOWN
        try:
            state = json.loads(result.stdout).get("state", "")
        except (json.JSONDecodeError, AttributeError):
            return PR_UNKNOWN
        return _GH_STATES.get(str(state).upper(), PR_UNKNOWN)

    def create_pr(
        self, project_dir: Path, title: str, body: str, head_branch: str
    ) -> tuple[int, str]:
        """Open a pull request. Returns (number, url); raises RuntimeError on failure."""
        try:
            result = subprocess.run(
                [
                    "gh",
                    "pr",
                    "create",
                    "--title",
                    title,
                    "--body",
                    body,
                    "--head",
                    head_branch,
                ],
                cwd=str(project_dir),
                capture_output=True,
                text=True,
                timeout=120,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RuntimeError(f"Failed to create PR: {exc}") from None
        if result.returncode != 0:
            raise RuntimeError(f"Failed to create PR: {result.stderr.strip()}")

        # gh prints progress lines before the URL; the URL is the last line.
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        pr_url = lines[-1] if lines else ""
        return parse_pr_number(pr_url), pr_url
