"""Task orchestration engine: the board's state machine.

A transition is handled in two steps. ``plan_*`` functions are pure: given a
task they describe the effects to run and the fields to record, without
touching git, tmux or the provider. :class:`TaskEngine` then executes a plan
against its collaborators, applying each effect's failure policy:

- ``ABORT``: the transition stops and nothing is recorded (resource creation).
- ``REPORT``: the failure is returned in ``TransitionResult.errors`` but the
  transition still completes.
- ``IGNORE``: best-effort cleanup; the failure is logged and kept as a warning.

Transitions::

    backlog -> planning -> running -> review -> done
                                  <- (revert) <-

``explore`` is a board column with no transitions in or out.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from agboard.agents import CodingAgent
from agboard.config import BoardConfig
from agboard.db import (
    BACKLOG,
    DONE,
    PLANNING,
    REVIEW,
    RUNNING,
    TaskRow,
    new_task,
)
from agboard.git_ops import branch_for_slug, slugify_title, worktree_path
from agboard.ports import AgentOps, GitOps, ProviderOps, SessionOps, TaskStore
from agboard.provider import PR_MERGED
from agboard.tmux import make_target, window_name_for_slug

log = logging.getLogger(__name__)

# Logger that collects records from every agboard module during a transition.
TASK_LOG_NAMESPACE = "agboard"

ABORT = "abort"
REPORT = "report"
IGNORE = "ignore"

# Text shown by agents that ask to accept a permissions dialog on first run.
CONFIRM_MARKERS = ("Yes, I accept", "I accept the risk")
CONFIRM_CHOICE = "2"

PLANNING_INSTRUCTIONS = (
    "Please analyze this task and create a detailed implementation plan. "
    "List the files you'll need to modify and the changes you'll make. "
    "Wait for my approval before making any changes."
)

PR_SUMMARY_PROMPT = (
    "Generate a concise PR description for these changes. Task: '{title}'. "
    "Output only the description, no markdown code blocks around it. "
    "Keep it brief (2-3 sentences max)."
)


class TransitionError(RuntimeError):
    """A required step of a transition failed; the task was left unchanged."""

    def __init__(self, task_id: str, step: str, message: str):
        super().__init__(f"{step} failed for task {task_id[:8]}: {message}")
        self.task_id = task_id
        self.step = step


@dataclass
class ReviewDraft:
    title: str
    body: str


@dataclass
class TransitionResult:
    moved: bool
    task: TaskRow | None
    from_status: str
    to_status: str | None
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    draft: ReviewDraft | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "moved": self.moved,
            "task": self.task,
            "from": self.from_status,
            "to": self.to_status,
            "reason": self.reason,
            "warnings": self.warnings,
            "errors": self.errors,
            "draft": (
                {"title": self.draft.title, "body": self.draft.body} if self.draft else None
            ),
        }


# -- Effects --


@dataclass(frozen=True)
class CreateWorktree:
    slug: str
    policy: str = ABORT


@dataclass(frozen=True)
class InitializeWorktree:
    path: str
    policy: str = IGNORE


@dataclass(frozen=True)
class EnsureSession:
    session: str
    workdir: str
    policy: str = ABORT


@dataclass(frozen=True)
class CreateWindow:
    session: str
    window_name: str
    workdir: str
    command: str
    policy: str = ABORT


@dataclass(frozen=True)
class ConfirmStartup:
    target: str
    policy: str = IGNORE


@dataclass(frozen=True)
class SendKey:
    target: str
    key: str
    policy: str = REPORT


@dataclass(frozen=True)
class KillWindow:
    target: str
    policy: str = IGNORE


@dataclass(frozen=True)
class PublishPullRequest:
    """Stage, commit (when there is anything to commit), push and open a PR."""

    worktree: str
    branch: str
    title: str
    body: str
    commit_message: str
    policy: str = REPORT


@dataclass(frozen=True)
class RemoveWorktree:
    path: str
    policy: str = IGNORE


@dataclass(frozen=True)
class DeleteBranch:
    branch: str
    policy: str = IGNORE


Effect = (
    CreateWorktree
    | InitializeWorktree
    | EnsureSession
    | CreateWindow
    | ConfirmStartup
    | SendKey
    | KillWindow
    | PublishPullRequest
    | RemoveWorktree
    | DeleteBranch
)


@dataclass
class TransitionPlan:
    task_id: str
    from_status: str
    to_status: str
    effects: list[Effect] = field(default_factory=list)
    updates: dict[str, Any] = field(default_factory=dict)


# -- Prompts --


def build_planning_prompt(title: str, description: str | None) -> str:
    prompt = f"Task: {title}"
    if description:
        prompt += f"\n\n{description}"
    return f"{prompt}\n\n{PLANNING_INSTRUCTIONS}"


def build_revert_prompt(title: str, pr_number: int | None) -> str:
    subject = f"PR #{pr_number}" if pr_number else "The pull request"
    return (
        f"{subject} for task '{title}' needs changes. "
        "Check the review comments on the pull request, make the requested "
        "changes in this worktree, and tell me when you're done."
    )


def build_commit_message(title: str, co_author: str) -> str:
    return f"{title}\n\nCo-Authored-By: {co_author}"


def task_slug(task: TaskRow) -> str:
    """Slug for a task's worktree, branch and window names."""
    if task["worktree_path"]:
        return Path(task["worktree_path"]).name
    return slugify_title(task["title"]) or task["id"][:8]


# -- Planning (pure) --


def plan_start_planning(
    task: TaskRow,
    project_dir: Path,
    project_session: str,
    agent_command: str,
    slug: str | None = None,
) -> TransitionPlan:
    """Backlog -> Planning: new worktree, new window, agent started with a planning prompt.

    ``slug`` names the worktree, branch and window; it defaults to the
    title's slug.
    """
    slug = slug or slugify_title(task["title"]) or task["id"][:8]
    path = str(worktree_path(project_dir, slug))
    window = window_name_for_slug(slug)
    target = make_target(project_session, window)
    return TransitionPlan(
        task_id=task["id"],
        from_status=BACKLOG,
        to_status=PLANNING,
        effects=[
            CreateWorktree(slug),
            InitializeWorktree(path),
            EnsureSession(project_session, str(project_dir)),
            CreateWindow(project_session, window, path, agent_command),
            ConfirmStartup(target),
        ],
        updates={
            "status": PLANNING,
            "session_name": target,
            "worktree_path": path,
            "branch_name": branch_for_slug(slug),
        },
    )


def plan_approve_plan(task: TaskRow) -> TransitionPlan:
    """Planning -> Running: press Enter in the existing session to accept the plan."""
    effects: list[Effect] = []
    if task["session_name"]:
        effects.append(SendKey(task["session_name"], "Enter"))
    return TransitionPlan(task["id"], PLANNING, RUNNING, effects, {"status": RUNNING})


def plan_confirm_review(
    task: TaskRow, title: str, body: str, co_author: str
) -> TransitionPlan:
    """Running -> Review after the user confirmed the PR title and body.

    The window is killed before the PR is created; a publishing failure is
    reported but the task still lands in Review.
    """
    effects: list[Effect] = []
    if task["session_name"]:
        effects.append(KillWindow(task["session_name"]))
    if task["worktree_path"] and task["branch_name"]:
        effects.append(
            PublishPullRequest(
                worktree=task["worktree_path"],
                branch=task["branch_name"],
                title=title,
                body=body,
                commit_message=build_commit_message(title, co_author),
            )
        )
    return TransitionPlan(
        task["id"], RUNNING, REVIEW, effects, {"status": REVIEW, "session_name": None}
    )


def plan_complete(task: TaskRow) -> TransitionPlan:
    """Review -> Done once the PR is merged: tear down every task resource."""
    effects: list[Effect] = []
    if task["session_name"]:
        effects.append(KillWindow(task["session_name"]))
    if task["worktree_path"]:
        effects.append(RemoveWorktree(task["worktree_path"]))
    if task["branch_name"]:
        effects.append(DeleteBranch(task["branch_name"]))
    return TransitionPlan(
        task["id"],
        REVIEW,
        DONE,
        effects,
        {
            "status": DONE,
            "session_name": None,
            "worktree_path": None,
            "branch_name": None,
        },
    )


def plan_request_changes(
    task: TaskRow, project_dir: Path, project_session: str, agent_command: str
) -> TransitionPlan:
    """Review -> Running: a fresh window in the task's existing worktree."""
    if not task["worktree_path"]:
        raise ValueError(f"Task {task['id'][:8]} has no worktree to resume in")
    window = window_name_for_slug(task_slug(task))
    target = make_target(project_session, window)
    return TransitionPlan(
        task_id=task["id"],
        from_status=REVIEW,
        to_status=RUNNING,
        effects=[
            EnsureSession(project_session, str(project_dir)),
            CreateWindow(project_session, window, task["worktree_path"], agent_command),
            ConfirmStartup(target),
        ],
        updates={"status": RUNNING, "session_name": target},
    )


def plan_delete(task: TaskRow) -> list[Effect]:
    effects: list[Effect] = []
    if task["session_name"]:
        effects.append(KillWindow(task["session_name"]))
    if task["worktree_path"]:
        effects.append(RemoveWorktree(task["worktree_path"]))
    return effects


def generate_pr_description(task: TaskRow, git: GitOps, agent: AgentOps) -> ReviewDraft:
    """Draft a PR: agent-written summary followed by the branch's diff stat."""
    worktree = Path(task["worktree_path"] or ".")
    stat = git.diff_stat_from_default(worktree)
    body = f"## Changes\n```\n{stat}```\n"
    try:
        summary = agent.generate_text(worktree, PR_SUMMARY_PROMPT.format(title=task["title"]))
    except RuntimeError as exc:
        log.warning("PR summary generation failed for task %s: %s", task["id"][:8], exc)
        summary = ""
    if summary.strip():
        body = f"{summary.strip()}\n\n{body}"
    return ReviewDraft(title=task["title"], body=body)


# -- Execution --


def _effect_name(effect: Effect) -> str:
    return type(effect).__name__


class TaskEngine:
    """Runs transitions for the tasks of one project."""

    def __init__(
        self,
        store: TaskStore,
        git: GitOps,
        sessions: SessionOps,
        provider: ProviderOps,
        *,
        project_id: str,
        project_dir: Path,
        project_session: str,
        config: BoardConfig | None = None,
        agents: Callable[[str], AgentOps] = CodingAgent.by_name,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.git = git
        self.sessions = sessions
        self.provider = provider
        self.project_id = project_id
        self.project_dir = Path(project_dir)
        self.project_session = project_session
        self.config = config or BoardConfig()
        self.agents = agents
        self.sleep = sleep
        self.clock = clock

    # -- Records --

    def get(self, task_id: str) -> TaskRow:
        task = self.store.get_by_id(task_id)
        if task is None:
            raise ValueError(f"Task '{task_id}' not found")
        return task

    def create_task(
        self, title: str, description: str | None = None, agent: str | None = None
    ) -> TaskRow:
        agent_name = agent or self.config.default_agent
        self.agents(agent_name)  # rejects unknown agent names
        task = new_task(self.project_id, title, agent_name, description)
        return self.store.create(task)

    def edit_task(
        self, task_id: str, title: str | None = None, description: str | None = None
    ) -> TaskRow:
        task = self.get(task_id)
        if task["status"] != BACKLOG:
            raise ValueError(
                f"Task {task_id[:8]} is '{task['status']}'; only backlog tasks can be edited"
            )
        if title is not None:
            if not title.strip():
                raise ValueError("Task title must not be empty")
            task["title"] = title.strip()
        if description is not None:
            task["description"] = description or None
        return self.store.update(task)

    def _unique_slug(self, task: TaskRow) -> str:
        """Title slug, suffixed with the task id when another task holds that worktree."""
        slug = slugify_title(task["title"]) or task["id"][:8]
        path = str(worktree_path(self.project_dir, slug))
        branch = branch_for_slug(slug)
        for other in self.store.get_all():
            if other["id"] == task["id"]:
                continue
            if other["worktree_path"] == path or other["branch_name"] == branch:
                log.debug("Slug %s is taken by task %s", slug, other["id"][:8])
                return f"{slug}-{task['id'][:8]}"
        return slug

    # -- Transitions --

    def advance(self, task_id: str) -> TransitionResult:
        """Move a task one column to the right.

        Running tasks are not moved here: the result carries a PR draft that
        must be passed to :meth:`confirm_review`.
        """
        task = self.get(task_id)
        status = task["status"]
        if status == BACKLOG:
            agent = self.agents(task["agent"])
            command = agent.build_interactive_command(
                build_planning_prompt(task["title"], task["description"])
            )
            plan = plan_start_planning(
                task, self.project_dir, self.project_session, command, self._unique_slug(task)
            )
            return self._run(task, plan)
        if status == PLANNING:
            return self._run(task, plan_approve_plan(task))
        if status == RUNNING:
            draft = generate_pr_description(task, self.git, self.agents(task["agent"]))
            return TransitionResult(
                moved=False,
                task=task,
                from_status=RUNNING,
                to_status=REVIEW,
                reason="Confirm the pull request title and body to move to review",
                draft=draft,
            )
        if status == REVIEW:
            return self._complete(task)
        return TransitionResult(
            moved=False,
            task=task,
            from_status=status,
            to_status=None,
            reason=f"No transition out of '{status}'",
        )

    def begin_review(self, task_id: str) -> ReviewDraft:
        task = self.get(task_id)
        if task["status"] != RUNNING:
            raise ValueError(f"Task {task_id[:8]} is '{task['status']}', not running")
        return generate_pr_description(task, self.git, self.agents(task["agent"]))

    def confirm_review(self, task_id: str, title: str, body: str) -> TransitionResult:
        task = self.get(task_id)
        if task["status"] != RUNNING:
            raise ValueError(f"Task {task_id[:8]} is '{task['status']}', not running")
        if not title.strip():
            raise ValueError("Pull request title must not be empty")
        co_author = self.agents(task["agent"]).co_author_string()
        return self._run(task, plan_confirm_review(task, title.strip(), body, co_author))

    def revert(self, task_id: str) -> TransitionResult:
        """Send a task in review back to the agent in its existing worktree."""
        task = self.get(task_id)
        if task["status"] != REVIEW:
            raise ValueError(
                f"Task {task_id[:8]} is '{task['status']}'; only review tasks can be reverted"
            )
        agent = self.agents(task["agent"])
        command = agent.build_interactive_command(
            build_revert_prompt(task["title"], task["pr_number"])
        )
        return self._run(
            task,
            plan_request_changes(task, self.project_dir, self.project_session, command),
        )

    def delete(self, task_id: str) -> TransitionResult:
        """Delete a task from any column. Cleanup failures never block deletion."""
        task = self.get(task_id)
        result = TransitionResult(
            moved=True, task=task, from_status=task["status"], to_status=None
        )
        with self._task_logging(task["id"]):
            for effect in plan_delete(task):
                try:
                    self._apply(effect, {})
                except (RuntimeError, OSError) as exc:
                    log.warning("%s during delete failed: %s", _effect_name(effect), exc)
                    result.warnings.append(f"{_effect_name(effect)}: {exc}")
            log.info("Deleted task %s", task["id"][:8])
        self.store.delete(task["id"])
        return result

    def _complete(self, task: TaskRow) -> TransitionResult:
        if not task["pr_number"]:
            return TransitionResult(
                moved=False,
                task=task,
                from_status=REVIEW,
                to_status=DONE,
                reason="Task has no pull request",
            )
        state = self.provider.get_pr_state(self.project_dir, task["pr_number"])
        if state != PR_MERGED:
            log.debug("PR #%s is %s; not moving task %s", task["pr_number"], state, task["id"][:8])
            return TransitionResult(
                moved=False,
                task=task,
                from_status=REVIEW,
                to_status=DONE,
                reason=f"PR #{task['pr_number']} is not merged (state: {state})",
            )
        return self._run(task, plan_complete(task))

    # -- Executor --

    def _task_logging(self, task_id: str) -> _TaskLogCapture:
        return _TaskLogCapture(self.store.log_handler(task_id))

    def _run(self, task: TaskRow, plan: TransitionPlan) -> TransitionResult:
        result = TransitionResult(
            moved=False, task=task, from_status=plan.from_status, to_status=plan.to_status
        )
        outputs: dict[str, Any] = {}
        with self._task_logging(task["id"]):
            log.info("Task %s: %s -> %s", task["id"][:8], plan.from_status, plan.to_status)
            for effect in plan.effects:
                name = _effect_name(effect)
                try:
                    self._apply(effect, outputs)
                except (RuntimeError, OSError) as exc:
                    if effect.policy == ABORT:
                        log.error("%s failed for task %s: %s", name, task["id"][:8], exc)
                        raise TransitionError(task["id"], name, str(exc)) from exc
                    if effect.policy == REPORT:
                        log.error("%s failed for task %s: %s", name, task["id"][:8], exc)
                        result.errors.append(f"{name}: {exc}")
                    else:
                        log.warning("%s failed for task %s: %s", name, task["id"][:8], exc)
                        result.warnings.append(f"{name}: {exc}")
            result.warnings.extend(outputs.pop("warnings", []))

            updated = cast(TaskRow, {**task, **plan.updates, **outputs})
            result.task = self.store.update(updated)
            result.moved = True
            log.info("Task %s is now %s", task["id"][:8], plan.to_status)
        return result

    def _apply(self, effect: Effect, outputs: dict[str, Any]) -> None:
        if isinstance(effect, CreateWorktree):
            outputs["worktree_path"] = self.git.create_worktree(self.project_dir, effect.slug)
        elif isinstance(effect, InitializeWorktree):
            path = outputs.get("worktree_path", effect.path)
            warnings = self.git.initialize_worktree(
                self.project_dir, Path(path), self.config.copy_files, self.config.init_script
            )
            for warning in warnings:
                log.warning("%s", warning)
            outputs.setdefault("warnings", []).extend(warnings)
        elif isinstance(effect, EnsureSession):
            if not self.sessions.has_session(effect.session):
                self.sessions.create_session(effect.session, effect.workdir)
        elif isinstance(effect, CreateWindow):
            workdir = outputs.get("worktree_path", effect.workdir)
            self.sessions.create_window(
                effect.session, effect.window_name, workdir, effect.command
            )
        elif isinstance(effect, ConfirmStartup):
            self.wait_and_confirm(effect.target)
        elif isinstance(effect, SendKey):
            self.sessions.send_keys_literal(effect.target, effect.key)
        elif isinstance(effect, KillWindow):
            self.sessions.kill_window(effect.target)
        elif isinstance(effect, PublishPullRequest):
            pr_number, pr_url = self._publish(effect)
            outputs["pr_number"] = pr_number
            outputs["pr_url"] = pr_url
        elif isinstance(effect, RemoveWorktree):
            self.git.remove_worktree(self.project_dir, effect.path)
        elif isinstance(effect, DeleteBranch):
            self.git.delete_branch(self.project_dir, effect.branch)
        else:
            raise TypeError(f"Unknown effect {effect!r}")

    def _publish(self, effect: PublishPullRequest) -> tuple[int, str]:
        worktree = Path(effect.worktree)
        self.git.add_all(worktree)
        if self.git.has_changes(worktree):
            self.git.commit(worktree, effect.commit_message)
        self.git.push(worktree, effect.branch, True)
        pr_number, pr_url = self.provider.create_pr(
            self.project_dir, effect.title, effect.body, effect.branch
        )
        log.info("Opened PR #%s: %s", pr_number, pr_url)
        return pr_number, pr_url

    def wait_and_confirm(self, target: str) -> bool:
        """Dismiss the agent's first-run permissions prompt.

        Polls the pane for a known prompt marker for up to ``settle_seconds``.
        When one appears the accept choice is sent, followed by Enter; otherwise
        nothing is typed into the agent. Returns True when a marker was seen.
        """
        deadline = self.clock() + self.config.settle_seconds
        while True:
            pane = self.sessions.capture_pane(target)
            if any(marker in pane for marker in CONFIRM_MARKERS):
                break
            if self.clock() >= deadline:
                log.debug(
                    "No confirmation prompt in %s after %.1fs", target, self.config.settle_seconds
                )
                return False
            self.sleep(self.config.poll_interval)
        self.sessions.send_keys_literal(target, CONFIRM_CHOICE)
        self.sessions.send_keys_literal(target, "Enter")
        return True


class _TaskLogCapture:
    """Attach a task's log handler to the agboard logger for one transition."""

    def __init__(self, handler: logging.Handler | None):
        self.handler = handler if isinstance(handler, logging.Handler) else None
        self._logger = logging.getLogger(TASK_LOG_NAMESPACE)
        self._prev_level = logging.NOTSET

    def __enter__(self) -> _TaskLogCapture:
        if self.handler is not None:
            self.handler.setLevel(logging.DEBUG)
            self._logger.addHandler(self.handler)
            self._prev_level = self._logger.level
            if self._logger.level > logging.DEBUG or self._logger.level == logging.NOTSET:
                self._logger.setLevel(logging.DEBUG)
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.handler is not None:
            self._logger.removeHandler(self.handler)
            self._logger.setLevel(self._prev_level)

