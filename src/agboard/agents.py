"""Coding-agent CLIs that agboard can run inside task sessions."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

GENERATE_TIMEOUT_SECONDS = 300


@dataclass(frozen=True)
class AgentSpec:
    name: str
    command: str
    description: str
    co_author: str
    interactive_args: tuple[str, ...] = ()
    # Flag that precedes the initial prompt in interactive mode, if any.
    prompt_flag: str | None = None
    print_args: tuple[str, ...] = ("--print",)

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None


KNOWN_AGENTS: tuple[AgentSpec, ...] = (
    AgentSpec(
        "claude",
        "claude",
        "Anthropic's Claude Code CLI",
        "Claude <noreply@anthropic.com>",
        interactive_args=("--dangerously-skip-permissions",),
    ),
    AgentSpec(
        "codex",
        "codex",
        "OpenAI's Codex CLI",
        "Codex <noreply@openai.com>",
        interactive_args=("--full-auto",),
        print_args=("exec",),
    ),
    AgentSpec(
        "copilot",
        "copilot",
        "GitHub Copilot CLI",
        "GitHub Copilot <noreply@github.com>",
        interactive_args=("--allow-all-tools",),
        prompt_flag="-p",
        print_args=("-p",),
    ),
    AgentSpec(
        "gemini",
        "gemini",
        "Google Gemini CLI",
        "Gemini <noreply@google.com>",
        interactive_args=("--approval-mode", "yolo"),
        prompt_flag="-i",
        print_args=("-p",),
    ),
    AgentSpec(
        "opencode",
        "opencode",
        "AI-powered coding assistant",
        "OpenCode <noreply@opencode.ai>",
        prompt_flag="-p",
        print_args=("run",),
    ),
)


def get_agent(name: str) -> AgentSpec | None:
    return next((a for a in KNOWN_AGENTS if a.name == name), None)


def available_agents() -> list[AgentSpec]:
    return [a for a in KNOWN_AGENTS if a.is_available()]


def build_interactive_command(spec: AgentSpec, prompt: str) -> str:
    """Shell command that starts the agent interactively with an initial prompt."""
    parts = [spec.command, *spec.interactive_args]
    if prompt:
        if spec.prompt_flag:
            parts.append(spec.prompt_flag)
        parts.append(prompt)
    return shlex.join(parts)


class CodingAgent:
    """AgentOps implementation for one known agent."""

    def __init__(self, spec: AgentSpec):
        self.spec = spec

    @classmethod
    def by_name(cls, name: str) -> CodingAgent:
        spec = get_agent(name)
        if spec is None:
            known = ", ".join(a.name for a in KNOWN_AGENTS)
            raise ValueError(f"Unknown agent '{name}'. Known agents: {known}")
        return cls(spec)

    def generate_text(self, working_dir: Path, prompt: str) -> str:
        """Run the agent in print mode and return its stdout."""
        try:
            result = subprocess.run(
                [self.spec.command, *self.spec.print_args, prompt],
                cwd=str(working_dir),
                capture_output=True,
                text=True,
                timeout=GENERATE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RuntimeError(f"{self.spec.name} command failed: {exc}") from None
        if result.returncode != 0:
            raise RuntimeError(f"{self.spec.name} command failed: {result.stderr.strip()}")
        return result.stdout.strip()

    def co_author_string(self) -> str:
        return self.spec.co_author

    def build_interactive_command(self, prompt: str) -> str:
        return build_interactive_command(self.spec, prompt)
