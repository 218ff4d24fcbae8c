"""Live status of an agent's tmux session, inferred from the pane's text."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from agboard.ports import SessionOps
from agboard.terminal import strip_ansi

log = logging.getLogger(__name__)

ACTIVE = "active"
IDLE = "idle"
EXITED = "exited"
UNKNOWN = "unknown"

SESSION_STATUSES = (ACTIVE, IDLE, EXITED, UNKNOWN)

INDICATORS = {ACTIVE: "●", IDLE: "○", EXITED: "✗", UNKNOWN: "?"}

IDLE_PHRASES = (
    "what would you like",
    "anything else",
    "how can i help",
    "is there anything",
    "let me know if",
    "what do you want",
)

TAIL_LINES = 20
PHRASE_WINDOW = 5


def _recent_lines(capture: str) -> list[str]:
    """Last non-blank lines of a capture, most recent first."""
    lines = [line for line in strip_ansi(capture).splitlines() if line.strip()]
    return list(reversed(lines[-TAIL_LINES:]))


def classify_capture(capture: str) -> str:
    """Classify a live pane's text as ACTIVE, IDLE or EXITED."""
    recent = _recent_lines(capture)
    if not recent:
        return ACTIVE

    last_line = recent[0]
    trimmed = last_line.rstrip()
    # A shell prompt means the agent process is gone.
    if trimmed.endswith(("$", "%")):
        return EXITED
    if trimmed in (">", "?") or last_line.endswith(("> ", "? ")):
        return IDLE

    tail = "\n".join(recent[:PHRASE_WINDOW]).lower()
    if any(phrase in tail for phrase in IDLE_PHRASES):
        return IDLE
    return ACTIVE


def detect_session_status(sessions: SessionOps, target: str) -> str:
    """Compute the status of ``target`` from a fresh capture.

    Window existence is checked before liveness, and liveness before any
    content heuristics.
    """
    if not sessions.window_exists(target):
        return UNKNOWN
    if not sessions.is_pane_alive(target):
        return EXITED
    return classify_capture(sessions.capture_pane(target))


class StatusCache:
    """Per-target memo of detector results with a short time-to-live.

    Each detection spawns several tmux processes, so a redraw loop should go
    through this cache rather than calling the detector directly.
    """

    def __init__(
        self,
        detector: Callable[[str], str],
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.detector = detector
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    @classmethod
    def for_sessions(cls, sessions: SessionOps, ttl: float) -> StatusCache:
        return cls(lambda target: detect_session_status(sessions, target), ttl)

    def get(self, target: str) -> str:
        now = self.clock()
        entry = self._entries.get(target)
        if entry is not None and now - entry[0] < self.ttl:
            return entry[1]
        status = self.detector(target)
        self._entries[target] = (now, status)
        return status

    def refresh(self, targets: Iterable[str]) -> dict[str, str]:
        """Statuses for ``targets``; stale or missing entries are re-detected.

        Entries for targets no longer in the set are dropped.
        """
        wanted = list(targets)
        for stale in set(self._entries) - set(wanted):
            del self._entries[stale]
        return {target: self.get(target) for target in wanted}

    def invalidate(self, target: str | None = None) -> None:
        if target is None:
            self._entries.clear()
        else:
            self._entries.pop(target, None)
