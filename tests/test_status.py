"""Tests for session status detection and the TTL cache."""

from unittest.mock import MagicMock

import pytest

from agboard.status import (
    ACTIVE,
    EXITED,
    IDLE,
    UNKNOWN,
    StatusCache,
    classify_capture,
    detect_session_status,
)


def _sessions(capture="", exists=True, alive=True):
    sessions = MagicMock()
    sessions.window_exists.return_value = exists
    sessions.is_pane_alive.return_value = alive
    sessions.capture_pane.return_value = capture
    return sessions


def test_missing_window_is_unknown_regardless_of_content():
    sessions = _sessions(capture="What would you like to do?\n>", exists=False)
    assert detect_session_status(sessions, "proj:task-x") == UNKNOWN
    sessions.is_pane_alive.assert_not_called()
    sessions.capture_pane.assert_not_called()


def test_dead_pane_is_exited_regardless_of_content():
    sessions = _sessions(capture="Working on it...", alive=False)
    assert detect_session_status(sessions, "proj:task-x") == EXITED
    sessions.capture_pane.assert_not_called()


def test_live_pane_uses_capture():
    sessions = _sessions(capture="Compiling...\n")
    assert detect_session_status(sessions, "proj:task-x") == ACTIVE
    sessions.capture_pane.assert_called_once_with("proj:task-x")


@pytest.mark.parametrize(
    "capture",
    [
        "output\nuser@host:~/repo$",
        "output\nuser@host ~ %  ",
        "\x1b[32muser@host\x1b[0m:~$ \n\n\n",
    ],
)
def test_shell_prompt_is_exited(capture):
    assert classify_capture(capture) == EXITED


@pytest.mark.parametrize(
    "capture",
    [
        "Plan ready.\n> ",
        "Plan ready.\n>",
        "Plan ready.\n>   \n\n",
        "Proceed?\n? ",
        "Proceed\n?",
    ],
)
def test_prompt_markers_are_idle(capture):
    assert classify_capture(capture) == IDLE


def test_idle_phrase_in_recent_lines():
    capture = "Done with the refactor.\nIs there anything else you need?\n\x1b[2m  shortcuts\x1b[0m\n"
    assert classify_capture(capture) == IDLE


def test_idle_phrase_outside_window_is_ignored():
    old = "What would you like me to do?\n"
    recent = "".join(f"step {i}\n" for i in range(10))
    assert classify_capture(old + recent) == ACTIVE


def test_busy_output_is_active():
    assert classify_capture("Reading files...\nEditing src/app.py\n") == ACTIVE


def test_empty_capture_is_active():
    assert classify_capture("") == ACTIVE


def test_cache_reuses_result_within_ttl():
    now = [100.0]
    detector = MagicMock(return_value=IDLE)
    cache = StatusCache(detector, ttl=1.5, clock=lambda: now[0])

    assert cache.get("proj:a") == IDLE
    now[0] += 1.0
    assert cache.get("proj:a") == IDLE
    assert detector.call_count == 1

    now[0] += 1.0
    detector.return_value = ACTIVE
    assert cache.get("proj:a") == ACTIVE
    assert detector.call_count == 2


def test_cache_refresh_drops_vanished_targets():
    detector = MagicMock(side_effect=lambda target: ACTIVE)
    cache = StatusCache(detector, ttl=10.0, clock=lambda: 0.0)
    assert cache.refresh(["proj:a", "proj:b"]) == {"proj:a": ACTIVE, "proj:b": ACTIVE}
    assert cache.refresh(["proj:b"]) == {"proj:b": ACTIVE}
    cache.refresh(["proj:a"])
    # proj:a was forgotten, so it is detected again
    assert detector.call_count == 3


def test_cache_invalidate():
    detector = MagicMock(return_value=IDLE)
    cache = StatusCache(detector, ttl=10.0, clock=lambda: 0.0)
    cache.get("proj:a")
    cache.invalidate("proj:a")
    cache.get("proj:a")
    cache.invalidate()
    cache.get("proj:a")
    assert detector.call_count == 3


def test_cache_for_sessions():
    sessions = _sessions(exists=False)
    cache = StatusCache.for_sessions(sessions, ttl=1.0)
    assert cache.get("proj:a") == UNKNOWN
