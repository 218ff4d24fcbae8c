"""Normalize captured tmux output into scrollable, styled lines.

Everything here is pure: bytes in, lines out. Styles are ``rich`` styles so
the result can be rendered directly with a rich Console.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from rich.color import Color
from rich.style import Style
from rich.text import Text

from agboard.ports import SessionOps

# Empty lines kept below the last content line, for the agent's input area.
MAX_TRAILING_EMPTY_LINES = 3

SCROLL_LINE_STEP = 5
SCROLL_PAGE_STEP = 20

_CSI_RE = re.compile(r"\x1b\[[0-9;?<=>:]*[ -/]*[@-~]")


@dataclass
class StyledSpan:
    text: str
    style: Style = field(default_factory=Style)


@dataclass
class StyledLine:
    spans: list[StyledSpan] = field(default_factory=list)

    @property
    def plain(self) -> str:
        return "".join(span.text for span in self.spans)

    def is_blank(self) -> bool:
        return not self.plain.strip()

    def to_text(self) -> Text:
        text = Text(no_wrap=True, end="")
        for span in self.spans:
            text.append(span.text, span.style)
        return text


def strip_ansi(text: str) -> str:
    """Remove CSI escape sequences (colors, cursor movement) from text."""
    return _CSI_RE.sub("", text)


def _split_lines(text: str) -> list[str]:
    """Split on newlines; a trailing newline does not start another line."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line.removesuffix("\r") for line in lines]


def _decode(content: bytes | str) -> str:
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content


# -- SGR parsing --


def _clamp(value: int) -> int:
    return max(0, min(255, value))


def apply_sgr(params: str, style: Style) -> Style:
    """Apply one SGR parameter string (the part between ``ESC[`` and ``m``)."""
    if not params:
        return Style()

    codes = [int(part) for part in params.split(";") if part.isdigit()]
    i = 0
    while i < len(codes):
        code = codes[i]
        if code == 0:
            style = Style()
        elif code == 1:
            style += Style(bold=True)
        elif code == 2:
            style += Style(dim=True)
        elif code == 3:
            style += Style(italic=True)
        elif code == 4:
            style += Style(underline=True)
        elif code == 7:
            style += Style(reverse=True)
        elif code == 22:
            style += Style(bold=False, dim=False)
        elif code == 23:
            style += Style(italic=False)
        elif code == 24:
            style += Style(underline=False)
        elif code == 27:
            style += Style(reverse=False)
        elif 30 <= code <= 37:
            style += Style(color=Color.from_ansi(code - 30))
        elif code == 39:
            style += Style(color=Color.default())
        elif 40 <= code <= 47:
            style += Style(bgcolor=Color.from_ansi(code - 40))
        elif code == 49:
            style += Style(bgcolor=Color.default())
        elif 90 <= code <= 97:
            style += Style(color=Color.from_ansi(code - 90 + 8))
        elif 100 <= code <= 107:
            style += Style(bgcolor=Color.from_ansi(code - 100 + 8))
        elif code in (38, 48) and i + 2 < len(codes) and codes[i + 1] == 5:
            color = Color.from_ansi(_clamp(codes[i + 2]))
            style += Style(color=color) if code == 38 else Style(bgcolor=color)
            i += 2
        elif code in (38, 48) and i + 4 < len(codes) and codes[i + 1] == 2:
            r, g, b = (_clamp(c) for c in codes[i + 2 : i + 5])
            color = Color.from_rgb(r, g, b)
            style += Style(color=color) if code == 38 else Style(bgcolor=color)
            i += 4
        i += 1
    return style


def parse_ansi_to_lines(content: bytes | str) -> list[StyledLine]:
    """Parse captured pane output into styled lines.

    The active style carries across line breaks, as it does in a terminal.
    Non-SGR escape sequences are dropped.
    """
    lines: list[StyledLine] = []
    style = Style()
    for raw in _split_lines(_decode(content)):
        spans: list[StyledSpan] = []
        buf: list[str] = []
        pos = 0
        while pos < len(raw):
            ch = raw[pos]
            if ch != "\x1b":
                buf.append(ch)
                pos += 1
                continue
            if buf:
                spans.append(StyledSpan("".join(buf), style))
                buf = []
            match = _CSI_RE.match(raw, pos)
            if match is None:
                # Lone ESC or a non-CSI escape: drop the ESC itself.
                pos += 1
                continue
            seq = match.group(0)
            if seq.endswith("m"):
                style = apply_sgr(seq[2:-1], style)
            pos = match.end()
        if buf:
            spans.append(StyledSpan("".join(buf), style))
        lines.append(StyledLine(spans))
    return lines


# -- Visible window --


def compute_visible_lines(
    styled_lines: list[StyledLine],
    visible_height: int,
    scroll_offset: int,
) -> tuple[list[StyledLine], int, int]:
    """Return (visible lines, start line, total lines) for a scroll position.

    ``scroll_offset`` 0 is live: the bottom is shown including trailing blank
    lines, so a cursor parked on an empty line stays visible. A negative
    offset scrolls back into history; trailing blank lines are trimmed first.
    """
    total_input_lines = len(styled_lines)

    if scroll_offset >= 0:
        effective_line_count = total_input_lines
    else:
        last_content = next(
            (i for i in range(total_input_lines - 1, -1, -1) if not styled_lines[i].is_blank()),
            None,
        )
        effective_line_count = (
            last_content + 1 if last_content is not None else total_input_lines
        )

    total_lines = max(effective_line_count, 1)
    visible_height = max(visible_height, 0)

    if scroll_offset < 0:
        start_line = max(0, total_lines - visible_height - (-scroll_offset))
    else:
        start_line = max(0, total_lines - visible_height)

    visible = styled_lines[:effective_line_count][start_line : start_line + visible_height]
    return visible, start_line, total_lines


# -- Cursor-aware trimming --


def _is_blank(line: str) -> bool:
    return not strip_ansi(line).strip()


def trim_trailing_empty_lines(lines: list[str]) -> int:
    """Number of lines to keep: content plus a small buffer for the prompt area."""
    if not lines:
        return 0
    last_content = next(
        (i for i in range(len(lines) - 1, -1, -1) if not _is_blank(lines[i])), None
    )
    if last_content is None:
        return min(MAX_TRAILING_EMPTY_LINES, len(lines))
    return min(last_content + 1 + MAX_TRAILING_EMPTY_LINES, len(lines))


def trim_content_to_cursor(
    content: bytes, cursor_info: tuple[int, int] | None
) -> bytes:
    """Drop unused pane buffer below the cursor.

    ``cursor_info`` is (cursor_row, pane_height) from tmux. The capture ends at
    the bottom of the visible pane, so the cursor's line in the capture is
    ``len(lines) - pane_height + cursor_row``. Content is only cut at the
    cursor when nothing but blank lines follows it: full-screen apps park the
    cursor mid-screen with real UI underneath.
    """
    lines = _split_lines(_decode(content))
    total_lines = len(lines)
    if total_lines == 0:
        return content

    end_line = total_lines
    if cursor_info is not None and cursor_info[1] > 0:
        cursor_row, pane_height = cursor_info
        visible_pane_start = max(0, total_lines - pane_height)
        cursor_line = visible_pane_start + cursor_row
        trim_at = min(cursor_line + 1, total_lines)
        if all(_is_blank(line) for line in lines[trim_at:]):
            end_line = trim_at

    keep = trim_trailing_empty_lines(lines[:end_line])
    return "\n".join(lines[:keep]).encode("utf-8")


def capture_task_view(
    sessions: SessionOps, target: str, history_lines: int
) -> list[StyledLine]:
    """Capture a task pane with scrollback, trimmed below the cursor, as styled lines."""
    content = sessions.capture_pane_with_history(target, history_lines)
    cursor_info = sessions.get_cursor_info(target)
    return parse_ansi_to_lines(trim_content_to_cursor(content, cursor_info))


# -- Scrolling and key handling --


@dataclass
class ScrollState:
    """Scroll position of a pane viewer. Negative offsets look back into history."""

    scroll_offset: int = 0

    def scroll_up(self, lines: int) -> None:
        self.scroll_offset -= lines

    def scroll_down(self, lines: int) -> None:
        self.scroll_offset = min(self.scroll_offset + lines, 0)

    def scroll_to_bottom(self) -> None:
        self.scroll_offset = 0

    def is_at_bottom(self) -> bool:
        return self.scroll_offset >= 0


def footer_text(scroll_offset: int, start_line: int) -> str:
    if scroll_offset < 0:
        return (
            " [Ctrl+j/k] scroll [Ctrl+d/u] page [Ctrl+g] bottom [Ctrl+q] close"
            f" | Line {start_line + 1} "
        )
    return " [Ctrl+j/k] scroll [Ctrl+d/u] page [Ctrl+q] close | At bottom "


# Viewer-owned keys, as scroll deltas. None means "jump to bottom".
_SCROLL_KEYS: dict[str, int | None] = {
    "ctrl+k": -SCROLL_LINE_STEP,
    "ctrl+p": -SCROLL_LINE_STEP,
    "ctrl+up": -SCROLL_LINE_STEP,
    "ctrl+j": SCROLL_LINE_STEP,
    "ctrl+n": SCROLL_LINE_STEP,
    "ctrl+down": SCROLL_LINE_STEP,
    "ctrl+u": -SCROLL_PAGE_STEP,
    "pageup": -SCROLL_PAGE_STEP,
    "ctrl+d": SCROLL_PAGE_STEP,
    "pagedown": SCROLL_PAGE_STEP,
    "ctrl+g": None,
}

CLOSE_KEY = "ctrl+q"

_TMUX_KEY_NAMES = {
    "enter": "Enter",
    "escape": "Escape",
    "backspace": "BSpace",
    "tab": "Tab",
    "up": "Up",
    "down": "Down",
    "left": "Left",
    "right": "Right",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "delete": "DC",
    "insert": "IC",
    "space": "Space",
}

_FUNCTION_KEY_RE = re.compile(r"^f([1-9]|1[0-2])$")


def tmux_key_name(key: str) -> str | None:
    """Translate a key name (``"enter"``, ``"f5"``, ``"x"``) to tmux's vocabulary.

    Single characters pass through unchanged. Unknown keys return None.
    """
    if len(key) == 1:
        return key
    lowered = key.lower()
    if lowered in _TMUX_KEY_NAMES:
        return _TMUX_KEY_NAMES[lowered]
    if _FUNCTION_KEY_RE.match(lowered):
        return lowered.upper()
    return None


def handle_viewer_key(state: ScrollState, key: str) -> str | None:
    """Apply a viewer key to ``state``.

    Returns ``"close"`` for the close key, ``"scroll"`` when the key moved the
    view, otherwise the tmux key name to forward (or None if untranslatable).
    """
    if key == CLOSE_KEY:
        return "close"
    if key in _SCROLL_KEYS:
        delta = _SCROLL_KEYS[key]
        if delta is None:
            state.scroll_to_bottom()
        elif delta < 0:
            state.scroll_up(-delta)
        else:
            state.scroll_down(delta)
        return "scroll"
    return tmux_key_name(key)
