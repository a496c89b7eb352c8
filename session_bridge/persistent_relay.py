"""
Keystroke relay for multiplexer-backed (persistent) sessions.

Two jobs:

- translate scroll gestures (Shift+PageUp/PageDown, Cmd/Ctrl+ArrowUp/Down,
  mouse wheel) into the multiplexer's scroll-mode control bytes, and leave
  scroll mode before any ordinary keystroke is forwarded;
- rebuild submitted command lines from the raw keystroke stream, since the
  process host only sees multiplexer traffic and never the inner shell's
  line state.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .ansi import DEL, ESC, TokenKind, tokenize
from .models import WriteSource

logger = logging.getLogger(__name__)

SCROLL_MODE_ENTER = "\x13"  # Ctrl+S
SCROLL_MODE_EXIT = ESC
SCROLL_UP = "k"
SCROLL_DOWN = "j"
KILL_LINE = "\x15"  # Ctrl+U
BACKSPACE = "\b"

DEFAULT_PIXELS_PER_LINE = 40
DEFAULT_MAX_SCROLL_LINES = 120


class WheelDeltaMode(Enum):
    PIXEL = 0
    LINE = 1
    PAGE = 2


@dataclass(frozen=True)
class KeyEvent:
    """A keydown from the UI surface."""
    key: str
    shift: bool = False
    ctrl: bool = False
    meta: bool = False
    alt: bool = False


@dataclass(frozen=True)
class WheelEvent:
    delta_y: float
    delta_mode: WheelDeltaMode = WheelDeltaMode.PIXEL
    ctrl: bool = False


@dataclass
class PersistentRelayState:
    scroll_mode_active: bool = False
    wheel_remainder: float = 0.0
    command_buffer: str = ""


class LineEditor:
    """
    Minimal shell line-editing simulator.

    Printable text appends to the buffer, backspace/DEL removes the last
    character, Ctrl+U clears it, escape sequences are consumed without effect,
    and CR or LF (CRLF counts once) submits the buffer.
    """

    def __init__(self, state: Optional[PersistentRelayState] = None):
        self.state = state or PersistentRelayState()

    @property
    def buffer(self) -> str:
        return self.state.command_buffer

    def feed(self, data: str) -> list[str]:
        """Consume keystrokes; returns every line submitted, in order."""
        buffer = self.state.command_buffer
        submitted = []
        after_cr = False

        for token in tokenize(data):
            if token.kind is TokenKind.TEXT:
                buffer += token.text
            elif token.kind is TokenKind.CONTROL:
                ch = token.text
                if ch == "\n" and after_cr:
                    after_cr = False
                    continue
                if ch in ("\r", "\n"):
                    submitted.append(buffer)
                    buffer = ""
                elif ch in (DEL, BACKSPACE):
                    buffer = buffer[:-1]
                elif ch == KILL_LINE:
                    buffer = ""
                after_cr = ch == "\r"
                continue
            after_cr = False

        self.state.command_buffer = buffer
        return submitted


class PersistentRelay:
    """Per-session relay state machine for one attached persistent surface."""

    def __init__(self, session_id: str, config: Optional[dict] = None):
        self.session_id = session_id
        persistent_config = (config or {}).get("persistent", {})
        self.pixels_per_line = persistent_config.get("pixels_per_line", DEFAULT_PIXELS_PER_LINE)
        self.max_scroll_lines = persistent_config.get("max_scroll_lines", DEFAULT_MAX_SCROLL_LINES)
        self.state = PersistentRelayState()
        self.line_editor = LineEditor(self.state)

    @property
    def scroll_mode_active(self) -> bool:
        return self.state.scroll_mode_active

    def reset(self):
        """Surface detached: forget scroll mode, wheel remainder and the line buffer."""
        self.state.scroll_mode_active = False
        self.state.wheel_remainder = 0.0
        self.state.command_buffer = ""

    def scroll_lines(self, lines: int) -> str:
        """
        Bytes that scroll the multiplexer by `lines` (negative is up).

        Scrolling down does nothing outside scroll mode. Entering scroll
        mode is idempotent.
        """
        count = min(abs(int(lines)), self.max_scroll_lines)
        if count == 0:
            return ""
        if lines > 0 and not self.state.scroll_mode_active:
            return ""
        prefix = "" if self.state.scroll_mode_active else SCROLL_MODE_ENTER
        self.state.scroll_mode_active = True
        step = SCROLL_UP if lines < 0 else SCROLL_DOWN
        return prefix + step * count

    def handle_key(self, event: KeyEvent, rows: int) -> Optional[str]:
        """
        Intercept scroll keys.

        Returns None if the key is not a scroll gesture (the caller handles
        it normally), otherwise the bytes to send, possibly empty.
        """
        if event.shift and event.key == "PageUp":
            return self.scroll_lines(-rows)
        if event.shift and event.key == "PageDown":
            return self.scroll_lines(rows)
        if (event.meta or event.ctrl) and event.key == "ArrowUp":
            return self.scroll_lines(-rows)
        if (event.meta or event.ctrl) and event.key == "ArrowDown":
            return self.scroll_lines(rows)
        return None

    def handle_wheel(self, event: WheelEvent, rows: int) -> Optional[str]:
        """Convert a wheel delta into scroll bytes; None if not intercepted (zoom, no delta)."""
        if event.ctrl or event.delta_y == 0:
            return None

        if event.delta_mode is WheelDeltaMode.LINE:
            lines = int(event.delta_y)
        elif event.delta_mode is WheelDeltaMode.PAGE:
            lines = int(event.delta_y * rows)
        else:
            self.state.wheel_remainder += event.delta_y
            lines = int(self.state.wheel_remainder / self.pixels_per_line)
            if lines:
                self.state.wheel_remainder -= lines * self.pixels_per_line
        return self.scroll_lines(lines)

    def prepare_input(self, data: str, source: WriteSource = WriteSource.USER) -> list[tuple[str, WriteSource]]:
        """
        Writes to issue for ordinary input data.

        In scroll mode the flag is cleared first and Escape is sent ahead of
        the data; a lone Escape keystroke is not doubled.
        """
        if not self.state.scroll_mode_active:
            return [(data, source)]

        self.state.scroll_mode_active = False
        if data == SCROLL_MODE_EXIT:
            return [(SCROLL_MODE_EXIT, WriteSource.SYSTEM)]
        return [(SCROLL_MODE_EXIT, WriteSource.SYSTEM), (data, source)]

    def ingest(self, data: str) -> list[str]:
        """Feed keystrokes to the line editor; returns submitted non-blank lines, trimmed."""
        return [line.strip() for line in self.line_editor.feed(data) if line.strip()]
