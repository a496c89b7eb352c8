"""
Escape-sequence lexer for terminal input/output streams.

The lexer splits text into plain-text runs, single C0 control characters and
complete (or unterminated) escape sequences:

- CSI  ``ESC [ params intermediates final``  (final byte in ``@``..``~``)
- OSC  ``ESC ] payload (BEL | ESC \\)``
- DCS  ``ESC P payload ESC \\`` (SOS ``ESC X``, PM ``ESC ^`` and APC ``ESC _``
  are string sequences with the same terminator)
- SS3 ``ESC O x`` (application-mode keys)
- any other ``ESC`` followed by intermediates (0x20-0x2F) and one final byte

An unterminated sequence at the end of the input is returned as a single
token with ``complete=False`` spanning the rest of the input. A CSI that is
interrupted by a control character is abandoned at that character, which is
then lexed on its own.

Used by the replay sanitizer, the persistent-session line simulator and the
OSC report scanner, so all three agree on where a sequence ends.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional
from urllib.parse import unquote

logger = logging.getLogger(__name__)

ESC = "\x1b"
BEL = "\x07"
ST = ESC + "\\"
DEL = "\x7f"

# Control characters kept by the sanitizer
KEPT_CONTROLS = frozenset("\r\n\t")

_STRING_INTRODUCERS = frozenset("PX^_")


class TokenKind(Enum):
    TEXT = "text"
    CONTROL = "control"
    CSI = "csi"
    OSC = "osc"
    DCS = "dcs"
    ESCAPE = "escape"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    complete: bool = True

    @property
    def payload(self) -> str:
        """OSC/DCS body without introducer and terminator."""
        if self.kind not in (TokenKind.OSC, TokenKind.DCS):
            return ""
        body = self.text[2:]
        if not self.complete:
            return body
        if body.endswith(ST):
            return body[:-2]
        if body.endswith(BEL):
            return body[:-1]
        return body


def is_control(ch: str) -> bool:
    return ch < " " or ch == DEL


def _scan_csi(data: str, i: int) -> tuple[int, bool]:
    """`i` points just past ``ESC [``. Returns (end, complete)."""
    n = len(data)
    while i < n:
        ch = data[i]
        if "@" <= ch <= "~":
            return i + 1, True
        if ch < " ":
            # Interrupted: the control char is not part of the sequence
            return i, True
        i += 1
    return n, False


def _scan_osc(data: str, i: int) -> tuple[int, bool]:
    n = len(data)
    while i < n:
        ch = data[i]
        if ch == BEL:
            return i + 1, True
        if ch == ESC and i + 1 < n and data[i + 1] == "\\":
            return i + 2, True
        i += 1
    return n, False


def _scan_string(data: str, i: int) -> tuple[int, bool]:
    n = len(data)
    while i < n:
        if data[i] == ESC and i + 1 < n and data[i + 1] == "\\":
            return i + 2, True
        i += 1
    return n, False


def _scan_escape(data: str, i: int) -> tuple[int, bool]:
    """Generic ``ESC intermediates* final``; `i` points past the ESC."""
    n = len(data)
    if data[i] == "O":
        # SS3: application-mode cursor and function keys carry one more byte
        return (i + 2, True) if i + 1 < n else (n, False)
    while i < n and " " <= data[i] <= "/":
        i += 1
    if i >= n:
        return n, False
    return i + 1, True


def tokenize(data: str) -> Iterator[Token]:
    """Yield tokens covering `data` exactly, in order."""
    n = len(data)
    i = 0
    while i < n:
        ch = data[i]

        if ch == ESC:
            if i + 1 >= n:
                yield Token(TokenKind.ESCAPE, ch, complete=False)
                return
            nxt = data[i + 1]
            if nxt == "[":
                end, complete = _scan_csi(data, i + 2)
                kind = TokenKind.CSI
            elif nxt == "]":
                end, complete = _scan_osc(data, i + 2)
                kind = TokenKind.OSC
            elif nxt in _STRING_INTRODUCERS:
                end, complete = _scan_string(data, i + 2)
                kind = TokenKind.DCS
            else:
                end, complete = _scan_escape(data, i + 1)
                kind = TokenKind.ESCAPE
            yield Token(kind, data[i:end], complete=complete)
            i = end
            continue

        if is_control(ch):
            yield Token(TokenKind.CONTROL, ch)
            i += 1
            continue

        start = i
        while i < n and data[i] != ESC and not is_control(data[i]):
            i += 1
        yield Token(TokenKind.TEXT, data[start:i])


def sanitize(data: str) -> str:
    """
    Reduce raw terminal input to plain keystrokes.

    Drops every escape sequence (terminated or not) and every C0 control
    character and DEL, except carriage return, line feed and tab.
    """
    out = []
    for token in tokenize(data):
        if token.kind is TokenKind.TEXT:
            out.append(token.text)
        elif token.kind is TokenKind.CONTROL and token.text in KEPT_CONTROLS:
            out.append(token.text)
    return "".join(out)


class OscReportScanner:
    """
    Streaming extraction of shell-integration reports from process output.

    Recognizes OSC 7 (``file://host/path`` working directory) and OSC 1337
    ``CurrentDir=`` / ``Command=``. An OSC split across output chunks is
    carried over to the next chunk, up to `max_carry` characters.
    """

    def __init__(self, max_carry: int = 4096):
        self.max_carry = max_carry
        self._carry = ""

    def feed(self, chunk: str) -> list[tuple[str, str]]:
        """Returns ``[(kind, value)]`` with kind ``"cwd"`` or ``"command"``."""
        data = self._carry + chunk if self._carry else chunk
        self._carry = ""
        if ESC not in data:
            return []

        reports = []
        for token in tokenize(data):
            if not token.complete and token.kind in (TokenKind.OSC, TokenKind.ESCAPE):
                # A bare trailing ESC may be the start of an OSC
                if len(token.text) <= self.max_carry:
                    self._carry = token.text
                else:
                    logger.debug("Dropping oversized unterminated OSC sequence")
                break
            if token.kind is not TokenKind.OSC:
                continue
            report = parse_osc_report(token.payload)
            if report:
                reports.append(report)
        return reports


def parse_file_url_path(value: str) -> Optional[str]:
    """Path component of a ``file://host/path`` URL, percent-decoded."""
    if not value.startswith("file://"):
        return None
    rest = value[len("file://"):]
    slash = rest.find("/")
    if slash < 0:
        return None
    return unquote(rest[slash:])


def parse_osc_report(payload: str) -> Optional[tuple[str, str]]:
    code, sep, body = payload.partition(";")
    if not sep:
        return None
    if code == "7":
        path = parse_file_url_path(body)
        if path and path.strip():
            return ("cwd", path.strip())
        return None
    if code == "1337":
        if body.startswith("CurrentDir="):
            cwd = body[len("CurrentDir="):].strip()
            return ("cwd", cwd) if cwd else None
        if body.startswith("Command="):
            return ("command", body[len("Command="):])
    return None
