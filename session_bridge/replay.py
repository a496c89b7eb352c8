"""Replay of recorded keystrokes: step splitting, display grouping and step delivery."""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .ansi import sanitize
from .effects import EffectCatalog
from .models import Recording, RecordingEvent, WriteSource

logger = logging.getLogger(__name__)

DEFAULT_ENTER_DELAY_MS = 30
DEFAULT_ENTER_REPEAT_DELAY_MS = 10
BARE_NEWLINE_PREVIEW = "⏎"

_TRAILING_NEWLINES = re.compile(r"[\r\n]+$")


class ReplayError(Exception):
    """A replay action (target creation or step write) failed."""


def split_into_steps(events: list[RecordingEvent]) -> list[str]:
    """
    Turn recorded events into submit-sized steps.

    All sanitized event data is concatenated; each step runs up to and
    including the earliest CR or LF. A non-terminated remainder becomes the
    final step.
    """
    steps = []
    buffer = ""
    for event in events:
        buffer += sanitize(event.data)
        while True:
            r = buffer.find("\r")
            n = buffer.find("\n")
            if r == -1 and n == -1:
                break
            idx = n if r == -1 else r if n == -1 else min(r, n)
            steps.append(buffer[:idx + 1])
            buffer = buffer[idx + 1:]
    if buffer:
        steps.append(buffer)
    return steps


def split_step(step: str) -> tuple[str, str]:
    """Split a step into (body, trailing newline run)."""
    match = _TRAILING_NEWLINES.search(step)
    if not match:
        return step, ""
    return step[:match.start()], match.group(0)


@dataclass
class ReplayGroup:
    """Consecutive events sharing one timestamp, shown as a single row."""
    t: int
    start_index: int
    end_index: int
    items: list[tuple[int, str]] = field(default_factory=list)
    preview: str = ""

    @property
    def key(self) -> str:
        return f"{self.t}-{self.start_index}"

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "t": self.t,
            "start_index": self.start_index,
            "end_index": self.end_index,
            "preview": self.preview,
            "items": [{"index": i, "text": text} for i, text in self.items],
        }


def group_flow(events: list[RecordingEvent]) -> list[ReplayGroup]:
    """Group consecutive raw events with equal `t` for display."""
    groups: list[ReplayGroup] = []
    for index, event in enumerate(events):
        text = _TRAILING_NEWLINES.sub("", sanitize(event.data or ""))
        if not groups or groups[-1].t != event.t:
            groups.append(ReplayGroup(t=event.t, start_index=index, end_index=index))
        group = groups[-1]
        group.end_index = index
        group.items.append((index, text))

    for group in groups:
        first = next((text.strip() for _, text in group.items if text.strip()), None)
        group.preview = first.splitlines()[0] if first else BARE_NEWLINE_PREVIEW
    return groups


def format_recording_t(ms: float) -> str:
    """Relative timestamp label: ``+250ms``, ``+4.2s``, ``+3m07s``."""
    try:
        safe = max(0, int(ms))
    except (TypeError, ValueError):
        safe = 0
    if safe < 1000:
        return f"+{safe}ms"
    total_seconds = safe // 1000
    minutes, seconds = divmod(total_seconds, 60)
    if minutes > 0:
        return f"+{minutes}m{seconds:02d}s"
    tenths = (safe % 1000) // 100
    return f"+{seconds}.{tenths}s"


def resolve_bootstrap_command(recording: Recording, catalog: Optional[EffectCatalog] = None) -> Optional[str]:
    """Command to start the replay target with: explicit meta, else the effect's command."""
    meta = recording.meta
    if meta is None:
        return None
    explicit = (meta.bootstrap_command or "").strip()
    if explicit:
        return explicit
    effect = (catalog or EffectCatalog()).get(meta.effect_id)
    return effect.match_commands[0] if effect else None


def replay_session_name(recording: Recording, bootstrap_command: Optional[str]) -> str:
    name = ((recording.meta.name if recording.meta else None) or "").strip()
    if name:
        return f"replay: {name}"
    if bootstrap_command:
        return f"replay {bootstrap_command}"
    return "replay"


CreateTarget = Callable[["ReplaySession"], Awaitable[str]]
WriteFn = Callable[[str, str, WriteSource], Awaitable[None]]


class ReplaySession:
    """
    Replay state for one open recording.

    `index` advances by exactly one per successfully sent step. The target
    session is created lazily on the first send and then stays bound.
    """

    def __init__(
        self,
        recording: Recording,
        create_target: CreateTarget,
        write: WriteFn,
        config: Optional[dict] = None,
        replay_id: Optional[str] = None,
    ):
        self.replay_id = replay_id or uuid.uuid4().hex[:12]
        self.recording = recording
        self.steps: list[str] = split_into_steps(recording.events)
        self.flow: list[ReplayGroup] = group_flow(recording.events)
        self.index = 0
        self.target_session_id: Optional[str] = None

        self._create_target = create_target
        self._write = write
        self._send_lock = asyncio.Lock()

        replay_config = (config or {}).get("replay", {})
        self.enter_delay = replay_config.get("enter_delay_ms", DEFAULT_ENTER_DELAY_MS) / 1000.0
        self.enter_repeat_delay = (
            replay_config.get("enter_repeat_delay_ms", DEFAULT_ENTER_REPEAT_DELAY_MS) / 1000.0
        )

    @property
    def finished(self) -> bool:
        return self.index >= len(self.steps)

    @property
    def next_step(self) -> Optional[str]:
        return None if self.finished else self.steps[self.index]

    async def ensure_target(self) -> str:
        if self.target_session_id:
            return self.target_session_id
        try:
            session_id = await self._create_target(self)
        except Exception as e:
            raise ReplayError(f"Failed to create replay session: {e}") from e
        self.target_session_id = session_id
        logger.info(f"Replay {self.replay_id} bound to session {session_id}")
        return session_id

    async def send_next(self) -> bool:
        """
        Send the next step. Returns False when there is nothing left to send.

        Concurrent calls are serialized; a failed write leaves `index` unchanged.
        """
        async with self._send_lock:
            if self.finished:
                return False

            target = await self.ensure_target()
            step = self.steps[self.index]
            body, trailing = split_step(step)

            try:
                if body:
                    await self._write(target, body, WriteSource.SYSTEM)
                if trailing:
                    # Separate Enter from the body so CLIs treat it as submit, not paste
                    if body:
                        await asyncio.sleep(self.enter_delay)
                    enter_count = sum(1 for ch in trailing if ch in "\r\n")
                    for i in range(enter_count):
                        await self._write(target, "\r", WriteSource.SYSTEM)
                        if i < enter_count - 1:
                            await asyncio.sleep(self.enter_repeat_delay)
            except Exception as e:
                raise ReplayError(f"Failed to replay input: {e}") from e

            self.index += 1
            logger.debug(f"Replay {self.replay_id} sent step {self.index}/{len(self.steps)}")
            return True

    async def send_all(self) -> int:
        """Send every remaining step in order. Returns the number sent."""
        sent = 0
        while await self.send_next():
            sent += 1
        return sent

    def to_dict(self) -> dict:
        return {
            "replay_id": self.replay_id,
            "recording_id": self.recording.recording_id,
            "meta": self.recording.meta.to_dict() if self.recording.meta else None,
            "steps": list(self.steps),
            "index": self.index,
            "next_step": self.next_step,
            "finished": self.finished,
            "target_session_id": self.target_session_id,
            "flow": [g.to_dict() for g in self.flow],
        }
