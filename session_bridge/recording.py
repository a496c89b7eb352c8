"""Keystroke recording: timestamped append-only input logs per session."""

import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .models import Recording, RecordingEvent, RecordingMeta, WriteSource

logger = logging.getLogger(__name__)

MAX_RECORDING_ID_LENGTH = 120
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class RecordingError(Exception):
    """Recording lifecycle misuse or persistence failure."""


class AlreadyRecording(RecordingError):
    pass


class NotRecording(RecordingError):
    pass


def sanitize_recording_id(recording_id: str) -> str:
    """Make a recording id safe to use as a file name."""
    trimmed = (recording_id or "").strip()[:MAX_RECORDING_ID_LENGTH]
    safe = _UNSAFE_ID_CHARS.sub("_", trimmed)
    return safe or "recording"


def make_recording_id() -> str:
    return uuid.uuid4().hex


def default_recording_name(base: Optional[str], now: Optional[datetime] = None) -> str:
    """e.g. ``codex 2026-10-19 14:05``"""
    when = (now or datetime.now()).strftime("%Y-%m-%d %H:%M")
    return f"{base or 'recording'} {when}"


@dataclass
class _ActiveRecording:
    recording_id: str
    meta: RecordingMeta
    started_at: float
    events: list[RecordingEvent] = field(default_factory=list)


class RecordingEngine:
    """
    Produces immutable in-memory input logs.

    While a session is recording, every user-originated write is appended as
    ``{t, data}`` where ``t`` is whole milliseconds since `start`. Durable
    storage is the caller's job (see `RecordingStore`).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._active: dict[str, _ActiveRecording] = {}

    def is_recording(self, session_id: str) -> bool:
        return session_id in self._active

    def active_recording_id(self, session_id: str) -> Optional[str]:
        active = self._active.get(session_id)
        return active.recording_id if active else None

    def start(self, session_id: str, recording_id: str, meta: RecordingMeta) -> str:
        """Begin recording. Returns the sanitized recording id."""
        if session_id in self._active:
            raise AlreadyRecording(f"Session {session_id} is already recording")

        safe_id = sanitize_recording_id(recording_id)
        self._active[session_id] = _ActiveRecording(
            recording_id=safe_id,
            meta=meta,
            started_at=self._clock(),
        )
        logger.info(f"Started recording {safe_id} for session {session_id}")
        return safe_id

    def append(self, session_id: str, data: str, source: WriteSource = WriteSource.USER) -> Optional[RecordingEvent]:
        """Record one write. Non-user sources and inactive sessions are ignored."""
        if source is not WriteSource.USER:
            return None
        active = self._active.get(session_id)
        if active is None:
            return None

        t = int((self._clock() - active.started_at) * 1000)
        if active.events and t < active.events[-1].t:
            t = active.events[-1].t
        event = RecordingEvent(t=max(0, t), data=data)
        active.events.append(event)
        return event

    def stop(self, session_id: str) -> Recording:
        """Finish recording and hand back the completed log."""
        active = self._active.pop(session_id, None)
        if active is None:
            raise NotRecording(f"Session {session_id} is not recording")

        logger.info(
            f"Stopped recording {active.recording_id} for session {session_id} "
            f"({len(active.events)} events)"
        )
        return Recording(
            recording_id=active.recording_id,
            meta=active.meta,
            events=list(active.events),
        )
