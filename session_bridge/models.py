"""Data models for the session/recording bridge."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List
import time
import uuid


RECORDING_SCHEMA_VERSION = 1


class WriteSource(Enum):
    """Who originated a write to the process host."""
    USER = "user"      # Direct user keystrokes (recordable)
    SYSTEM = "system"  # Programmatic input: replay, paste, multiplexer control bytes


class ActivityState(Enum):
    """Agent activity state for sessions with a classified effect."""
    IDLE = "idle"
    WORKING = "working"


@dataclass(frozen=True)
class Effect:
    """A recognized agent/tool, identified by its launch command."""
    id: str
    label: str
    match_commands: tuple[str, ...]
    idle_after_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "match_commands": list(self.match_commands),
            "idle_after_ms": self.idle_after_ms,
        }


@dataclass
class SessionInfo:
    """What the process host reports back after creating a session."""
    id: str
    name: str
    command: str
    cwd: Optional[str] = None


@dataclass
class Session:
    """A live process-host session as seen by the bridge."""
    id: str
    name: str = ""
    command: str = ""
    persist_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    persistent: bool = False
    project_id: str = "default"
    cwd: Optional[str] = None
    launch_command: Optional[str] = None
    restore_command: Optional[str] = None
    effect_id: Optional[str] = None
    agent_working: bool = False
    recording_active: bool = False
    last_recording_id: Optional[str] = None
    exited: bool = False
    closing: bool = False
    exit_code: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def activity(self) -> ActivityState:
        return ActivityState.WORKING if self.agent_working else ActivityState.IDLE

    def to_dict(self) -> dict:
        """Convert session to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "persist_id": self.persist_id,
            "persistent": self.persistent,
            "project_id": self.project_id,
            "cwd": self.cwd,
            "launch_command": self.launch_command,
            "restore_command": self.restore_command,
            "effect_id": self.effect_id,
            "agent_working": self.agent_working,
            "recording_active": self.recording_active,
            "last_recording_id": self.last_recording_id,
            "exited": self.exited,
            "closing": self.closing,
            "exit_code": self.exit_code,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RecordingMeta:
    """Metadata header of a recording (serialized in camelCase)."""
    project_id: str
    session_persist_id: str
    cwd: Optional[str] = None
    name: Optional[str] = None
    effect_id: Optional[str] = None
    bootstrap_command: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    schema_version: int = RECORDING_SCHEMA_VERSION

    def to_dict(self) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "createdAt": self.created_at,
            "name": self.name,
            "projectId": self.project_id,
            "sessionPersistId": self.session_persist_id,
            "cwd": self.cwd,
            "effectId": self.effect_id,
            "bootstrapCommand": self.bootstrap_command,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecordingMeta":
        return cls(
            project_id=data.get("projectId", ""),
            session_persist_id=data.get("sessionPersistId", ""),
            cwd=data.get("cwd"),
            name=data.get("name"),
            effect_id=data.get("effectId"),
            bootstrap_command=data.get("bootstrapCommand"),
            created_at=int(data.get("createdAt", 0)),
            schema_version=int(data.get("schemaVersion", RECORDING_SCHEMA_VERSION)),
        )


@dataclass(frozen=True)
class RecordingEvent:
    """One recorded input: milliseconds since recording start plus the raw data."""
    t: int
    data: str

    def to_dict(self) -> dict:
        return {"t": self.t, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict) -> "RecordingEvent":
        return cls(t=int(data["t"]), data=str(data["data"]))


@dataclass
class Recording:
    """A recording: id, metadata and the ordered input events."""
    recording_id: str
    meta: Optional[RecordingMeta]
    events: List[RecordingEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "recordingId": self.recording_id,
            "meta": self.meta.to_dict() if self.meta else None,
            "events": [e.to_dict() for e in self.events],
        }


@dataclass
class ErrorReport:
    """A user-visible failure surfaced by the bridge."""
    title: str
    message: str
    session_id: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "session_id": self.session_id,
            "at": self.at.isoformat(),
        }


@dataclass
class StatusSummary:
    """Aggregate activity counts across live sessions."""
    working_count: int
    recording_count: int
    lines: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "working_count": self.working_count,
            "recording_count": self.recording_count,
            "lines": list(self.lines),
        }
