"""On-disk recording storage: one JSON-lines file per recording."""

import json
import logging
from pathlib import Path
from typing import Optional

from .models import Recording, RecordingEvent, RecordingMeta
from .recording import RecordingError, sanitize_recording_id

logger = logging.getLogger(__name__)

DEFAULT_RECORDINGS_DIR = "~/.local/share/session-bridge/recordings"


class RecordingNotFound(RecordingError):
    pass


class RecordingStore:
    """
    Persists recordings as ``<recordingId>.jsonl``.

    The first line is ``{"type": "meta", ...}``; every further line is
    ``{"type": "input", "t": ..., "data": ...}``. Files are written to a temp
    file and renamed into place, so a recording is never partially written.
    """

    def __init__(self, recordings_dir: str = DEFAULT_RECORDINGS_DIR):
        self.recordings_dir = Path(recordings_dir).expanduser()
        self.recordings_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "RecordingStore":
        paths = (config or {}).get("paths", {})
        return cls(paths.get("recordings_dir", DEFAULT_RECORDINGS_DIR))

    def path_for(self, recording_id: str) -> Path:
        return self.recordings_dir / f"{sanitize_recording_id(recording_id)}.jsonl"

    def save(self, recording_id: str, meta: Optional[RecordingMeta], events: list[RecordingEvent]) -> str:
        """Write a whole recording atomically. Returns the sanitized id."""
        safe_id = sanitize_recording_id(recording_id)
        path = self.path_for(safe_id)
        temp_file = path.with_suffix(".tmp")

        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                if meta is not None:
                    f.write(json.dumps({"type": "meta", **meta.to_dict()}, ensure_ascii=False))
                    f.write("\n")
                for event in events:
                    f.write(json.dumps({"type": "input", **event.to_dict()}, ensure_ascii=False))
                    f.write("\n")
            temp_file.replace(path)
        except OSError as e:
            logger.error(f"Failed to save recording {safe_id}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            raise RecordingError(f"save failed: {e}") from e

        logger.info(f"Saved recording {safe_id} ({len(events)} events)")
        return safe_id

    def save_recording(self, recording: Recording) -> str:
        return self.save(recording.recording_id, recording.meta, recording.events)

    def load(self, recording_id: str) -> Recording:
        safe_id = sanitize_recording_id(recording_id)
        path = self.path_for(safe_id)
        if not path.exists():
            raise RecordingNotFound(f"Recording not found: {safe_id}")

        meta: Optional[RecordingMeta] = None
        events: list[RecordingEvent] = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entry = json.loads(stripped)
                    kind = entry.get("type")
                    if kind == "meta":
                        if meta is None:
                            meta = RecordingMeta.from_dict(entry)
                    elif kind == "input":
                        events.append(RecordingEvent.from_dict(entry))
                    else:
                        raise ValueError(f"unknown line type {kind!r}")
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    raise RecordingError(f"parse failed at {path.name}:{lineno}: {e}") from e

        return Recording(recording_id=safe_id, meta=meta, events=events)

    def list(self) -> list[dict]:
        """All recordings as ``{recordingId, meta}``, newest first."""
        entries = []
        for path in self.recordings_dir.glob("*.jsonl"):
            try:
                meta = self._read_meta(path)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable recording {path.name}: {e}")
                continue
            entries.append({"recordingId": path.stem, "meta": meta.to_dict() if meta else None})

        entries.sort(key=lambda e: (e["meta"] or {}).get("createdAt", 0), reverse=True)
        return entries

    def delete(self, recording_id: str) -> bool:
        path = self.path_for(recording_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted recording {path.stem}")
        return True

    def exists(self, recording_id: str) -> bool:
        return self.path_for(recording_id).exists()

    def _read_meta(self, path: Path) -> Optional[RecordingMeta]:
        with open(path, encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                entry = json.loads(stripped)
                if entry.get("type") == "meta":
                    return RecordingMeta.from_dict(entry)
                return None
        return None
