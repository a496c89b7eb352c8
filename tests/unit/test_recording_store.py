"""Tests for the JSONL recording store."""

import json

import pytest

from session_bridge.models import RecordingEvent, RecordingMeta
from session_bridge.recording import RecordingError
from session_bridge.recording_store import RecordingNotFound, RecordingStore


def _meta(**kwargs) -> RecordingMeta:
    defaults = dict(project_id="p", session_persist_id="persist", cwd="/work", name="demo",
                    effect_id="codex", bootstrap_command="codex", created_at=1000)
    defaults.update(kwargs)
    return RecordingMeta(**defaults)


def test_save_writes_meta_then_input_lines(store, recordings_dir):
    store.save("rec1", _meta(), [RecordingEvent(0, "ls\r"), RecordingEvent(5, "exit\r")])

    lines = (recordings_dir / "rec1.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    assert first["type"] == "meta"
    assert first["schemaVersion"] == 1
    assert first["sessionPersistId"] == "persist"
    assert first["bootstrapCommand"] == "codex"
    assert [json.loads(line) for line in lines[1:]] == [
        {"type": "input", "t": 0, "data": "ls\r"},
        {"type": "input", "t": 5, "data": "exit\r"},
    ]
    assert not list(recordings_dir.glob("*.tmp"))


def test_load_round_trips(store):
    store.save("rec1", _meta(), [RecordingEvent(0, "é\x1b[A")])
    recording = store.load("rec1")
    assert recording.recording_id == "rec1"
    assert recording.meta.name == "demo"
    assert recording.meta.created_at == 1000
    assert recording.events == [RecordingEvent(0, "é\x1b[A")]


def test_load_missing_raises_not_found(store):
    with pytest.raises(RecordingNotFound):
        store.load("nope")


def test_load_malformed_raises(store, recordings_dir):
    (recordings_dir / "bad.jsonl").write_text('{"type": "meta", "projectId": "p"}\nnot json\n')
    with pytest.raises(RecordingError):
        store.load("bad")


def test_load_skips_blank_lines_and_keeps_first_meta(store, recordings_dir):
    (recordings_dir / "r.jsonl").write_text(
        '{"type": "meta", "name": "first"}\n\n'
        '{"type": "meta", "name": "second"}\n'
        '{"type": "input", "t": 1, "data": "x"}\n'
    )
    recording = store.load("r")
    assert recording.meta.name == "first"
    assert len(recording.events) == 1


def test_ids_are_sanitized_on_disk(store, recordings_dir):
    safe_id = store.save("../escape me", _meta(), [])
    assert safe_id == "___escape_me"
    assert (recordings_dir / "___escape_me.jsonl").exists()
    assert store.exists("../escape me")


def test_list_newest_first_and_skips_unreadable(store, recordings_dir, caplog):
    store.save("old", _meta(created_at=1000), [])
    store.save("new", _meta(created_at=2000), [])
    (recordings_dir / "broken.jsonl").write_text("{oops\n")

    entries = store.list()
    assert [e["recordingId"] for e in entries] == ["new", "old"]
    assert entries[0]["meta"]["createdAt"] == 2000
    assert "Skipping unreadable recording broken.jsonl" in caplog.text


def test_delete(store):
    store.save("rec1", _meta(), [])
    assert store.delete("rec1") is True
    assert store.delete("rec1") is False
    assert store.list() == []


def test_from_config_expands_dir(tmp_path):
    store = RecordingStore.from_config({"paths": {"recordings_dir": str(tmp_path / "a" / "b")}})
    assert store.recordings_dir.is_dir()
