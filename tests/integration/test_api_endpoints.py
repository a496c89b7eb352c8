"""Integration tests for the control API."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from session_bridge.models import WriteSource
from session_bridge.recording import RecordingError
from session_bridge.server import create_app


def _create(api_client, **body) -> dict:
    response = api_client.post("/sessions", json=body)
    assert response.status_code == 200
    return response.json()


class TestHealthEndpoints:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_no_bridge_configured(self):
        client = TestClient(create_app())
        assert client.get("/status").status_code == 503
        assert client.get("/health").status_code == 200

    def test_status_counts(self, api_client):
        agent = _create(api_client, name="agent", command="codex")
        api_client.post(f"/sessions/{agent['id']}/recording/start", json={"name": "demo"})

        data = api_client.get("/status").json()
        assert data["working_count"] == 1
        assert data["recording_count"] == 1
        assert data["lines"] == ["agent (REC) - default"]


class TestSessionEndpoints:
    def test_create_and_get(self, api_client, fake_host):
        session = _create(api_client, command="claude", cwd="/work", persistent=True, persist_id="p-1")
        assert session["effect_id"] == "claude"
        assert session["agent_working"] is True
        assert session["persist_id"] == "p-1"
        assert fake_host.created[0]["persistent"] is True

        response = api_client.get(f"/sessions/{session['id']}")
        assert response.status_code == 200
        assert response.json()["cwd"] == "/work"

        listed = api_client.get("/sessions").json()["sessions"]
        assert [s["id"] for s in listed] == [session["id"]]

    def test_create_failure_reported(self, api_client, fake_host):
        fake_host.fail_create = True
        response = api_client.post("/sessions", json={"command": "codex"})
        assert response.status_code == 500
        errors = api_client.get("/errors").json()["errors"]
        assert errors[-1]["title"] == "Failed to create session"
        assert errors[-1]["message"] == "spawn failed"

    def test_unknown_session(self, api_client):
        assert api_client.get("/sessions/nope").status_code == 404
        assert api_client.post("/sessions/nope/input", json={"data": "x"}).status_code == 404
        assert api_client.delete("/sessions/nope").status_code == 404

    def test_close(self, api_client, fake_host):
        session = _create(api_client)
        response = api_client.delete(f"/sessions/{session['id']}")
        assert response.json() == {"status": "closed", "session_id": session["id"]}
        assert fake_host.closed == [session["id"]]
        assert api_client.get(f"/sessions/{session['id']}").status_code == 404

    def test_detach(self, api_client, fake_host):
        plain = _create(api_client)
        assert api_client.post(f"/sessions/{plain['id']}/detach").status_code == 400

        kept = _create(api_client, persistent=True, persist_id="keep")
        response = api_client.post(f"/sessions/{kept['id']}/detach")
        assert response.json() == {"status": "detached", "persist_id": "keep"}
        assert fake_host.detached == [kept["id"]]

    def test_send_input(self, api_client, fake_host):
        session = _create(api_client)
        response = api_client.post(f"/sessions/{session['id']}/input", json={"data": "ls\r"})
        assert response.status_code == 200
        assert fake_host.writes[-1] == (session["id"], "ls\r", WriteSource.USER)

        response = api_client.post(f"/sessions/{session['id']}/input", json={"data": "x", "source": "system"})
        assert response.status_code == 200
        assert fake_host.writes[-1][2] is WriteSource.SYSTEM

    def test_send_input_errors(self, api_client, fake_host):
        session = _create(api_client)
        response = api_client.post(f"/sessions/{session['id']}/input", json={"data": "x", "source": "robot"})
        assert response.status_code == 400

        fake_host.fail_writes = 1
        response = api_client.post(f"/sessions/{session['id']}/input", json={"data": "x"})
        assert response.status_code == 500
        assert response.json()["detail"] == "write failed"

    def test_resize(self, api_client, fake_host):
        session = _create(api_client)
        response = api_client.post(f"/sessions/{session['id']}/resize", json={"cols": 120, "rows": 40})
        assert response.status_code == 200
        assert fake_host.resizes == [(session["id"], 120, 40)]

    def test_scroll_key_and_wheel(self, api_client, fake_host):
        plain = _create(api_client)
        response = api_client.post(f"/sessions/{plain['id']}/key", json={"key": "PageUp", "shift": True})
        assert response.json() == {"consumed": False}

        kept = _create(api_client, persistent=True)
        response = api_client.post(f"/sessions/{kept['id']}/key", json={"key": "PageUp", "shift": True, "rows": 2})
        assert response.json() == {"consumed": True}
        assert fake_host.writes[-1] == (kept["id"], "\x13kk", WriteSource.SYSTEM)

        response = api_client.post(f"/sessions/{kept['id']}/wheel", json={"delta_y": 3, "delta_mode": 1})
        assert response.json() == {"consumed": True}
        assert fake_host.writes[-1] == (kept["id"], "jjj", WriteSource.SYSTEM)

        response = api_client.post(f"/sessions/{kept['id']}/wheel", json={"delta_y": 3, "delta_mode": 7})
        assert response.status_code == 400

    def test_command_change_and_activate(self, api_client):
        session = _create(api_client)
        response = api_client.post(f"/sessions/{session['id']}/command", json={"command": "codex --full-auto"})
        assert response.json()["effect_id"] == "codex"
        assert response.json()["restore_command"] == "codex --full-auto"

        response = api_client.post(f"/sessions/{session['id']}/command", json={"command": None})
        assert response.json()["effect_id"] is None
        assert response.json()["agent_working"] is False

        response = api_client.post(f"/sessions/{session['id']}/activate")
        assert response.json() == {"active_session_id": session["id"]}


class TestRecordingAndReplayEndpoints:
    def test_record_then_replay(self, api_client, fake_host):
        session = _create(api_client, name="agent", command="codex", cwd="/work")
        sid = session["id"]

        recording_id = api_client.post(f"/sessions/{sid}/recording/start", json={"name": "demo"}).json()["recording_id"]
        api_client.post(f"/sessions/{sid}/input", json={"data": "ls\r"})
        api_client.post(f"/sessions/{sid}/input", json={"data": "\x1b[A", "source": "system"})
        api_client.post(f"/sessions/{sid}/input", json={"data": "pwd\r"})
        response = api_client.post(f"/sessions/{sid}/recording/stop")
        assert response.json() == {"recording_id": recording_id}
        assert api_client.get(f"/sessions/{sid}").json()["last_recording_id"] == recording_id

        listed = api_client.get("/recordings").json()["recordings"]
        assert [r["recordingId"] for r in listed] == [recording_id]
        assert listed[0]["meta"]["bootstrapCommand"] == "codex"

        recording = api_client.get(f"/recordings/{recording_id}").json()
        assert [e["data"] for e in recording["events"]] == ["ls\r", "pwd\r"]

        replay = api_client.post("/replays", json={"recording_id": recording_id}).json()
        assert replay["steps"] == ["ls\r", "pwd\r"]
        assert replay["target_session_id"] is None
        replay_id = replay["replay_id"]

        first = api_client.post(f"/replays/{replay_id}/next").json()
        assert first["sent"] is True
        assert first["index"] == 1
        target = first["target_session_id"]
        assert fake_host.created[-1]["name"] == "replay: demo"
        assert fake_host.created[-1]["command"] == "codex"

        second = api_client.post(f"/replays/{replay_id}/next").json()
        assert second["finished"] is True
        done = api_client.post(f"/replays/{replay_id}/next").json()
        assert done["sent"] is False

        assert fake_host.written(target) == ["ls", "\r", "pwd", "\r"]
        assert api_client.get(f"/replays/{replay_id}").json()["index"] == 2

        assert api_client.delete(f"/replays/{replay_id}").status_code == 200
        assert api_client.get(f"/replays/{replay_id}").status_code == 404

    def test_recording_conflicts(self, api_client):
        session = _create(api_client)
        sid = session["id"]
        assert api_client.post(f"/sessions/{sid}/recording/stop").status_code == 409

        assert api_client.post(f"/sessions/{sid}/recording/start").status_code == 200
        response = api_client.post(f"/sessions/{sid}/recording/start")
        assert response.status_code == 409
        assert "already recording" in response.json()["detail"]

    def test_failed_save_returns_500_then_retry_succeeds(self, api_client, store):
        sid = _create(api_client)["id"]
        recording_id = api_client.post(f"/sessions/{sid}/recording/start").json()["recording_id"]
        api_client.post(f"/sessions/{sid}/input", json={"data": "ls\r"})

        with patch.object(store, "save_recording", side_effect=RecordingError("save failed: disk full")):
            response = api_client.post(f"/sessions/{sid}/recording/stop")
        assert response.status_code == 500
        assert "disk full" in response.json()["detail"]

        response = api_client.post(f"/sessions/{sid}/recording/stop")
        assert response.json() == {"recording_id": recording_id}
        assert [e.data for e in store.load(recording_id).events] == ["ls\r"]

    def test_missing_and_corrupt_recordings(self, api_client, recordings_dir):
        assert api_client.get("/recordings/missing").status_code == 404
        assert api_client.post("/replays", json={"recording_id": "missing"}).status_code == 404
        assert api_client.delete("/recordings/missing").status_code == 404

        (recordings_dir / "broken.jsonl").write_text('{"type": "meta"}\nnot json\n')
        assert api_client.get("/recordings/broken").status_code == 409
        assert api_client.post("/replays", json={"recording_id": "broken"}).status_code == 409

    def test_replay_step_failure(self, api_client, fake_host, recordings_dir):
        (recordings_dir / "r1.jsonl").write_text('{"type": "input", "t": 0, "data": "ls\\r"}\n')
        replay_id = api_client.post("/replays", json={"recording_id": "r1"}).json()["replay_id"]

        fake_host.fail_writes = 1
        response = api_client.post(f"/replays/{replay_id}/next")
        assert response.status_code == 502
        assert api_client.get(f"/replays/{replay_id}").json()["index"] == 0

        assert api_client.post(f"/replays/{replay_id}/next").json()["sent"] is True
        assert api_client.post("/replays/nope/next").status_code == 404

    def test_delete_recording(self, api_client):
        session = _create(api_client)
        sid = session["id"]
        recording_id = api_client.post(f"/sessions/{sid}/recording/start").json()["recording_id"]
        api_client.post(f"/sessions/{sid}/recording/stop")

        assert api_client.delete(f"/recordings/{recording_id}").status_code == 200
        assert api_client.get(f"/sessions/{sid}").json()["last_recording_id"] is None
        assert api_client.get("/recordings").json()["recordings"] == []
