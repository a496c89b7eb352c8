"""Command implementations for the sbridge CLI."""

import sys
from datetime import datetime
from typing import Optional

from .client import BridgeClient
from ..replay import format_recording_t


def _unavailable() -> int:
    print("Error: session bridge unavailable", file=sys.stderr)
    return 2


def _error(data: Optional[dict], default: str) -> int:
    detail = (data or {}).get("detail") or default
    print(f"Error: {detail}", file=sys.stderr)
    return 1


def format_session_line(session: dict) -> str:
    """One line per session: name, id, activity and recording flags."""
    flags = []
    if session.get("effect_id"):
        flags.append(f"{session['effect_id']}:{'working' if session.get('agent_working') else 'idle'}")
    if session.get("persistent"):
        flags.append("persistent")
    if session.get("recording_active"):
        flags.append("REC")
    if session.get("exited"):
        flags.append(f"exited({session.get('exit_code')})")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"{session['name']} ({session['id']}){suffix}"


def format_recording_line(entry: dict) -> str:
    meta = entry.get("meta") or {}
    created = meta.get("createdAt")
    when = datetime.fromtimestamp(created / 1000).strftime("%Y-%m-%d %H:%M") if created else "-"
    name = meta.get("name") or "(unnamed)"
    effect = f" [{meta['effectId']}]" if meta.get("effectId") else ""
    return f"{entry['recordingId']}  {when}  {name}{effect}"


def resolve_session_id(client: BridgeClient, identifier: str) -> Optional[str]:
    """Accept a session id or a session name."""
    sessions = client.list_sessions()
    if sessions is None:
        return None
    for session in sessions:
        if session["id"] == identifier:
            return identifier
    for session in sessions:
        if session["name"] == identifier:
            return session["id"]
    return identifier


def cmd_status(client: BridgeClient) -> int:
    """
    Print working/recording counts and the session summary.

    Exit codes:
        0: OK
        2: Session bridge unavailable
    """
    data, success, unavailable = client.status()
    if unavailable:
        return _unavailable()
    if not success:
        return _error(data, "status failed")

    print(f"{data['working_count']} working, {data['recording_count']} recording")
    for line in data.get("lines", []):
        print(f"  {line}")
    return 0


def cmd_sessions(client: BridgeClient) -> int:
    sessions = client.list_sessions()
    if sessions is None:
        return _unavailable()
    if not sessions:
        print("No sessions")
        return 0
    for session in sessions:
        print(format_session_line(session))
    return 0


def cmd_record(client: BridgeClient, action: str, identifier: str, name: Optional[str] = None) -> int:
    session_id = resolve_session_id(client, identifier)
    if session_id is None:
        return _unavailable()

    if action == "start":
        data, success, unavailable = client.start_recording(session_id, name)
    else:
        data, success, unavailable = client.stop_recording(session_id)
    if unavailable:
        return _unavailable()
    if not success:
        return _error(data, f"could not {action} recording")

    verb = "Recording" if action == "start" else "Saved recording"
    print(f"{verb} {data['recording_id']}")
    return 0


def cmd_recordings(client: BridgeClient) -> int:
    recordings = client.list_recordings()
    if recordings is None:
        return _unavailable()
    if not recordings:
        print("No recordings")
        return 0
    for entry in recordings:
        print(format_recording_line(entry))
    return 0


def cmd_recording_show(client: BridgeClient, recording_id: str) -> int:
    data, success, unavailable = client.get_recording(recording_id)
    if unavailable:
        return _unavailable()
    if not success:
        return _error(data, "recording not found")

    meta = data.get("meta") or {}
    print(f"{data['recordingId']}: {meta.get('name') or '(unnamed)'}")
    if meta.get("bootstrapCommand"):
        print(f"  command: {meta['bootstrapCommand']}")
    if meta.get("cwd"):
        print(f"  cwd: {meta['cwd']}")
    for event in data.get("events", []):
        print(f"  {format_recording_t(event['t']):>8}  {event['data']!r}")
    return 0


def cmd_recording_delete(client: BridgeClient, recording_id: str) -> int:
    data, success, unavailable = client.delete_recording(recording_id)
    if unavailable:
        return _unavailable()
    if not success:
        return _error(data, "recording not found")
    print(f"Deleted {recording_id}")
    return 0


def _send_steps(client: BridgeClient, replay_id: str, total: int, send_all: bool) -> tuple[int, bool]:
    """Send one step (or all of them). Returns (exit code, replay finished)."""
    while True:
        data, success, unavailable = client.replay_next(replay_id)
        if unavailable:
            return _unavailable(), False
        if not success:
            return _error(data, "replay failed"), False
        if not data["sent"]:
            return 0, True
        print(f"Sent step {data['index']}/{total} to {data['target_session_id']}")
        if data["finished"]:
            return 0, True
        if not send_all:
            return 0, False


def _advance(client: BridgeClient, replay_id: str, total: int, send_all: bool) -> int:
    code, finished = _send_steps(client, replay_id, total, send_all)
    if send_all or finished:
        client.close_replay(replay_id)
        if finished:
            print(f"Replay {replay_id} finished")
    else:
        print(f"Replay {replay_id} open; continue with: sbridge replay next {replay_id}")
    return code


def cmd_replay(client: BridgeClient, recording_id: str, send_all: bool = False) -> int:
    """
    Replay a recording into a new session: one step, or every step with --all.

    A single-step replay stays open on the server; `sbridge replay next` and
    `sbridge replay close` continue or discard it by replay id.

    Exit codes:
        0: Step(s) sent
        1: Replay failed
        2: Session bridge unavailable
    """
    replay, success, unavailable = client.open_replay(recording_id)
    if unavailable:
        return _unavailable()
    if not success:
        return _error(replay, "recording not found")
    return _advance(client, replay["replay_id"], len(replay["steps"]), send_all)


def cmd_replay_next(client: BridgeClient, replay_id: str, send_all: bool = False) -> int:
    """Send the next step (or every remaining one) of an open replay."""
    replay, success, unavailable = client.get_replay(replay_id)
    if unavailable:
        return _unavailable()
    if not success:
        return _error(replay, "replay not found")
    return _advance(client, replay_id, len(replay["steps"]), send_all)


def cmd_replay_close(client: BridgeClient, replay_id: str) -> int:
    data, success, unavailable = client.close_replay(replay_id)
    if unavailable:
        return _unavailable()
    if not success:
        return _error(data, "replay not found")
    print(f"Closed replay {replay_id}")
    return 0
