"""Shared pytest fixtures for session bridge tests."""

from typing import Optional

import pytest
from fastapi.testclient import TestClient

from session_bridge.bridge import SessionBridge
from session_bridge.models import SessionInfo, WriteSource
from session_bridge.process_host import ProcessHost, ProcessHostError, unique_name
from session_bridge.recording_store import RecordingStore
from session_bridge.server import create_app


class FakeProcessHost(ProcessHost):
    """
    In-memory process host.

    Records every call; `fail_writes` / `fail_create` make the next calls
    raise ProcessHostError.
    """

    def __init__(self):
        super().__init__()
        self.created: list[dict] = []
        self.writes: list[tuple[str, str, WriteSource]] = []
        self.resizes: list[tuple[str, int, int]] = []
        self.closed: list[str] = []
        self.detached: list[str] = []
        self.fail_writes = 0
        self.fail_create = False
        self.fail_close = False
        self._next_id = 1
        self._names: set[str] = set()

    async def create(self, name=None, command=None, cwd=None, env_vars=None, persistent=False, persist_id=None):
        if self.fail_create:
            raise ProcessHostError("spawn failed")
        session_id = f"s{self._next_id}"
        self._next_id += 1
        base = name or (command.split()[0] if command else "shell")
        final_name = unique_name(self._names, base)
        self._names.add(final_name)
        self.created.append({
            "id": session_id,
            "name": final_name,
            "command": command,
            "cwd": cwd,
            "env_vars": env_vars,
            "persistent": persistent,
            "persist_id": persist_id,
        })
        return SessionInfo(id=session_id, name=final_name, command=command or "shell", cwd=cwd)

    async def write(self, session_id, data, source=WriteSource.USER):
        if self.fail_writes:
            self.fail_writes -= 1
            raise ProcessHostError("write failed")
        self.writes.append((session_id, data, source))

    async def resize(self, session_id, cols, rows):
        self.resizes.append((session_id, cols, rows))

    async def close(self, session_id):
        if self.fail_close:
            raise ProcessHostError("close failed")
        self.closed.append(session_id)

    async def detach(self, session_id):
        self.detached.append(session_id)

    def written(self, session_id: Optional[str] = None) -> list[str]:
        return [data for sid, data, _ in self.writes if session_id is None or sid == session_id]


class FakeSurface:
    """Terminal surface that collects writes; `ready` toggles rendering readiness."""

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.received: list[str] = []

    def write(self, data: str) -> None:
        self.received.append(data)

    def is_ready(self) -> bool:
        return self.ready


@pytest.fixture
def fake_host() -> FakeProcessHost:
    return FakeProcessHost()


@pytest.fixture
def recordings_dir(tmp_path):
    path = tmp_path / "recordings"
    path.mkdir()
    return path


@pytest.fixture
def store(recordings_dir) -> RecordingStore:
    return RecordingStore(str(recordings_dir))


@pytest.fixture
def bridge_config(recordings_dir) -> dict:
    """Config with short delays so timer tests stay fast."""
    return {
        "paths": {"recordings_dir": str(recordings_dir)},
        "activity": {"default_idle_after_ms": 50},
        "replay": {"enter_delay_ms": 1, "enter_repeat_delay_ms": 1},
        "timeouts": {"closing_grace_seconds": 0.05},
    }


@pytest.fixture
def bridge(fake_host, store, bridge_config) -> SessionBridge:
    return SessionBridge(fake_host, store=store, config=bridge_config)


@pytest.fixture
def api_client(bridge, bridge_config):
    with TestClient(create_app(bridge=bridge, config=bridge_config)) as client:
        yield client


@pytest.fixture
def make_surface():
    """Factory for FakeSurface instances."""
    return FakeSurface
