"""Tests for the idle/working state machine."""

import asyncio

import pytest

from session_bridge.activity import ActivityMonitor
from session_bridge.effects import EffectCatalog
from session_bridge.models import ActivityState, Effect, Session

IDLE_MS = 40


@pytest.fixture
def catalog():
    return EffectCatalog([
        Effect(id="codex", label="Codex", match_commands=("codex",), idle_after_ms=IDLE_MS),
        Effect(id="plain", label="Plain", match_commands=("plain",)),
    ])


@pytest.fixture
def monitor(catalog):
    m = ActivityMonitor(catalog, {"activity": {"default_idle_after_ms": 30}})
    m.transitions = []
    m.set_status_callback(lambda sid, state: m.transitions.append((sid, state)))
    return m


def _session(effect_id="codex", **kwargs) -> Session:
    return Session(id=kwargs.pop("id", "s1"), name="s", effect_id=effect_id, **kwargs)


@pytest.mark.asyncio
async def test_output_transitions_to_working_then_idle(monitor):
    session = _session()
    assert monitor.mark_output(session) is True
    assert session.agent_working
    assert monitor.transitions == [("s1", ActivityState.WORKING)]

    await asyncio.sleep(IDLE_MS / 1000 / 2)
    assert session.agent_working, "went idle before the timeout"

    await asyncio.sleep(IDLE_MS / 1000)
    assert not session.agent_working
    assert monitor.transitions[-1] == ("s1", ActivityState.IDLE)


@pytest.mark.asyncio
async def test_output_extends_deadline_without_double_transition(monitor):
    session = _session()
    monitor.mark_output(session)
    for _ in range(3):
        await asyncio.sleep(IDLE_MS / 1000 / 2)
        monitor.mark_output(session)
        assert session.agent_working

    assert monitor.transitions == [("s1", ActivityState.WORKING)]
    await asyncio.sleep(IDLE_MS / 1000 * 2)
    assert monitor.transitions == [("s1", ActivityState.WORKING), ("s1", ActivityState.IDLE)]


@pytest.mark.asyncio
async def test_at_most_one_timer_per_session(monitor):
    session = _session()
    for _ in range(5):
        monitor.mark_output(session)
    assert len(monitor._timers) == 1


@pytest.mark.asyncio
async def test_default_timeout_used_without_effect_value(monitor):
    session = _session(effect_id="plain")
    monitor.mark_output(session)
    await asyncio.sleep(0.06)
    assert not session.agent_working


@pytest.mark.asyncio
async def test_no_effect_exited_or_closing_ignored(monitor):
    assert monitor.mark_output(_session(effect_id=None)) is False
    assert monitor.mark_output(_session(exited=True)) is False
    assert monitor.mark_output(_session(closing=True)) is False
    assert monitor.transitions == []


@pytest.mark.asyncio
async def test_force_idle_cancels_timer(monitor):
    session = _session()
    monitor.mark_output(session)
    monitor.force_idle(session)
    assert not session.agent_working
    assert not monitor.has_timer("s1")


@pytest.mark.asyncio
async def test_apply_effect_none_forces_idle(monitor, catalog):
    session = _session(effect_id=None)
    monitor.apply_effect(session, catalog.get("codex"))
    assert session.effect_id == "codex"
    assert session.agent_working
    assert monitor.has_timer("s1")

    monitor.apply_effect(session, None)
    assert session.effect_id is None
    assert not session.agent_working
    assert not monitor.has_timer("s1")


class TestPersistentBackgroundNoise:
    @pytest.mark.asyncio
    async def test_background_idle_session_stays_idle(self, monitor):
        session = _session(persistent=True)
        monitor.set_active_session("other")
        assert monitor.mark_output(session) is False
        assert not session.agent_working

    @pytest.mark.asyncio
    async def test_foregrounded_session_activates(self, monitor):
        session = _session(persistent=True)
        monitor.set_active_session("s1")
        assert monitor.mark_output(session) is True
        assert session.agent_working

    @pytest.mark.asyncio
    async def test_background_working_session_extends(self, monitor):
        session = _session(persistent=True, agent_working=True)
        monitor.set_active_session(None)
        assert monitor.mark_output(session) is True
        assert monitor.has_timer("s1")

    @pytest.mark.asyncio
    async def test_non_persistent_background_activates(self, monitor):
        session = _session()
        monitor.set_active_session("other")
        assert monitor.mark_output(session) is True


@pytest.mark.asyncio
async def test_failing_status_callback_does_not_break_transition(catalog, caplog):
    monitor = ActivityMonitor(catalog)

    def boom(session_id, state):
        raise RuntimeError("callback broke")

    monitor.set_status_callback(boom)
    session = _session()
    monitor.mark_output(session)
    assert session.agent_working
    assert "callback broke" in caplog.text
    monitor.stop_all()
