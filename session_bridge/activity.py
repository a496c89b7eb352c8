"""Agent activity tracking: idle/working state machine with per-session idle timers."""

import logging
from typing import Callable, Optional

from .effects import EffectCatalog
from .models import ActivityState, Effect, Session
from .scheduler import KeyedScheduler

logger = logging.getLogger(__name__)

DEFAULT_IDLE_AFTER_MS = 2000


class ActivityMonitor:
    """
    Flips a session's `agent_working` flag on output and back off after a quiet period.

    Only sessions with a classified effect participate. Each session has at
    most one live idle timer; new output replaces it.
    """

    def __init__(self, catalog: Optional[EffectCatalog] = None, config: Optional[dict] = None):
        self.catalog = catalog or EffectCatalog()
        self.config = config or {}
        activity_config = self.config.get("activity", {})
        self.default_idle_after_ms = activity_config.get("default_idle_after_ms", DEFAULT_IDLE_AFTER_MS)

        self._timers = KeyedScheduler()
        self._active_session_id: Optional[str] = None
        self._status_callback: Optional[Callable[[str, ActivityState], None]] = None

    def set_status_callback(self, callback: Callable[[str, ActivityState], None]):
        """Set the callback invoked on every idle/working transition."""
        self._status_callback = callback

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    def set_active_session(self, session_id: Optional[str]):
        """Record which session is currently foregrounded in the UI."""
        self._active_session_id = session_id

    def idle_after_ms(self, effect: Optional[Effect]) -> int:
        if effect and effect.idle_after_ms is not None:
            return effect.idle_after_ms
        return self.default_idle_after_ms

    def has_timer(self, session_id: str) -> bool:
        return self._timers.is_pending(session_id)

    def mark_output(self, session: Session) -> bool:
        """
        Handle new output for a session.

        Returns True if the session is (still) working afterwards and its idle
        deadline was extended.
        """
        if not session.effect_id or session.exited or session.closing:
            return False

        # Multiplexer redraws arrive for background sessions too; only the
        # foregrounded session, or one already working, may (re)activate.
        if (
            session.persistent
            and not session.agent_working
            and self._active_session_id != session.id
        ):
            return False

        if not session.agent_working:
            self._set_state(session, ActivityState.WORKING)
        self.schedule_idle(session)
        return True

    def schedule_idle(self, session: Session):
        """(Re)start the idle timer for a session using its effect's timeout."""
        if not session.effect_id:
            self.cancel(session.id)
            return
        delay_ms = self.idle_after_ms(self.catalog.get(session.effect_id))

        def fire():
            if session.agent_working:
                self._set_state(session, ActivityState.IDLE)
                logger.debug(f"Session {session.id} idle after {delay_ms}ms")

        self._timers.schedule(session.id, delay_ms / 1000.0, fire)

    def apply_effect(self, session: Session, effect: Optional[Effect]):
        """Command changed: attach or clear the session's effect."""
        session.effect_id = effect.id if effect else None
        if effect:
            if not session.agent_working:
                self._set_state(session, ActivityState.WORKING)
            self.schedule_idle(session)
        else:
            self.force_idle(session)

    def force_idle(self, session: Session):
        """Cancel the timer and force `idle` (exit, close, effect cleared)."""
        self.cancel(session.id)
        if session.agent_working:
            self._set_state(session, ActivityState.IDLE)

    def cancel(self, session_id: str):
        self._timers.cancel(session_id)

    def stop_all(self):
        self._timers.cancel_all()

    def _set_state(self, session: Session, state: ActivityState):
        session.agent_working = state is ActivityState.WORKING
        if self._status_callback:
            try:
                self._status_callback(session.id, state)
            except Exception as e:
                logger.error(f"Activity status callback failed for {session.id}: {e}")
