"""Routes process output to attached terminal surfaces, buffering while detached."""

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFERED_SESSIONS = 32
DEFAULT_MAX_CHUNKS_PER_SESSION = 200


class Surface(Protocol):
    """A UI-bound terminal surface."""

    def write(self, data: str) -> None:
        ...

    def is_ready(self) -> bool:
        """False while the surface is still initializing and cannot render."""
        ...


@dataclass
class Buffering:
    """No surface attached: output queues up (bounded, oldest dropped first)."""
    chunks: deque = field(default_factory=deque)


@dataclass
class Attached:
    """A surface is bound. `backlog` holds output that arrived before it was ready."""
    surface: Surface
    backlog: deque = field(default_factory=deque)


SurfaceState = Union[Attached, Buffering]


class OutputRelay:
    """
    Per-session output routing.

    Each session is either `Attached(surface)` or `Buffering(queue)`. The
    number of sessions in the buffering state is capped at
    `max_buffered_sessions`; a new one evicts the oldest buffered session
    wholesale. Each queue keeps at most `max_chunks_per_session` chunks.
    """

    def __init__(
        self,
        max_buffered_sessions: int = DEFAULT_MAX_BUFFERED_SESSIONS,
        max_chunks_per_session: int = DEFAULT_MAX_CHUNKS_PER_SESSION,
    ):
        self.max_buffered_sessions = max(1, max_buffered_sessions)
        self.max_chunks_per_session = max(1, max_chunks_per_session)
        self._states: dict[str, SurfaceState] = {}
        # Buffering sessions in creation order, for eviction
        self._buffer_order: OrderedDict[str, None] = OrderedDict()
        self._closing: set[str] = set()

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "OutputRelay":
        relay_config = (config or {}).get("relay", {})
        return cls(
            max_buffered_sessions=relay_config.get("max_buffered_sessions", DEFAULT_MAX_BUFFERED_SESSIONS),
            max_chunks_per_session=relay_config.get("max_chunks_per_session", DEFAULT_MAX_CHUNKS_PER_SESSION),
        )

    def state(self, session_id: str) -> SurfaceState:
        """Current routing state; a session never seen is an empty `Buffering`."""
        return self._states.get(session_id) or Buffering()

    def buffered_chunks(self, session_id: str) -> list[str]:
        state = self._states.get(session_id)
        if isinstance(state, Buffering):
            return list(state.chunks)
        if isinstance(state, Attached):
            return list(state.backlog)
        return []

    @property
    def buffered_session_count(self) -> int:
        return len(self._buffer_order)

    def is_attached(self, session_id: str) -> bool:
        return isinstance(self._states.get(session_id), Attached)

    def on_output(self, session_id: str, data: str):
        """Deliver `data` to the session's surface, or buffer it."""
        if session_id in self._closing:
            logger.debug(f"Dropping output for closing session {session_id}")
            return

        state = self._states.get(session_id)
        if isinstance(state, Attached):
            if state.surface.is_ready():
                self._flush_backlog(state)
                state.surface.write(data)
            else:
                self._append(state.backlog, data, session_id)
            return

        if state is None:
            if len(self._buffer_order) >= self.max_buffered_sessions:
                self._evict_oldest()
            state = Buffering()
            self._states[session_id] = state
            self._buffer_order[session_id] = None
        self._append(state.chunks, data, session_id)

    def on_attach(self, session_id: str, surface: Surface):
        """Bind a surface and drain everything buffered for the session, in order."""
        self._closing.discard(session_id)
        previous = self._states.get(session_id)
        attached = Attached(surface=surface)
        self._states[session_id] = attached
        self._buffer_order.pop(session_id, None)

        if isinstance(previous, Buffering):
            attached.backlog = previous.chunks
        elif isinstance(previous, Attached):
            attached.backlog = previous.backlog

        if surface.is_ready():
            self._flush_backlog(attached)

    def notify_ready(self, session_id: str):
        """The attached surface finished initializing: drain its backlog."""
        state = self._states.get(session_id)
        if isinstance(state, Attached) and state.surface.is_ready():
            self._flush_backlog(state)

    def on_detach(self, session_id: str):
        """Unbind the surface; later output buffers again."""
        state = self._states.pop(session_id, None)
        if isinstance(state, Buffering):
            # Never attached: keep the queue as is
            self._states[session_id] = state

    def begin_close(self, session_id: str):
        """Discard everything for the session and drop its future output."""
        self.discard(session_id)
        self._closing.add(session_id)

    def end_close(self, session_id: str):
        self._closing.discard(session_id)

    def is_closing(self, session_id: str) -> bool:
        return session_id in self._closing

    def discard(self, session_id: str):
        self._states.pop(session_id, None)
        self._buffer_order.pop(session_id, None)

    def _append(self, queue: deque, data: str, session_id: str):
        queue.append(data)
        overflow = len(queue) - self.max_chunks_per_session
        if overflow > 0:
            for _ in range(overflow):
                queue.popleft()
            logger.debug(f"Output buffer for {session_id} full, dropped {overflow} oldest chunk(s)")

    def _flush_backlog(self, state: Attached):
        while state.backlog:
            state.surface.write(state.backlog.popleft())

    def _evict_oldest(self):
        oldest, _ = self._buffer_order.popitem(last=False)
        self._states.pop(oldest, None)
        logger.debug(f"Evicted buffered output for session {oldest}")
