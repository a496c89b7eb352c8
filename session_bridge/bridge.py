"""Session bridge: the registry that wires the process host to relays, activity, recording and replay."""

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Awaitable, Callable, Optional

from .activity import ActivityMonitor
from .ansi import OscReportScanner
from .effects import EffectCatalog
from .models import ActivityState, ErrorReport, Recording, RecordingMeta, Session, StatusSummary, WriteSource
from .output_relay import OutputRelay, Surface
from .persistent_relay import KeyEvent, PersistentRelay, WheelEvent
from .process_host import ProcessHost
from .recording import NotRecording, RecordingEngine, RecordingError, default_recording_name, make_recording_id
from .recording_store import RecordingStore
from .replay import ReplayError, ReplaySession, resolve_bootstrap_command, replay_session_name
from .scheduler import KeyedScheduler

logger = logging.getLogger(__name__)

DEFAULT_CLOSING_GRACE_SECONDS = 30
MAX_RECENT_ERRORS = 50
MAX_STATUS_LINES = 10
MAX_PENDING_EXIT_CODES = 256


class SessionNotFound(KeyError):
    """No live session with the given id."""


class ReplayNotFound(KeyError):
    """No open replay with the given id."""


class SessionBridge:
    """
    Owns every per-session structure, keyed by session id.

    The process host pushes `handle_output` / `handle_exit`; the UI and the
    control API call the remaining operations. All mutation happens on the
    event loop, so per-session ordering follows call order.
    """

    def __init__(
        self,
        host: ProcessHost,
        store: Optional[RecordingStore] = None,
        config: Optional[dict] = None,
        catalog: Optional[EffectCatalog] = None,
    ):
        self.config = config or {}
        self.host = host
        self.catalog = catalog or EffectCatalog.from_config(self.config)
        self.store = store or RecordingStore.from_config(self.config)

        self.sessions: dict[str, Session] = {}
        self.relay = OutputRelay.from_config(self.config)
        self.activity = ActivityMonitor(self.catalog, self.config)
        self.recorder = RecordingEngine()
        self.persistent_relays: dict[str, PersistentRelay] = {}
        self.replays: dict[str, ReplaySession] = {}
        self.recent_errors: deque[ErrorReport] = deque(maxlen=MAX_RECENT_ERRORS)

        self._osc_scanners: dict[str, OscReportScanner] = {}
        self._closing: set[str] = set()
        self._pending_exit_codes: OrderedDict[str, Optional[int]] = OrderedDict()
        self._unsaved_recordings: dict[str, list[Recording]] = {}
        self._grace_timers = KeyedScheduler()
        self._background_tasks: set[asyncio.Task] = set()
        self.closing_grace_seconds = self.config.get("timeouts", {}).get(
            "closing_grace_seconds", DEFAULT_CLOSING_GRACE_SECONDS
        )

        self._error_callback: Optional[Callable[[ErrorReport], Awaitable[None]]] = None
        self._status_callback: Optional[Callable[[str, ActivityState], None]] = None

        host.set_output_handler(self.handle_output)
        host.set_exit_handler(self.handle_exit)
        self.activity.set_status_callback(self._on_activity_change)

    def set_error_callback(self, callback: Callable[[ErrorReport], Awaitable[None]]):
        """Set the callback for user-visible failures."""
        self._error_callback = callback

    def set_status_callback(self, callback: Callable[[str, ActivityState], None]):
        """Set the callback for idle/working transitions."""
        self._status_callback = callback

    # Errors

    async def report_error(self, title: str, err: Exception, session_id: Optional[str] = None) -> ErrorReport:
        report = ErrorReport(title=title, message=str(err), session_id=session_id)
        logger.error(f"{title}: {err}" + (f" (session {session_id})" if session_id else ""))
        self.recent_errors.append(report)
        if self._error_callback:
            try:
                await self._error_callback(report)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")
        return report

    def _spawn(self, coro: Awaitable):
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # Registry

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> list[Session]:
        return list(self.sessions.values())

    def _require(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def is_closing(self, session_id: str) -> bool:
        return session_id in self._closing

    async def create_session(
        self,
        name: Optional[str] = None,
        command: Optional[str] = None,
        cwd: Optional[str] = None,
        env_vars: Optional[dict[str, str]] = None,
        persistent: bool = False,
        persist_id: Optional[str] = None,
        project_id: Optional[str] = None,
        restore_command: Optional[str] = None,
    ) -> Session:
        """Spawn a session through the host and register it."""
        session = Session(id="", persistent=persistent, project_id=project_id or "default")
        if persist_id:
            session.persist_id = persist_id

        info = await self.host.create(
            name=name,
            command=command,
            cwd=cwd,
            env_vars=env_vars,
            persistent=persistent,
            persist_id=session.persist_id,
        )

        session.id = info.id
        session.name = info.name
        session.command = info.command
        session.cwd = info.cwd or cwd
        session.launch_command = (command or "").strip() or None
        session.restore_command = restore_command
        self.sessions[session.id] = session
        self._osc_scanners[session.id] = OscReportScanner()
        if persistent:
            self.persistent_relays[session.id] = PersistentRelay(session.id, self.config)

        effect = self.catalog.classify(command, name)
        if effect:
            self.activity.apply_effect(session, effect)

        if session.id in self._pending_exit_codes:
            # The exit raced ahead of registration
            self._mark_exited(session, self._pending_exit_codes.pop(session.id))

        logger.info(
            f"Registered session {session.name} ({session.id})"
            + (f" effect={session.effect_id}" if session.effect_id else "")
            + (" [persistent]" if persistent else "")
        )
        return session

    def _forget(self, session_id: str):
        """Synchronously drop every per-session structure and enter the closing grace period."""
        self.activity.cancel(session_id)
        self.relay.begin_close(session_id)
        self.persistent_relays.pop(session_id, None)
        self._osc_scanners.pop(session_id, None)
        self.sessions.pop(session_id, None)
        if self.activity.active_session_id == session_id:
            self.activity.set_active_session(None)
        for replay in self.replays.values():
            if replay.target_session_id == session_id:
                replay.target_session_id = None

        self._closing.add(session_id)
        self._grace_timers.schedule(session_id, self.closing_grace_seconds, lambda: self._end_grace(session_id))

    def _end_grace(self, session_id: str):
        self._closing.discard(session_id)
        self.relay.end_close(session_id)

    async def close_session(self, session_id: str) -> bool:
        """Close a session. Returns False if the host reported a failure."""
        session = self._require(session_id)
        session.closing = True
        self.activity.force_idle(session)
        self._forget(session_id)
        if self.recorder.is_recording(session_id):
            await self._finish_recording(session)

        try:
            await self.host.close(session_id)
        except Exception as e:
            await self.report_error("Failed to close session", e, session_id)
            return False
        logger.info(f"Closed session {session.name} ({session_id})")
        return True

    async def detach_session(self, session_id: str) -> bool:
        """Let go of a persistent session; the multiplexer keeps it alive for reattach by persist id."""
        session = self._require(session_id)
        if not session.persistent:
            raise ValueError(f"Session {session_id} is not persistent")
        session.closing = True
        self.activity.force_idle(session)
        self._forget(session_id)
        if self.recorder.is_recording(session_id):
            await self._finish_recording(session)

        try:
            await self.host.detach(session_id)
        except Exception as e:
            await self.report_error("Failed to detach session", e, session_id)
            return False
        logger.info(f"Detached session {session.name} (persist id {session.persist_id})")
        return True

    # Surfaces

    def attach_surface(self, session_id: str, surface: Surface):
        self.relay.on_attach(session_id, surface)

    def notify_surface_ready(self, session_id: str):
        self.relay.notify_ready(session_id)

    def detach_surface(self, session_id: str):
        self.relay.on_detach(session_id)
        relay = self.persistent_relays.get(session_id)
        if relay:
            relay.reset()

    # Host events

    def handle_output(self, session_id: str, data: str):
        if session_id in self._closing:
            logger.debug(f"Dropping output for closing session {session_id}")
            return

        session = self.sessions.get(session_id)
        if session is not None:
            scanner = self._osc_scanners.get(session_id)
            if scanner:
                for kind, value in scanner.feed(data):
                    self._apply_report(session, kind, value)
            self.activity.mark_output(session)
        self.relay.on_output(session_id, data)

    def _apply_report(self, session: Session, kind: str, value: str):
        if kind == "cwd":
            session.cwd = value
        elif kind == "command":
            self.on_command_change(session.id, value)

    def handle_exit(self, session_id: str, exit_code: Optional[int] = None):
        self.activity.cancel(session_id)
        if session_id in self._closing:
            logger.debug(f"Exit of closing session {session_id} (code {exit_code})")
            return

        session = self.sessions.get(session_id)
        if session is None:
            self._pending_exit_codes[session_id] = exit_code
            self._pending_exit_codes.move_to_end(session_id)
            while len(self._pending_exit_codes) > MAX_PENDING_EXIT_CODES:
                self._pending_exit_codes.popitem(last=False)
            return
        self._mark_exited(session, exit_code)

    def _mark_exited(self, session: Session, exit_code: Optional[int]):
        session.exited = True
        session.exit_code = exit_code
        self.activity.force_idle(session)
        relay = self.persistent_relays.get(session.id)
        if relay:
            relay.reset()
        if self.recorder.is_recording(session.id):
            self._spawn(self._finish_recording(session))
        logger.info(f"Session {session.name} ({session.id}) exited with code {exit_code}")

    def _on_activity_change(self, session_id: str, state: ActivityState):
        logger.debug(f"Session {session_id} is now {state.value}")
        if self._status_callback:
            self._status_callback(session_id, state)

    # Input

    async def write_input(self, session_id: str, data: str, source: WriteSource = WriteSource.USER) -> bool:
        """
        Forward input to the host. Returns False if the write failed (the
        failure is reported, never raised).
        """
        session = self._require(session_id)
        if session.exited:
            return False

        relay = self.persistent_relays.get(session_id)
        writes = relay.prepare_input(data, source) if relay else [(data, source)]
        for chunk, chunk_source in writes:
            try:
                await self.host.write(session_id, chunk, chunk_source)
            except Exception as e:
                await self.report_error("Failed to write to session", e, session_id)
                return False
            self.recorder.append(session_id, chunk, chunk_source)

        if relay:
            for line in relay.ingest(data):
                self._on_submitted_line(session, line)
        return True

    def _on_submitted_line(self, session: Session, line: str):
        # Lines typed inside an agent are prompts, not commands: only a match changes the effect
        effect = self.catalog.classify(line)
        if effect and effect.id != session.effect_id:
            logger.info(f"Detected {effect.label} launch in persistent session {session.id}")
            self.activity.apply_effect(session, effect)

    async def handle_key(self, session_id: str, event: KeyEvent, rows: int) -> bool:
        """Scroll gestures for persistent sessions. Returns True if the key was consumed."""
        relay = self.persistent_relays.get(session_id)
        if relay is None:
            return False
        seq = relay.handle_key(event, rows)
        if seq is None:
            return False
        if seq:
            await self._write_control(session_id, seq)
        return True

    async def handle_wheel(self, session_id: str, event: WheelEvent, rows: int) -> bool:
        relay = self.persistent_relays.get(session_id)
        if relay is None:
            return False
        seq = relay.handle_wheel(event, rows)
        if seq is None:
            return False
        if seq:
            await self._write_control(session_id, seq)
        return True

    async def _write_control(self, session_id: str, seq: str):
        try:
            await self.host.write(session_id, seq, WriteSource.SYSTEM)
        except Exception as e:
            await self.report_error("Failed to write to session", e, session_id)

    async def resize(self, session_id: str, cols: int, rows: int) -> bool:
        self._require(session_id)
        try:
            await self.host.resize(session_id, cols, rows)
        except Exception as e:
            await self.report_error("Failed to resize session", e, session_id)
            return False
        return True

    # Activity

    def on_command_change(self, session_id: str, command_line: Optional[str]):
        """The session's running command changed: reclassify it."""
        session = self.sessions.get(session_id)
        if session is None or session.exited or session.closing:
            return
        effect = self.catalog.classify(command_line)
        # Restore re-runs effect commands only
        if effect and not session.persistent:
            session.restore_command = (command_line or "").strip() or None
        else:
            session.restore_command = None
        self.activity.apply_effect(session, effect)

    def set_active_session(self, session_id: Optional[str]):
        if session_id is not None:
            self._require(session_id)
        self.activity.set_active_session(session_id)

    # Recording

    def _bootstrap_command(self, session: Session) -> Optional[str]:
        if session.launch_command:
            return session.launch_command
        if session.restore_command:
            return session.restore_command
        effect = self.catalog.get(session.effect_id)
        return effect.match_commands[0] if effect else None

    async def start_recording(self, session_id: str, name: Optional[str] = None) -> Optional[str]:
        """Start recording user input. Returns the recording id, or None on a reported error."""
        session = self._require(session_id)
        meta = RecordingMeta(
            project_id=session.project_id,
            session_persist_id=session.persist_id,
            cwd=session.cwd,
            name=(name or "").strip() or default_recording_name(session.name),
            effect_id=session.effect_id,
            bootstrap_command=self._bootstrap_command(session),
        )
        try:
            recording_id = self.recorder.start(session_id, make_recording_id(), meta)
        except RecordingError as e:
            await self.report_error("Failed to start recording", e, session_id)
            return None
        session.recording_active = True
        session.last_recording_id = recording_id
        return recording_id

    async def stop_recording(self, session_id: str) -> Optional[str]:
        """Stop and persist the session's recording. Returns the recording id, or None on a reported error."""
        session = self._require(session_id)
        if self.recorder.is_recording(session_id):
            return await self._finish_recording(session)
        if self.has_unsaved_recording(session_id):
            # A previous save failed: retry it
            return await self._save_unsaved(session_id)
        err = NotRecording(f"Session {session_id} is not recording")
        await self.report_error("Failed to stop recording", err, session_id)
        return None

    def has_unsaved_recording(self, session_id: str) -> bool:
        return bool(self._unsaved_recordings.get(session_id))

    async def _finish_recording(self, session: Session) -> Optional[str]:
        recording = self.recorder.stop(session.id)
        session.recording_active = False
        self._unsaved_recordings.setdefault(session.id, []).append(recording)
        return await self._save_unsaved(session.id)

    async def _save_unsaved(self, session_id: str) -> Optional[str]:
        """
        Save the session's stopped recordings, oldest first.

        A recording stays queued until its save succeeds. Returns the id of
        the last one saved, or None if a save failed (the failure is reported).
        """
        queue = self._unsaved_recordings.get(session_id, [])
        saved_id = None
        while queue:
            try:
                saved_id = await asyncio.to_thread(self.store.save_recording, queue[0])
            except RecordingError as e:
                logger.warning(f"Keeping recording {queue[0].recording_id} for a later save ({len(queue)} unsaved)")
                await self.report_error("Failed to save recording", e, session_id)
                return None
            queue.pop(0)
        self._unsaved_recordings.pop(session_id, None)
        return saved_id

    def list_recordings(self) -> list[dict]:
        return self.store.list()

    def load_recording(self, recording_id: str) -> Recording:
        return self.store.load(recording_id)

    def delete_recording(self, recording_id: str) -> bool:
        deleted = self.store.delete(recording_id)
        if not deleted:
            return False
        for session in self.sessions.values():
            if session.last_recording_id == recording_id:
                session.last_recording_id = None
        for replay_id, replay in list(self.replays.items()):
            if replay.recording.recording_id == recording_id:
                self.close_replay(replay_id)
        return True

    # Replay

    def open_replay(self, recording_id: str) -> ReplaySession:
        recording = self.store.load(recording_id)
        replay = ReplaySession(
            recording,
            create_target=self._create_replay_target,
            write=self._replay_write,
            config=self.config,
        )
        self.replays[replay.replay_id] = replay
        logger.info(f"Opened replay {replay.replay_id} of {recording_id} ({len(replay.steps)} steps)")
        return replay

    def get_replay(self, replay_id: str) -> ReplaySession:
        replay = self.replays.get(replay_id)
        if replay is None:
            raise ReplayNotFound(replay_id)
        return replay

    async def replay_next(self, replay_id: str) -> bool:
        """Send the next step. Returns False when the replay is finished."""
        replay = self.get_replay(replay_id)
        try:
            return await replay.send_next()
        except ReplayError as e:
            await self.report_error("Replay failed", e, replay.target_session_id)
            raise

    def close_replay(self, replay_id: str) -> bool:
        replay = self.replays.pop(replay_id, None)
        if replay:
            logger.info(f"Closed replay {replay_id}")
        return replay is not None

    async def _create_replay_target(self, replay: ReplaySession) -> str:
        recording = replay.recording
        meta = recording.meta
        bootstrap = resolve_bootstrap_command(recording, self.catalog)
        session = await self.create_session(
            name=replay_session_name(recording, bootstrap),
            command=bootstrap,
            cwd=meta.cwd if meta else None,
            project_id=meta.project_id if meta else None,
        )
        if meta and meta.effect_id and not session.effect_id:
            self.activity.apply_effect(session, self.catalog.get(meta.effect_id))
        return session.id

    async def _replay_write(self, session_id: str, data: str, source: WriteSource):
        session = self._require(session_id)
        if session.exited:
            raise RuntimeError(f"session {session_id} has exited")
        await self.host.write(session_id, data, source)

    # Status

    def status_summary(self) -> StatusSummary:
        open_sessions = [s for s in self.sessions.values() if not s.exited and not s.closing]
        working = [s for s in open_sessions if s.effect_id and s.agent_working]
        recording = [s for s in open_sessions if s.recording_active]

        active = self.sessions.get(self.activity.active_session_id or "")
        ordered = ([active] if active in open_sessions else []) + [s for s in open_sessions if s is not active]
        lines = []
        for s in ordered[:MAX_STATUS_LINES]:
            rec = " (REC)" if s.recording_active else ""
            lines.append(f"{s.name}{rec} - {s.project_id}")
        return StatusSummary(working_count=len(working), recording_count=len(recording), lines=lines)

    async def shutdown(self):
        """Persist active recordings and stop every timer."""
        for session in list(self.sessions.values()):
            if self.recorder.is_recording(session.id):
                await self._finish_recording(session)
        for session_id in list(self._unsaved_recordings):
            await self._save_unsaved(session_id)
        self.activity.stop_all()
        self._grace_timers.cancel_all()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
