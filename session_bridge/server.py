"""FastAPI control API over the session bridge."""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .bridge import ReplayNotFound, SessionBridge, SessionNotFound
from .models import Session, WriteSource
from .persistent_relay import KeyEvent, WheelDeltaMode, WheelEvent
from .recording import RecordingError
from .recording_store import RecordingNotFound
from .replay import ReplayError

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_timeouts = self.config.get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    name: Optional[str] = None
    command: Optional[str] = None
    cwd: Optional[str] = None
    env_vars: Optional[dict[str, str]] = None
    persistent: bool = False
    persist_id: Optional[str] = None
    project_id: Optional[str] = None
    restore_command: Optional[str] = None


class SendInputRequest(BaseModel):
    """Request to send input to a session."""
    data: str
    source: str = "user"  # "user" (recorded) or "system"


class ResizeRequest(BaseModel):
    cols: int
    rows: int


class CommandChangeRequest(BaseModel):
    """The session's foreground command changed."""
    command: Optional[str] = None


class KeyRequest(BaseModel):
    key: str
    shift: bool = False
    ctrl: bool = False
    meta: bool = False
    alt: bool = False
    rows: int = 24


class WheelRequest(BaseModel):
    delta_y: float
    delta_mode: int = 0  # 0 pixel, 1 line, 2 page
    ctrl: bool = False
    rows: int = 24


class StartRecordingRequest(BaseModel):
    name: Optional[str] = None


class OpenReplayRequest(BaseModel):
    recording_id: str


def create_app(bridge: Optional[SessionBridge] = None, config: Optional[dict] = None, lifespan=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        bridge: SessionBridge instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Session Bridge",
        description="Drive terminal sessions, record keystrokes and replay them",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)
    app.state.bridge = bridge

    def get_bridge() -> SessionBridge:
        if not app.state.bridge:
            raise HTTPException(status_code=503, detail="Session bridge not configured")
        return app.state.bridge

    def get_session(session_id: str) -> Session:
        session = get_bridge().get_session(session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    def last_error_detail(default: str) -> str:
        errors = get_bridge().recent_errors
        return errors[-1].message if errors else default

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/status")
    async def status():
        """Working/recording counts across live sessions."""
        return get_bridge().status_summary().to_dict()

    @app.get("/errors")
    async def errors():
        """Recently reported failures, oldest first."""
        return {"errors": [e.to_dict() for e in get_bridge().recent_errors]}

    # Sessions

    @app.get("/sessions")
    async def list_sessions():
        return {"sessions": [s.to_dict() for s in get_bridge().list_sessions()]}

    @app.post("/sessions")
    async def create_session(request: CreateSessionRequest):
        """Spawn and register a new session."""
        try:
            session = await get_bridge().create_session(
                name=request.name,
                command=request.command,
                cwd=request.cwd,
                env_vars=request.env_vars,
                persistent=request.persistent,
                persist_id=request.persist_id,
                project_id=request.project_id,
                restore_command=request.restore_command,
            )
        except Exception as e:
            await get_bridge().report_error("Failed to create session", e)
            raise HTTPException(status_code=500, detail=f"Failed to create session: {e}")
        return session.to_dict()

    @app.get("/sessions/{session_id}")
    async def get_session_endpoint(session_id: str):
        return get_session(session_id).to_dict()

    @app.delete("/sessions/{session_id}")
    async def close_session(session_id: str):
        get_session(session_id)
        closed = await get_bridge().close_session(session_id)
        return {"status": "closed" if closed else "close_failed", "session_id": session_id}

    @app.post("/sessions/{session_id}/detach")
    async def detach_session(session_id: str):
        session = get_session(session_id)
        if not session.persistent:
            raise HTTPException(status_code=400, detail="Session is not persistent")
        detached = await get_bridge().detach_session(session_id)
        return {"status": "detached" if detached else "detach_failed", "persist_id": session.persist_id}

    @app.post("/sessions/{session_id}/input")
    async def send_input(session_id: str, request: SendInputRequest):
        """Write input to a session; user-sourced input is recorded while recording is active."""
        get_session(session_id)
        try:
            source = WriteSource(request.source)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid source: {request.source}")
        if not await get_bridge().write_input(session_id, request.data, source):
            raise HTTPException(status_code=500, detail=last_error_detail("Failed to send input"))
        return {"status": "sent"}

    @app.post("/sessions/{session_id}/resize")
    async def resize(session_id: str, request: ResizeRequest):
        get_session(session_id)
        if not await get_bridge().resize(session_id, request.cols, request.rows):
            raise HTTPException(status_code=500, detail=last_error_detail("Failed to resize"))
        return {"status": "resized"}

    @app.post("/sessions/{session_id}/key")
    async def send_key(session_id: str, request: KeyRequest):
        """Scroll gestures for persistent sessions."""
        get_session(session_id)
        event = KeyEvent(key=request.key, shift=request.shift, ctrl=request.ctrl, meta=request.meta, alt=request.alt)
        consumed = await get_bridge().handle_key(session_id, event, request.rows)
        return {"consumed": consumed}

    @app.post("/sessions/{session_id}/wheel")
    async def send_wheel(session_id: str, request: WheelRequest):
        get_session(session_id)
        try:
            mode = WheelDeltaMode(request.delta_mode)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid delta_mode: {request.delta_mode}")
        event = WheelEvent(delta_y=request.delta_y, delta_mode=mode, ctrl=request.ctrl)
        consumed = await get_bridge().handle_wheel(session_id, event, request.rows)
        return {"consumed": consumed}

    @app.post("/sessions/{session_id}/command")
    async def command_changed(session_id: str, request: CommandChangeRequest):
        """Report the session's new foreground command for effect classification."""
        get_session(session_id)
        get_bridge().on_command_change(session_id, request.command)
        return get_session(session_id).to_dict()

    @app.post("/sessions/{session_id}/activate")
    async def activate(session_id: str):
        """Mark the session as the foregrounded one."""
        get_session(session_id)
        get_bridge().set_active_session(session_id)
        return {"active_session_id": session_id}

    # Recording

    @app.post("/sessions/{session_id}/recording/start")
    async def start_recording(session_id: str, request: Optional[StartRecordingRequest] = None):
        get_session(session_id)
        recording_id = await get_bridge().start_recording(session_id, request.name if request else None)
        if not recording_id:
            raise HTTPException(status_code=409, detail=last_error_detail("Already recording"))
        return {"recording_id": recording_id}

    @app.post("/sessions/{session_id}/recording/stop")
    async def stop_recording(session_id: str):
        was_recording = get_session(session_id).recording_active or get_bridge().has_unsaved_recording(session_id)
        recording_id = await get_bridge().stop_recording(session_id)
        if not recording_id:
            status_code = 500 if was_recording else 409
            raise HTTPException(status_code=status_code, detail=last_error_detail("Not recording"))
        return {"recording_id": recording_id}

    @app.get("/recordings")
    async def list_recordings():
        return {"recordings": get_bridge().list_recordings()}

    @app.get("/recordings/{recording_id}")
    async def get_recording(recording_id: str):
        try:
            return get_bridge().load_recording(recording_id).to_dict()
        except RecordingNotFound:
            raise HTTPException(status_code=404, detail="Recording not found")
        except RecordingError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.delete("/recordings/{recording_id}")
    async def delete_recording(recording_id: str):
        if not get_bridge().delete_recording(recording_id):
            raise HTTPException(status_code=404, detail="Recording not found")
        return {"status": "deleted", "recording_id": recording_id}

    # Replay

    @app.post("/replays")
    async def open_replay(request: OpenReplayRequest):
        try:
            replay = get_bridge().open_replay(request.recording_id)
        except RecordingNotFound:
            raise HTTPException(status_code=404, detail="Recording not found")
        except RecordingError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return replay.to_dict()

    @app.get("/replays/{replay_id}")
    async def get_replay(replay_id: str):
        try:
            return get_bridge().get_replay(replay_id).to_dict()
        except ReplayNotFound:
            raise HTTPException(status_code=404, detail="Replay not found")

    @app.post("/replays/{replay_id}/next")
    async def replay_next(replay_id: str):
        """Send the next step; `sent` is false once the replay is finished."""
        try:
            sent = await get_bridge().replay_next(replay_id)
            replay = get_bridge().get_replay(replay_id)
        except ReplayNotFound:
            raise HTTPException(status_code=404, detail="Replay not found")
        except ReplayError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {
            "sent": sent,
            "index": replay.index,
            "finished": replay.finished,
            "target_session_id": replay.target_session_id,
        }

    @app.delete("/replays/{replay_id}")
    async def close_replay(replay_id: str):
        if not get_bridge().close_replay(replay_id):
            raise HTTPException(status_code=404, detail="Replay not found")
        return {"status": "closed", "replay_id": replay_id}

    @app.exception_handler(SessionNotFound)
    async def session_not_found_handler(request: Request, exc: SessionNotFound):
        return JSONResponse(status_code=404, content={"detail": "Session not found"})

    return app
