"""Process host contract and a local pseudo-terminal implementation."""

import asyncio
import codecs
import fcntl
import logging
import os
import re
import signal
import struct
import tempfile
import termios
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .models import SessionInfo, WriteSource
from .shell_hooks import ShellLaunch, prepare_shell_launch, remove_hooks

logger = logging.getLogger(__name__)

OutputHandler = Callable[[str, str], None]
ExitHandler = Callable[[str, Optional[int]], None]

_UNSAFE_MUX_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class ProcessHostError(Exception):
    """A process-host operation (create, write, resize, close) failed."""


class ProcessHost(ABC):
    """
    What the bridge drives: spawns sessions, accepts writes, and pushes
    `output(session_id, text)` / `exit(session_id, exit_code)` notifications.
    """

    def __init__(self):
        self._output_handler: Optional[OutputHandler] = None
        self._exit_handler: Optional[ExitHandler] = None

    def set_output_handler(self, handler: OutputHandler):
        self._output_handler = handler

    def set_exit_handler(self, handler: ExitHandler):
        self._exit_handler = handler

    def emit_output(self, session_id: str, data: str):
        if self._output_handler:
            self._output_handler(session_id, data)

    def emit_exit(self, session_id: str, exit_code: Optional[int]):
        if self._exit_handler:
            self._exit_handler(session_id, exit_code)

    @abstractmethod
    async def create(
        self,
        name: Optional[str] = None,
        command: Optional[str] = None,
        cwd: Optional[str] = None,
        env_vars: Optional[dict[str, str]] = None,
        persistent: bool = False,
        persist_id: Optional[str] = None,
    ) -> SessionInfo:
        ...

    @abstractmethod
    async def write(self, session_id: str, data: str, source: WriteSource = WriteSource.USER):
        ...

    @abstractmethod
    async def resize(self, session_id: str, cols: int, rows: int):
        ...

    @abstractmethod
    async def close(self, session_id: str):
        ...

    async def detach(self, session_id: str):
        """Disconnect from a persistent session without ending it."""
        raise ProcessHostError("detach not supported")


def unique_name(taken: set[str], base: str) -> str:
    """`base`, or `base-2`, `base-3`, ... whichever is free first."""
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def multiplexer_session_name(persist_id: str) -> str:
    return "sb-" + _UNSAFE_MUX_CHARS.sub("_", persist_id)[:48]


def _make_controlling_tty():
    # Runs in the child after setsid(): adopt stdin (the pty slave) as ctty
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


def set_window_size(fd: int, cols: int, rows: int):
    if hasattr(termios, "tcsetwinsize"):
        termios.tcsetwinsize(fd, (rows, cols))
    else:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


@dataclass
class _PtyProcess:
    info: SessionInfo
    process: asyncio.subprocess.Process
    master_fd: int
    decoder: codecs.IncrementalDecoder
    persistent: bool = False
    mux_session: Optional[str] = None
    hook_path: Optional[Path] = None
    reader_active: bool = True


class PtyProcessHost(ProcessHost):
    """
    Runs sessions on local pseudo-terminals.

    Persistent sessions run the multiplexer client (`<mux> attach --create
    <name>`) so the shell inside survives detach.
    """

    def __init__(self, config: Optional[dict] = None):
        super().__init__()
        self.config = config or {}
        host_config = self.config.get("process_host", {})
        persistent_config = self.config.get("persistent", {})
        self.shell = host_config.get("shell") or os.environ.get("SHELL") or "/bin/sh"
        self.read_chunk_bytes = host_config.get("read_chunk_bytes", 4096)
        self.multiplexer_command = persistent_config.get("multiplexer_command", "zellij")
        if host_config.get("shell_integration", True):
            self.hook_dir = host_config.get("hook_dir") or os.path.join(tempfile.gettempdir(), "session-bridge-hooks")
        else:
            self.hook_dir = None
        self._processes: dict[str, _PtyProcess] = {}
        self._exit_tasks: dict[str, asyncio.Task] = {}

    def list_sessions(self) -> list[SessionInfo]:
        return [p.info for p in self._processes.values()]

    def _launch(
        self,
        session_id: str,
        command: Optional[str],
        persistent: bool,
        mux_session: Optional[str],
        env: dict[str, str],
    ) -> ShellLaunch:
        if persistent:
            return ShellLaunch(argv=[self.multiplexer_command, "attach", "--create", mux_session])
        if command and command.strip():
            return ShellLaunch(argv=[self.shell, "-l", "-c", command])
        # Interactive shells report cwd and commands through prompt hooks
        return prepare_shell_launch(self.shell, self.hook_dir, session_id, env)

    async def create(
        self,
        name: Optional[str] = None,
        command: Optional[str] = None,
        cwd: Optional[str] = None,
        env_vars: Optional[dict[str, str]] = None,
        persistent: bool = False,
        persist_id: Optional[str] = None,
    ) -> SessionInfo:
        session_id = uuid.uuid4().hex[:12]
        mux_session = multiplexer_session_name(persist_id or session_id) if persistent else None
        work_dir = os.path.expanduser(cwd) if cwd else None
        if work_dir and not os.path.isdir(work_dir):
            raise ProcessHostError(f"Working directory does not exist: {cwd}")

        env = dict(os.environ)
        env.setdefault("TERM", "xterm-256color")
        if env_vars:
            env.update(env_vars)

        launch = self._launch(session_id, command, persistent, mux_session, env)
        argv = launch.argv
        env.update(launch.env)

        master_fd, slave_fd = os.openpty()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=work_dir,
                env=env,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except OSError as e:
            os.close(master_fd)
            remove_hooks(launch.hook_path)
            raise ProcessHostError(f"spawn failed: {e}") from e
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        taken = {p.info.name for p in self._processes.values()}
        base = (name or "").strip() or (command or "").strip().split(" ")[0] or os.path.basename(self.shell)
        info = SessionInfo(
            id=session_id,
            name=unique_name(taken, base),
            command=" ".join(argv),
            cwd=work_dir,
        )
        entry = _PtyProcess(
            info=info,
            process=process,
            master_fd=master_fd,
            decoder=codecs.getincrementaldecoder("utf-8")(errors="replace"),
            persistent=persistent,
            mux_session=mux_session,
            hook_path=launch.hook_path,
        )
        self._processes[session_id] = entry

        loop = asyncio.get_running_loop()
        loop.add_reader(master_fd, self._on_readable, session_id)
        self._exit_tasks[session_id] = asyncio.create_task(self._wait_exit(session_id, entry))

        logger.info(f"Created session {info.name} ({session_id}): {info.command}")
        return info

    def _on_readable(self, session_id: str):
        entry = self._processes.get(session_id)
        if entry is None:
            return
        try:
            chunk = os.read(entry.master_fd, self.read_chunk_bytes)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the child side of the pty is gone
            chunk = b""
        if not chunk:
            self._stop_reader(entry)
            return
        text = entry.decoder.decode(chunk)
        if text:
            self.emit_output(session_id, text)

    def _stop_reader(self, entry: _PtyProcess):
        if entry.reader_active:
            entry.reader_active = False
            try:
                asyncio.get_running_loop().remove_reader(entry.master_fd)
            except (RuntimeError, ValueError):
                pass

    async def _wait_exit(self, session_id: str, entry: _PtyProcess):
        try:
            exit_code = await entry.process.wait()
        except asyncio.CancelledError:
            return
        self._stop_reader(entry)
        self._drain(session_id, entry)
        tail = entry.decoder.decode(b"", final=True)
        if tail:
            self.emit_output(session_id, tail)
        self._release(session_id, entry)
        logger.info(f"Session {session_id} exited with code {exit_code}")
        self.emit_exit(session_id, exit_code)

    def _drain(self, session_id: str, entry: _PtyProcess):
        """Read whatever the child wrote before exiting."""
        while True:
            try:
                chunk = os.read(entry.master_fd, self.read_chunk_bytes)
            except OSError:
                return
            if not chunk:
                return
            text = entry.decoder.decode(chunk)
            if text:
                self.emit_output(session_id, text)

    def _release(self, session_id: str, entry: _PtyProcess):
        self._processes.pop(session_id, None)
        self._exit_tasks.pop(session_id, None)
        remove_hooks(entry.hook_path)
        try:
            os.close(entry.master_fd)
        except OSError:
            pass

    def _get(self, session_id: str) -> _PtyProcess:
        entry = self._processes.get(session_id)
        if entry is None:
            raise ProcessHostError(f"unknown session {session_id}")
        return entry

    async def write(self, session_id: str, data: str, source: WriteSource = WriteSource.USER):
        entry = self._get(session_id)
        payload = data.encode("utf-8")
        while payload:
            try:
                written = os.write(entry.master_fd, payload)
            except BlockingIOError:
                await asyncio.sleep(0.005)
                continue
            except OSError as e:
                raise ProcessHostError(f"write failed: {e}") from e
            payload = payload[written:]

    async def resize(self, session_id: str, cols: int, rows: int):
        entry = self._get(session_id)
        if cols <= 0 or rows <= 0:
            raise ProcessHostError(f"invalid size {cols}x{rows}")
        try:
            set_window_size(entry.master_fd, cols, rows)
        except OSError as e:
            raise ProcessHostError(f"resize failed: {e}") from e

    def _terminate(self, entry: _PtyProcess):
        try:
            os.killpg(entry.process.pid, signal.SIGHUP)
        except ProcessLookupError:
            return
        except OSError:
            entry.process.kill()

    async def close(self, session_id: str):
        entry = self._processes.get(session_id)
        if entry is None:
            return
        self._terminate(entry)
        if entry.persistent and entry.mux_session:
            await self._delete_mux_session(entry.mux_session)
        logger.info(f"Closed session {session_id}")

    async def detach(self, session_id: str):
        entry = self._get(session_id)
        if not entry.persistent:
            raise ProcessHostError(f"session {session_id} is not persistent")
        # Only the attach client goes away; the multiplexer session keeps running
        self._terminate(entry)
        logger.info(f"Detached from persistent session {entry.mux_session}")

    async def _delete_mux_session(self, mux_session: str):
        try:
            proc = await asyncio.create_subprocess_exec(
                self.multiplexer_command, "delete-session", "--force", mux_session,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=5)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not delete multiplexer session {mux_session}: {e}")

    async def shutdown(self):
        """Terminate every session (used on application stop)."""
        for session_id, entry in list(self._processes.items()):
            self._terminate(entry)
        tasks = list(self._exit_tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=5)
