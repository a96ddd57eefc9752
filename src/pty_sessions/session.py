"""PTY session management."""

import asyncio
import fcntl
import logging
import os
import re
import signal
import struct
import subprocess
import termios
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .config import SessionConfig
from .errors import (
    ProcessSpawnFailed,
    PTYAllocationFailed,
    SessionAlreadyExists,
    SessionNotFound,
    TerminalModeError,
    WriteFailed,
)

logger = logging.getLogger(__name__)

# Seconds to wait for a killed process to be reaped
REAP_TIMEOUT = 2.0
REAP_POLL_INTERVAL = 0.01

# Chunks read from the PTY at release for a stream to pick up
RELEASE_DRAIN_CHUNKS = 64


# ANSI escape sequence pattern
# Matches: ESC[...m (colors), ESC[...H (cursor), ESC]...\x07 (OSC), etc.
ANSI_ESCAPE_PATTERN = re.compile(
    r'\x1b'  # ESC character
    r'(?:'  # Non-capturing group for alternatives
    r'\[[0-9;?]*[A-Za-z]'  # CSI sequences: ESC[...letter
    r'|\][^\x07\x1b]*(?:\x07|\x1b\\)'  # OSC sequences: ESC]...BEL or ESC]...ST
    r'|[()][0-9A-Za-z]'  # Charset sequences: ESC(X, ESC)X
    r'|[=>]'  # Keypad mode
    r')'
)


def strip_ansi_codes(text: str) -> str:
    """
    Remove ANSI escape codes and other unprintable characters from text.

    Args:
        text: Text potentially containing ANSI codes

    Returns:
        Text with ANSI codes removed
    """
    text = ANSI_ESCAPE_PATTERN.sub('', text)

    # Remove other control characters except \n, \r, \t
    return re.sub(r'[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]', '', text)


def set_winsize(fd: int, rows: int, cols: int) -> None:
    """Set the window size of the terminal behind fd."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class SessionState(Enum):
    """Lifecycle states for a PTY session."""

    RUNNING = "running"
    EXITED = "exited"  # Process exited on its own
    KILLED = "killed"  # Killed by a caller or by registry shutdown


class CancelToken:
    """Cooperative cancellation signal.

    Cancelling a token cancels every token created with it as parent.
    """

    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent
        self._children: list["CancelToken"] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for child in list(self._children):
            child.cancel()

    def detach(self) -> None:
        """Stop tracking this token in its parent."""
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class SessionInfo:
    """Point-in-time snapshot of a session."""

    session_id: str
    started_at: datetime
    running: bool
    pid: int


class PTYSession:
    """A single process running behind a pseudo-terminal.

    Sessions are created by SessionRegistry.create_session(); the registry
    owns them until they are killed or their process exits.
    """

    def __init__(
        self,
        session_id: str,
        process: subprocess.Popen,
        master_fd: int,
        cancel_token: CancelToken,
    ) -> None:
        self.session_id = session_id
        self.started_at = datetime.now()
        self.cancel_token = cancel_token
        self._process = process
        self._master_fd = master_fd
        self._state = SessionState.RUNNING
        self._released = False
        self._reaped = False
        self._stream_loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream_queue: Optional[asyncio.Queue] = None
        # Output read from the PTY that no stream has consumed yet
        self._unread: deque[bytes] = deque()
        # Input the PTY has not accepted yet, flushed by a loop writer
        self._pending_input = bytearray()
        self._input_loop: Optional[asyncio.AbstractEventLoop] = None
        self._input_drained = asyncio.Event()
        self._input_drained.set()

    @classmethod
    def spawn(
        cls,
        session_id: str,
        command: list[str],
        cancel_token: CancelToken,
        cwd: Optional[str] = None,
        rows: int = 24,
        cols: int = 80,
    ) -> "PTYSession":
        """Start command in a new PTY with the slave as its controlling terminal.

        Raises:
            PTYAllocationFailed: If no pseudo-terminal is available.
            ProcessSpawnFailed: If the command cannot be executed.
        """
        try:
            master_fd, slave_fd = os.openpty()
        except OSError as exc:
            raise PTYAllocationFailed(f"Cannot allocate PTY for {session_id}: {exc}") from exc

        try:
            set_winsize(master_fd, rows, cols)
        except OSError as exc:
            logger.warning("Failed to set PTY size for %s: %s", session_id, exc)

        def _acquire_controlling_tty() -> None:
            # Runs in the child after setsid(); fd 0 is the slave by now
            fcntl.ioctl(0, termios.TIOCSCTTY, 0)

        try:
            process = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            os.close(master_fd)
            raise ProcessSpawnFailed(f"Cannot start {command[0]} for {session_id}: {exc}") from exc
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        logger.info(
            "PTY session %s started: pid=%d cmd=%s", session_id, process.pid, " ".join(command)
        )
        return cls(session_id, process, master_fd, cancel_token)

    @property
    def pid(self) -> int:
        if self._process is None:
            return 0
        return self._process.pid

    @property
    def master_fd(self) -> int:
        """PTY master descriptor for direct I/O, -1 once released."""
        return self._master_fd

    @property
    def state(self) -> SessionState:
        if self._state is SessionState.RUNNING and self._process.poll() is not None:
            self._state = SessionState.EXITED
        return self._state

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        """Whether the process is alive and the session not yet released."""
        return self.state is SessionState.RUNNING

    def get_info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            started_at=self.started_at,
            running=self.is_running,
            pid=self.pid,
        )

    @property
    def pending_input(self) -> int:
        """Bytes accepted by write_input() that the PTY has not taken yet."""
        return len(self._pending_input)

    def write_input(self, data: bytes) -> None:
        """Write raw bytes to the PTY without blocking.

        Whatever the PTY does not accept right away is queued and written,
        in order, as soon as the master becomes writable. Use drain_input()
        to wait for the queue to empty.

        Raises:
            WriteFailed: If the session is no longer running or the PTY is
                closed.
        """
        if not self.is_running:
            raise WriteFailed(f"Session {self.session_id} has no active PTY")

        if not self._pending_input:
            try:
                written = os.write(self._master_fd, data)
            except BlockingIOError:
                written = 0
            except OSError as exc:
                raise WriteFailed(f"Write to session {self.session_id} failed: {exc}") from exc
            data = data[written:]
            if not data:
                return
            self._input_loop = asyncio.get_running_loop()
            self._input_loop.add_writer(self._master_fd, self._flush_input)
            self._input_drained.clear()

        self._pending_input.extend(data)

    async def drain_input(self) -> None:
        """Wait until queued input is written or the session is released."""
        await self._input_drained.wait()

    def _flush_input(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending_input)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.warning(
                "Dropping %d bytes of input for session %s: %s",
                len(self._pending_input),
                self.session_id,
                exc,
            )
            written = len(self._pending_input)
        del self._pending_input[:written]
        if not self._pending_input:
            self._input_loop.remove_writer(self._master_fd)
            self._input_drained.set()

    def resize(self, rows: int, cols: int) -> None:
        if self._released:
            raise TerminalModeError(f"Session {self.session_id} has no active PTY")
        try:
            set_winsize(self._master_fd, rows, cols)
        except OSError as exc:
            raise TerminalModeError(
                f"Cannot resize session {self.session_id} to {rows}x{cols}: {exc}"
            ) from exc

    async def stream_output(self, chunk_size: int = 4096) -> AsyncIterator[bytes]:
        """Yield output chunks as they arrive.

        The stream ends when the PTY closes or the session is released. Only
        one stream can be attached at a time. Chunks a closed stream read but
        did not yield are handed to the next stream first; chunks that were
        yielded are never replayed.
        """
        if self._stream_queue is not None:
            raise RuntimeError(f"Output of session {self.session_id} is already attached")
        if self._released:
            while self._unread:
                yield self._unread.popleft()
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        fd = self._master_fd

        def _on_readable() -> None:
            try:
                data = os.read(fd, chunk_size)
            except BlockingIOError:
                return
            except OSError:
                # EIO once the last slave descriptor is closed
                data = b""
            if not data:
                loop.remove_reader(fd)
                queue.put_nowait(None)
                return
            queue.put_nowait(data)

        self._stream_loop = loop
        self._stream_queue = queue
        loop.add_reader(fd, _on_readable)
        try:
            while self._unread:
                yield self._unread.popleft()
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk
        finally:
            if self._master_fd >= 0:
                loop.remove_reader(self._master_fd)
            while not queue.empty():
                chunk = queue.get_nowait()
                if chunk is not None:
                    self._unread.append(chunk)
            self._stream_loop = None
            self._stream_queue = None

    def release(self, state: SessionState = SessionState.KILLED) -> None:
        """Close the PTY and kill the process group. Safe to call repeatedly.

        Does not wait for the process; await reap() for that.
        """
        if self._released:
            return
        self._released = True

        if self._state is SessionState.RUNNING:
            self._state = state if self._process.poll() is None else SessionState.EXITED

        if self._pending_input:
            self._input_loop.remove_writer(self._master_fd)
            self._pending_input.clear()
        self._input_drained.set()

        if self._stream_queue is not None and self._stream_loop is not None:
            self._stream_loop.remove_reader(self._master_fd)
        # Keep output the child wrote before the PTY closes
        for _ in range(RELEASE_DRAIN_CHUNKS):
            try:
                data = os.read(self._master_fd, 4096)
            except OSError:
                break
            if not data:
                break
            if self._stream_queue is not None:
                self._stream_queue.put_nowait(data)
            else:
                self._unread.append(data)
        if self._stream_queue is not None:
            self._stream_queue.put_nowait(None)

        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

        if self._process.poll() is None:
            try:
                # start_new_session makes the child its own group leader
                os.killpg(self._process.pid, signal.SIGKILL)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._process.pid)
            except OSError as exc:
                logger.warning("Error killing session %s: %s", self.session_id, exc)

        self.cancel_token.detach()

    async def reap(self) -> None:
        """Wait up to REAP_TIMEOUT for the released process to exit."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + REAP_TIMEOUT
        while self._process.poll() is None:
            if loop.time() >= deadline:
                logger.warning("Session %s did not exit after SIGKILL", self.session_id)
                break
            await asyncio.sleep(REAP_POLL_INTERVAL)

        if self._reaped:
            return
        self._reaped = True
        logger.info(
            "PTY session %s released (%s, code=%s)",
            self.session_id,
            self._state.value,
            self._process.returncode,
        )


class SessionRegistry:
    """Manages the live PTY sessions of one process.

    Create one registry at startup and pass it to whatever needs sessions.
    Every session gets a watcher task that removes it from the registry when
    its process exits or it is cancelled, so sessions are reaped even if
    nobody calls kill_session().
    """

    def __init__(self, config: Optional[SessionConfig] = None) -> None:
        self.config = config or SessionConfig()
        self._sessions: dict[str, PTYSession] = {}
        self._watchers: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._root_token = CancelToken()

    async def create_session(
        self, session_id: str, shell: str = "", args: Optional[list[str]] = None
    ) -> PTYSession:
        """Spawn shell behind a new PTY and register it under session_id.

        Raises:
            SessionAlreadyExists: If session_id is live.
            PTYAllocationFailed: If no PTY could be allocated.
            ProcessSpawnFailed: If the shell could not be started.
        """
        if self._root_token.cancelled:
            raise RuntimeError("Session registry is shut down")

        async with self._lock:
            if session_id in self._sessions:
                raise SessionAlreadyExists(session_id)

            command = [shell or self.config.shell]
            command += self.config.shell_args if args is None else args
            session = PTYSession.spawn(
                session_id,
                command,
                CancelToken(self._root_token),
                cwd=self.config.cwd,
                rows=self.config.rows,
                cols=self.config.cols,
            )
            self._sessions[session_id] = session

            watcher = asyncio.create_task(self._watch(session), name=f"watch-{session_id}")
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)

        return session

    async def kill_session(self, session_id: str) -> None:
        """Cancel, release and remove a session.

        Raises:
            SessionNotFound: If session_id is not live.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                raise SessionNotFound(session_id)
            session.cancel_token.cancel()
            session.release(SessionState.KILLED)
        await session.reap()

    def resize_session(self, session_id: str, rows: int, cols: int) -> None:
        """Set the PTY window size of a live session.

        Raises:
            SessionNotFound: If session_id is not live.
            TerminalModeError: If the size cannot be applied.
        """
        self.get_session(session_id).resize(rows, cols)

    def get_session(self, session_id: str) -> PTYSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def list_sessions(self) -> dict[str, PTYSession]:
        """Snapshot of live sessions keyed by id."""
        return dict(self._sessions)

    async def shutdown(self) -> None:
        """Kill every session and wait for their watchers to finish."""
        self._root_token.cancel()

        async with self._lock:
            sessions = list(self._sessions.values())
            for session in sessions:
                try:
                    session.release(SessionState.KILLED)
                except OSError as exc:
                    logger.warning("Failed to kill session %s: %s", session.session_id, exc)
            self._sessions.clear()

        await asyncio.gather(*(session.reap() for session in sessions))

        if self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)
        logger.info("All PTY sessions shut down")

    async def _watch(self, session: PTYSession) -> None:
        """Wait for the process to exit or the session to be cancelled, then reap it."""
        token = session.cancel_token
        while not token.cancelled and session.is_running:
            try:
                await asyncio.wait_for(token.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass

        if token.cancelled:
            logger.info("Session %s cancelled", session.session_id)
        else:
            logger.info(
                "Session %s ended (code=%s)", session.session_id, session.returncode
            )

        async with self._lock:
            session.release(SessionState.KILLED if token.cancelled else SessionState.EXITED)
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
        await session.reap()

    def __len__(self) -> int:
        return len(self._sessions)
