"""Attach a PTY session to the controlling terminal."""

import asyncio
import logging
import os
import signal
import sys
import termios
import time
import tty
from typing import Optional

from .config import RunnerConfig, ServiceSpec
from .errors import SessionNotFound, TerminalModeError, WriteFailed
from .feeder import CommandFeeder
from .session import PTYSession, SessionRegistry

logger = logging.getLogger(__name__)

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def enter_raw_mode(fd: int) -> list:
    """Switch the terminal behind fd to raw mode.

    Returns:
        The previous mode, for restore_mode().

    Raises:
        TerminalModeError: If fd is not a terminal or the mode cannot be set.
    """
    try:
        saved = termios.tcgetattr(fd)
        tty.setraw(fd, termios.TCSANOW)
    except (termios.error, OSError) as exc:
        raise TerminalModeError(f"Failed to set raw mode: {exc}") from exc
    return saved


def restore_mode(fd: int, saved: list) -> None:
    try:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
    except (termios.error, OSError) as exc:
        logger.debug("Could not restore terminal mode: %s", exc)


def terminal_size(fd: int) -> tuple[int, int]:
    """Return (rows, cols) of the terminal behind fd."""
    size = os.get_terminal_size(fd)
    return size.lines, size.columns


class TerminalWriter:
    """Non-blocking writer for a terminal descriptor.

    write() never blocks: what the terminal does not take right away is
    buffered and flushed by a loop writer callback. drain() waits for the
    buffer to empty, the way asyncio.StreamWriter.drain() does.
    """

    def __init__(self, fd: int, loop: asyncio.AbstractEventLoop) -> None:
        self.fd = fd
        self._loop = loop
        self._buffer = bytearray()
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = False

    def write(self, data: bytes) -> None:
        if self._closed:
            return
        if not self._buffer:
            try:
                written = os.write(self.fd, data)
            except BlockingIOError:
                written = 0
            data = data[written:]
            if not data:
                return
            self._loop.add_writer(self.fd, self._flush)
            self._drained.clear()
        self._buffer.extend(data)

    def _flush(self) -> None:
        try:
            written = os.write(self.fd, self._buffer)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.debug("Terminal output closed: %s", exc)
            self.close()
            return
        del self._buffer[:written]
        if not self._buffer:
            self._loop.remove_writer(self.fd)
            self._drained.set()

    async def drain(self) -> None:
        await self._drained.wait()

    def close(self) -> None:
        """Stop writing and drop anything still buffered."""
        if self._buffer:
            self._loop.remove_writer(self.fd)
            self._buffer.clear()
        self._closed = True
        self._drained.set()


class InteractiveRunner:
    """Runs a service in a PTY session bound to the caller's terminal.

    The terminal is put in raw mode and bytes are copied both ways between
    it and the session until the session's process exits. SIGINT and
    SIGTERM end the run with SystemExit(0). Whatever way the run ends, the
    terminal mode is restored and the session killed exactly once.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        config: Optional[RunnerConfig] = None,
        stdin_fd: Optional[int] = None,
        stdout_fd: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.config = config or RunnerConfig()
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self.feeder = CommandFeeder(self.config.settle_delay, self.config.command_delay)

    async def run(self, service: ServiceSpec) -> None:
        """Run service interactively and return once its shell exits.

        Raises:
            TerminalModeError: If the terminal cannot enter raw mode. No
                session is created in that case.
            SystemExit: With status 0 when interrupted by SIGINT or SIGTERM.
        """
        loop = asyncio.get_running_loop()
        session_id = f"{service.full_name}-{int(time.time())}"

        stdout_blocking = os.get_blocking(self.stdout_fd)
        saved_mode = enter_raw_mode(self.stdin_fd)

        interrupted = asyncio.Event()
        tasks: list[asyncio.Task] = []
        cleaned_up = False

        async def cleanup() -> None:
            nonlocal cleaned_up
            if cleaned_up:
                return
            cleaned_up = True

            restore_mode(self.stdin_fd, saved_mode)
            os.set_blocking(self.stdout_fd, stdout_blocking)
            for sig in (*INTERRUPT_SIGNALS, signal.SIGWINCH):
                loop.remove_signal_handler(sig)
            loop.remove_reader(self.stdin_fd)
            for task in tasks:
                task.cancel()
            try:
                await self.registry.kill_session(session_id)
            except SessionNotFound:
                pass
            await asyncio.gather(*tasks, return_exceptions=True)

        def on_interrupt(sig: signal.Signals) -> None:
            logger.info("Received %s, stopping session %s", sig.name, session_id)
            interrupted.set()

        try:
            for sig in INTERRUPT_SIGNALS:
                loop.add_signal_handler(sig, on_interrupt, sig)
            os.set_blocking(self.stdout_fd, False)

            session = await self.registry.create_session(session_id, self.config.shell, [])

            self._sync_size(session_id)
            loop.add_signal_handler(signal.SIGWINCH, self._sync_size, session_id)

            loop.add_reader(self.stdin_fd, self._forward_input, session, tasks)
            pump = loop.create_task(self._pump_output(session))
            tasks.append(pump)
            tasks.append(loop.create_task(self.feeder.feed(session, service.commands)))

            while session.is_running and not interrupted.is_set():
                try:
                    await asyncio.wait_for(interrupted.wait(), timeout=self.config.poll_interval)
                except asyncio.TimeoutError:
                    pass

            if not interrupted.is_set():
                # Let the pump drain what the shell printed before exiting
                await asyncio.wait([pump], timeout=self.config.poll_interval)
        finally:
            await cleanup()

        if interrupted.is_set():
            raise SystemExit(0)
        logger.info("Session %s ended normally", session_id)

    def _sync_size(self, session_id: str) -> None:
        """Copy the real terminal's size to the session."""
        try:
            rows, cols = terminal_size(self.stdin_fd)
            self.registry.resize_session(session_id, rows, cols)
        except (OSError, TerminalModeError, SessionNotFound) as exc:
            logger.warning("Failed to set PTY size: %s", exc)

    def _forward_input(self, session: PTYSession, tasks: list[asyncio.Task]) -> None:
        """Copy one chunk of terminal input into the session.

        While the PTY has input it has not accepted, terminal reads pause
        and resume once that input is written.
        """
        loop = asyncio.get_running_loop()
        try:
            data = os.read(self.stdin_fd, 4096)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.debug("Terminal input closed: %s", exc)
            data = b""

        if not data:
            loop.remove_reader(self.stdin_fd)
            return
        try:
            session.write_input(data)
        except WriteFailed as exc:
            logger.debug("Dropping terminal input: %s", exc)
            loop.remove_reader(self.stdin_fd)
            return

        if session.pending_input:
            loop.remove_reader(self.stdin_fd)
            tasks[:] = [task for task in tasks if not task.done()]
            tasks.append(loop.create_task(self._resume_input(session, tasks)))

    async def _resume_input(self, session: PTYSession, tasks: list[asyncio.Task]) -> None:
        await session.drain_input()
        if session.is_running:
            asyncio.get_running_loop().add_reader(
                self.stdin_fd, self._forward_input, session, tasks
            )

    async def _pump_output(self, session: PTYSession) -> None:
        """Copy session output to the real terminal until the PTY closes."""
        writer = TerminalWriter(self.stdout_fd, asyncio.get_running_loop())
        try:
            async for chunk in session.stream_output():
                writer.write(chunk)
                await writer.drain()
        except OSError as exc:
            logger.debug("Terminal output closed: %s", exc)
        finally:
            writer.close()
