"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio

from pty_sessions.config import SessionConfig
from pty_sessions.session import SessionRegistry, set_winsize


@pytest_asyncio.fixture
async def registry():
    """A registry that starts /bin/sh and is shut down after the test."""
    reg = SessionRegistry(SessionConfig(shell="/bin/sh"))
    yield reg
    await reg.shutdown()


@pytest.fixture
def terminal():
    """A PTY pair standing in for the user's terminal.

    Yields (master_fd, slave_fd): the runner is attached to the slave and the
    test types into and reads from the master.
    """
    master_fd, slave_fd = os.openpty()
    set_winsize(master_fd, 30, 90)
    os.set_blocking(master_fd, False)
    yield master_fd, slave_fd
    for fd in (master_fd, slave_fd):
        try:
            os.close(fd)
        except OSError:
            pass
