"""Unit tests for PTY session management."""

import asyncio
from contextlib import aclosing

import pytest

from pty_sessions.config import SessionConfig
from pty_sessions.errors import (
    ProcessSpawnFailed,
    SessionAlreadyExists,
    SessionNotFound,
    TerminalModeError,
    WriteFailed,
)
from pty_sessions.session import (
    CancelToken,
    SessionInfo,
    SessionRegistry,
    SessionState,
)


async def read_until(session, needle: bytes, timeout: float = 5.0) -> bytes:
    """Collect session output until needle shows up."""
    output = bytearray()

    async def _collect() -> None:
        async with aclosing(session.stream_output()) as stream:
            async for chunk in stream:
                output.extend(chunk)
                if needle in output:
                    return

    await asyncio.wait_for(_collect(), timeout)
    return bytes(output)


async def wait_until(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


@pytest.mark.asyncio
async def test_create_and_kill(registry):
    """Test basic session lifecycle."""
    session = await registry.create_session("s1", "/bin/sh", [])

    assert session.is_running
    assert session.pid > 0
    assert "s1" in registry.list_sessions()

    await registry.kill_session("s1")

    assert registry.list_sessions() == {}
    assert not session.is_running
    assert session.state is SessionState.KILLED
    # kill_session returns only once the process is reaped
    assert session.returncode is not None


@pytest.mark.asyncio
async def test_duplicate_id_rejected(registry):
    """Test that a live id cannot be reused."""
    first = await registry.create_session("s1", "/bin/sh", [])
    pid = first.pid

    with pytest.raises(SessionAlreadyExists, match="s1"):
        await registry.create_session("s1", "/bin/sh", [])

    assert registry.get_session("s1") is first
    assert first.is_running
    assert first.pid == pid


@pytest.mark.asyncio
async def test_id_reusable_after_kill(registry):
    """Test that a killed id can be created again as a new session."""
    first = await registry.create_session("s1")
    await registry.kill_session("s1")

    second = await registry.create_session("s1")

    assert second is not first
    assert second.is_running
    assert not first.is_running


@pytest.mark.asyncio
async def test_kill_twice(registry):
    """Test that killing a killed session reports it missing."""
    await registry.create_session("s1")
    await registry.kill_session("s1")

    with pytest.raises(SessionNotFound, match="s1"):
        await registry.kill_session("s1")


@pytest.mark.asyncio
async def test_resize_unknown_session(registry):
    """Test resizing a session that does not exist."""
    with pytest.raises(SessionNotFound, match="ghost"):
        registry.resize_session("ghost", 24, 80)


@pytest.mark.asyncio
async def test_get_unknown_session(registry):
    with pytest.raises(SessionNotFound):
        registry.get_session("ghost")


@pytest.mark.asyncio
async def test_resize_keeps_session_running(registry):
    """Test that resizing applies the size without disturbing the process."""
    session = await registry.create_session("s1")

    registry.resize_session("s1", 40, 100)
    assert session.is_running

    session.write_input(b"stty size\n")
    output = await read_until(session, b"40 100")
    assert b"40 100" in output
    assert session.is_running


@pytest.mark.asyncio
async def test_resize_released_session_fails(registry):
    session = await registry.create_session("s1")
    await registry.kill_session("s1")

    with pytest.raises(TerminalModeError):
        session.resize(24, 80)


@pytest.mark.asyncio
async def test_process_exit_reaped_without_kill(registry):
    """Test that a process exiting on its own is noticed and removed."""
    session = await registry.create_session("quick", "/bin/sh", ["-c", "exit 0"])

    assert await wait_until(lambda: not session.is_running, timeout=2.0)
    assert session.state is SessionState.EXITED
    assert session.returncode == 0

    assert await wait_until(lambda: "quick" not in registry.list_sessions(), timeout=2.0)
    assert session.master_fd == -1


@pytest.mark.asyncio
async def test_running_is_monotonic(registry):
    """Test that a finished session never reports running again."""
    session = await registry.create_session("quick", "/bin/sh", ["-c", "exit 3"])
    assert await wait_until(lambda: not session.is_running)

    for _ in range(5):
        assert not session.is_running
        await asyncio.sleep(0.02)
    assert session.returncode == 3


@pytest.mark.asyncio
async def test_write_after_kill(registry):
    """Test that writing to a killed session fails promptly."""
    session = await registry.create_session("s1")
    await registry.kill_session("s1")

    with pytest.raises(WriteFailed):
        session.write_input(b"echo hello\n")


@pytest.mark.asyncio
async def test_write_after_exit(registry):
    """Test that writing to a session whose process exited fails."""
    session = await registry.create_session("quick", "/bin/sh", ["-c", "exit 0"])
    assert await wait_until(lambda: not session.is_running)

    with pytest.raises(WriteFailed):
        session.write_input(b"echo hello\n")


@pytest.mark.asyncio
async def test_write_input_reaches_shell(registry):
    session = await registry.create_session("s1")

    session.write_input(b"echo $((6*7))\n")

    output = await read_until(session, b"42")
    assert b"42" in output


@pytest.mark.asyncio
async def test_write_input_queues_when_pty_full(registry, tmp_path):
    """Test that a write larger than the PTY buffer returns at once and is delivered later."""
    received = tmp_path / "received"
    data = (b"#" * 99 + b"\n") * 3000
    session = await registry.create_session(
        "slow", "/bin/sh", ["-c", f"sleep 1; head -c {len(data)} > {received}"]
    )

    async def discard_output() -> None:
        async for _ in session.stream_output():
            pass

    sink = asyncio.create_task(discard_output())
    loop = asyncio.get_running_loop()

    start = loop.time()
    session.write_input(data)
    assert loop.time() - start < 0.5
    assert session.pending_input > 0
    assert session.is_running

    await asyncio.wait_for(session.drain_input(), 10.0)
    assert session.pending_input == 0
    assert await wait_until(lambda: not session.is_running, timeout=5.0)
    assert received.read_bytes() == data

    sink.cancel()
    await asyncio.gather(sink, return_exceptions=True)


@pytest.mark.asyncio
async def test_queued_input_dropped_on_kill(registry):
    session = await registry.create_session("slow", "/bin/sh", ["-c", "sleep 5"])
    session.write_input(b"#\n" * 150_000)
    assert session.pending_input > 0

    await registry.kill_session("slow")

    assert session.pending_input == 0
    await asyncio.wait_for(session.drain_input(), 1.0)


@pytest.mark.asyncio
async def test_shutdown_kills_everything(registry):
    """Test that shutdown removes and stops every session."""
    sessions = [await registry.create_session(f"s{i}") for i in range(3)]

    await registry.shutdown()

    assert registry.list_sessions() == {}
    assert len(registry) == 0
    for session in sessions:
        assert not session.is_running
        with pytest.raises(SessionNotFound):
            registry.get_session(session.session_id)


@pytest.mark.asyncio
async def test_create_after_shutdown(registry):
    await registry.shutdown()

    with pytest.raises(RuntimeError, match="shut down"):
        await registry.create_session("late")


@pytest.mark.asyncio
async def test_list_sessions_is_snapshot(registry):
    """Test that later registry changes do not leak into a listing."""
    await registry.create_session("s1")
    snapshot = registry.list_sessions()

    await registry.kill_session("s1")
    await registry.create_session("s2")

    assert list(snapshot) == ["s1"]
    assert set(registry.list_sessions()) == {"s2"}


@pytest.mark.asyncio
async def test_spawn_failure_leaves_no_entry(registry):
    """Test that an unstartable program is reported and not registered."""
    with pytest.raises(ProcessSpawnFailed):
        await registry.create_session("bad", "/nonexistent/shell", [])

    assert "bad" not in registry.list_sessions()


@pytest.mark.asyncio
async def test_default_shell_from_config():
    """Test that an empty shell falls back to the registry's configured shell."""
    reg = SessionRegistry(SessionConfig(shell="/bin/sh", shell_args=["-c", "exit 5"]))
    try:
        session = await reg.create_session("s1")
        assert await wait_until(lambda: not session.is_running)
        assert session.returncode == 5
    finally:
        await reg.shutdown()


@pytest.mark.asyncio
async def test_get_info(registry):
    session = await registry.create_session("s1")

    info = session.get_info()

    assert isinstance(info, SessionInfo)
    assert info.session_id == "s1"
    assert info.pid == session.pid
    assert info.running is True
    assert info.started_at == session.started_at

    await registry.kill_session("s1")
    assert session.get_info().running is False


@pytest.mark.asyncio
async def test_stream_single_attach(registry):
    """Test that only one output stream can be attached at a time."""
    session = await registry.create_session("s1")
    session.write_input(b"echo ready\n")

    first = session.stream_output()
    await asyncio.wait_for(first.__anext__(), 5.0)

    second = session.stream_output()
    with pytest.raises(RuntimeError, match="already attached"):
        await second.__anext__()

    await first.aclose()

    # A new attach works once the first stream is closed
    session.write_input(b"echo $((300+33))\n")
    assert b"333" in await read_until(session, b"333")


@pytest.mark.asyncio
async def test_closed_stream_hands_over_unread_chunks(registry):
    """Test that chunks read but not consumed by a closed stream go to the next one."""
    session = await registry.create_session(
        "s1", "/bin/sh", ["-c", "echo 0123456789ABCDEF; sleep 5"]
    )

    first = session.stream_output(chunk_size=4)
    head = await asyncio.wait_for(first.__anext__(), 5.0)
    # The reader keeps queueing while the consumer is away
    await asyncio.sleep(0.3)
    await first.aclose()

    rest = await read_until(session, b"F")
    assert b"0123456789ABCDEF" in head + rest


@pytest.mark.asyncio
async def test_output_kept_after_exit(registry):
    """Test that output nobody read before the process exited is still streamed."""
    session = await registry.create_session("quick", "/bin/sh", ["-c", "echo leftover"])
    assert await wait_until(lambda: "quick" not in registry.list_sessions())

    chunks = [chunk async for chunk in session.stream_output()]

    assert b"leftover" in b"".join(chunks)


@pytest.mark.asyncio
async def test_stream_ends_on_kill(registry):
    """Test that killing a session ends its output stream."""
    session = await registry.create_session("s1")
    chunks = []

    async def consume() -> None:
        async for chunk in session.stream_output():
            chunks.append(chunk)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.2)
    await registry.kill_session("s1")

    await asyncio.wait_for(consumer, 2.0)
    assert consumer.done()


@pytest.mark.asyncio
async def test_stream_ends_on_exit(registry):
    session = await registry.create_session("s1", "/bin/sh", ["-c", "echo bye; sleep 0.2"])
    chunks = []

    async def consume() -> None:
        async for chunk in session.stream_output():
            chunks.append(chunk)

    await asyncio.wait_for(consume(), 3.0)
    assert b"bye" in b"".join(chunks)


@pytest.mark.asyncio
async def test_cancel_token_propagates():
    root = CancelToken()
    child = CancelToken(root)
    grandchild = CancelToken(child)

    root.cancel()

    assert child.cancelled
    assert grandchild.cancelled
    await asyncio.wait_for(grandchild.wait(), 1.0)

    late = CancelToken(root)
    assert late.cancelled


@pytest.mark.asyncio
async def test_cancel_token_detach():
    root = CancelToken()
    child = CancelToken(root)

    child.detach()
    root.cancel()

    assert not child.cancelled
