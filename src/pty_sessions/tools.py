"""MCP tool definitions for PTY sessions."""

import asyncio
import codecs
from typing import Optional

from mcp.server import Server
from mcp.types import Tool, TextContent

from .config import ServerConfig
from .errors import PTYSessionError
from .session import SessionRegistry, strip_ansi_codes


def register_tools(
    server: Server, registry: SessionRegistry, config: Optional[ServerConfig] = None
) -> None:
    """Register all PTY tools with the MCP server."""
    config = config or ServerConfig()

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(
                name="create_session",
                description="Start a shell behind a new PTY under the given session_id.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "session_id": {
                            "type": "string",
                            "description": "Unique id for the new session",
                        },
                        "shell": {
                            "type": "string",
                            "description": "Program to run (default: $SHELL or /bin/bash)",
                        },
                        "args": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Arguments passed to the program",
                        },
                    },
                    "required": ["session_id"],
                },
            ),
            Tool(
                name="send_input",
                description="Send raw input to a session. Use \\n for Enter, \\x03 for Ctrl+C.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "session_id": {
                            "type": "string",
                            "description": "The session ID",
                        },
                        "data": {
                            "type": "string",
                            "description": "Input to send; escape sequences are processed",
                        },
                    },
                    "required": ["session_id", "data"],
                },
            ),
            Tool(
                name="read_output",
                description="Read output produced by a session until it is idle for `timeout` seconds.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "session_id": {
                            "type": "string",
                            "description": "The session ID",
                        },
                        "timeout": {
                            "type": "number",
                            "description": f"Idle seconds that end the read (default: {config.read_timeout})",
                        },
                    },
                    "required": ["session_id"],
                },
            ),
            Tool(
                name="resize_session",
                description="Set the terminal size of a session.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "session_id": {"type": "string", "description": "The session ID"},
                        "rows": {"type": "integer", "description": "Terminal height"},
                        "cols": {"type": "integer", "description": "Terminal width"},
                    },
                    "required": ["session_id", "rows", "cols"],
                },
            ),
            Tool(
                name="get_session",
                description="Show the status of one session.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "session_id": {"type": "string", "description": "The session ID"},
                    },
                    "required": ["session_id"],
                },
            ),
            Tool(
                name="kill_session",
                description="Kill a session and release its PTY.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "session_id": {
                            "type": "string",
                            "description": "The session ID to kill",
                        },
                    },
                    "required": ["session_id"],
                },
            ),
            Tool(
                name="list_sessions",
                description="List all live PTY sessions.",
                inputSchema={
                    "type": "object",
                    "properties": {},
                },
            ),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        try:
            if name == "create_session":
                return await _create_session(registry, arguments)
            elif name == "send_input":
                return await _send_input(registry, arguments)
            elif name == "read_output":
                return await _read_output(registry, arguments, config.read_timeout)
            elif name == "resize_session":
                return await _resize_session(registry, arguments)
            elif name == "get_session":
                return await _get_session(registry, arguments)
            elif name == "kill_session":
                return await _kill_session(registry, arguments)
            elif name == "list_sessions":
                return await _list_sessions(registry)
            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]
        except (PTYSessionError, RuntimeError) as e:
            return [TextContent(type="text", text=f"Error: {e}")]


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


async def _create_session(registry: SessionRegistry, args: dict) -> list[TextContent]:
    session = await registry.create_session(
        args["session_id"], args.get("shell", ""), args.get("args")
    )
    return _text(f"Session started: {session.session_id}\nPID: {session.pid}")


async def _send_input(registry: SessionRegistry, args: dict) -> list[TextContent]:
    session = registry.get_session(args["session_id"])

    # Process escape sequences; non-Latin-1 text survives as \u escapes
    data = codecs.decode(args["data"].encode("latin-1", "backslashreplace"), "unicode_escape")

    session.write_input(data.encode("utf-8"))
    return _text("Input sent")


async def _read_output(
    registry: SessionRegistry, args: dict, default_timeout: float
) -> list[TextContent]:
    session = registry.get_session(args["session_id"])
    timeout = float(args.get("timeout", default_timeout))

    chunks: list[bytes] = []
    stream = session.stream_output()
    try:
        while True:
            chunks.append(await asyncio.wait_for(stream.__anext__(), timeout=timeout))
    except (asyncio.TimeoutError, StopAsyncIteration):
        pass
    finally:
        await stream.aclose()

    return _text(strip_ansi_codes(b"".join(chunks).decode("utf-8", errors="replace")))


async def _resize_session(registry: SessionRegistry, args: dict) -> list[TextContent]:
    rows, cols = int(args["rows"]), int(args["cols"])
    registry.resize_session(args["session_id"], rows, cols)
    return _text(f"Session resized: {args['session_id']} ({rows}x{cols})")


async def _get_session(registry: SessionRegistry, args: dict) -> list[TextContent]:
    info = registry.get_session(args["session_id"]).get_info()
    return _text(
        f"Session: {info.session_id}\n"
        f"PID: {info.pid}\n"
        f"Started: {info.started_at.isoformat()}\n"
        f"Running: {info.running}"
    )


async def _kill_session(registry: SessionRegistry, args: dict) -> list[TextContent]:
    await registry.kill_session(args["session_id"])
    return _text(f"Session killed: {args['session_id']}")


async def _list_sessions(registry: SessionRegistry) -> list[TextContent]:
    sessions = registry.list_sessions()

    if not sessions:
        return _text("No active sessions")

    lines = ["Active sessions:"]
    for session_id in sorted(sessions):
        info = sessions[session_id].get_info()
        lines.append(
            f"  {info.session_id}: pid {info.pid} "
            f"(started: {info.started_at.isoformat()}, running: {info.running})"
        )
    return _text("\n".join(lines))
