"""pty-sessions: run and manage shells behind pseudo-terminals."""

from .config import RunnerConfig, ServerConfig, ServiceSpec, SessionConfig
from .errors import (
    ConfigError,
    InvalidService,
    ProcessSpawnFailed,
    PTYAllocationFailed,
    PTYSessionError,
    ServiceNotFound,
    SessionAlreadyExists,
    SessionNotFound,
    TerminalModeError,
    WriteFailed,
)
from .feeder import CommandFeeder
from .runner import InteractiveRunner
from .session import PTYSession, SessionInfo, SessionRegistry, SessionState
from .server import main, run_server

__all__ = [
    "SessionConfig",
    "RunnerConfig",
    "ServerConfig",
    "ServiceSpec",
    "PTYSession",
    "SessionInfo",
    "SessionRegistry",
    "SessionState",
    "CommandFeeder",
    "InteractiveRunner",
    "PTYSessionError",
    "SessionAlreadyExists",
    "SessionNotFound",
    "PTYAllocationFailed",
    "ProcessSpawnFailed",
    "TerminalModeError",
    "WriteFailed",
    "ConfigError",
    "ServiceNotFound",
    "InvalidService",
    "main",
    "run_server",
]
