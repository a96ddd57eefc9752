"""Configuration for pty-sessions."""

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Optional

from .errors import InvalidService

DEFAULT_SHELL = "/bin/bash"


def default_shell() -> str:
    """Shell from $SHELL, falling back to DEFAULT_SHELL."""
    return os.environ.get("SHELL") or DEFAULT_SHELL


def default_services_file() -> Path:
    """Services file from $PTY_SESSIONS_CONFIG or the user config dir."""
    env_path = os.environ.get("PTY_SESSIONS_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".config" / "pty-sessions" / "services.yaml"


@dataclass
class SessionConfig:
    """Defaults applied to every session a registry creates."""

    shell: str = field(default_factory=default_shell)
    shell_args: list[str] = field(default_factory=list)  # used when no args are given
    cwd: Optional[str] = None
    rows: int = 24
    cols: int = 80
    poll_interval: float = 0.05  # watcher check for process exit


@dataclass
class RunnerConfig:
    """Timing for interactive runs."""

    shell: str = field(default_factory=default_shell)
    poll_interval: float = 0.1  # completion poll
    settle_delay: float = 0.5  # wait for the shell prompt before feeding
    command_delay: float = 0.2  # pause between fed commands


@dataclass
class ServerConfig:
    """Configuration for the MCP server."""

    session: SessionConfig = field(default_factory=SessionConfig)
    read_timeout: float = 0.5  # idle time that ends a read_output call


@dataclass
class ServiceSpec:
    """A named, ordered list of commands to run in one session."""

    project: str
    name: str
    commands: list[str] = field(default_factory=list)
    stage: Optional[str] = None
    description: str = ""

    @property
    def full_name(self) -> str:
        if self.stage:
            return f"{self.project}.{self.stage}.{self.name}"
        return f"{self.project}.{self.name}"

    def validate(self) -> None:
        if not self.project:
            raise InvalidService("project name cannot be empty")
        if not self.name:
            raise InvalidService("service name cannot be empty")
        if not self.commands:
            raise InvalidService(f"service {self.full_name} must have at least one command")
