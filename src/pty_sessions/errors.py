"""Exceptions raised by PTY sessions and the session registry."""


class PTYSessionError(Exception):
    """Base class for all pty-sessions errors."""


class SessionAlreadyExists(PTYSessionError):
    """A live session already uses the requested id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class SessionNotFound(PTYSessionError):
    """No live session has the requested id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class PTYAllocationFailed(PTYSessionError):
    """The OS could not allocate a pseudo-terminal."""


class ProcessSpawnFailed(PTYSessionError):
    """The program could not be started behind the PTY."""


class TerminalModeError(PTYSessionError):
    """A terminal mode or window size could not be read or changed."""


class WriteFailed(PTYSessionError):
    """Input could not be written to the session's PTY."""


class ConfigError(PTYSessionError):
    """The services file is missing or malformed."""


class ServiceNotFound(PTYSessionError):
    """No service matches the requested path."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Service not found: {path}")


class InvalidService(PTYSessionError):
    """A service definition is incomplete."""
