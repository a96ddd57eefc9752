"""Feed a fixed list of commands into a session."""

import asyncio
import logging
from collections.abc import Sequence

from .errors import WriteFailed
from .session import PTYSession

logger = logging.getLogger(__name__)


class CommandFeeder:
    """Types commands into a session as if a user entered them.

    There is no readiness handshake with the far end: the feeder waits
    settle_delay for the shell to show its prompt, then writes each command
    followed by a newline, pausing command_delay between commands.
    """

    def __init__(self, settle_delay: float = 0.5, command_delay: float = 0.2) -> None:
        self.settle_delay = settle_delay
        self.command_delay = command_delay

    async def feed(self, session: PTYSession, commands: Sequence[str]) -> int:
        """Write commands to the session in order.

        Returns:
            Number of commands written successfully.
        """
        await asyncio.sleep(self.settle_delay)

        sent = 0
        for index, command in enumerate(commands):
            if index:
                await asyncio.sleep(self.command_delay)
            try:
                session.write_input(f"{command}\n".encode())
            except WriteFailed as exc:
                logger.warning("Failed to send command %r: %s", command, exc)
                continue
            sent += 1
            logger.debug("Sent command %d/%d to %s", index + 1, len(commands), session.session_id)
        return sent
