"""Input gate: keystrokes reach the backend only while connected."""

import logging
from typing import Callable

from termbridge.bridge import TerminalCommandClient
from termbridge.codec import encode
from termbridge.errors import NotConnectedError

logger = logging.getLogger(__name__)


class InputGate:
    """Encodes and sends user input for one agent.

    Input submitted while the session is not connected is rejected with
    ``NotConnectedError``; nothing is queued, so a reconnected session never
    receives keystrokes typed into the previous one.

    Args:
        agent_id: Agent whose terminal receives the input.
        commands: Command client used for ``send_terminal_input``.
        is_connected: Returns True while the owning session is connected.
        describe_state: Returns the owning session's state name, for errors.
        line_terminator: Appended by ``execute``.
    """

    def __init__(
        self,
        agent_id: str,
        commands: TerminalCommandClient,
        is_connected: Callable[[], bool],
        describe_state: Callable[[], str] = lambda: "unknown",
        line_terminator: str = "\n",
    ):
        self.agent_id = agent_id
        self.commands = commands
        self._is_connected = is_connected
        self._describe_state = describe_state
        self.line_terminator = line_terminator

    async def submit(self, text: str) -> None:
        """Send ``text`` as raw input.

        Raises:
            NotConnectedError: If the session is not connected.
            CommandFailedError: If the backend rejected or timed out.
        """
        if not self._is_connected():
            raise NotConnectedError(self.agent_id, self._describe_state())

        data = encode(text)
        logger.debug(f"[InputGate] agent_id={self.agent_id}, data_length={len(data)}")
        await self.commands.send_input(self.agent_id, data)

    async def execute(self, command: str) -> None:
        """Send ``command`` followed by the line terminator."""
        await self.submit(command + self.line_terminator)


__all__ = ["InputGate"]
