"""Exceptions raised by the terminal bridge."""

from typing import Optional


class BridgeError(Exception):
    """Base class for all terminal bridge errors."""
    pass


class CommandFailedError(BridgeError):
    """A bridge command did not succeed.

    Attributes:
        command: Wire name of the command (e.g. ``open_terminal``).
        agent_id: Agent the command was issued for.
        cause: Short classification: "backend", "timeout" or "transport".
    """

    cause = "backend"

    def __init__(self, command: str, agent_id: str, message: str):
        self.command = command
        self.agent_id = agent_id
        self.message = message
        super().__init__(f"{command} failed for agent {agent_id}: {message}")


class CommandTimeoutError(CommandFailedError):
    """A bridge command exceeded its deadline."""

    cause = "timeout"

    def __init__(self, command: str, agent_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(command, agent_id, f"timed out after {timeout:.1f}s")


class TransportError(CommandFailedError):
    """The bridge lost its connection while a command was in flight."""

    cause = "transport"


class CommandRejectedError(BridgeError):
    """Raised by a bridge when the backend answered a command with an error."""

    def __init__(self, message: str, error_type: Optional[str] = None):
        self.error_type = error_type
        super().__init__(message)


class NotConnectedError(BridgeError):
    """Input was submitted while the session is not connected."""

    def __init__(self, agent_id: str, state: str):
        self.agent_id = agent_id
        self.state = state
        super().__init__(f"Terminal not connected: agent={agent_id}, state={state}")


class SessionClosedError(BridgeError):
    """Operation attempted on a session that has been torn down."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Terminal session is closed: agent={agent_id}")


class ProtocolError(BridgeError):
    """Malformed or unexpected frame on the IPC transport."""
    pass


__all__ = [
    "BridgeError",
    "CommandFailedError",
    "CommandRejectedError",
    "CommandTimeoutError",
    "NotConnectedError",
    "ProtocolError",
    "SessionClosedError",
    "TransportError",
]
