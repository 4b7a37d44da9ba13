"""Command bridge abstraction and the terminal command adapter.

A ``CommandBridge`` is the transport between UI-side session logic and the
backend process. It offers two capabilities:

- ``invoke(command, args)``: request/response call of a named backend command
- ``subscribe(channel, handler)``: push events on a named channel

The bridge is shared by every open session; channels are keyed by agent id
so pushes for one agent never reach another agent's session.

``TerminalCommandClient`` sits between a session and the bridge. It names
the five terminal commands, puts a deadline on every call, retries the
idempotent ones on transient failures, and maps whatever the bridge raised
into the ``CommandFailedError`` family.

Usage:
    commands = TerminalCommandClient(bridge, CommandConfig())
    await commands.open_session("abc123")
    unsubscribe = await bridge.subscribe(output_channel("abc123"), handler)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

from termbridge.codec import to_wire
from termbridge.config import CommandConfig
from termbridge.errors import (
    CommandFailedError,
    CommandRejectedError,
    CommandTimeoutError,
    TransportError,
)
from termbridge.retry import with_retry

logger = logging.getLogger(__name__)

# Handler receives the channel payload; unsubscribe takes no arguments.
ChannelHandler = Callable[[Any], None]
Unsubscribe = Callable[[], None]

OUTPUT_CHANNEL_PREFIX = "terminal-output-"
CLOSED_CHANNEL_PREFIX = "terminal-closed-"


class Command(str, Enum):
    """Wire names of the backend terminal commands."""
    OPEN_SESSION = "open_terminal"
    START_STREAM = "start_terminal_stream"
    SEND_INPUT = "send_terminal_input"
    RESIZE = "resize_terminal"
    CLOSE_SESSION = "close_terminal"


def output_channel(agent_id: str) -> str:
    """Channel carrying raw output bytes for an agent's terminal."""
    return f"{OUTPUT_CHANNEL_PREFIX}{agent_id}"


def closed_channel(agent_id: str) -> str:
    """Channel notified when the agent's shell exits on the backend."""
    return f"{CLOSED_CHANNEL_PREFIX}{agent_id}"


class CommandBridge(ABC):
    """Transport capability consumed by terminal sessions.

    Implementations must route channel pushes by channel name and must
    support many concurrently open sessions over one bridge instance.
    """

    @abstractmethod
    async def invoke(self, command: str, args: Dict[str, Any]) -> Any:
        """Issue a command and wait for the backend's answer.

        Raises:
            CommandRejectedError: The backend answered with a failure.
            ConnectionError: The transport was lost before an answer.
        """

    @abstractmethod
    async def subscribe(self, channel: str, handler: ChannelHandler) -> Unsubscribe:
        """Register ``handler`` for pushes on ``channel``.

        Returns:
            Callable that removes exactly this registration. Calling it more
            than once is a no-op.
        """


class TerminalCommandClient:
    """Issues terminal commands through a bridge with deadlines and retry.

    Every call is wrapped in ``asyncio.wait_for`` with ``config.timeout``.
    Commands listed in ``config.retry_commands`` are retried with backoff on
    timeouts and connection loss; a backend rejection is never retried.
    """

    def __init__(self, bridge: CommandBridge, config: Optional[CommandConfig] = None):
        self.bridge = bridge
        self.config = config or CommandConfig()

    async def open_session(self, agent_id: str) -> Any:
        return await self._call(Command.OPEN_SESSION, agent_id, {"agent_id": agent_id})

    async def start_stream(self, agent_id: str) -> Any:
        return await self._call(Command.START_STREAM, agent_id, {"agent_id": agent_id})

    async def send_input(self, agent_id: str, data: bytes) -> Any:
        return await self._call(
            Command.SEND_INPUT, agent_id,
            {"agent_id": agent_id, "data": to_wire(data)},
        )

    async def resize(self, agent_id: str, rows: int, cols: int) -> Any:
        return await self._call(
            Command.RESIZE, agent_id,
            {"agent_id": agent_id, "rows": rows, "cols": cols},
        )

    async def close_session(self, agent_id: str) -> Any:
        return await self._call(Command.CLOSE_SESSION, agent_id, {"agent_id": agent_id})

    async def subscribe(self, agent_id: str, channel: str, handler: ChannelHandler) -> Unsubscribe:
        """Subscribe through the bridge under the same deadline.

        If the deadline expires (or the caller is cancelled) and the bridge
        completes the registration afterwards, the late registration is
        removed as soon as it lands.
        """
        pending = asyncio.ensure_future(self.bridge.subscribe(channel, handler))
        try:
            return await asyncio.wait_for(asyncio.shield(pending), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            pending.add_done_callback(self._release_late_subscription)
            raise CommandTimeoutError("subscribe", agent_id, self.config.timeout)
        except asyncio.CancelledError:
            pending.add_done_callback(self._release_late_subscription)
            raise
        except ConnectionError as e:
            raise TransportError("subscribe", agent_id, str(e) or "connection lost") from e

    @staticmethod
    def _release_late_subscription(future: "asyncio.Future[Unsubscribe]") -> None:
        if future.cancelled() or future.exception() is not None:
            return
        try:
            future.result()()
            logger.debug("[TerminalCommandClient] Released late subscription")
        except Exception as e:
            logger.warning(f"[TerminalCommandClient] Failed to release late subscription: {e}")

    async def _call(self, command: Command, agent_id: str, args: Dict[str, Any]) -> Any:
        name = command.value
        timeout = self.config.timeout

        async def attempt() -> Any:
            return await asyncio.wait_for(self.bridge.invoke(name, args), timeout=timeout)

        logger.debug(f"[TerminalCommandClient] {name}: agent_id={agent_id}")

        try:
            if name in self.config.retry_commands:
                result, stats = await with_retry(
                    attempt,
                    config=self.config.retry_config(),
                    context=f"{name} agent={agent_id}",
                )
                if stats.attempts > 1:
                    logger.info(f"{name} succeeded after {stats.attempts} attempts")
                return result
            return await attempt()

        except asyncio.TimeoutError:
            raise CommandTimeoutError(name, agent_id, timeout)
        except CommandRejectedError as e:
            raise CommandFailedError(name, agent_id, str(e)) from e
        except ConnectionError as e:
            raise TransportError(name, agent_id, str(e) or "connection lost") from e
        except CommandFailedError:
            raise
        except Exception as e:
            raise CommandFailedError(name, agent_id, str(e) or type(e).__name__) from e


__all__ = [
    "CLOSED_CHANNEL_PREFIX",
    "ChannelHandler",
    "Command",
    "CommandBridge",
    "OUTPUT_CHANNEL_PREFIX",
    "TerminalCommandClient",
    "Unsubscribe",
    "closed_channel",
    "output_channel",
]
