"""IPC server exposing a terminal backend over a Unix domain socket.

This is the backend half of the bridge protocol. It knows nothing about
PTYs: command requests are dispatched to a ``TerminalBackend``
implementation, and the backend pushes output through the ``emit``
callable it is given.

Usage:
    from termbridge.server import BridgeIPCServer, TerminalBackend

    class MyBackend(TerminalBackend):
        ...

    server = BridgeIPCServer(MyBackend(), socket_path="/tmp/termbridge.sock")
    await server.start_background()
    ...
    await server.stop()
"""

import asyncio
import inspect
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from termbridge.bridge import Command
from termbridge.codec import from_wire
from termbridge.errors import ProtocolError
from termbridge.events import (
    ChannelEvent,
    CommandRequest,
    CommandResponse,
    ConnectedEvent,
    ErrorEvent,
    Event,
    SubscribeRequest,
    UnsubscribeRequest,
    deserialize_event,
    serialize_event,
)
from termbridge.ipc import DEFAULT_SOCKET_PATH, read_frame, write_frame

logger = logging.getLogger(__name__)

# emit(channel, payload)
Emitter = Callable[[str, Any], None]


class TerminalBackend(ABC):
    """Backend contract for the five terminal commands.

    Implementations raise any exception to signal failure; the message is
    returned to the client as a rejected command. ``open_terminal`` must be
    get-or-create: opening an agent that already has a live session
    succeeds without creating a second one.
    """

    def bind(self, emit: Emitter) -> None:
        """Receive the callable used to push channel events."""
        self.emit = emit

    @abstractmethod
    async def open_terminal(self, agent_id: str) -> None:
        ...

    @abstractmethod
    async def start_terminal_stream(self, agent_id: str) -> None:
        ...

    @abstractmethod
    async def send_terminal_input(self, agent_id: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def resize_terminal(self, agent_id: str, rows: int, cols: int) -> None:
        ...

    @abstractmethod
    async def close_terminal(self, agent_id: str) -> None:
        ...


@dataclass
class IPCClientConnection:
    """Represents a connected IPC client."""
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    client_id: str
    connected_at: str
    channels: Set[str] = field(default_factory=set)
    queue: "asyncio.Queue[Event]" = field(default_factory=asyncio.Queue)


class BridgeIPCServer:
    """IPC server routing bridge commands to a TerminalBackend.

    Protocol:
    - Each message is framed: 4-byte length (big-endian) + JSON payload
    - Commands are handled concurrently; responses carry the request id
    - Channel pushes go only to clients subscribed to that channel
    """

    def __init__(self, backend: TerminalBackend, socket_path: str = DEFAULT_SOCKET_PATH):
        self.backend = backend
        self.socket_path = socket_path

        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: Dict[str, IPCClientConnection] = {}
        self._client_counter = 0
        self._tasks: Set[asyncio.Task] = set()

        backend.bind(self.emit)

    async def start_background(self) -> None:
        """Create the socket and start accepting clients."""
        socket_file = Path(self.socket_path)
        if socket_file.exists():
            socket_file.unlink()
        socket_file.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=self.socket_path,
        )
        os.chmod(self.socket_path, 0o600)

        logger.info(f"IPC server listening on {self.socket_path}")

    async def stop(self) -> None:
        """Stop the server and close all client connections."""
        if self._server:
            self._server.close()

        for client in list(self._clients.values()):
            client.writer.close()
        self._clients.clear()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._server:
            await self._server.wait_closed()
            self._server = None

        socket_file = Path(self.socket_path)
        if socket_file.exists():
            socket_file.unlink()

        logger.info("IPC server stopped")

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def subscribers(self, channel: str) -> List[str]:
        """Client ids subscribed to ``channel``."""
        return [cid for cid, c in self._clients.items() if channel in c.channels]

    def emit(self, channel: str, payload: Any) -> None:
        """Queue a push for every client subscribed to ``channel``."""
        for client in self._clients.values():
            if channel in client.channels:
                client.queue.put_nowait(ChannelEvent(channel=channel, payload=payload))

    # =========================================================================
    # Connection handling
    # =========================================================================

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._client_counter += 1
        client_id = f"ipc_{self._client_counter}"
        client = IPCClientConnection(
            reader=reader,
            writer=writer,
            client_id=client_id,
            connected_at=datetime.now(timezone.utc).isoformat(),
        )
        self._clients[client_id] = client
        logger.info(f"IPC client connected: {client_id}")

        sender = asyncio.create_task(self._send_loop(client))
        self._tasks.add(sender)
        sender.add_done_callback(self._tasks.discard)

        client.queue.put_nowait(ConnectedEvent(server_info={
            "client_id": client_id,
            "transport": "ipc",
            "socket_path": self.socket_path,
        }))

        try:
            while True:
                message = await read_frame(reader)
                if message is None:
                    break
                self._handle_message(client, message)
        except asyncio.CancelledError:
            pass
        except ProtocolError as e:
            logger.error(f"Protocol error from {client_id}: {e}")
        finally:
            sender.cancel()
            self._clients.pop(client_id, None)
            try:
                writer.close()
            except OSError:
                pass
            logger.info(f"IPC client disconnected: {client_id}")

    async def _send_loop(self, client: IPCClientConnection) -> None:
        while True:
            event = await client.queue.get()
            try:
                await write_frame(client.writer, serialize_event(event))
            except (ConnectionError, OSError) as e:
                logger.debug(f"Send error to {client.client_id}: {e}")
                return

    def _handle_message(self, client: IPCClientConnection, message: str) -> None:
        try:
            event = deserialize_event(message)
        except (json.JSONDecodeError, ValueError) as e:
            client.queue.put_nowait(ErrorEvent(error=str(e), error_type="RequestError"))
            return

        if isinstance(event, SubscribeRequest):
            client.channels.add(event.channel)
            logger.debug(f"{client.client_id} subscribed to {event.channel}")
        elif isinstance(event, UnsubscribeRequest):
            client.channels.discard(event.channel)
            logger.debug(f"{client.client_id} unsubscribed from {event.channel}")
        elif isinstance(event, CommandRequest):
            task = asyncio.create_task(self._run_command(client, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            client.queue.put_nowait(ErrorEvent(
                error=f"Unexpected event: {event.type.value}",
                error_type="RequestError",
            ))

    async def _run_command(self, client: IPCClientConnection, request: CommandRequest) -> None:
        try:
            result = await self._dispatch(request.command, request.args)
            response = CommandResponse(request_id=request.request_id, ok=True, result=result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{request.command} failed: {e}")
            response = CommandResponse(
                request_id=request.request_id,
                ok=False,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
        client.queue.put_nowait(response)

    async def _dispatch(self, command: str, args: Dict[str, Any]) -> Any:
        agent_id = args.get("agent_id")
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("agent_id is required")

        if command == Command.OPEN_SESSION.value:
            result = self.backend.open_terminal(agent_id)
        elif command == Command.START_STREAM.value:
            result = self.backend.start_terminal_stream(agent_id)
        elif command == Command.SEND_INPUT.value:
            result = self.backend.send_terminal_input(agent_id, from_wire(args.get("data", [])))
        elif command == Command.RESIZE.value:
            result = self.backend.resize_terminal(agent_id, int(args["rows"]), int(args["cols"]))
        elif command == Command.CLOSE_SESSION.value:
            result = self.backend.close_terminal(agent_id)
        else:
            raise ValueError(f"Unknown command: {command}")

        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = [
    "BridgeIPCServer",
    "Emitter",
    "IPCClientConnection",
    "TerminalBackend",
]
