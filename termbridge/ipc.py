"""IPC command bridge over a Unix domain socket.

Connects to a ``BridgeIPCServer`` (see ``termbridge.server``) and implements
``CommandBridge`` on top of it.

Usage:
    from termbridge.ipc import IPCCommandBridge

    bridge = IPCCommandBridge("/tmp/termbridge.sock")
    await bridge.connect()

    await bridge.invoke("open_terminal", {"agent_id": "abc123"})
    unsubscribe = await bridge.subscribe("terminal-output-abc123", on_bytes)
    ...
    await bridge.disconnect()

Protocol:
- Each message is framed: 4-byte length (big-endian) + JSON payload
- Requests carry a ``request_id``; the matching response resolves the
  caller's future
- Channel pushes are dispatched to every handler registered for the
  channel; the subscribe frame is sent only for the first handler and the
  unsubscribe frame only when the last one is removed
"""

import asyncio
import json
import logging
import struct
import uuid
from typing import Any, Dict, List, Optional

from termbridge.bridge import ChannelHandler, CommandBridge, Unsubscribe
from termbridge.errors import CommandRejectedError, ProtocolError
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

logger = logging.getLogger(__name__)

# Message framing: 4-byte length prefix (big-endian) + JSON payload
HEADER_SIZE = 4
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB max

DEFAULT_SOCKET_PATH = "/tmp/termbridge.sock"


async def read_frame(reader: asyncio.StreamReader) -> Optional[str]:
    """Read a length-prefixed message.

    Returns:
        The message string, or None if the connection closed.

    Raises:
        ProtocolError: If the announced length exceeds MAX_MESSAGE_SIZE.
    """
    try:
        header = await reader.readexactly(HEADER_SIZE)
        length = struct.unpack(">I", header)[0]
        if length > MAX_MESSAGE_SIZE:
            raise ProtocolError(f"Message too large: {length}")
        payload = await reader.readexactly(length)
        return payload.decode("utf-8")
    except asyncio.IncompleteReadError:
        return None
    except ConnectionResetError:
        return None


async def write_frame(writer: asyncio.StreamWriter, message: str) -> None:
    """Write a length-prefixed message."""
    payload = message.encode("utf-8")
    header = struct.pack(">I", len(payload))
    writer.write(header + payload)
    await writer.drain()


class IPCCommandBridge(CommandBridge):
    """Command bridge speaking the termbridge IPC protocol.

    A single reader task owns the socket's read side and dispatches
    responses to pending futures and channel pushes to handlers, so many
    sessions can share one connection.
    """

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH):
        self.socket_path = socket_path

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connected = False
        self._client_id: Optional[str] = None

        self._pending: Dict[str, asyncio.Future] = {}
        self._handlers: Dict[str, List[ChannelHandler]] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        """Check if connected to server."""
        return self._connected and self._writer is not None

    @property
    def client_id(self) -> Optional[str]:
        """Get the client ID assigned by server."""
        return self._client_id

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, timeout: float = 5.0) -> None:
        """Connect to the server and wait for its ``connected`` event.

        Raises:
            ConnectionError: If the socket cannot be reached or the
                handshake fails.
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(self.socket_path),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, OSError) as e:
            raise ConnectionError(f"Connection failed: {self.socket_path}: {e}") from e

        try:
            message = await asyncio.wait_for(read_frame(self._reader), timeout=timeout)
            if message is None:
                raise ConnectionError("Server closed connection during handshake")
            event = deserialize_event(message)
            if not isinstance(event, ConnectedEvent):
                raise ProtocolError(f"Expected connected event, got {event.type.value}")
        except Exception as e:
            await self._close_transport()
            raise ConnectionError(f"Handshake failed: {e}") from e

        self._client_id = event.server_info.get("client_id")
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to {self.socket_path} as {self._client_id}")

    async def disconnect(self) -> None:
        """Disconnect from the server and fail any in-flight requests."""
        self._connected = False

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        await self._close_transport()
        self._fail_pending(ConnectionError("Disconnected"))
        self._handlers.clear()
        self._client_id = None

    async def _close_transport(self) -> None:
        if self._writer:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing IPC writer: {e}")
        self._reader = None
        self._writer = None

    # =========================================================================
    # CommandBridge
    # =========================================================================

    async def invoke(self, command: str, args: Dict[str, Any]) -> Any:
        if not self.is_connected:
            raise ConnectionError("Not connected")

        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send(CommandRequest(request_id=request_id, command=command, args=args))
            response: CommandResponse = await future
        finally:
            self._pending.pop(request_id, None)

        if not response.ok:
            raise CommandRejectedError(
                response.error or f"{command} failed",
                error_type=response.error_type,
            )
        return response.result

    async def subscribe(self, channel: str, handler: ChannelHandler) -> Unsubscribe:
        if not self.is_connected:
            raise ConnectionError("Not connected")

        handlers = self._handlers.setdefault(channel, [])
        first = not handlers
        handlers.append(handler)

        if first:
            try:
                await self._send(SubscribeRequest(channel=channel))
            except ConnectionError:
                self._remove_handler(channel, handler)
                raise

        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            if self._remove_handler(channel, handler) and self.is_connected:
                asyncio.ensure_future(self._send_quietly(UnsubscribeRequest(channel=channel)))

        return unsubscribe

    def _remove_handler(self, channel: str, handler: ChannelHandler) -> bool:
        """Remove one handler; True if the channel has no handlers left."""
        handlers = self._handlers.get(channel)
        if not handlers:
            return False
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        if not handlers:
            del self._handlers[channel]
            return True
        return False

    # =========================================================================
    # Message I/O
    # =========================================================================

    async def _send(self, event: Event) -> None:
        if not self._writer:
            raise ConnectionError("Not connected")
        async with self._write_lock:
            try:
                await write_frame(self._writer, serialize_event(event))
            except (ConnectionResetError, BrokenPipeError, OSError) as e:
                logger.debug(f"_send: connection lost while writing: {e}")
                self._connected = False
                raise ConnectionError("Connection lost") from e

    async def _send_quietly(self, event: Event) -> None:
        try:
            await self._send(event)
        except ConnectionError as e:
            logger.debug(f"Dropped {type(event).__name__}: {e}")

    async def _read_loop(self) -> None:
        """Dispatch incoming frames until the connection closes."""
        try:
            while self._connected and self._reader:
                message = await read_frame(self._reader)
                if message is None:
                    logger.info("IPC connection closed by server")
                    break
                try:
                    event = deserialize_event(message)
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning(f"Ignoring malformed frame: {e}")
                    continue
                self._dispatch(event)
        except asyncio.CancelledError:
            raise
        except ProtocolError as e:
            logger.error(f"IPC protocol error: {e}")
        finally:
            self._connected = False
            self._fail_pending(ConnectionError("Connection lost"))

    def _dispatch(self, event: Event) -> None:
        if isinstance(event, CommandResponse):
            future = self._pending.get(event.request_id)
            if future is None:
                logger.debug(f"Response for unknown request {event.request_id}")
            elif not future.done():
                future.set_result(event)
        elif isinstance(event, ChannelEvent):
            for handler in list(self._handlers.get(event.channel, ())):
                try:
                    handler(event.payload)
                except Exception as e:
                    logger.error(f"Channel handler error on {event.channel}: {e}")
        elif isinstance(event, ErrorEvent):
            logger.warning(f"Server error: {event.error_type}: {event.error}")
        else:
            logger.debug(f"Ignoring {type(event).__name__}")

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()


__all__ = [
    "DEFAULT_SOCKET_PATH",
    "HEADER_SIZE",
    "IPCCommandBridge",
    "MAX_MESSAGE_SIZE",
    "read_frame",
    "write_frame",
]
