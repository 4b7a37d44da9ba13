"""Event protocol for the terminal bridge IPC transport.

Events are JSON-serializable dataclasses carried in length-prefixed frames.

Event Flow:
    Server -> Client: connected, command responses, channel pushes, errors
    Client -> Server: command requests, channel subscribe/unsubscribe

Protocol Version: 1.0
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import json

PROTOCOL_VERSION = "1.0"


class EventType(str, Enum):
    """All event types in the protocol."""

    # Connection lifecycle
    CONNECTED = "connected"
    ERROR = "error"

    # Request/response (Client -> Server -> Client)
    COMMAND_REQUEST = "command.request"
    COMMAND_RESPONSE = "command.response"

    # Push channels
    CHANNEL_SUBSCRIBE = "channel.subscribe"
    CHANNEL_UNSUBSCRIBE = "channel.unsubscribe"
    CHANNEL_EVENT = "channel.event"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    """Base class for all events."""
    type: EventType
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        if isinstance(d.get('type'), EventType):
            d['type'] = d['type'].value
        return d

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class ConnectedEvent(Event):
    """Sent by the server when a client connects."""
    type: EventType = field(default=EventType.CONNECTED)
    protocol_version: str = PROTOCOL_VERSION
    server_info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorEvent(Event):
    """Error not tied to a specific request."""
    type: EventType = field(default=EventType.ERROR)
    error: str = ""
    error_type: str = ""


@dataclass
class CommandRequest(Event):
    """Invoke a named backend command."""
    type: EventType = field(default=EventType.COMMAND_REQUEST)
    request_id: str = ""
    command: str = ""
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CommandResponse(Event):
    """Result of a command request, matched by ``request_id``."""
    type: EventType = field(default=EventType.COMMAND_RESPONSE)
    request_id: str = ""
    ok: bool = True
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class SubscribeRequest(Event):
    """Start receiving pushes for a channel."""
    type: EventType = field(default=EventType.CHANNEL_SUBSCRIBE)
    channel: str = ""


@dataclass
class UnsubscribeRequest(Event):
    """Stop receiving pushes for a channel."""
    type: EventType = field(default=EventType.CHANNEL_UNSUBSCRIBE)
    channel: str = ""


@dataclass
class ChannelEvent(Event):
    """A push on a named channel (e.g. ``terminal-output-{agent_id}``)."""
    type: EventType = field(default=EventType.CHANNEL_EVENT)
    channel: str = ""
    payload: Any = None


_EVENT_CLASSES: Dict[str, type] = {
    EventType.CONNECTED.value: ConnectedEvent,
    EventType.ERROR.value: ErrorEvent,
    EventType.COMMAND_REQUEST.value: CommandRequest,
    EventType.COMMAND_RESPONSE.value: CommandResponse,
    EventType.CHANNEL_SUBSCRIBE.value: SubscribeRequest,
    EventType.CHANNEL_UNSUBSCRIBE.value: UnsubscribeRequest,
    EventType.CHANNEL_EVENT.value: ChannelEvent,
}


def serialize_event(event: Event) -> str:
    """Serialize an event to JSON string."""
    return event.to_json()


def deserialize_event(json_str: str) -> Event:
    """Deserialize a JSON string to an event object.

    Raises:
        ValueError: If the event type is unknown or the payload is not an
            object.
        json.JSONDecodeError: If the JSON is invalid.
    """
    data = json.loads(json_str)
    if not isinstance(data, dict):
        raise ValueError("Event must be a JSON object")

    event_type = data.get("type")
    if event_type not in _EVENT_CLASSES:
        raise ValueError(f"Unknown event type: {event_type}")

    event_class = _EVENT_CLASSES[event_type]
    data["type"] = EventType(event_type)

    # Remove unknown fields (forward compatibility)
    known_fields = {f.name for f in event_class.__dataclass_fields__.values()}
    filtered_data = {k: v for k, v in data.items() if k in known_fields}

    return event_class(**filtered_data)


__all__ = [
    "ChannelEvent",
    "CommandRequest",
    "CommandResponse",
    "ConnectedEvent",
    "ErrorEvent",
    "Event",
    "EventType",
    "PROTOCOL_VERSION",
    "SubscribeRequest",
    "UnsubscribeRequest",
    "deserialize_event",
    "serialize_event",
]
