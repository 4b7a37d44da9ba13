"""Tests for the IPC event protocol."""

import json

import pytest

from termbridge.events import (
    ChannelEvent,
    CommandRequest,
    CommandResponse,
    ConnectedEvent,
    EventType,
    deserialize_event,
    serialize_event,
)


def test_command_request_wire_shape():
    request = CommandRequest(
        request_id="r1", command="resize_terminal",
        args={"agent_id": "a1", "rows": 24, "cols": 80},
    )
    data = json.loads(serialize_event(request))

    assert data["type"] == "command.request"
    assert data["request_id"] == "r1"
    assert data["args"] == {"agent_id": "a1", "rows": 24, "cols": 80}
    assert "timestamp" in data


def test_deserialize_typed_events():
    response = deserialize_event(serialize_event(
        CommandResponse(request_id="r1", ok=False, error="boom", error_type="RuntimeError")
    ))
    assert isinstance(response, CommandResponse)
    assert response.type == EventType.COMMAND_RESPONSE
    assert response.ok is False
    assert response.error == "boom"

    push = deserialize_event(serialize_event(
        ChannelEvent(channel="terminal-output-a1", payload=[104, 105])
    ))
    assert isinstance(push, ChannelEvent)
    assert push.payload == [104, 105]


def test_unknown_fields_ignored():
    event = deserialize_event(json.dumps({
        "type": "connected",
        "server_info": {"client_id": "ipc_1"},
        "future_field": True,
    }))
    assert isinstance(event, ConnectedEvent)
    assert event.server_info["client_id"] == "ipc_1"


def test_unknown_type_rejected():
    with pytest.raises(ValueError):
        deserialize_event(json.dumps({"type": "agent.output"}))


def test_non_object_rejected():
    with pytest.raises(ValueError):
        deserialize_event("[1, 2, 3]")
