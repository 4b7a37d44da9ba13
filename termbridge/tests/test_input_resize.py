"""Tests for InputGate and ResizeSynchronizer."""

from unittest.mock import AsyncMock, Mock

import pytest

from termbridge.errors import CommandFailedError, NotConnectedError
from termbridge.input import InputGate
from termbridge.resize import ResizeSynchronizer
from termbridge.widget import BufferWidget


def make_commands():
    commands = Mock()
    commands.send_input = AsyncMock()
    commands.resize = AsyncMock()
    return commands


class TestInputGate:

    @pytest.mark.asyncio
    async def test_submit_when_connected(self):
        commands = make_commands()
        gate = InputGate("a1", commands, is_connected=lambda: True)

        await gate.submit("ls\n")

        commands.send_input.assert_awaited_once_with("a1", b"ls\n")

    @pytest.mark.asyncio
    async def test_submit_when_disconnected(self):
        commands = make_commands()
        gate = InputGate(
            "a1", commands, is_connected=lambda: False, describe_state=lambda: "error"
        )

        with pytest.raises(NotConnectedError) as exc_info:
            await gate.submit("ls\n")

        assert exc_info.value.state == "error"
        commands.send_input.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_execute_uses_terminator(self):
        commands = make_commands()
        gate = InputGate("a1", commands, is_connected=lambda: True, line_terminator="\r")

        await gate.execute("exit")

        commands.send_input.assert_awaited_once_with("a1", b"exit\r")


class TestResizeSynchronizer:

    @pytest.mark.asyncio
    async def test_skips_when_disconnected(self):
        commands = make_commands()
        resizer = ResizeSynchronizer("a1", commands, is_connected=lambda: False)

        assert await resizer.resize(24, 80) is False
        commands.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_unchanged_and_degenerate(self):
        commands = make_commands()
        resizer = ResizeSynchronizer("a1", commands, is_connected=lambda: True)

        assert await resizer.resize(24, 80) is True
        assert await resizer.resize(24, 80) is False
        assert await resizer.resize(0, 80) is False
        assert await resizer.resize(24, -1) is False

        commands.resize.assert_awaited_once_with("a1", 24, 80)

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_geometry(self):
        commands = make_commands()
        resizer = ResizeSynchronizer("a1", commands, is_connected=lambda: True)
        await resizer.push_initial(24, 80)

        commands.resize.side_effect = CommandFailedError("resize_terminal", "a1", "nope")
        assert await resizer.resize(30, 100) is False
        assert resizer.geometry == (24, 80)

        commands.resize.side_effect = None
        assert await resizer.resize(30, 100) is True
        assert resizer.geometry == (30, 100)

    @pytest.mark.asyncio
    async def test_push_initial_raises(self):
        commands = make_commands()
        commands.resize.side_effect = CommandFailedError("resize_terminal", "a1", "nope")
        resizer = ResizeSynchronizer("a1", commands, is_connected=lambda: True)

        with pytest.raises(CommandFailedError):
            await resizer.push_initial(24, 80)
        assert resizer.geometry is None

    @pytest.mark.asyncio
    async def test_fit_and_reset(self):
        commands = make_commands()
        resizer = ResizeSynchronizer("a1", commands, is_connected=lambda: True)
        widget = BufferWidget(rows=40, cols=120)

        assert await resizer.fit(widget) is True
        resizer.reset()
        assert resizer.geometry is None
        assert await resizer.fit(widget) is True
        assert commands.resize.await_count == 2
