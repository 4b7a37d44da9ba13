"""Tests for TerminalSessionManager."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from termbridge.bridge import output_channel
from termbridge.config import BridgeConfig, CommandConfig, SessionConfig
from termbridge.manager import TerminalSessionManager
from termbridge.session import SessionState
from termbridge.tests.fakes import wait_until
from termbridge.widget import BufferWidget


@pytest.fixture
def manager(bridge):
    config = BridgeConfig(
        commands=CommandConfig(timeout=1.0, base_delay=0.0, max_delay=0.0, jitter_factor=0.0),
        session=SessionConfig(init_delay=0.0),
    )
    return TerminalSessionManager(bridge, config)


class TestMount:

    @pytest.mark.asyncio
    async def test_mount_is_get_or_create(self, manager):
        first = await manager.mount("a1", start=False)
        second = await manager.mount("a1", start=False)

        assert first is second
        assert manager.list_sessions() == ["a1"]
        assert manager.get("a1") is first
        assert manager.get("missing") is None

    @pytest.mark.asyncio
    async def test_mount_schedules_start(self, manager, bridge):
        session = await manager.mount("a1")

        await wait_until(lambda: session.is_connected)

        assert bridge.count("open_terminal") == 1

    @pytest.mark.asyncio
    async def test_closed_session_is_replaced(self, manager):
        first = await manager.mount("a1", start=False)
        await first.stop()

        second = await manager.mount("a1", start=False)

        assert second is not first
        assert second.state == SessionState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, manager, bridge):
        seen_a, seen_b = [], []
        a = await manager.mount("a", on_output=seen_a.append, start=False)
        b = await manager.mount("b", on_output=seen_b.append, start=False)
        await a.start()
        await b.start()

        bridge.emit(output_channel("a"), list(b"only a"))

        assert "".join(seen_a) == "only a"
        assert seen_b == []


class TestUnmount:

    @pytest.mark.asyncio
    async def test_unmount_stops_session(self, manager, bridge):
        session = await manager.mount("a1", start=False)
        await session.start()

        await manager.unmount("a1")

        assert session.state == SessionState.CLOSED
        assert bridge.count("close_terminal") == 1
        assert manager.list_sessions() == []

    @pytest.mark.asyncio
    async def test_unmount_unknown_is_noop(self, manager, bridge):
        await manager.unmount("nobody")
        assert bridge.calls == []

    @pytest.mark.asyncio
    async def test_switch(self, manager, bridge):
        widget = BufferWidget()
        old = await manager.mount("old", start=False)
        await old.start()

        new = await manager.switch("old", "new", widget=widget)
        await wait_until(lambda: new.is_connected)

        assert old.state == SessionState.CLOSED
        assert manager.list_sessions() == ["new"]
        assert new.widget is widget
        assert bridge.args("close_terminal") == [{"agent_id": "old"}]

    @pytest.mark.asyncio
    async def test_switch_to_same_agent_keeps_session(self, manager):
        session = await manager.mount("a1", start=False)
        assert await manager.switch("a1", "a1") is session

    @pytest.mark.asyncio
    async def test_cleanup_all_continues_after_failure(self, manager, caplog):
        broken = await manager.mount("broken", start=False)
        healthy = await manager.mount("healthy", start=False)
        broken.stop = AsyncMock(side_effect=RuntimeError("stuck"))

        await manager.cleanup_all()

        assert manager.list_sessions() == []
        assert healthy.state == SessionState.CLOSED
        assert "stuck" in caplog.text


class TestRemountDuringTeardown:

    @pytest.mark.asyncio
    async def test_remount_waits_for_unmount_close(self, manager, bridge):
        session = await manager.mount("a1", start=False)
        await session.start()

        bridge.block("close_terminal")
        unmounting = asyncio.ensure_future(manager.unmount("a1"))
        await wait_until(lambda: bridge.count("close_terminal") == 1)

        remounting = asyncio.ensure_future(manager.mount("a1"))
        await asyncio.sleep(0.05)
        assert not remounting.done()
        assert bridge.count("open_terminal") == 1

        bridge.unblock("close_terminal")
        await unmounting
        replacement = await remounting
        await wait_until(lambda: replacement.is_connected)

        assert replacement is not session
        assert manager.get("a1") is replacement
        assert bridge.commands() == [
            "open_terminal", "start_terminal_stream", "resize_terminal",
            "close_terminal",
            "open_terminal", "start_terminal_stream", "resize_terminal",
        ]

    @pytest.mark.asyncio
    async def test_mount_waits_for_direct_stop(self, manager, bridge):
        session = await manager.mount("a1", start=False)
        await session.start()

        bridge.block("close_terminal")
        stopping = asyncio.ensure_future(session.stop())
        await wait_until(lambda: bridge.count("close_terminal") == 1)

        remounting = asyncio.ensure_future(manager.mount("a1"))
        await asyncio.sleep(0.05)
        assert not remounting.done()
        assert bridge.count("open_terminal") == 1

        bridge.unblock("close_terminal")
        await stopping
        replacement = await remounting
        await wait_until(lambda: replacement.is_connected)

        assert replacement is not session
        commands = bridge.commands()
        assert commands.count("open_terminal") == 2
        assert commands.index("close_terminal") < len(commands) - 1 - commands[::-1].index("open_terminal")

    @pytest.mark.asyncio
    async def test_concurrent_remounts_share_one_session(self, manager, bridge):
        session = await manager.mount("a1", start=False)
        await session.start()

        bridge.block("close_terminal")
        unmounting = asyncio.ensure_future(manager.unmount("a1"))
        await wait_until(lambda: bridge.count("close_terminal") == 1)

        first = asyncio.ensure_future(manager.mount("a1", start=False))
        second = asyncio.ensure_future(manager.mount("a1", start=False))
        await asyncio.sleep(0.01)
        bridge.unblock("close_terminal")
        await unmounting

        assert await first is await second
        assert manager.list_sessions() == ["a1"]
