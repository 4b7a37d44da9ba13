"""Test doubles for the command bridge."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from termbridge.bridge import ChannelHandler, CommandBridge, Unsubscribe


class FakeBridge(CommandBridge):
    """In-memory bridge that records every call.

    - ``fail(command, exc, times)`` queues exceptions for a command
    - ``block(command)`` makes the command wait until the returned event is set
    - ``block_subscribe()`` holds subscriptions the same way
    - ``emit(channel, payload)`` pushes to the currently registered handlers
    - ``log`` holds ("invoke" | "subscribe" | "unsubscribe", name) in order
    """

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.log: List[Tuple[str, str]] = []
        self.handlers: Dict[str, List[ChannelHandler]] = {}
        self._failures: Dict[str, List[BaseException]] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self.subscribe_failures: List[BaseException] = []
        self._subscribe_gate: Optional[asyncio.Event] = None

    # -- control ------------------------------------------------------------

    def fail(self, command: str, exc: BaseException, times: int = 1) -> None:
        self._failures.setdefault(command, []).extend([exc] * times)

    def block(self, command: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[command] = gate
        return gate

    def block_subscribe(self) -> asyncio.Event:
        self._subscribe_gate = asyncio.Event()
        return self._subscribe_gate

    def unblock(self, command: str) -> None:
        gate = self._gates.pop(command, None)
        if gate is not None:
            gate.set()

    def emit(self, channel: str, payload: Any) -> None:
        for handler in list(self.handlers.get(channel, [])):
            handler(payload)

    def handler_for(self, channel: str) -> Optional[ChannelHandler]:
        handlers = self.handlers.get(channel)
        return handlers[0] if handlers else None

    # -- inspection ---------------------------------------------------------

    def commands(self) -> List[str]:
        return [name for name, _ in self.calls]

    def count(self, command: str) -> int:
        return self.commands().count(command)

    def args(self, command: str) -> List[Dict[str, Any]]:
        return [args for name, args in self.calls if name == command]

    def subscribed_channels(self) -> List[str]:
        return [channel for channel, handlers in self.handlers.items() if handlers]

    # -- CommandBridge ------------------------------------------------------

    async def invoke(self, command: str, args: Dict[str, Any]) -> Any:
        self.calls.append((command, dict(args)))
        self.log.append(("invoke", command))

        gate = self._gates.get(command)
        if gate is not None:
            await gate.wait()

        failures = self._failures.get(command)
        if failures:
            raise failures.pop(0)
        return {"ok": True}

    async def subscribe(self, channel: str, handler: ChannelHandler) -> Unsubscribe:
        self.log.append(("subscribe", channel))
        if self._subscribe_gate is not None:
            await self._subscribe_gate.wait()
        if self.subscribe_failures:
            raise self.subscribe_failures.pop(0)

        self.handlers.setdefault(channel, []).append(handler)
        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            handlers = self.handlers.get(channel, [])
            if handler in handlers:
                handlers.remove(handler)
            self.log.append(("unsubscribe", channel))

        return unsubscribe


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``condition`` on the loop until it holds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
