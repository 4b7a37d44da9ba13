"""Ordered, run-once teardown.

A ``CleanupSequencer`` holds named steps and runs them in registration
order exactly once. A step that raises is logged and the sequence carries
on: client-side resources are released even when the backend is gone.
Callers that arrive while the sequence is running wait for it to finish.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

CleanupStep = Callable[[], Union[None, Awaitable[Any]]]


class CleanupSequencer:
    """Runs registered teardown steps once, in order."""

    def __init__(self, name: str = "cleanup"):
        self.name = name
        self._steps: List[Tuple[str, CleanupStep]] = []
        self._done: Optional[asyncio.Future] = None
        self.completed: List[str] = []
        self.failed: List[str] = []

    def add(self, step_name: str, fn: CleanupStep) -> None:
        """Append a step. Steps added after the run started are rejected."""
        if self._done is not None:
            raise RuntimeError(f"{self.name}: cannot add step '{step_name}' after run()")
        self._steps.append((step_name, fn))

    @property
    def started(self) -> bool:
        return self._done is not None

    @property
    def finished(self) -> bool:
        return self._done is not None and self._done.done()

    @property
    def step_names(self) -> List[str]:
        return [name for name, _ in self._steps]

    async def run(self) -> None:
        """Run all steps; subsequent calls wait for the first run."""
        if self._done is not None:
            await asyncio.shield(self._done)
            return

        self._done = asyncio.get_running_loop().create_future()
        try:
            for step_name, fn in self._steps:
                try:
                    result = fn()
                    if inspect.isawaitable(result):
                        await result
                    self.completed.append(step_name)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failed.append(step_name)
                    logger.warning(f"[{self.name}] step '{step_name}' failed: {e}")
        finally:
            if not self._done.done():
                self._done.set_result(None)


__all__ = ["CleanupSequencer", "CleanupStep"]
