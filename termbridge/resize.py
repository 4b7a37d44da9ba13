"""Resize synchronizer: pushes widget geometry to the backend."""

import logging
from typing import Callable, Optional, Tuple

from termbridge.bridge import TerminalCommandClient
from termbridge.errors import BridgeError
from termbridge.widget import TerminalWidget

logger = logging.getLogger(__name__)

Geometry = Tuple[int, int]


class ResizeSynchronizer:
    """Tracks the last geometry sent for one agent and skips repeats.

    A failed resize is logged and leaves the stored geometry untouched, so
    the next request with the same size is tried again. It never changes
    the session state.
    """

    def __init__(
        self,
        agent_id: str,
        commands: TerminalCommandClient,
        is_connected: Callable[[], bool],
    ):
        self.agent_id = agent_id
        self.commands = commands
        self._is_connected = is_connected
        self.geometry: Optional[Geometry] = None

    def reset(self) -> None:
        """Forget the last geometry (new backend session)."""
        self.geometry = None

    async def push_initial(self, rows: int, cols: int) -> None:
        """Handshake step: send the geometry unconditionally.

        Raises:
            CommandFailedError: Propagated so the handshake can fail.
        """
        await self.commands.resize(self.agent_id, rows, cols)
        self.geometry = (rows, cols)

    async def resize(self, rows: int, cols: int) -> bool:
        """Send a new geometry if connected and changed.

        Returns:
            True if a resize command was issued and succeeded.
        """
        if not self._is_connected():
            return False
        if rows <= 0 or cols <= 0:
            logger.debug(f"[ResizeSynchronizer] ignoring degenerate size {rows}x{cols}")
            return False
        if self.geometry == (rows, cols):
            return False

        try:
            await self.commands.resize(self.agent_id, rows, cols)
        except BridgeError as e:
            logger.warning(f"Failed to resize terminal for agent {self.agent_id}: {e}")
            return False

        self.geometry = (rows, cols)
        logger.info(f"Resized terminal for agent {self.agent_id} to {rows}x{cols}")
        return True

    async def fit(self, widget: TerminalWidget) -> bool:
        """Resize to the widget's current geometry."""
        return await self.resize(widget.rows, widget.cols)


__all__ = ["Geometry", "ResizeSynchronizer"]
