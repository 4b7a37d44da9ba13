"""Registry of terminal sessions, one per agent.

Handles:
- Mounting a session for an agent (get-or-create, never two live sessions)
- Unmounting and switching between agents
- Tearing everything down on exit
"""

import logging
from typing import Dict, List, Optional

from termbridge.bridge import CommandBridge, TerminalCommandClient
from termbridge.config import BridgeConfig
from termbridge.session import OutputCallback, StatusCallback, TerminalSession
from termbridge.widget import TerminalWidget

logger = logging.getLogger(__name__)


class TerminalSessionManager:
    """
    Owns the terminal sessions opened over one command bridge.

    All sessions share a single ``TerminalCommandClient``; pushes are routed
    by the bridge per agent id, so sessions never see each other's output.
    Methods run on the event loop; no locking is needed.

    Attributes:
        commands: Shared command client.
        sessions: Registry of mounted sessions (agent_id -> TerminalSession).
    """

    def __init__(self, bridge: CommandBridge, config: Optional[BridgeConfig] = None):
        self.config = config or BridgeConfig()
        self.commands = TerminalCommandClient(bridge, self.config.commands)
        self.sessions: Dict[str, TerminalSession] = {}
        self._stopping: Dict[str, TerminalSession] = {}

        logger.info("TerminalSessionManager initialized")

    async def mount(
        self,
        agent_id: str,
        widget: Optional[TerminalWidget] = None,
        on_output: Optional[OutputCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        start: bool = True,
    ) -> TerminalSession:
        """
        Return the live session for ``agent_id``, creating it if needed.

        A closed session left in the registry is replaced. If the agent's
        previous session is still tearing down, the new one is created only
        after that teardown (including its backend close) has finished. When
        ``start`` is true the session is started with ``schedule_start()``
        so the widget can settle its geometry first.
        """
        while True:
            stopping = self._stopping.get(agent_id)
            if stopping is not None:
                logger.debug(
                    f"[TerminalSessionManager] Waiting for previous session to stop: "
                    f"agent_id={agent_id}"
                )
                await stopping.stop()

            existing = self.sessions.get(agent_id)
            if existing is None:
                break
            if not existing.is_closing:
                logger.info(
                    f"[TerminalSessionManager] Session already mounted (idempotent): "
                    f"agent_id={agent_id}"
                )
                return existing

            logger.warning(
                f"[TerminalSessionManager] Replacing closed session: agent_id={agent_id}"
            )
            await existing.stop()
            if self.sessions.get(agent_id) is existing:
                del self.sessions[agent_id]

        session = TerminalSession(
            agent_id,
            self.commands,
            widget=widget,
            on_output=on_output,
            on_status_change=on_status_change,
            config=self.config.session,
        )
        self.sessions[agent_id] = session
        logger.info(f"[TerminalSessionManager] Mounted: agent_id={agent_id}")

        if start:
            session.schedule_start()
        return session

    async def unmount(self, agent_id: str) -> None:
        """Stop and forget the session. Safe if nothing is mounted.

        A mount() for the same agent issued while this is pending waits for
        the teardown to finish.
        """
        session = self.sessions.pop(agent_id, None)
        if session is None:
            logger.debug(f"[TerminalSessionManager] Nothing mounted: agent_id={agent_id}")
            return

        logger.info(f"[TerminalSessionManager] Unmounting: agent_id={agent_id}")
        self._stopping[agent_id] = session
        try:
            await session.stop()
        finally:
            if self._stopping.get(agent_id) is session:
                del self._stopping[agent_id]

    async def switch(
        self,
        old_agent_id: Optional[str],
        new_agent_id: str,
        widget: Optional[TerminalWidget] = None,
        on_output: Optional[OutputCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> TerminalSession:
        """Unmount the old agent's session, then mount the new one."""
        if old_agent_id is not None and old_agent_id != new_agent_id:
            await self.unmount(old_agent_id)
        return await self.mount(
            new_agent_id,
            widget=widget,
            on_output=on_output,
            on_status_change=on_status_change,
        )

    def get(self, agent_id: str) -> Optional[TerminalSession]:
        return self.sessions.get(agent_id)

    def list_sessions(self) -> List[str]:
        return list(self.sessions.keys())

    async def cleanup_all(self) -> None:
        """Stop every mounted session; failures are logged."""
        agent_ids = list(self.sessions.keys())
        if agent_ids:
            logger.info(f"[TerminalSessionManager] Cleaning up {len(agent_ids)} sessions")

        for agent_id in agent_ids:
            try:
                await self.unmount(agent_id)
            except Exception as e:
                logger.error(f"[TerminalSessionManager] Error stopping session {agent_id}: {e}")


__all__ = ["TerminalSessionManager"]
