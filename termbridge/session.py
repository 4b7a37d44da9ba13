"""Terminal session state machine.

One ``TerminalSession`` drives one agent's remote shell through the command
bridge: it sequences the handshake, routes output pushes to the widget,
gates input, keeps the backend's geometry in sync and tears everything down
in a fixed order.

State machine:
    UNINITIALIZED -> INITIALIZING          (start())
    INITIALIZING  -> CONNECTED             (handshake succeeded)
    INITIALIZING  -> ERROR                 (any handshake step failed)
    CONNECTED     -> ERROR                 (backend reported the shell exited)
    ERROR         -> INITIALIZING          (start() / reconnect())
    *             -> CLOSED                (stop(); terminal)

Epochs:
    ``epoch`` is bumped once per handshake attempt and once at close. Every
    async continuation and every channel handler captures the epoch it was
    issued under and does nothing once the epoch has moved on, so a late
    response or push can never touch a newer attempt or a closed session.

Usage:
    commands = TerminalCommandClient(bridge, config.commands)
    session = TerminalSession("abc123", commands, widget=widget)
    await session.start()
    await session.execute_command("ls")
    ...
    await session.stop()
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from termbridge.bridge import (
    TerminalCommandClient,
    Unsubscribe,
    closed_channel,
    output_channel,
)
from termbridge.cleanup import CleanupSequencer
from termbridge.codec import StreamDecoder, from_wire
from termbridge.config import SessionConfig
from termbridge.errors import BridgeError, NotConnectedError, SessionClosedError
from termbridge.input import InputGate
from termbridge.resize import Geometry, ResizeSynchronizer
from termbridge.widget import Disposable, TerminalWidget

logger = logging.getLogger(__name__)

DEFAULT_GEOMETRY: Geometry = (24, 80)


class SessionState(Enum):
    """Lifecycle states of a terminal session."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    ERROR = "error"
    CLOSED = "closed"


_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.UNINITIALIZED: {SessionState.INITIALIZING, SessionState.CLOSED},
    SessionState.INITIALIZING: {SessionState.CONNECTED, SessionState.ERROR, SessionState.CLOSED},
    SessionState.CONNECTED: {SessionState.ERROR, SessionState.CLOSED},
    SessionState.ERROR: {SessionState.INITIALIZING, SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


@dataclass
class SessionStatus:
    """Snapshot of a session for UI display.

    Attributes:
        state: Current lifecycle state.
        agent_id: Agent the session belongs to.
        epoch: Current epoch.
        error: Failure description (only in ERROR).
        error_cause: "backend", "timeout", "transport" or "shell_exited".
    """
    state: SessionState
    agent_id: str
    epoch: int = 0
    error: Optional[str] = None
    error_cause: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def connecting(self) -> bool:
        return self.state == SessionState.INITIALIZING

    @property
    def can_reconnect(self) -> bool:
        return self.state == SessionState.ERROR


StatusCallback = Callable[[SessionStatus], None]
OutputCallback = Callable[[str], None]

# Widget banners, written outside the decode path
BANNER_CONNECTED = (
    "\r\n\x1b[1;32m✓ Terminal connected successfully!\x1b[0m",
    "\x1b[90m(Note: Type \"exit\" to close the session)\x1b[0m",
    "",
)
BANNER_SHELL_ENDED = (
    "\r\n\x1b[1;33m Shell session ended\x1b[0m",
    "\x1b[33m Reconnect to start a new session.\x1b[0m\r\n",
)
BANNER_RECONNECTING = ("\x1b[1;36m Reconnecting...\x1b[0m\r\n",)


class TerminalSession:
    """Lifecycle owner for one agent's remote terminal.

    Args:
        agent_id: Opaque agent identifier; immutable for the session.
        commands: Command client shared with other sessions.
        widget: Optional terminal widget. When given, decoded output is
            written to it, its keystrokes are forwarded, its geometry is
            used for resizes, and it is disposed on stop().
        on_output: Optional callback receiving decoded output text.
        on_status_change: Called with a SessionStatus on every transition.
        config: Session behavior settings.
        geometry: Optional callable returning (rows, cols); overrides the
            widget's geometry for the initial resize.
    """

    def __init__(
        self,
        agent_id: str,
        commands: TerminalCommandClient,
        widget: Optional[TerminalWidget] = None,
        on_output: Optional[OutputCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        config: Optional[SessionConfig] = None,
        geometry: Optional[Callable[[], Geometry]] = None,
    ):
        self._agent_id = agent_id
        self.commands = commands
        self.config = config or SessionConfig()
        self._widget = widget
        self._on_output = on_output
        self._on_status_change = on_status_change
        self._geometry_source = geometry

        self._state = SessionState.UNINITIALIZED
        self._epoch = 0
        self._error: Optional[str] = None
        self._error_cause: Optional[str] = None

        # Initialization guard and teardown flag
        self._initializing = False
        self._closing = False

        # Output path
        self._decoder = StreamDecoder()
        self._held: List[bytes] = []
        self._output_disposed = False
        self._subscriptions: List[Unsubscribe] = []

        # Input path
        self._input = InputGate(
            agent_id,
            commands,
            is_connected=lambda: self.is_connected,
            describe_state=lambda: self._state.value,
            line_terminator=self.config.line_terminator,
        )
        self._pending_keys: List[str] = []
        self._key_pump: Optional[asyncio.Task] = None
        self._input_hookup: Optional[Disposable] = None
        if widget is not None:
            self._input_hookup = widget.on_data(self._on_widget_data)

        self._resizer = ResizeSynchronizer(
            agent_id, commands, is_connected=lambda: self.is_connected,
        )

        # Deferred start
        self._init_timer: Optional[asyncio.TimerHandle] = None
        self._init_task: Optional[asyncio.Task] = None

        self._cleanup = CleanupSequencer(f"TerminalSession {agent_id}")
        self._cleanup.add("cancel_init_timer", self._cancel_init_timer)
        self._cleanup.add("unsubscribe", self._release_subscriptions)
        self._cleanup.add("dispose_input", self._dispose_input)
        self._cleanup.add("close_backend", self._close_backend)
        self._cleanup.add("dispose_output", self._dispose_output)
        self._cleanup.add("mark_closed", self._mark_closed)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def geometry(self) -> Optional[Geometry]:
        """Last (rows, cols) acknowledged by the backend."""
        return self._resizer.geometry

    @property
    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED and not self._closing

    @property
    def is_closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def is_closing(self) -> bool:
        """True once stop() has been called, even while teardown is still running."""
        return self._closing or self._state == SessionState.CLOSED

    @property
    def widget(self) -> Optional[TerminalWidget]:
        return self._widget

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            agent_id=self._agent_id,
            epoch=self._epoch,
            error=self._error,
            error_cause=self._error_cause,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Run the open -> start-stream -> subscribe -> resize handshake.

        No-op while a handshake is running or the session is connected.
        Failures leave the session in ERROR; call start() again to retry.

        Raises:
            SessionClosedError: If the session has been stopped.
        """
        self._check_not_closed()
        if self._is_busy():
            logger.debug(
                f"[TerminalSession] start() ignored: agent_id={self._agent_id}, "
                f"state={self._state.value}"
            )
            return

        self._initializing = True
        try:
            await self._handshake()
        finally:
            self._initializing = False

    async def _handshake(self) -> None:
        """Handshake body; the caller holds the initialization guard."""
        self._epoch += 1
        epoch = self._epoch
        self._held.clear()
        self._decoder.reset()
        self._resizer.reset()
        self._transition_to(SessionState.INITIALIZING)

        logger.info(f"[TerminalSession] Starting: agent_id={self._agent_id}, epoch={epoch}")

        acquired: List[Unsubscribe] = []
        try:
            await self.commands.open_session(self._agent_id)
            if not self._is_current(epoch):
                return

            await self.commands.start_stream(self._agent_id)
            if not self._is_current(epoch):
                return

            acquired.append(await self.commands.subscribe(
                self._agent_id,
                output_channel(self._agent_id),
                functools.partial(self._on_output_event, epoch),
            ))
            if not self._is_current(epoch):
                return

            acquired.append(await self.commands.subscribe(
                self._agent_id,
                closed_channel(self._agent_id),
                functools.partial(self._on_closed_event, epoch),
            ))
            if not self._is_current(epoch):
                return

            rows, cols = self._current_geometry()
            await self._resizer.push_initial(rows, cols)
            if not self._is_current(epoch):
                return

            self._subscriptions = acquired
            acquired = []
            self._transition_to(SessionState.CONNECTED)
            self._flush_held()

            logger.info(
                f"[TerminalSession] Connected: agent_id={self._agent_id}, "
                f"epoch={epoch}, size={rows}x{cols}"
            )
            self._banner(*BANNER_CONNECTED)
            if self._widget is not None and not self._output_disposed:
                self._widget.focus()

        except Exception as e:
            if not self._is_current(epoch):
                logger.debug(f"[TerminalSession] Stale handshake failure ignored: {e}")
                return
            logger.error(f"Failed to initialize terminal for agent '{self._agent_id}': {e}")
            self._held.clear()
            self._fail(str(e), getattr(e, "cause", "backend"))
            self._banner(f"\r\n\x1b[1;31mError: {e}\x1b[0m")

        finally:
            for unsubscribe in acquired:
                self._call_unsubscribe(unsubscribe)

    def schedule_start(self, delay: Optional[float] = None) -> None:
        """Start after ``delay`` seconds (default ``config.init_delay``).

        Lets the widget settle its geometry before the initial resize. The
        timer is cancelled by stop().
        """
        self._check_not_closed()
        if self._init_timer is not None:
            return

        if delay is None:
            delay = self.config.init_delay
        loop = asyncio.get_running_loop()
        self._init_timer = loop.call_later(delay, self._run_scheduled_start)

    def _run_scheduled_start(self) -> None:
        self._init_timer = None
        self._init_task = asyncio.ensure_future(self._start_quietly())

    async def _start_quietly(self) -> None:
        try:
            await self.start()
        except SessionClosedError:
            logger.debug(f"[TerminalSession] Scheduled start after close: {self._agent_id}")

    async def reconnect(self) -> None:
        """Start a fresh backend session after an error or shell exit.

        Closes the previous backend session (best effort) and re-runs the
        handshake. No-op while connecting, connected or already
        reconnecting. The initialization guard is held from the close
        through the handshake.

        Raises:
            SessionClosedError: If the session has been stopped.
        """
        self._check_not_closed()
        if self._is_busy():
            logger.debug(
                f"[TerminalSession] reconnect() ignored: agent_id={self._agent_id}, "
                f"state={self._state.value}"
            )
            return

        self._initializing = True
        try:
            logger.info(f"[TerminalSession] Reconnecting: agent_id={self._agent_id}")
            self._release_subscriptions()
            if self._widget is not None and not self._output_disposed:
                self._widget.clear()
            self._banner(*BANNER_RECONNECTING)

            if self._epoch > 0:
                try:
                    await self.commands.close_session(self._agent_id)
                except BridgeError as e:
                    logger.debug(f"Close before reconnect failed (ignored): {e}")

            if self._closing:
                return
            await self._handshake()
        finally:
            self._initializing = False

    async def stop(self) -> None:
        """Tear the session down; it cannot be restarted afterwards.

        Safe to call repeatedly and concurrently; the teardown runs once.
        """
        if not self._closing:
            logger.info(f"[TerminalSession] Stopping: agent_id={self._agent_id}")
        self._closing = True
        await self._cleanup.run()

    # =========================================================================
    # Consumer operations
    # =========================================================================

    async def submit_input(self, text: str) -> None:
        """Send raw input text.

        Raises:
            NotConnectedError: If the session is not connected.
            CommandFailedError: If the backend rejected or timed out.
        """
        await self._input.submit(text)

    async def execute_command(self, command: str) -> None:
        """Send ``command`` followed by the configured line terminator."""
        await self._input.execute(command)

    async def resize(self, rows: int, cols: int) -> bool:
        """Push a new geometry; skipped when disconnected or unchanged."""
        return await self._resizer.resize(rows, cols)

    async def fit(self) -> bool:
        """Push the widget's current geometry."""
        if self._widget is None:
            return False
        return await self._resizer.fit(self._widget)

    # =========================================================================
    # Channel handlers
    # =========================================================================

    def _on_output_event(self, epoch: int, payload: Any) -> None:
        if not self._is_current(epoch):
            logger.debug(
                f"[TerminalSession] Dropped stale output: agent_id={self._agent_id}, "
                f"event_epoch={epoch}, epoch={self._epoch}"
            )
            return

        try:
            data = from_wire(payload)
        except ValueError as e:
            logger.warning(f"Malformed output payload for agent {self._agent_id}: {e}")
            return

        if self._state == SessionState.INITIALIZING:
            self._held.append(data)
        elif self._state == SessionState.CONNECTED:
            self._deliver(data)

    def _on_closed_event(self, epoch: int, payload: Any) -> None:
        if not self._is_current(epoch) or self._state != SessionState.CONNECTED:
            return

        reason = payload if isinstance(payload, str) and payload else "Shell session ended"
        logger.info(f"[TerminalSession] Shell exited: agent_id={self._agent_id}, reason={reason}")

        self._release_subscriptions()
        tail = self._decoder.flush()
        if tail:
            self._emit(tail)
        self._fail(reason, "shell_exited")
        self._banner(*BANNER_SHELL_ENDED)

    def _on_widget_data(self, text: str) -> None:
        """Keystroke hookup: forward widget input in order."""
        if not self.is_connected:
            logger.debug(f"[TerminalSession] Keystrokes dropped while {self._state.value}")
            return

        self._pending_keys.append(text)
        if self._key_pump is None or self._key_pump.done():
            self._key_pump = asyncio.ensure_future(self._pump_keys())

    async def _pump_keys(self) -> None:
        while self._pending_keys:
            text = self._pending_keys.pop(0)
            try:
                await self._input.submit(text)
            except NotConnectedError:
                self._pending_keys.clear()
                return
            except BridgeError as e:
                logger.error(f"Failed to send input: {e}")
                self._banner(f"\r\n\x1b[1;31mError sending input: {e}\x1b[0m")

    # =========================================================================
    # Cleanup steps (run in this order by CleanupSequencer)
    # =========================================================================

    def _cancel_init_timer(self) -> None:
        if self._init_timer is not None:
            self._init_timer.cancel()
            self._init_timer = None

    def _release_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for unsubscribe in subscriptions:
            self._call_unsubscribe(unsubscribe)

    async def _dispose_input(self) -> None:
        if self._input_hookup is not None:
            self._input_hookup.dispose()
            self._input_hookup = None

        self._pending_keys.clear()
        pump, self._key_pump = self._key_pump, None
        if pump is not None and not pump.done():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

    async def _close_backend(self) -> None:
        if self._epoch == 0:
            return
        try:
            await self.commands.close_session(self._agent_id)
        except BridgeError as e:
            logger.warning(f"Failed to close terminal for agent {self._agent_id}: {e}")

    def _dispose_output(self) -> None:
        self._output_disposed = True
        self._held.clear()
        self._decoder.reset()
        if self._widget is not None:
            self._widget.dispose()

    def _mark_closed(self) -> None:
        self._epoch += 1
        self._transition_to(SessionState.CLOSED)
        logger.info(f"[TerminalSession] Stopped: agent_id={self._agent_id}")

    # =========================================================================
    # Internal
    # =========================================================================

    def _check_not_closed(self) -> None:
        if self._closing or self._state == SessionState.CLOSED:
            raise SessionClosedError(self._agent_id)

    def _is_busy(self) -> bool:
        return self._initializing or self._state in (
            SessionState.INITIALIZING, SessionState.CONNECTED,
        )

    def _is_current(self, epoch: int) -> bool:
        return (
            epoch == self._epoch
            and not self._closing
            and self._state != SessionState.CLOSED
        )

    def _current_geometry(self) -> Geometry:
        if self._geometry_source is not None:
            return self._geometry_source()
        if self._widget is not None:
            return (self._widget.rows, self._widget.cols)
        return DEFAULT_GEOMETRY

    def _flush_held(self) -> None:
        held, self._held = self._held, []
        for data in held:
            self._deliver(data)

    def _deliver(self, data: bytes) -> None:
        text = self._decoder.feed(data)
        if text:
            self._emit(text)

    def _emit(self, text: str) -> None:
        if self._output_disposed:
            return
        if self._widget is not None:
            self._widget.write(text)
        if self._on_output is not None:
            try:
                self._on_output(text)
            except Exception as e:
                logger.warning(f"Error in output callback: {e}")

    def _banner(self, *lines: str) -> None:
        if self._widget is None or self._output_disposed or not self.config.show_banners:
            return
        for line in lines:
            self._widget.writeln(line)

    def _call_unsubscribe(self, unsubscribe: Unsubscribe) -> None:
        try:
            unsubscribe()
        except Exception as e:
            logger.warning(f"Unsubscribe failed for agent {self._agent_id}: {e}")

    def _fail(self, message: str, cause: str) -> None:
        self._error = message
        self._error_cause = cause
        self._transition_to(SessionState.ERROR)

    def _transition_to(self, new_state: SessionState) -> None:
        """Move to ``new_state`` and notify the status callback."""
        old_state = self._state
        if new_state not in _TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Invalid terminal session transition: {old_state.value} -> {new_state.value}"
            )

        self._state = new_state
        if new_state != SessionState.ERROR:
            self._error = None
            self._error_cause = None

        logger.debug(
            f"[TerminalSession] {self._agent_id}: {old_state.value} -> {new_state.value}"
        )

        if self._on_status_change:
            try:
                self._on_status_change(self.status)
            except Exception as e:
                logger.warning(f"Error in status callback: {e}")


__all__ = [
    "DEFAULT_GEOMETRY",
    "OutputCallback",
    "SessionState",
    "SessionStatus",
    "StatusCallback",
    "TerminalSession",
]
