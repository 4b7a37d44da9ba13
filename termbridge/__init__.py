"""termbridge - Remote terminal sessions over a command bridge.

Usage:
    from termbridge import IPCCommandBridge, TerminalSessionManager
    from termbridge import TerminalSession, SessionState
"""

from termbridge.bridge import (
    Command,
    CommandBridge,
    TerminalCommandClient,
    closed_channel,
    output_channel,
)
from termbridge.config import (
    BridgeConfig,
    CommandConfig,
    IPCConfig,
    SessionConfig,
    load_bridge_config,
)
from termbridge.errors import (
    BridgeError,
    CommandFailedError,
    CommandRejectedError,
    CommandTimeoutError,
    NotConnectedError,
    ProtocolError,
    SessionClosedError,
    TransportError,
)
from termbridge.ipc import IPCCommandBridge
from termbridge.manager import TerminalSessionManager
from termbridge.server import BridgeIPCServer, TerminalBackend
from termbridge.session import SessionState, SessionStatus, TerminalSession
from termbridge.widget import BufferWidget, Disposable, TerminalWidget

__version__ = "0.1.0"

__all__ = [
    # Bridge
    "Command",
    "CommandBridge",
    "TerminalCommandClient",
    "closed_channel",
    "output_channel",
    "IPCCommandBridge",
    "BridgeIPCServer",
    "TerminalBackend",
    # Sessions
    "SessionState",
    "SessionStatus",
    "TerminalSession",
    "TerminalSessionManager",
    # Widgets
    "BufferWidget",
    "Disposable",
    "TerminalWidget",
    # Config
    "BridgeConfig",
    "CommandConfig",
    "IPCConfig",
    "SessionConfig",
    "load_bridge_config",
    # Errors
    "BridgeError",
    "CommandFailedError",
    "CommandRejectedError",
    "CommandTimeoutError",
    "NotConnectedError",
    "ProtocolError",
    "SessionClosedError",
    "TransportError",
]
