"""Line-mode terminal client.

Attaches to an agent's terminal through a running bridge server:

    python -m termbridge attach --agent abc123 --socket /tmp/termbridge.sock

Each line typed is sent as a command. Lines starting with ``:`` are client
commands:

    :resize ROWS COLS   push a new geometry
    :reconnect          start a new shell after the previous one ended
    :quit               detach and close the terminal
"""

import argparse
import asyncio
import logging
import pathlib
import sys
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markup import escape

from termbridge.config import BridgeConfig, load_bridge_config
from termbridge.errors import BridgeError
from termbridge.ipc import IPCCommandBridge
from termbridge.manager import TerminalSessionManager
from termbridge.session import SessionState, SessionStatus, TerminalSession
from termbridge.widget import DataCallback, Disposable, TerminalWidget

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    SessionState.UNINITIALIZED: "dim",
    SessionState.INITIALIZING: "cyan",
    SessionState.CONNECTED: "green",
    SessionState.ERROR: "red",
    SessionState.CLOSED: "dim",
}


class ConsoleWidget(TerminalWidget):
    """Writes shell output straight to the console.

    Output is written raw so the shell's own escape sequences reach the
    terminal; geometry comes from the console size.
    """

    def __init__(self, console: Console):
        self.console = console
        self._listeners: List[DataCallback] = []
        self.disposed = False

    @property
    def rows(self) -> int:
        return self.console.size.height

    @property
    def cols(self) -> int:
        return self.console.size.width

    def write(self, text: str) -> None:
        if self.disposed:
            return
        self.console.file.write(text)
        self.console.file.flush()

    def clear(self) -> None:
        if not self.disposed:
            self.console.clear()

    def on_data(self, callback: DataCallback) -> Disposable:
        self._listeners.append(callback)
        return Disposable(lambda: self._listeners.remove(callback))

    def dispose(self) -> None:
        self.disposed = True
        self._listeners.clear()


def _print_status(console: Console, status: SessionStatus) -> None:
    style = STATUS_STYLES.get(status.state, "")
    line = f"[{style}]● {escape(status.agent_id)}: {status.state.value}[/{style}]"
    if status.error:
        line += f" [dim]({escape(str(status.error_cause))}: {escape(status.error)})[/dim]"
    console.print(line)


async def _handle_client_command(
    console: Console,
    session: TerminalSession,
    line: str,
) -> bool:
    """Run a ``:`` command. Returns False when the client should exit."""
    parts = line[1:].split()
    if not parts:
        return True
    name, args = parts[0], parts[1:]

    if name in ("quit", "q", "exit"):
        return False

    if name == "resize":
        if len(args) != 2 or not all(a.isdigit() for a in args):
            console.print("[yellow]Usage: :resize ROWS COLS[/yellow]")
            return True
        rows, cols = int(args[0]), int(args[1])
        if await session.resize(rows, cols):
            console.print(f"[dim]Resized to {rows}x{cols}[/dim]")
        else:
            console.print("[dim]Resize skipped[/dim]")
        return True

    if name == "reconnect":
        await session.reconnect()
        return True

    console.print(f"[yellow]Unknown command: :{name}[/yellow]")
    return True


async def run_attach(
    agent_id: str,
    socket_path: str,
    config: BridgeConfig,
    console: Optional[Console] = None,
) -> int:
    """Attach to ``agent_id`` and run the input loop until EOF or ``:quit``."""
    console = console or Console()
    bridge = IPCCommandBridge(socket_path)

    try:
        await bridge.connect(timeout=config.ipc.connect_timeout)
    except (ConnectionError, OSError, asyncio.TimeoutError) as e:
        console.print(f"[red]Cannot connect to {socket_path}: {e}[/red]")
        return 1

    manager = TerminalSessionManager(bridge, config)
    widget = ConsoleWidget(console)
    session = await manager.mount(
        agent_id,
        widget=widget,
        on_status_change=lambda status: _print_status(console, status),
        start=False,
    )
    await session.start()

    prompt: PromptSession = PromptSession()
    try:
        with patch_stdout(raw=True):
            while True:
                try:
                    line = await prompt.prompt_async("")
                except (EOFError, KeyboardInterrupt):
                    break

                if line.startswith(":"):
                    if not await _handle_client_command(console, session, line):
                        break
                    continue

                if not session.is_connected:
                    console.print(
                        f"[yellow]Terminal is {session.state.value}; "
                        f"use :reconnect or :quit[/yellow]"
                    )
                    continue

                try:
                    await session.execute_command(line)
                except BridgeError as e:
                    console.print(f"[red]{e}[/red]")
    finally:
        await manager.cleanup_all()
        await bridge.disconnect()

    return 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="termbridge",
        description="Remote terminal client for agent shells",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Client commands (while attached):
  :resize ROWS COLS   push a new terminal size
  :reconnect          start a new shell after the previous one ended
  :quit               detach and close the terminal
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    attach = subparsers.add_parser("attach", help="Attach to an agent's terminal")
    attach.add_argument(
        "--agent",
        required=True,
        help="Agent identifier whose terminal to open"
    )
    attach.add_argument(
        "--socket",
        metavar="SOCKET_PATH",
        help="Bridge server socket (overrides TERMBRIDGE_SOCKET and config files)"
    )
    attach.add_argument(
        "--workspace",
        metavar="DIR",
        help="Workspace used to find .env and .termbridge/client.json (default: cwd)"
    )
    attach.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    workspace = pathlib.Path(args.workspace) if args.workspace else pathlib.Path.cwd()
    config = load_bridge_config(workspace_path=workspace)
    socket_path = args.socket or config.ipc.socket_path

    sys.exit(asyncio.run(run_attach(args.agent, socket_path, config)))


if __name__ == "__main__":
    main()
