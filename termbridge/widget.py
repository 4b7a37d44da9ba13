"""Terminal widget contract.

The widget is the consumer-side collaborator: it renders decoded text,
reports its geometry, and emits raw keystroke text. Rendering of cells and
escape sequences is entirely the widget's business.

``BufferWidget`` is a headless implementation that records everything
written to it; the CLI uses a console-backed subclass.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], None]


class Disposable:
    """Handle returned by registrations; ``dispose()`` undoes it once."""

    def __init__(self, on_dispose: Optional[Callable[[], None]] = None):
        self._on_dispose = on_dispose
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        if self._on_dispose:
            self._on_dispose()


class TerminalWidget(ABC):
    """What a session needs from the terminal view it drives."""

    @property
    @abstractmethod
    def rows(self) -> int:
        ...

    @property
    @abstractmethod
    def cols(self) -> int:
        ...

    @abstractmethod
    def write(self, text: str) -> None:
        """Render decoded output text."""

    def writeln(self, text: str = "") -> None:
        self.write(text + "\r\n")

    @abstractmethod
    def on_data(self, callback: DataCallback) -> Disposable:
        """Register for keystroke/paste text produced by the user."""

    def clear(self) -> None:
        """Erase what the widget currently shows. Optional."""
        pass

    def focus(self) -> None:
        pass

    def dispose(self) -> None:
        pass


class BufferWidget(TerminalWidget):
    """Headless widget that accumulates output and replays typed input."""

    def __init__(self, rows: int = 24, cols: int = 80):
        self._rows = rows
        self._cols = cols
        self.chunks: List[str] = []
        self.disposed = False
        self._listeners: List[DataCallback] = []

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def cols(self) -> int:
        return self._cols

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    def set_size(self, rows: int, cols: int) -> None:
        self._rows = rows
        self._cols = cols

    def write(self, text: str) -> None:
        if self.disposed:
            logger.debug("write() on disposed widget ignored")
            return
        self.chunks.append(text)

    def clear(self) -> None:
        if not self.disposed:
            self.chunks.clear()

    def on_data(self, callback: DataCallback) -> Disposable:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Disposable(remove)

    def type(self, text: str) -> None:
        """Simulate the user typing ``text``."""
        for listener in list(self._listeners):
            listener(text)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def dispose(self) -> None:
        self.disposed = True
        self._listeners.clear()


__all__ = [
    "BufferWidget",
    "DataCallback",
    "Disposable",
    "TerminalWidget",
]
