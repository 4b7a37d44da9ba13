"""Shared fixtures for termbridge tests."""

from typing import List

import pytest

from termbridge.bridge import TerminalCommandClient
from termbridge.config import CommandConfig, SessionConfig
from termbridge.session import TerminalSession
from termbridge.tests.fakes import FakeBridge
from termbridge.widget import BufferWidget


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def command_config() -> CommandConfig:
    """Short deadline and no backoff so retry paths run instantly."""
    return CommandConfig(timeout=1.0, base_delay=0.0, max_delay=0.0, jitter_factor=0.0)


@pytest.fixture
def commands(bridge, command_config) -> TerminalCommandClient:
    return TerminalCommandClient(bridge, command_config)


@pytest.fixture
def widget() -> BufferWidget:
    return BufferWidget(rows=24, cols=80)


@pytest.fixture
def output() -> List[str]:
    return []


@pytest.fixture
def statuses() -> list:
    return []


@pytest.fixture
def session(commands, widget, output, statuses) -> TerminalSession:
    return TerminalSession(
        "abc123",
        commands,
        widget=widget,
        on_output=output.append,
        on_status_change=statuses.append,
        config=SessionConfig(init_delay=0.0),
    )
