"""Tests for layered bridge configuration."""

import json
import logging
import os

import pytest

from termbridge.config import (
    ENV_VAR_MAPPING,
    BridgeConfig,
    CommandConfig,
    SessionConfig,
    get_config_paths,
    load_bridge_config,
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Point the user config at an empty home and clear TERMBRIDGE_* vars."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for env_var in ENV_VAR_MAPPING.values():
        monkeypatch.delenv(env_var, raising=False)
    return home


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


class TestDefaults:

    def test_defaults(self, workspace):
        config = load_bridge_config(workspace_path=workspace)

        assert config == BridgeConfig()
        assert config.commands.timeout == 10.0
        assert config.commands.retry_commands == [
            "open_terminal", "resize_terminal", "close_terminal",
        ]
        assert config.session.init_delay == 0.1
        assert config.session.show_banners is True
        assert config.ipc.socket_path == "/tmp/termbridge.sock"

    def test_validation(self):
        with pytest.raises(ValueError):
            CommandConfig(timeout=0)
        with pytest.raises(ValueError):
            CommandConfig(max_attempts=0)
        with pytest.raises(ValueError):
            CommandConfig(base_delay=3.0, max_delay=1.0)
        with pytest.raises(ValueError):
            CommandConfig(jitter_factor=2.0)
        with pytest.raises(ValueError):
            SessionConfig(init_delay=-1)

    def test_retry_config(self):
        retry = CommandConfig(max_attempts=5, base_delay=0.5, max_delay=4.0).retry_config()
        assert retry.max_attempts == 5
        assert retry.base_delay == 0.5
        assert retry.max_delay == 4.0


class TestLayering:

    def test_user_then_project(self, workspace, isolated_env):
        write_json(isolated_env / ".termbridge" / "client.json", {
            "commands": {"timeout": 3.0, "max_attempts": 4},
        })
        write_json(workspace / ".termbridge" / "client.json", {
            "commands": {"timeout": 5.0},
        })

        config = load_bridge_config(workspace_path=workspace)

        assert config.commands.timeout == 5.0
        assert config.commands.max_attempts == 4

    def test_env_file_overrides_project(self, workspace):
        write_json(workspace / ".termbridge" / "client.json", {"ipc": {"socket_path": "/tmp/a.sock"}})
        (workspace / ".env").write_text("TERMBRIDGE_SOCKET=/tmp/b.sock\n")

        config = load_bridge_config(workspace_path=workspace)

        assert config.ipc.socket_path == "/tmp/b.sock"

    def test_environment_overrides_env_file(self, workspace, monkeypatch):
        (workspace / ".env").write_text("TERMBRIDGE_COMMAND_TIMEOUT=7\n")
        monkeypatch.setenv("TERMBRIDGE_COMMAND_TIMEOUT", "2.5")

        config = load_bridge_config(workspace_path=workspace)

        assert config.commands.timeout == 2.5

    def test_env_file_does_not_touch_environ(self, workspace):
        (workspace / ".env").write_text("TERMBRIDGE_INIT_DELAY=0.5\n")
        config = load_bridge_config(workspace_path=workspace)

        assert config.session.init_delay == 0.5
        assert "TERMBRIDGE_INIT_DELAY" not in os.environ

    def test_explicit_env_file(self, tmp_path, workspace):
        env_file = tmp_path / "custom.env"
        env_file.write_text("TERMBRIDGE_SHOW_BANNERS=false\n")

        config = load_bridge_config(workspace_path=workspace, env_file=env_file)

        assert config.session.show_banners is False

    def test_env_types(self, workspace, monkeypatch):
        monkeypatch.setenv("TERMBRIDGE_RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("TERMBRIDGE_RETRY_COMMANDS", "open_terminal, close_terminal")
        monkeypatch.setenv("TERMBRIDGE_SHOW_BANNERS", "no")

        config = load_bridge_config(workspace_path=workspace)

        assert config.commands.max_attempts == 5
        assert config.commands.retry_commands == ["open_terminal", "close_terminal"]
        assert config.session.show_banners is False


class TestInvalidValues:

    def test_unparseable_env_value_ignored(self, workspace, monkeypatch, caplog):
        monkeypatch.setenv("TERMBRIDGE_COMMAND_TIMEOUT", "soon")

        with caplog.at_level(logging.WARNING):
            config = load_bridge_config(workspace_path=workspace)

        assert config.commands.timeout == 10.0
        assert "TERMBRIDGE_COMMAND_TIMEOUT" in caplog.text

    def test_invalid_section_falls_back_to_defaults(self, workspace, monkeypatch):
        monkeypatch.setenv("TERMBRIDGE_COMMAND_TIMEOUT", "-1")
        monkeypatch.setenv("TERMBRIDGE_SOCKET", "/tmp/ok.sock")

        config = load_bridge_config(workspace_path=workspace)

        assert config.commands == CommandConfig()
        assert config.ipc.socket_path == "/tmp/ok.sock"

    def test_bad_json_ignored(self, workspace, caplog):
        path = workspace / ".termbridge" / "client.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        config = load_bridge_config(workspace_path=workspace)

        assert config == BridgeConfig()
        assert "Invalid JSON" in caplog.text

    def test_unknown_keys_ignored(self, workspace, caplog):
        write_json(workspace / ".termbridge" / "client.json", {
            "session": {"init_delay": 0.2, "colour": "blue"},
        })

        config = load_bridge_config(workspace_path=workspace)

        assert config.session.init_delay == 0.2
        assert "colour" in caplog.text


def test_config_paths(workspace, isolated_env):
    paths = get_config_paths(workspace)
    assert paths["user"] == isolated_env / ".termbridge" / "client.json"
    assert paths["project"] == workspace / ".termbridge" / "client.json"
