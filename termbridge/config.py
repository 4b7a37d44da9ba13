"""Bridge configuration loading with layered precedence.

Configuration precedence (highest wins):
1. Environment variables (TERMBRIDGE_*)
2. Workspace ``.env`` file (same variable names, read without touching
   ``os.environ``)
3. Project config (<workspace>/.termbridge/client.json)
4. User config (~/.termbridge/client.json)
5. Built-in defaults

Usage:
    from termbridge.config import load_bridge_config

    config = load_bridge_config(workspace_path=Path.cwd())
    print(config.commands.timeout)

Environment Variables:
    TERMBRIDGE_COMMAND_TIMEOUT: Per-command deadline seconds (default: 10.0)
    TERMBRIDGE_RETRY_MAX_ATTEMPTS: Attempts for retryable commands (default: 3)
    TERMBRIDGE_RETRY_BASE_DELAY: Initial backoff delay seconds (default: 0.2)
    TERMBRIDGE_RETRY_MAX_DELAY: Maximum backoff delay seconds (default: 2.0)
    TERMBRIDGE_RETRY_JITTER: Random jitter factor (default: 0.3)
    TERMBRIDGE_RETRY_COMMANDS: Comma-separated retryable command names
    TERMBRIDGE_INIT_DELAY: Deferred start delay seconds (default: 0.1)
    TERMBRIDGE_SHOW_BANNERS: Write status banners to the widget (default: true)
    TERMBRIDGE_SOCKET: IPC socket path (default: /tmp/termbridge.sock)
    TERMBRIDGE_CONNECT_TIMEOUT: IPC connect timeout seconds (default: 5.0)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, get_type_hints

from dotenv import dotenv_values

from termbridge.retry import RetryConfig

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".termbridge"
CONFIG_FILE_NAME = "client.json"


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    origin = getattr(target_type, '__origin__', None)
    if origin in (list, List):
        return [part.strip() for part in value.split(",") if part.strip()]

    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class CommandConfig:
    """Deadline and retry settings applied to every bridge command.

    Attributes:
        timeout: Deadline for a single command attempt, in seconds.
        max_attempts: Attempts for commands listed in ``retry_commands``.
        base_delay: Initial backoff delay in seconds.
        max_delay: Maximum backoff delay in seconds.
        jitter_factor: Random jitter range (0.3 = ±30% variation).
        retry_commands: Wire names of commands that are safe to repeat.
    """
    timeout: float = 10.0
    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    jitter_factor: float = 0.3
    retry_commands: List[str] = field(default_factory=lambda: [
        "open_terminal",
        "resize_terminal",
        "close_terminal",
    ])

    def __post_init__(self):
        """Validate configuration values."""
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not (0.0 <= self.jitter_factor <= 1.0):
            raise ValueError("jitter_factor must be between 0.0 and 1.0")

    def retry_config(self) -> RetryConfig:
        """Build the RetryConfig used for retryable commands."""
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter_factor=self.jitter_factor,
        )


@dataclass
class SessionConfig:
    """Per-session behavior.

    Attributes:
        init_delay: Delay before a scheduled start runs, letting the widget
            settle its geometry first.
        show_banners: Write connect/error/exit notices to the widget.
        line_terminator: Appended by ``execute_command``.
    """
    init_delay: float = 0.1
    show_banners: bool = True
    line_terminator: str = "\n"

    def __post_init__(self):
        if self.init_delay < 0:
            raise ValueError("init_delay must not be negative")


@dataclass
class IPCConfig:
    """IPC transport settings."""
    socket_path: str = "/tmp/termbridge.sock"
    connect_timeout: float = 5.0

    def __post_init__(self):
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")


@dataclass
class BridgeConfig:
    """Root configuration."""
    commands: CommandConfig = field(default_factory=CommandConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    ipc: IPCConfig = field(default_factory=IPCConfig)


_SECTIONS: Dict[str, Type] = {
    "commands": CommandConfig,
    "session": SessionConfig,
    "ipc": IPCConfig,
}

# Maps "section.field" paths to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "commands.timeout": "TERMBRIDGE_COMMAND_TIMEOUT",
    "commands.max_attempts": "TERMBRIDGE_RETRY_MAX_ATTEMPTS",
    "commands.base_delay": "TERMBRIDGE_RETRY_BASE_DELAY",
    "commands.max_delay": "TERMBRIDGE_RETRY_MAX_DELAY",
    "commands.jitter_factor": "TERMBRIDGE_RETRY_JITTER",
    "commands.retry_commands": "TERMBRIDGE_RETRY_COMMANDS",
    "session.init_delay": "TERMBRIDGE_INIT_DELAY",
    "session.show_banners": "TERMBRIDGE_SHOW_BANNERS",
    "ipc.socket_path": "TERMBRIDGE_SOCKET",
    "ipc.connect_timeout": "TERMBRIDGE_CONNECT_TIMEOUT",
}


def _find_config_files(workspace_path: Optional[Path] = None) -> List[Path]:
    """Find configuration files in order of precedence (lowest first)."""
    files = []

    user_config = Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if user_config.exists():
        files.append(user_config)

    if workspace_path:
        project_config = Path(workspace_path) / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if project_config.exists():
            files.append(project_config)

    return files


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base, returning new dict.

    Lists and other non-dict values are replaced, not merged.
    """
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _get_field_type(dataclass_type: Type, field_name: str) -> Type:
    try:
        hints = get_type_hints(dataclass_type)
        return hints.get(field_name, str)
    except Exception:
        return str


def _apply_overrides(
    config_dict: Dict[str, Any],
    source: Dict[str, Optional[str]],
    source_name: str,
) -> Dict[str, Any]:
    """Apply TERMBRIDGE_* values from ``source`` onto the config dict."""
    result = {k: (dict(v) if isinstance(v, dict) else v) for k, v in config_dict.items()}

    for path, env_var in ENV_VAR_MAPPING.items():
        raw = source.get(env_var)
        if raw is None:
            continue

        section, field_name = path.split(".")
        if not isinstance(result.get(section), dict):
            result[section] = {}

        target_type = _get_field_type(_SECTIONS[section], field_name)
        try:
            result[section][field_name] = _parse_env_value(raw, target_type)
            logger.debug(f"Applied {source_name} override: {env_var}={raw}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid value for {env_var}: {raw} ({e})")

    return result


def _load_env_file(env_file: Optional[Path]) -> Dict[str, Optional[str]]:
    if env_file is None or not env_file.exists():
        return {}
    return dict(dotenv_values(env_file))


def _dict_to_section(section: str, data: Any) -> Any:
    """Convert one section dict to its dataclass, falling back to defaults."""
    section_type = _SECTIONS[section]
    if not isinstance(data, dict):
        logger.warning(f"Invalid '{section}' config (expected dict), using defaults")
        return section_type()

    valid_fields = {f.name for f in fields(section_type)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    unknown = set(data.keys()) - valid_fields
    if unknown:
        logger.warning(f"Unknown {section} config keys (ignored): {unknown}")

    try:
        return section_type(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid {section} config values, using defaults: {e}")
        return section_type()


def load_bridge_config(
    workspace_path: Optional[Path] = None,
    env_file: Optional[Path] = None,
) -> BridgeConfig:
    """Load bridge configuration with layered precedence.

    Args:
        workspace_path: Project directory for project-level config and the
            default ``.env`` location. If None, only user config and the
            environment are used.
        env_file: Explicit ``.env`` path. Defaults to ``<workspace>/.env``.

    Returns:
        Merged BridgeConfig instance.
    """
    merged: Dict[str, Any] = {}

    for config_file in _find_config_files(workspace_path):
        try:
            with open(config_file) as f:
                file_config = json.load(f)

            if not isinstance(file_config, dict):
                logger.warning(f"Invalid config format in {config_file} (expected object)")
                continue

            merged = _deep_merge(merged, file_config)
            logger.debug(f"Loaded config from {config_file}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {config_file}: {e}")
        except PermissionError:
            logger.warning(f"Permission denied reading {config_file}")
        except OSError as e:
            logger.warning(f"Failed to load {config_file}: {e}")

    if env_file is None and workspace_path is not None:
        env_file = Path(workspace_path) / ".env"
    merged = _apply_overrides(merged, _load_env_file(env_file), ".env")
    merged = _apply_overrides(merged, dict(os.environ), "env")

    return BridgeConfig(**{
        section: _dict_to_section(section, merged.get(section, {}))
        for section in _SECTIONS
    })


def get_config_paths(workspace_path: Optional[Path] = None) -> Dict[str, Path]:
    """Get the paths where config files are searched."""
    paths = {
        "user": Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
    }
    if workspace_path:
        paths["project"] = Path(workspace_path) / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return paths


__all__ = [
    "BridgeConfig",
    "CommandConfig",
    "IPCConfig",
    "SessionConfig",
    "get_config_paths",
    "load_bridge_config",
]
