"""Runtime configuration derived from the environment.

Values are read from environment variables (optionally seeded from a ``.env``
file) and, when ``IOS_AGENT_CONFIG`` names one, from a YAML file whose keys
are the lower-cased variable names. Environment variables always win over the
file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"
DEFAULT_RUNTIME_DIR = "/tmp"
DEFAULT_WDA_PORT = 8100


@dataclass
class AgentConfig:
    """Settings shared by the daemon, the supervisor and the CLI."""

    session: str = DEFAULT_SESSION
    runtime_dir: str = DEFAULT_RUNTIME_DIR
    wda_path: str = str(Path.home() / "WebDriverAgent")
    wda_port: int = DEFAULT_WDA_PORT
    wda_startup_timeout: float = 120.0
    wda_ready_timeout: float = 60.0
    wda_request_timeout: float = 30.0
    command_timeout: float = 30.0
    start_timeout: float = 180.0

    @property
    def socket_path(self) -> str:
        return get_socket_path(self.session, self.runtime_dir)

    @property
    def pid_path(self) -> str:
        return get_pid_path(self.session, self.runtime_dir)

    @property
    def log_path(self) -> str:
        return os.path.join(self.runtime_dir, f"agent-ios-{self.session}.log")


def get_session_name() -> str:
    """Return the session name from ``IOS_AGENT_SESSION``."""

    return os.getenv("IOS_AGENT_SESSION") or DEFAULT_SESSION


def _runtime_dir() -> str:
    return os.getenv("IOS_AGENT_RUNTIME_DIR") or DEFAULT_RUNTIME_DIR


def get_socket_path(session: Optional[str] = None, runtime_dir: Optional[str] = None) -> str:
    """Return the Unix socket path the daemon for ``session`` listens on."""

    session = session or get_session_name()
    return os.path.join(runtime_dir or _runtime_dir(), f"agent-ios-{session}.sock")


def get_pid_path(session: Optional[str] = None, runtime_dir: Optional[str] = None) -> str:
    """Return the pid file used as the daemon liveness marker for ``session``."""

    session = session or get_session_name()
    return os.path.join(runtime_dir or _runtime_dir(), f"agent-ios-{session}.pid")


def _load_file_values(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        logger.warning("Configuration file '%s' does not exist", path)
        return {}
    except yaml.YAMLError as exc:
        logger.warning("Failed to parse configuration file '%s': %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Expected a mapping in '%s', received %s", path, type(data))
        return {}
    return {str(key).upper(): value for key, value in data.items()}


def _lookup(env_name: str, file_values: Dict[str, Any]) -> Optional[str]:
    value = os.getenv(env_name)
    if value is not None and value.strip():
        return value
    raw = file_values.get(env_name)
    if raw is None:
        return None
    return str(raw)


def _float_setting(env_name: str, file_values: Dict[str, Any], default: float) -> float:
    raw = _lookup(env_name, file_values)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'", env_name, raw)
        return default
    if parsed <= 0:
        logger.warning("Ignoring non-positive %s value '%s'", env_name, raw)
        return default
    return parsed


def _int_setting(env_name: str, file_values: Dict[str, Any], default: int) -> int:
    raw = _lookup(env_name, file_values)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'", env_name, raw)
        return default


def load_agent_config() -> AgentConfig:
    """Return configuration derived from environment variables."""

    load_dotenv()
    file_values = _load_file_values(os.getenv("IOS_AGENT_CONFIG"))

    config = AgentConfig()
    config.session = _lookup("IOS_AGENT_SESSION", file_values) or DEFAULT_SESSION
    config.runtime_dir = _lookup("IOS_AGENT_RUNTIME_DIR", file_values) or DEFAULT_RUNTIME_DIR

    wda_path = _lookup("WDA_PATH", file_values)
    if wda_path:
        config.wda_path = os.path.expanduser(wda_path)

    config.wda_port = _int_setting("WDA_PORT", file_values, DEFAULT_WDA_PORT)
    config.wda_startup_timeout = _float_setting(
        "WDA_STARTUP_TIMEOUT", file_values, config.wda_startup_timeout
    )
    config.wda_ready_timeout = _float_setting(
        "WDA_READY_TIMEOUT", file_values, config.wda_ready_timeout
    )
    config.wda_request_timeout = _float_setting(
        "WDA_REQUEST_TIMEOUT", file_values, config.wda_request_timeout
    )
    config.command_timeout = _float_setting(
        "IOS_AGENT_COMMAND_TIMEOUT", file_values, config.command_timeout
    )
    config.start_timeout = _float_setting(
        "IOS_AGENT_START_TIMEOUT", file_values, config.start_timeout
    )
    return config
