from __future__ import annotations

import pytest

from ios_agent import config as config_module
from ios_agent.config import AgentConfig, get_pid_path, get_socket_path, load_agent_config

ENV_NAMES = [
    "IOS_AGENT_CONFIG",
    "IOS_AGENT_SESSION",
    "IOS_AGENT_RUNTIME_DIR",
    "WDA_PATH",
    "WDA_PORT",
    "WDA_STARTUP_TIMEOUT",
    "WDA_READY_TIMEOUT",
    "WDA_REQUEST_TIMEOUT",
    "IOS_AGENT_COMMAND_TIMEOUT",
    "IOS_AGENT_START_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "load_dotenv", lambda: False)


def test_defaults():
    config = load_agent_config()

    assert config == AgentConfig()
    assert config.socket_path == "/tmp/agent-ios-default.sock"
    assert config.pid_path == "/tmp/agent-ios-default.pid"
    assert config.log_path == "/tmp/agent-ios-default.log"
    assert config.wda_port == 8100


def test_paths_follow_the_session_name(monkeypatch):
    monkeypatch.setenv("IOS_AGENT_SESSION", "checkout")

    assert get_socket_path() == "/tmp/agent-ios-checkout.sock"
    assert get_pid_path() == "/tmp/agent-ios-checkout.pid"
    assert get_socket_path("other", "/var/run") == "/var/run/agent-ios-other.sock"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("IOS_AGENT_SESSION", "e2e")
    monkeypatch.setenv("IOS_AGENT_RUNTIME_DIR", str(tmp_path))
    monkeypatch.setenv("WDA_PATH", "~/src/WebDriverAgent")
    monkeypatch.setenv("WDA_PORT", "8200")
    monkeypatch.setenv("IOS_AGENT_COMMAND_TIMEOUT", "12.5")

    config = load_agent_config()

    assert config.session == "e2e"
    assert config.socket_path == str(tmp_path / "agent-ios-e2e.sock")
    assert config.wda_path.endswith("/src/WebDriverAgent")
    assert not config.wda_path.startswith("~")
    assert config.wda_port == 8200
    assert config.command_timeout == 12.5


@pytest.mark.parametrize("value", ["soon", "0", "-3"])
def test_invalid_timeouts_fall_back_to_defaults(monkeypatch, value):
    monkeypatch.setenv("IOS_AGENT_START_TIMEOUT", value)
    monkeypatch.setenv("WDA_PORT", "eighty")

    config = load_agent_config()

    assert config.start_timeout == AgentConfig().start_timeout
    assert config.wda_port == 8100


def test_yaml_file_values_lose_to_environment(monkeypatch, tmp_path):
    path = tmp_path / "ios-agent.yaml"
    path.write_text("wda_port: 8300\nwda_ready_timeout: 15\nios_agent_session: from-file\n")
    monkeypatch.setenv("IOS_AGENT_CONFIG", str(path))
    monkeypatch.setenv("IOS_AGENT_SESSION", "from-env")

    config = load_agent_config()

    assert config.wda_port == 8300
    assert config.wda_ready_timeout == 15.0
    assert config.session == "from-env"


@pytest.mark.parametrize("content", [None, "- just\n- a list\n", "key: [unclosed\n"])
def test_unusable_config_files_are_ignored(monkeypatch, tmp_path, content):
    path = tmp_path / "ios-agent.yaml"
    if content is not None:
        path.write_text(content)
    monkeypatch.setenv("IOS_AGENT_CONFIG", str(path))

    assert load_agent_config() == AgentConfig()
