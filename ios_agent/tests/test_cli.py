"""Tests for argument mapping, daemon detection and the JSON envelope."""

from __future__ import annotations

import asyncio
import json
import os

import pytest

from ios_agent import cli, simctl
from ios_agent import config as config_module
from ios_agent.config import AgentConfig
from ios_agent.daemon import Daemon
from ios_agent.protocol import (
    InstallCommand,
    ScreenshotCommand,
    StartSessionCommand,
    SwipeCommand,
    TapCommand,
    WaitCommand,
)
from ios_agent.simctl import Simulator
from ios_agent.socket_client import SocketClient


@pytest.fixture
def runtime(monkeypatch, tmp_path):
    monkeypatch.setenv("IOS_AGENT_SESSION", "cli")
    monkeypatch.setenv("IOS_AGENT_RUNTIME_DIR", str(tmp_path))
    monkeypatch.delenv("IOS_AGENT_CONFIG", raising=False)
    monkeypatch.setattr(config_module, "load_dotenv", lambda: False)
    return AgentConfig(session="cli", runtime_dir=str(tmp_path))


def _command(argv):
    return cli.build_command(cli.build_parser().parse_args(argv))


def test_arguments_map_to_protocol_commands(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)

    tap = _command(["tap", "@e4"])
    swipe = _command(["swipe", "--direction", "up"])
    wait = _command(["wait", "@e2", "--timeout", "2500"])
    install = _command(["install", "build/Demo.app"])
    shot = _command(["screenshot", "--out", "shot.png"])
    start = _command(["start-session", "--sim", "iPhone 15"])

    assert isinstance(tap, TapCommand) and tap.ref == "@e4"
    assert isinstance(swipe, SwipeCommand) and swipe.ref is None and swipe.direction == "up"
    assert isinstance(wait, WaitCommand) and wait.timeout == 2500
    assert isinstance(install, InstallCommand)
    assert install.app_path == str(tmp_path / "build" / "Demo.app")
    assert isinstance(shot, ScreenshotCommand) and shot.out == str(tmp_path / "shot.png")
    assert isinstance(start, StartSessionCommand) and start.sim == "iPhone 15"
    assert tap.id != swipe.id


def test_wait_defaults_and_rejects_unknown_directions():
    assert _command(["wait", "@e0"]).timeout == 10000

    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["swipe", "@e0", "--direction", "sideways"])


def test_command_timeouts():
    config = AgentConfig(command_timeout=30.0, start_timeout=180.0)

    start = _command(["start-session"])
    daemon_budget = (
        config.wda_startup_timeout + config.wda_ready_timeout + config.wda_request_timeout + simctl.SIMCTL_TIMEOUT
    )
    assert cli.command_timeout(start, config) > daemon_budget
    assert cli.command_timeout(start, AgentConfig()) > daemon_budget
    assert cli.command_timeout(start, AgentConfig(start_timeout=900.0)) == 900.0
    assert cli.command_timeout(_command(["tap", "@e0"]), config) == 30.0
    assert cli.command_timeout(_command(["wait", "@e0", "--timeout", "60000"]), config) == 65.0
    assert cli.command_timeout(_command(["wait", "@e0", "--timeout", "1000"]), config) == 30.0


def test_pid_file_detection(tmp_path):
    pid_path = tmp_path / "agent-ios-test.pid"
    assert cli.is_daemon_running(str(pid_path)) is False

    pid_path.write_text(str(os.getpid()))
    assert cli.is_daemon_running(str(pid_path)) is True

    pid_path.write_text("not a pid")
    assert cli.is_daemon_running(str(pid_path)) is False
    assert not pid_path.exists()


def test_stale_pid_file_is_removed(tmp_path):
    pid_path = tmp_path / "agent-ios-test.pid"
    # Above the largest pid_max Linux allows, so no process can own it.
    pid_path.write_text("4194304")

    assert cli.is_daemon_running(str(pid_path)) is False
    assert not pid_path.exists()


def test_list_sims_runs_without_a_daemon(runtime, monkeypatch, capsys):
    async def fake_list():
        return [Simulator(udid="B", name="iPhone 15", state="Booted", runtime="iOS 17.2")]

    monkeypatch.setattr(simctl, "list_simulators", fake_list)

    assert cli.main(["list-sims"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {
        "success": True,
        "data": {
            "simulators": [{"name": "iPhone 15", "udid": "B", "state": "Booted", "runtime": "iOS 17.2"}]
        },
    }


def test_status_and_stop_without_a_daemon_succeed(runtime, capsys):
    assert cli.main(["status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status == {"success": True, "data": {"running": False, "message": "Daemon not running"}}

    assert cli.main(["stop-session"]) == 0
    assert json.loads(capsys.readouterr().out)["data"] == {"message": "Daemon not running"}


def test_other_commands_without_a_daemon_fail(runtime, capsys):
    assert cli.main(["tap", "@e1"]) == 1

    payload = json.loads(capsys.readouterr().out)
    assert payload["success"] is False
    assert payload["error"].startswith("Daemon not running")
    assert payload["suggestion"] == "start-session"


def test_execute_talks_to_a_running_daemon(runtime, controller, devices):
    daemon = Daemon(runtime, controller=controller, devices=devices)
    parser = cli.build_parser()

    async def scenario():
        server = asyncio.create_task(daemon.run())
        client = SocketClient(runtime.socket_path)
        for _ in range(100):
            if await client.is_running():
                break
            await asyncio.sleep(0.02)
        # The daemon is already up, so ensure_daemon must not spawn another.
        started = await cli.execute(parser.parse_args(["start-session"]), runtime)
        tap = await cli.execute(parser.parse_args(["tap", "@e9"]), runtime)
        stopped = await cli.execute(parser.parse_args(["stop-session"]), runtime)
        await asyncio.wait_for(server, timeout=2)
        return started, tap, stopped

    started, tap, stopped = asyncio.run(scenario())

    assert started["success"] is True
    assert started["data"]["simulator"]["name"] == "iPhone 15"
    assert tap["success"] is False
    assert "@e9" in tap["error"]
    assert tap["details"]["suggestion"] == "snapshot"
    assert stopped == {"success": True, "id": stopped["id"], "data": {"message": "Session stopped"}}
