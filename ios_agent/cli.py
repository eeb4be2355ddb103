"""Command line interface for ios-agent.

Every verb prints exactly one JSON envelope on stdout (``{"success": ...}``)
and exits with status 1 when it failed, so callers only need to parse
stdout. Logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import subprocess
import sys
from typing import Any, Dict, List, Optional

from ios_agent import simctl
from ios_agent.config import AgentConfig, load_agent_config
from ios_agent.errors import AgentError, DaemonNotRunningError
from ios_agent.logging_config import configure_logging
from ios_agent.protocol import (
    DEFAULT_WAIT_TIMEOUT_MS,
    AlertAcceptCommand,
    AlertButtonCommand,
    AlertDismissCommand,
    AlertInfoCommand,
    ClearCommand,
    Command,
    InstallCommand,
    LaunchCommand,
    ScreenshotCommand,
    SnapshotCommand,
    StartSessionCommand,
    StatusCommand,
    StopSessionCommand,
    SwipeCommand,
    TapCommand,
    TerminateCommand,
    TypeCommand,
    WaitCommand,
    generate_id,
    response_payload,
)
from ios_agent.socket_client import SocketClient

logger = logging.getLogger(__name__)

DAEMON_SPAWN_TIMEOUT = 10.0
DAEMON_POLL_INTERVAL = 0.1
# Extra seconds on top of a wait's own timeout before the client gives up.
WAIT_TIMEOUT_SLACK = 5.0
# Extra seconds on top of the daemon's own start-up budget.
START_TIMEOUT_SLACK = 10.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ios-agent",
        description="LLM-friendly iOS simulator automation through WebDriverAgent.",
        epilog="Environment: IOS_AGENT_SESSION, WDA_PATH, WDA_PORT, IOS_AGENT_LOG_LEVEL.",
    )
    commands = parser.add_subparsers(dest="command", metavar="<command>")
    commands.required = True

    start = commands.add_parser("start-session", help="Start the daemon, boot a simulator and start WDA")
    start.add_argument("--sim", help="Simulator name, e.g. \"iPhone 15\"")
    commands.add_parser("stop-session", help="Stop WDA and the daemon")
    commands.add_parser("status", help="Show daemon, simulator and WDA status")
    commands.add_parser("list-sims", help="List available simulators")

    install = commands.add_parser("install", help="Install an .app bundle on the session's simulator")
    install.add_argument("app_path", help="Path to the .app bundle")
    launch = commands.add_parser("launch", help="Launch an app by bundle id")
    launch.add_argument("bundle_id")
    terminate = commands.add_parser("terminate", help="Terminate an app by bundle id")
    terminate.add_argument("bundle_id")

    snapshot = commands.add_parser("snapshot", help="Capture the accessibility tree with element refs")
    snapshot.add_argument("--format", choices=["json", "yaml"], default="json")
    screenshot = commands.add_parser("screenshot", help="Take a PNG screenshot")
    screenshot.add_argument("--out", help="Write the PNG here instead of returning base64")

    tap = commands.add_parser("tap", help="Tap an element")
    tap.add_argument("ref", help="Element ref from snapshot, e.g. @e5")
    type_ = commands.add_parser("type", help="Type text into an element")
    type_.add_argument("ref")
    type_.add_argument("text")
    clear = commands.add_parser("clear", help="Clear a text field")
    clear.add_argument("ref")
    swipe = commands.add_parser("swipe", help="Swipe on an element or the whole screen")
    swipe.add_argument("ref", nargs="?", help="Element ref; omit to swipe the screen")
    swipe.add_argument("--direction", required=True, choices=["up", "down", "left", "right"])
    wait = commands.add_parser("wait", help="Wait for an element to appear")
    wait.add_argument("ref")
    wait.add_argument(
        "--timeout", type=int, default=DEFAULT_WAIT_TIMEOUT_MS, help="Timeout in milliseconds"
    )

    commands.add_parser("alert-accept", help="Accept the visible alert")
    commands.add_parser("alert-dismiss", help="Dismiss the visible alert")
    alert_button = commands.add_parser("alert-button", help="Tap an alert button by name")
    alert_button.add_argument("name")
    commands.add_parser("alert-info", help="Describe the visible alert")
    return parser


def build_command(args: argparse.Namespace) -> Command:
    """Translate parsed arguments into a protocol command."""

    command_id = generate_id()
    name = args.command
    if name == "start-session":
        return StartSessionCommand(id=command_id, sim=args.sim)
    if name == "stop-session":
        return StopSessionCommand(id=command_id)
    if name == "status":
        return StatusCommand(id=command_id)
    if name == "install":
        return InstallCommand(id=command_id, app_path=os.path.abspath(args.app_path))
    if name == "launch":
        return LaunchCommand(id=command_id, bundle_id=args.bundle_id)
    if name == "terminate":
        return TerminateCommand(id=command_id, bundle_id=args.bundle_id)
    if name == "snapshot":
        return SnapshotCommand(id=command_id, format=args.format)
    if name == "screenshot":
        out = os.path.abspath(args.out) if args.out else None
        return ScreenshotCommand(id=command_id, out=out)
    if name == "tap":
        return TapCommand(id=command_id, ref=args.ref)
    if name == "type":
        return TypeCommand(id=command_id, ref=args.ref, text=args.text)
    if name == "clear":
        return ClearCommand(id=command_id, ref=args.ref)
    if name == "swipe":
        return SwipeCommand(id=command_id, ref=args.ref, direction=args.direction)
    if name == "wait":
        return WaitCommand(id=command_id, ref=args.ref, timeout=args.timeout)
    if name == "alert-accept":
        return AlertAcceptCommand(id=command_id)
    if name == "alert-dismiss":
        return AlertDismissCommand(id=command_id)
    if name == "alert-button":
        return AlertButtonCommand(id=command_id, button=args.name)
    if name == "alert-info":
        return AlertInfoCommand(id=command_id)
    raise ValueError(f"Unknown command: {name}")


def command_timeout(command: Command, config: AgentConfig) -> float:
    """Return how long the CLI waits for ``command``'s response."""

    if isinstance(command, StartSessionCommand):
        # The daemon answers only after boot, WDA start-up, readiness and session creation.
        budget = (
            simctl.SIMCTL_TIMEOUT
            + config.wda_startup_timeout
            + config.wda_ready_timeout
            + config.wda_request_timeout
            + START_TIMEOUT_SLACK
        )
        return max(config.start_timeout, budget)
    if isinstance(command, WaitCommand):
        return max(config.command_timeout, command.timeout / 1000 + WAIT_TIMEOUT_SLACK)
    return config.command_timeout


# -----------------------------
# Daemon process management
# -----------------------------
def is_daemon_running(pid_path: str) -> bool:
    """Return ``True`` when the pid file names a live process.

    A pid file naming a dead process is removed.
    """

    try:
        with open(pid_path, "r", encoding="utf-8") as handle:
            pid = int(handle.read().strip())
    except FileNotFoundError:
        return False
    except ValueError:
        pid = None

    if pid is not None:
        try:
            os.kill(pid, 0)
        except PermissionError:
            return True
        except ProcessLookupError:
            pass
        else:
            return True

    logger.debug("Removing stale pid file %s", pid_path)
    try:
        os.unlink(pid_path)
    except FileNotFoundError:
        pass
    return False


def spawn_daemon(config: AgentConfig) -> subprocess.Popen:
    """Start ``python -m ios_agent.daemon`` detached from this process."""

    env = dict(os.environ, IOS_AGENT_SESSION=config.session, IOS_AGENT_RUNTIME_DIR=config.runtime_dir)
    logger.info("Starting ios-agent daemon for session %s", config.session)
    return subprocess.Popen(
        [sys.executable, "-m", "ios_agent.daemon"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        env=env,
    )


async def ensure_daemon(config: AgentConfig, timeout: float = DAEMON_SPAWN_TIMEOUT) -> None:
    """Start the daemon unless it is running, then wait for its socket."""

    client = SocketClient(config.socket_path)
    if is_daemon_running(config.pid_path) and await client.is_running():
        return

    process = spawn_daemon(config)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await client.is_running():
            return
        if process.poll() is not None:
            break
        await asyncio.sleep(DAEMON_POLL_INTERVAL)
    raise AgentError(
        f"Daemon failed to start. Check the log at {config.log_path}.",
        suggestion="start-session",
    )


# -----------------------------
# Execution
# -----------------------------
async def _list_sims() -> Dict[str, Any]:
    simulators = await simctl.list_simulators()
    return {"success": True, "data": {"simulators": [simulator.to_dict() for simulator in simulators]}}


async def execute(args: argparse.Namespace, config: AgentConfig) -> Dict[str, Any]:
    """Run the verb in ``args`` and return its JSON envelope."""

    if args.command == "list-sims":
        return await _list_sims()

    command = build_command(args)
    running = is_daemon_running(config.pid_path)
    if isinstance(command, StartSessionCommand):
        await ensure_daemon(config)
    elif not running:
        if isinstance(command, StatusCommand):
            return {"success": True, "data": {"running": False, "message": "Daemon not running"}}
        if isinstance(command, StopSessionCommand):
            return {"success": True, "data": {"message": "Daemon not running"}}
        raise DaemonNotRunningError()

    client = SocketClient(config.socket_path)
    response = await client.send_command(command, timeout=command_timeout(command, config))
    return response_payload(response)


def _output(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging()
    config = load_agent_config()

    try:
        envelope = asyncio.run(execute(args, config))
    except AgentError as exc:
        envelope = {"success": False, "error": exc.message}
        if exc.suggestion:
            envelope["suggestion"] = exc.suggestion

    _output(envelope)
    return 0 if envelope.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
