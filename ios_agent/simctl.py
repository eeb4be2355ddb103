"""Helpers around ``xcrun simctl`` for managing iOS simulators."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ios_agent.errors import ExternalToolError

logger = logging.getLogger(__name__)

# ``simctl boot``/``shutdown`` exit with 149 when the device is already in the
# requested state.
ALREADY_IN_STATE_EXIT_CODE = 149
SIMCTL_TIMEOUT = 120.0
PREFERRED_DEVICE_CLASS = "iPhone"

_RUNTIME_PATTERN = re.compile(r"SimRuntime\.(.+)$")


@dataclass
class Simulator:
    """A simulator as reported by ``simctl list devices``."""

    udid: str
    name: str
    state: str
    runtime: str
    is_available: bool = True

    @property
    def booted(self) -> bool:
        return self.state == "Booted"

    def to_dict(self, include_state: bool = True) -> Dict[str, str]:
        payload = {"name": self.name, "udid": self.udid}
        if include_state:
            payload["state"] = self.state
        payload["runtime"] = self.runtime
        return payload


def _decode_stream(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")


async def _run(
    program: str, *args: str, timeout: float = SIMCTL_TIMEOUT
) -> Tuple[int, str, str]:
    """Run ``program`` and return its exit code, stdout and stderr."""

    logger.debug("Running %s %s", program, " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(program, *args, stdout=PIPE, stderr=PIPE)
    except FileNotFoundError as exc:
        raise ExternalToolError(
            f"'{program}' was not found. Install Xcode and its command line tools "
            "(xcode-select --install)."
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise ExternalToolError(
            f"'{program} {' '.join(args)}' timed out after {timeout:.0f}s"
        ) from exc
    return process.returncode or 0, _decode_stream(stdout), _decode_stream(stderr)


async def _simctl(*args: str, accept: Iterable[int] = (0,)) -> str:
    returncode, stdout, stderr = await _run("xcrun", "simctl", *args)
    if returncode not in set(accept):
        message = stderr.strip() or stdout.strip() or f"exit code {returncode}"
        raise ExternalToolError(
            f"simctl {args[0]} failed: {message}", returncode=returncode, stderr=stderr
        )
    return stdout


def parse_runtime(runtime: str) -> str:
    """Turn ``com.apple.CoreSimulator.SimRuntime.iOS-17-2`` into ``iOS 17.2``."""

    match = _RUNTIME_PATTERN.search(runtime)
    if not match:
        return runtime
    platform, _, version = match.group(1).partition("-")
    if not version:
        return platform
    return f"{platform} {version.replace('-', '.')}"


def parse_device_list(raw: str) -> List[Simulator]:
    """Parse ``simctl list devices -j`` output into available simulators."""

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ExternalToolError(f"simctl returned invalid JSON: {exc}") from exc

    simulators: List[Simulator] = []
    for runtime, devices in (data.get("devices") or {}).items():
        for device in devices or []:
            if not device.get("isAvailable"):
                continue
            simulators.append(
                Simulator(
                    udid=device.get("udid", ""),
                    name=device.get("name", ""),
                    state=device.get("state", ""),
                    runtime=parse_runtime(runtime),
                    is_available=True,
                )
            )
    return simulators


async def list_simulators() -> List[Simulator]:
    return parse_device_list(await _simctl("list", "devices", "-j"))


def match_simulator(simulators: Sequence[Simulator], name: str) -> Optional[Simulator]:
    """Return the simulator named ``name``: exact match first, then substring."""

    wanted = name.lower()
    for simulator in simulators:
        if simulator.name.lower() == wanted:
            return simulator
    for simulator in simulators:
        if wanted in simulator.name.lower():
            return simulator
    return None


def pick_default_simulator(simulators: Sequence[Simulator]) -> Optional[Simulator]:
    """Prefer a booted simulator, then an iPhone, then anything available."""

    for simulator in simulators:
        if simulator.booted:
            return simulator
    for simulator in simulators:
        if PREFERRED_DEVICE_CLASS in simulator.name:
            return simulator
    return simulators[0] if simulators else None


async def get_booted_simulator() -> Optional[Simulator]:
    for simulator in await list_simulators():
        if simulator.booted:
            return simulator
    return None


async def boot_simulator(udid: str) -> None:
    await _simctl("boot", udid, accept=(0, ALREADY_IN_STATE_EXIT_CODE))


async def shutdown_simulator(udid: str) -> None:
    """Shut ``udid`` down; sessions leave their simulator booted, so callers reclaim it here."""

    await _simctl("shutdown", udid, accept=(0, ALREADY_IN_STATE_EXIT_CODE))


async def open_simulator_app() -> None:
    """Bring Simulator.app to the front so the device is visible."""

    returncode, _, stderr = await _run("open", "-a", "Simulator")
    if returncode != 0:
        raise ExternalToolError(
            f"Failed to open Simulator.app: exit code {returncode}",
            returncode=returncode,
            stderr=stderr,
        )


async def install_app(udid: str, app_path: str) -> None:
    await _simctl("install", udid, app_path)


async def launch_app(udid: str, bundle_id: str) -> None:
    await _simctl("launch", udid, bundle_id)


async def terminate_app(udid: str, bundle_id: str) -> None:
    """Terminate ``bundle_id``; an app that is not running is not an error."""

    returncode, _, stderr = await _run("xcrun", "simctl", "terminate", udid, bundle_id)
    if returncode != 0:
        logger.debug("Ignoring simctl terminate exit code %s: %s", returncode, stderr.strip())


async def take_screenshot(udid: str, output_path: str) -> None:
    await _simctl("io", udid, "screenshot", output_path)
