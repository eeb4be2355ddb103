"""Fakes for the simulator tool, the WDA process and the WDA client."""

from __future__ import annotations

import asyncio
import base64
from typing import Dict, List, Optional, Tuple

import pytest

from ios_agent.config import AgentConfig
from ios_agent.errors import BackendRequestError, StartupTimeoutError
from ios_agent.session import SessionController
from ios_agent.simctl import Simulator
from ios_agent.wda import ShutdownPhase

SAMPLE_SOURCE = """<?xml version="1.0" encoding="UTF-8"?>
<XCUIElementTypeApplication type="XCUIElementTypeApplication" name="Demo" label="Demo" enabled="true" visible="true" x="0" y="0" width="390" height="844">
  <!-- status bar omitted -->
  <XCUIElementTypeWindow type="XCUIElementTypeWindow" enabled="true" visible="true" x="0" y="0" width="390" height="844">
    <XCUIElementTypeTextField type="XCUIElementTypeTextField" name="email" label="Email" value="" enabled="true" visible="true" x="20" y="200" width="350" height="44"/>
    <XCUIElementTypeButton type="XCUIElementTypeButton" label="Log In" enabled="true" visible="true" x="20" y="300" width="350" height="44"/>
  </XCUIElementTypeWindow>
</XCUIElementTypeApplication>
"""

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


class FakeDevices:
    """Stand-in for :mod:`ios_agent.simctl`."""

    def __init__(self, simulators: Optional[List[Simulator]] = None) -> None:
        self.simulators = list(simulators or [])
        self.booted: List[str] = []
        self.installed: List[Tuple[str, str]] = []
        self.launched: List[Tuple[str, str]] = []
        self.terminated: List[Tuple[str, str]] = []

    async def list_simulators(self) -> List[Simulator]:
        return list(self.simulators)

    async def get_booted_simulator(self) -> Optional[Simulator]:
        for simulator in self.simulators:
            if simulator.booted:
                return simulator
        return None

    async def boot_simulator(self, udid: str) -> None:
        self.booted.append(udid)

    async def open_simulator_app(self) -> None:
        return None

    async def install_app(self, udid: str, app_path: str) -> None:
        self.installed.append((udid, app_path))

    async def launch_app(self, udid: str, bundle_id: str) -> None:
        self.launched.append((udid, bundle_id))

    async def terminate_app(self, udid: str, bundle_id: str) -> None:
        self.terminated.append((udid, bundle_id))

    async def take_screenshot(self, udid: str, output_path: str) -> None:
        with open(output_path, "wb") as handle:
            handle.write(PNG_BYTES)


class FakeManager:
    """Stand-in for :class:`ios_agent.wda.WDAManager`."""

    def __init__(self) -> None:
        self.base_url = "http://localhost:8100"
        self.udids: List[str] = []
        self.start_error: Optional[Exception] = None
        self.ready = True
        self.running = False
        self.stop_calls = 0

    async def start(self) -> None:
        self.running = True
        if self.start_error is not None:
            raise self.start_error

    async def wait_for_ready(self, timeout: float = 60.0) -> None:
        if not self.ready:
            raise StartupTimeoutError(f"WDA did not become ready within {timeout:.0f}s.")

    async def stop(self) -> ShutdownPhase:
        self.stop_calls += 1
        self.running = False
        return ShutdownPhase.EXITED

    async def is_running(self) -> bool:
        return self.running


class FakeWDAClient:
    """Stand-in for :class:`ios_agent.wda_client.WDAClient`.

    ``elements`` maps ``(using, value)`` queries to element ids; an alert set
    through ``alert`` makes every element action fail the way WDA does.
    """

    def __init__(self, source: str = SAMPLE_SOURCE) -> None:
        self.source = source
        self.elements: Dict[Tuple[str, str], str] = {}
        self.queries: List[Tuple[str, str]] = []
        self.actions: List[Tuple[str, ...]] = []
        self.alert: Optional[Tuple[str, List[str]]] = None
        self.action_delay = 0.0
        self.find_delay = 0.0
        self.launch_error: Optional[Exception] = None
        self.session_id: Optional[str] = None
        self.closed = False

    async def ensure_session(self) -> str:
        self.session_id = self.session_id or "session-1"
        return self.session_id

    async def delete_session(self) -> None:
        self.session_id = None

    async def aclose(self) -> None:
        self.closed = True

    async def get_source(self) -> str:
        return self.source

    async def screenshot(self) -> str:
        return base64.b64encode(PNG_BYTES).decode("ascii")

    async def screenshot_bytes(self) -> bytes:
        return PNG_BYTES

    async def find_element(self, using: str, value: str) -> Optional[str]:
        self.queries.append((using, value))
        if self.find_delay:
            await asyncio.sleep(self.find_delay)
        return self.elements.get((using, value))

    async def is_displayed(self, element_id: str) -> bool:
        return True

    async def _act(self, *action: str) -> None:
        if self.action_delay:
            await asyncio.sleep(self.action_delay)
        if self.alert is not None:
            raise BackendRequestError(500, "Element is not hittable")
        self.actions.append(action)

    async def click(self, element_id: str) -> None:
        await self._act("click", element_id)

    async def type(self, element_id: str, text: str) -> None:
        await self._act("type", element_id, text)

    async def clear(self, element_id: str) -> None:
        await self._act("clear", element_id)

    async def swipe(self, element_id: str, direction: str) -> None:
        await self._act("swipe", element_id, direction)

    async def swipe_screen(self, direction: str) -> None:
        await self._act("swipe_screen", direction)

    async def get_alert_text(self) -> Optional[str]:
        return self.alert[0] if self.alert else None

    async def get_alert_buttons(self) -> List[str]:
        return list(self.alert[1]) if self.alert else []

    async def accept_alert(self) -> None:
        if self.alert is None:
            raise BackendRequestError(404, "An attempt was made to operate on a modal dialog when one was not open")
        self.alert = None

    async def dismiss_alert(self) -> None:
        await self.accept_alert()

    async def tap_alert_button(self, name: str) -> None:
        if self.alert is None or name not in self.alert[1]:
            raise BackendRequestError(400, f"Alert button '{name}' not found")
        self.alert = None

    async def launch_app(self, bundle_id: str) -> None:
        if self.launch_error is not None:
            raise self.launch_error
        self.actions.append(("launch", bundle_id))

    async def terminate_app(self, bundle_id: str) -> None:
        self.actions.append(("terminate", bundle_id))


@pytest.fixture
def iphone() -> Simulator:
    return Simulator(udid="UDID-IPHONE-15", name="iPhone 15", state="Shutdown", runtime="iOS 17.2")


@pytest.fixture
def devices(iphone) -> FakeDevices:
    ipad = Simulator(udid="UDID-IPAD", name="iPad Air", state="Shutdown", runtime="iOS 17.2")
    return FakeDevices([ipad, iphone])


@pytest.fixture
def manager() -> FakeManager:
    return FakeManager()


@pytest.fixture
def wda_client() -> FakeWDAClient:
    return FakeWDAClient()


@pytest.fixture
def controller(devices, manager, wda_client) -> SessionController:
    return SessionController(
        AgentConfig(),
        devices=devices,
        manager_factory=lambda udid: manager,
        client_factory=lambda base_url: wda_client,
    )


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES
