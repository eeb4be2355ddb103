"""Tests for the session controller's lifecycle and rollback."""

from __future__ import annotations

import asyncio

import pytest

from ios_agent.errors import AgentError, BackendUnavailableError, SessionStateError, StartupTimeoutError
from ios_agent.session import SessionState
from ios_agent.simctl import Simulator
from ios_agent.snapshot import RefEntry


def test_start_boots_preferred_simulator_and_opens_wda_session(controller, devices, manager, wda_client):
    result = asyncio.run(controller.start())

    assert controller.state is SessionState.READY
    assert devices.booted == ["UDID-IPHONE-15"]
    assert controller.session.simulator.name == "iPhone 15"
    assert controller.session.simulator.booted
    assert wda_client.session_id == "session-1"
    assert result["simulator"] == {"name": "iPhone 15", "udid": "UDID-IPHONE-15", "runtime": "iOS 17.2"}
    assert result["wda"] == {"url": manager.base_url, "ready": True}
    assert result["message"] == "Session started with iPhone 15"


def test_start_prefers_an_already_booted_simulator(controller, devices):
    devices.simulators.append(Simulator(udid="UDID-SE", name="iPhone SE", state="Booted", runtime="iOS 16.4"))

    asyncio.run(controller.start())

    assert controller.session.simulator.udid == "UDID-SE"
    assert devices.booted == []


def test_start_by_name_matches_case_insensitively_then_by_substring(controller, devices):
    asyncio.run(controller.start("ipad air"))
    assert controller.session.simulator.udid == "UDID-IPAD"


def test_start_with_unknown_name_fails(controller, devices):
    with pytest.raises(AgentError, match="Simulator not found: Pixel") as excinfo:
        asyncio.run(controller.start("Pixel"))

    assert excinfo.value.suggestion == "list-sims"
    assert controller.state is SessionState.IDLE
    assert devices.booted == []


def test_start_without_devices(controller, devices):
    devices.simulators.clear()

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(controller.start())

    assert str(excinfo.value).startswith("No devices available")
    assert controller.state is SessionState.IDLE


def test_start_that_never_becomes_ready_rolls_back(controller, manager):
    manager.ready = False

    with pytest.raises(StartupTimeoutError) as excinfo:
        asyncio.run(controller.start())

    assert str(excinfo.value).startswith("Simulator booted but WDA failed: ")
    assert controller.state is SessionState.IDLE
    assert manager.stop_calls == 1
    assert manager.running is False
    assert controller.manager is None
    assert controller.client is None
    assert controller.session.simulator is None


def test_wda_launch_failure_rolls_back(controller, manager):
    manager.start_error = BackendUnavailableError("WDA process exited with code 65.")

    with pytest.raises(BackendUnavailableError, match="exited with code 65"):
        asyncio.run(controller.start())

    assert controller.state is SessionState.IDLE
    assert manager.stop_calls == 1


def test_unexpected_failure_is_wrapped(controller, devices):
    async def explode(udid):
        raise OSError("disk full")

    devices.boot_simulator = explode

    with pytest.raises(AgentError, match="Failed to start session: disk full"):
        asyncio.run(controller.start())

    assert controller.state is SessionState.IDLE


def test_start_is_idempotent_for_the_running_device(controller, manager):
    async def scenario():
        await controller.start("iPhone 15")
        return await controller.start("iphone 15")

    result = asyncio.run(scenario())

    assert result["message"] == "Session already running with iPhone 15"
    assert controller.state is SessionState.READY


def test_start_for_another_device_while_ready_is_rejected(controller):
    async def scenario():
        await controller.start("iPhone 15")
        await controller.start("iPad Air")

    with pytest.raises(SessionStateError, match="stop-session"):
        asyncio.run(scenario())


def test_stop_tears_down_and_clears_refs(controller, manager, wda_client):
    async def scenario():
        await controller.start()
        controller.refs.replace({"@e0": RefEntry(type="Button", label="OK")})
        return await controller.stop()

    result = asyncio.run(scenario())

    assert result == {"message": "Session stopped"}
    assert controller.state is SessionState.IDLE
    assert len(controller.refs) == 0
    assert controller.refs.next_index == 0
    assert manager.stop_calls == 1
    assert wda_client.session_id is None
    assert wda_client.closed is True


def test_stop_when_idle_is_harmless(controller, manager):
    assert asyncio.run(controller.stop()) == {"message": "Session stopped"}
    assert controller.state is SessionState.IDLE
    assert manager.stop_calls == 0


def test_require_client_before_start(controller):
    with pytest.raises(SessionStateError, match="start-session"):
        controller.require_client()


def test_status_reports_without_a_session(controller, devices):
    devices.simulators[0].state = "Booted"

    status = asyncio.run(controller.status())

    assert status["running"] is True
    assert status["state"] == "idle"
    assert status["simulator"] is None
    assert status["wda"] is None
    assert status["bootedSimulator"]["udid"] == "UDID-IPAD"


def test_status_during_a_session(controller, manager):
    async def scenario():
        await controller.start()
        return await controller.status()

    status = asyncio.run(scenario())

    assert status["state"] == "ready"
    assert status["session"] == "default"
    assert status["wda"] == {"url": manager.base_url, "running": True}
    assert status["sessionStartedAt"] is not None
    assert status["refs"] == 0
