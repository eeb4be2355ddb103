"""Session lifecycle: simulator selection, WDA supervision and teardown.

The controller owns the daemon's only session together with the WDA process,
the WDA client and the reference table. ``lock`` is the single-writer guard
for all of them: every command that reads and then changes that state must
run under it. :meth:`SessionController.status` never takes it and only reads
a copy.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ios_agent import simctl
from ios_agent.config import AgentConfig
from ios_agent.errors import AgentError, ExternalToolError, SessionStateError
from ios_agent.simctl import Simulator
from ios_agent.snapshot import RefStore
from ios_agent.wda import WDAManager
from ios_agent.wda_client import WDAClient

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """States of the daemon's session."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.STARTING, SessionState.STOPPING},
    SessionState.STARTING: {SessionState.READY, SessionState.FAILED, SessionState.STOPPING},
    SessionState.READY: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.IDLE},
    SessionState.FAILED: {SessionState.IDLE},
}


@dataclass
class Session:
    """The daemon's record of its device and backend pairing."""

    name: str
    state: SessionState = SessionState.IDLE
    simulator: Optional[Simulator] = None
    backend_url: Optional[str] = None
    created_at: Optional[dt.datetime] = None


ManagerFactory = Callable[[str], WDAManager]
ClientFactory = Callable[[str], WDAClient]


class SessionController:
    """Start, stop and describe the daemon's session."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        devices: Any = simctl,
        manager_factory: Optional[ManagerFactory] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.config = config
        self.devices = devices
        self._manager_factory = manager_factory or self._default_manager
        self._client_factory = client_factory or self._default_client
        self.session = Session(name=config.session)
        self.manager: Optional[WDAManager] = None
        self.client: Optional[WDAClient] = None
        self.refs = RefStore()
        self.lock = asyncio.Lock()
        self.daemon_started_at = dt.datetime.now(dt.timezone.utc)

    def _default_manager(self, udid: str) -> WDAManager:
        return WDAManager(
            udid,
            self.config.wda_port,
            self.config.wda_path,
            startup_timeout=self.config.wda_startup_timeout,
        )

    def _default_client(self, base_url: str) -> WDAClient:
        return WDAClient(base_url, timeout=self.config.wda_request_timeout)

    @property
    def state(self) -> SessionState:
        return self.session.state

    def _transition(self, target: SessionState) -> None:
        current = self.session.state
        if target not in _TRANSITIONS[current]:
            raise SessionStateError(
                f"Cannot move session from {current.value} to {target.value}."
            )
        logger.debug("Session %s: %s -> %s", self.session.name, current.value, target.value)
        self.session.state = target

    def require_client(self) -> WDAClient:
        """Return the WDA client of a ready session."""

        if self.session.state is not SessionState.READY or self.client is None:
            raise SessionStateError(
                "WDA not running. Run 'ios-agent start-session' first.",
                suggestion="start-session",
            )
        return self.client

    def require_simulator(self) -> Simulator:
        if self.session.simulator is None:
            raise SessionStateError(
                "No simulator selected. Run 'ios-agent start-session' first.",
                suggestion="start-session",
            )
        return self.session.simulator

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------
    async def _select_simulator(self, name: Optional[str]) -> Simulator:
        simulators = await self.devices.list_simulators()
        if name:
            simulator = simctl.match_simulator(simulators, name)
            if simulator is None:
                raise AgentError(
                    f"Simulator not found: {name}. Run 'ios-agent list-sims' to see available simulators.",
                    suggestion="list-sims",
                )
            return simulator
        simulator = simctl.pick_default_simulator(simulators)
        if simulator is None:
            raise AgentError(
                "No devices available: no iOS simulators were found. "
                "Install Xcode and create a simulator."
            )
        return simulator

    def _describe(self, message: str) -> Dict[str, Any]:
        simulator = self.session.simulator
        return {
            "simulator": simulator.to_dict(include_state=False) if simulator else None,
            "wda": {"url": self.session.backend_url, "ready": True},
            "message": message,
        }

    async def start(self, sim: Optional[str] = None) -> Dict[str, Any]:
        """Boot a simulator, start WDA and open a WDA session.

        Any failure rolls everything back to ``idle`` before the error is
        raised, so a session is either fully ready or absent.
        """

        if self.session.state is SessionState.READY:
            current = self.session.simulator
            if sim is None or (current is not None and simctl.match_simulator([current], sim)):
                return self._describe(f"Session already running with {current.name if current else 'simulator'}")
            raise SessionStateError(
                f"A session is already running with {current.name if current else 'another simulator'}. "
                "Run 'ios-agent stop-session' first.",
                suggestion="stop-session",
            )

        self._transition(SessionState.STARTING)
        simulator: Optional[Simulator] = None
        backend_stage = False
        try:
            simulator = await self._select_simulator(sim)
            if not simulator.booted:
                await self.devices.boot_simulator(simulator.udid)
                try:
                    await self.devices.open_simulator_app()
                except ExternalToolError as exc:
                    logger.warning("Could not open Simulator.app: %s", exc)
                simulator = replace(simulator, state="Booted")
            self.session.simulator = simulator

            logger.info("Starting WebDriverAgent for %s...", simulator.name)
            backend_stage = True
            self.manager = self._manager_factory(simulator.udid)
            await self.manager.start()
            await self.manager.wait_for_ready(self.config.wda_ready_timeout)

            self.client = self._client_factory(self.manager.base_url)
            await self.client.ensure_session()
        except asyncio.CancelledError:
            await self._rollback()
            raise
        except AgentError as exc:
            await self._rollback()
            if backend_stage:
                raise exc.with_context("Simulator booted but WDA failed: ")
            raise
        except Exception as exc:
            await self._rollback()
            raise AgentError(f"Failed to start session: {exc}") from exc

        self.session.backend_url = self.manager.base_url
        self.session.created_at = dt.datetime.now(dt.timezone.utc)
        self._transition(SessionState.READY)
        logger.info("Session ready on %s (%s)", simulator.name, self.session.backend_url)
        return self._describe(f"Session started with {simulator.name}")

    def _reset_session(self) -> None:
        self.refs.clear()
        self.session.simulator = None
        self.session.backend_url = None
        self.session.created_at = None
        self._transition(SessionState.IDLE)

    async def _rollback(self) -> None:
        self._transition(SessionState.FAILED)
        try:
            await self._teardown_backend()
        finally:
            self._reset_session()

    async def _teardown_backend(self) -> None:
        client, self.client = self.client, None
        manager, self.manager = self.manager, None
        if client is not None:
            # Best effort: the WDA process is about to go away anyway.
            try:
                await client.delete_session()
            except AgentError as exc:
                logger.warning("Ignoring WDA session delete failure: %s", exc)
            finally:
                await client.aclose()
        if manager is not None:
            await manager.stop()

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------
    async def stop(self) -> Dict[str, Any]:
        """Delete the WDA session, stop WDA and forget all references."""

        self._transition(SessionState.STOPPING)
        try:
            await self._teardown_backend()
        finally:
            self._reset_session()
        return {"message": "Session stopped"}

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------
    async def status(self) -> Dict[str, Any]:
        """Describe the daemon without changing anything."""

        session = replace(self.session)
        manager = self.manager

        backend_running = False
        if manager is not None:
            backend_running = await manager.is_running()

        booted: Optional[Simulator] = None
        try:
            booted = await self.devices.get_booted_simulator()
        except (AgentError, OSError) as exc:
            logger.debug("Booted simulator lookup failed: %s", exc)

        uptime = dt.datetime.now(dt.timezone.utc) - self.daemon_started_at
        return {
            "running": True,
            "session": session.name,
            "state": session.state.value,
            "uptime": int(uptime.total_seconds()),
            "sessionStartedAt": session.created_at.isoformat() if session.created_at else None,
            "simulator": session.simulator.to_dict(include_state=False) if session.simulator else None,
            "wda": {"url": session.backend_url, "running": backend_running} if manager else None,
            "refs": len(self.refs),
            "bootedSimulator": booted.to_dict(include_state=False) if booted else None,
        }
