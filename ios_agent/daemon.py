"""The ios-agent daemon: one session, one socket, one command at a time.

The daemon listens on ``<runtime dir>/agent-ios-<session>.sock`` and answers
one JSON line per command. Commands that read and change the session, the
WDA process or the reference table run under the controller's lock, so a
``snapshot`` can never interleave with a ``tap``. ``status`` and
``list-sims`` skip the lock.

Client timeouts are not propagated. When a caller gives up on a command the
daemon only loses the connection: the command keeps running to completion
and may still change the session, for example a slow ``start-session`` that
finishes after the CLI reported a timeout.

Run with ``python -m ios_agent.daemon``; the CLI does this detached.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from ios_agent import simctl
from ios_agent.config import AgentConfig, load_agent_config
from ios_agent.errors import (
    AgentError,
    AlertBlockingError,
    BackendRequestError,
    ElementNotFoundError,
    SessionStateError,
)
from ios_agent.logging_config import configure_logging
from ios_agent.protocol import (
    COMMAND_TYPES,
    READ_ONLY_ACTIONS,
    AlertAcceptCommand,
    AlertButtonCommand,
    AlertDismissCommand,
    AlertInfoCommand,
    ClearCommand,
    Command,
    InstallCommand,
    LaunchCommand,
    ListSimsCommand,
    Response,
    ScreenshotCommand,
    SnapshotCommand,
    SnapshotFormat,
    StartSessionCommand,
    StatusCommand,
    StopSessionCommand,
    SwipeCommand,
    TapCommand,
    TerminateCommand,
    TypeCommand,
    WaitCommand,
    error_response,
    success_response,
)
from ios_agent.session import SessionController, SessionState
from ios_agent.snapshot import lookup_ref, parse_wda_source, render_tree_yaml, resolve_ref
from ios_agent.socket_server import SocketServer
from ios_agent.wda_client import WDAClient

logger = logging.getLogger(__name__)

WAIT_POLL_INTERVAL = 0.5
EXIT_DELAY = 0.1

ElementAction = Callable[[WDAClient, str], Awaitable[None]]

_HANDLERS: Dict[Type[Any], str] = {
    StartSessionCommand: "_start_session",
    StopSessionCommand: "_stop_session",
    StatusCommand: "_status",
    ListSimsCommand: "_list_sims",
    SnapshotCommand: "_snapshot",
    ScreenshotCommand: "_screenshot",
    TapCommand: "_tap",
    TypeCommand: "_type",
    ClearCommand: "_clear",
    SwipeCommand: "_swipe",
    WaitCommand: "_wait",
    AlertAcceptCommand: "_alert_accept",
    AlertDismissCommand: "_alert_dismiss",
    AlertButtonCommand: "_alert_button",
    AlertInfoCommand: "_alert_info",
    LaunchCommand: "_launch",
    TerminateCommand: "_terminate",
    InstallCommand: "_install",
}

_unhandled = [command_type.__name__ for command_type in COMMAND_TYPES if command_type not in _HANDLERS]
if _unhandled:
    raise RuntimeError(f"No daemon handler for: {', '.join(_unhandled)}")


def _unwritable_screenshot(path: str, exc: OSError) -> AgentError:
    return AgentError(
        f"Cannot write screenshot to {path}: {exc.strerror or exc}. "
        "Pass an --out path in an existing, writable directory."
    )


class Daemon:
    """Dispatch commands to the session controller and the automation helpers."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        controller: Optional[SessionController] = None,
        devices: Any = simctl,
        wait_poll_interval: float = WAIT_POLL_INTERVAL,
    ) -> None:
        self.config = config
        self.devices = devices
        self.controller = controller or SessionController(config, devices=devices)
        self.wait_poll_interval = wait_poll_interval
        self._shutdown = asyncio.Event()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def handle(self, command: Command) -> Response:
        """Run ``command`` and convert the outcome into a response."""

        handler = getattr(self, _HANDLERS[type(command)])
        try:
            if command.action in READ_ONLY_ACTIONS:
                data = await handler(command)
            else:
                if isinstance(command, StartSessionCommand):
                    self._reject_concurrent_lifecycle()
                async with self.controller.lock:
                    data = await handler(command)
        except AgentError as exc:
            logger.info("%s failed: %s", command.action, exc.message)
            return error_response(command.id, exc.message, details=self._error_details(exc))
        return success_response(command.id, data)

    @staticmethod
    def _error_details(exc: AgentError) -> Optional[Dict[str, Any]]:
        details = dict(exc.details or {})
        if exc.suggestion:
            details["suggestion"] = exc.suggestion
        return details or None

    def _reject_concurrent_lifecycle(self) -> None:
        if self.controller.state in (SessionState.STARTING, SessionState.STOPPING):
            raise SessionStateError(
                f"Session is {self.controller.state.value}; wait for it to finish and check 'ios-agent status'.",
                suggestion="status",
            )

    async def after_response(self, command: Command, response: Response) -> None:
        """Schedule the daemon's exit once a stop has been acknowledged."""

        if isinstance(command, StopSessionCommand) and response.success:
            self.request_shutdown(delay=EXIT_DELAY)

    def request_shutdown(self, delay: float = 0.0) -> None:
        if delay > 0:
            asyncio.get_running_loop().call_later(delay, self._shutdown.set)
        else:
            self._shutdown.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _start_session(self, command: StartSessionCommand) -> Dict[str, Any]:
        return await self.controller.start(command.sim)

    async def _stop_session(self, command: StopSessionCommand) -> Dict[str, Any]:
        return await self.controller.stop()

    async def _status(self, command: StatusCommand) -> Dict[str, Any]:
        return await self.controller.status()

    async def _list_sims(self, command: ListSimsCommand) -> Dict[str, Any]:
        try:
            simulators = await self.devices.list_simulators()
        except AgentError as exc:
            raise exc.with_context("Failed to list simulators: ")
        return {"simulators": [simulator.to_dict() for simulator in simulators]}

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    async def _snapshot(self, command: SnapshotCommand) -> Dict[str, Any]:
        client = self.controller.require_client()
        refs = self.controller.refs
        xml = await client.get_source()
        snapshot = parse_wda_source(xml, first_ref=refs.next_index)
        refs.replace(snapshot.ref_map)
        logger.debug("Snapshot generation %s with %s refs", refs.generation, len(refs))

        if command.format is SnapshotFormat.yaml:
            payload = snapshot.to_dict()
            return {
                "format": "yaml",
                "timestamp": payload["timestamp"],
                "tree": render_tree_yaml(snapshot),
                "refMap": payload["refMap"],
            }
        return snapshot.to_dict()

    async def _screenshot(self, command: ScreenshotCommand) -> Dict[str, Any]:
        client = self.controller.require_client()
        if not command.out:
            return {"format": "base64", "data": await client.screenshot()}

        try:
            image = await client.screenshot_bytes()
        except BackendRequestError as exc:
            simulator = self.controller.require_simulator()
            logger.warning("WDA screenshot failed (%s); using simctl", exc.message)
            await self.devices.take_screenshot(simulator.udid, command.out)
            try:
                size = os.path.getsize(command.out)
            except OSError as error:
                raise _unwritable_screenshot(command.out, error) from error
            return {"saved": True, "path": command.out, "size": size}

        try:
            with open(command.out, "wb") as handle:
                handle.write(image)
        except OSError as exc:
            raise _unwritable_screenshot(command.out, exc) from exc
        return {"saved": True, "path": command.out, "size": len(image)}

    # ------------------------------------------------------------------
    # Element actions
    # ------------------------------------------------------------------
    async def _blocking_alert(self, client: WDAClient) -> Optional[AlertBlockingError]:
        try:
            text = await client.get_alert_text()
            if text is None:
                return None
            buttons = await client.get_alert_buttons()
        except AgentError as exc:
            logger.debug("Alert lookup failed: %s", exc)
            return None
        return AlertBlockingError(text, buttons)

    async def _on_element(self, ref: str, action: ElementAction) -> None:
        """Resolve ``ref`` and run ``action``, reporting a blocking alert first."""

        client = self.controller.require_client()
        try:
            element_id = await resolve_ref(ref, self.controller.refs, client.find_element)
            await action(client, element_id)
        except (ElementNotFoundError, BackendRequestError) as exc:
            blocking = await self._blocking_alert(client)
            if blocking is not None:
                raise blocking from exc
            raise

    async def _tap(self, command: TapCommand) -> Dict[str, Any]:
        await self._on_element(command.ref, lambda client, element: client.click(element))
        return {"ref": command.ref, "message": f"Tapped {command.ref}"}

    async def _type(self, command: TypeCommand) -> Dict[str, Any]:
        await self._on_element(command.ref, lambda client, element: client.type(element, command.text))
        return {"ref": command.ref, "text": command.text, "message": f"Typed into {command.ref}"}

    async def _clear(self, command: ClearCommand) -> Dict[str, Any]:
        await self._on_element(command.ref, lambda client, element: client.clear(element))
        return {"ref": command.ref, "message": f"Cleared {command.ref}"}

    async def _swipe(self, command: SwipeCommand) -> Dict[str, Any]:
        direction = command.direction.value
        if command.ref:
            await self._on_element(
                command.ref, lambda client, element: client.swipe(element, direction)
            )
            return {"ref": command.ref, "direction": direction, "message": f"Swiped {direction} on {command.ref}"}

        client = self.controller.require_client()
        try:
            await client.swipe_screen(direction)
        except BackendRequestError as exc:
            blocking = await self._blocking_alert(client)
            if blocking is not None:
                raise blocking from exc
            raise
        return {"ref": None, "direction": direction, "message": f"Swiped {direction}"}

    async def _wait(self, command: WaitCommand) -> Dict[str, Any]:
        """Poll until ``ref`` resolves to a displayed element or time runs out.

        The lock is held for the whole wait, so other mutating commands queue
        behind it for at most ``timeout`` milliseconds.
        """

        client = self.controller.require_client()
        refs = self.controller.refs
        lookup_ref(command.ref, refs)

        async def displayed() -> bool:
            element_id = await resolve_ref(command.ref, refs, client.find_element)
            return await client.is_displayed(element_id)

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + command.timeout / 1000
        while True:
            # A single slow WDA round trip must not carry the wait past its deadline.
            budget = max(deadline - loop.time(), self.wait_poll_interval)
            try:
                if await asyncio.wait_for(displayed(), timeout=budget):
                    elapsed = int((loop.time() - started) * 1000)
                    return {"found": True, "ref": command.ref, "elapsed": elapsed}
            except asyncio.TimeoutError:
                logger.debug("Lookup of %s outlived the wait deadline", command.ref)
            except (ElementNotFoundError, BackendRequestError) as exc:
                logger.debug("Waiting for %s: %s", command.ref, exc.message)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.wait_poll_interval, remaining))

        blocking = await self._blocking_alert(client)
        if blocking is not None:
            raise blocking
        raise ElementNotFoundError(
            f"Timed out after {command.timeout}ms waiting for {command.ref}. "
            "UI may have changed. Run 'snapshot' for updated refs.",
            command.ref,
            suggestion="snapshot",
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    async def _alert_accept(self, command: AlertAcceptCommand) -> Dict[str, Any]:
        await self.controller.require_client().accept_alert()
        return {"message": "Alert accepted"}

    async def _alert_dismiss(self, command: AlertDismissCommand) -> Dict[str, Any]:
        await self.controller.require_client().dismiss_alert()
        return {"message": "Alert dismissed"}

    async def _alert_button(self, command: AlertButtonCommand) -> Dict[str, Any]:
        await self.controller.require_client().tap_alert_button(command.button)
        return {"button": command.button, "message": f"Tapped alert button {command.button!r}"}

    async def _alert_info(self, command: AlertInfoCommand) -> Dict[str, Any]:
        client = self.controller.require_client()
        text = await client.get_alert_text()
        if text is None:
            return {"present": False}
        return {"present": True, "text": text, "buttons": await client.get_alert_buttons()}

    # ------------------------------------------------------------------
    # Apps
    # ------------------------------------------------------------------
    async def _launch(self, command: LaunchCommand) -> Dict[str, Any]:
        client = self.controller.require_client()
        try:
            await client.launch_app(command.bundle_id)
        except BackendRequestError as exc:
            simulator = self.controller.require_simulator()
            logger.warning("WDA launch of %s failed (%s); using simctl", command.bundle_id, exc.message)
            await self.devices.launch_app(simulator.udid, command.bundle_id)
        return {"bundleId": command.bundle_id, "message": f"Launched {command.bundle_id}"}

    async def _terminate(self, command: TerminateCommand) -> Dict[str, Any]:
        client = self.controller.require_client()
        try:
            await client.terminate_app(command.bundle_id)
        except BackendRequestError as exc:
            simulator = self.controller.require_simulator()
            logger.warning("WDA terminate of %s failed (%s); using simctl", command.bundle_id, exc.message)
            await self.devices.terminate_app(simulator.udid, command.bundle_id)
        return {"bundleId": command.bundle_id, "message": f"Terminated {command.bundle_id}"}

    async def _install(self, command: InstallCommand) -> Dict[str, Any]:
        simulator = self.controller.require_simulator()
        if not os.path.exists(command.app_path):
            raise AgentError(f"App not found: {command.app_path}. Pass the path to a built .app bundle.")
        await self.devices.install_app(simulator.udid, command.app_path)
        return {"appPath": command.app_path, "simulator": simulator.name, "message": "App installed"}

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------
    async def _release_session(self) -> None:
        # A command still in flight finishes (or rolls back) before teardown.
        async with self.controller.lock:
            if self.controller.state is SessionState.IDLE:
                return
            try:
                await self.controller.stop()
            except AgentError as exc:
                logger.warning("Session teardown during shutdown failed: %s", exc)

    async def run(self) -> None:
        """Serve until ``stop-session`` or a termination signal."""

        pid_path = self.config.pid_path
        with open(pid_path, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))

        server = SocketServer(self.config.socket_path, self.handle, after_response=self.after_response)
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
        for signum in signals:
            loop.add_signal_handler(signum, self.request_shutdown)

        try:
            await server.start()
            logger.info(
                "ios-agent daemon started (session: %s, pid: %s)", self.config.session, os.getpid()
            )
            await self._shutdown.wait()
            logger.info("Shutting down ios-agent daemon")
        finally:
            for signum in signals:
                loop.remove_signal_handler(signum)
            await server.stop()
            await self._release_session()
            with contextlib.suppress(FileNotFoundError):
                os.unlink(pid_path)


def main() -> None:
    config = load_agent_config()
    configure_logging(force=True, default_log_file=config.log_path)
    try:
        asyncio.run(Daemon(config).run())
    except OSError:
        logger.exception("Failed to start daemon")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
