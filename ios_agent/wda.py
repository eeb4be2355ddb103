"""Supervision of the WebDriverAgent process.

WDA is built and run with ``xcodebuild test`` against one simulator. The
manager owns exactly one such child process: it validates the project,
spawns it, watches its output for the readiness marker, polls ``/status``
and tears it down with a three-phase shutdown (terminate, grace period,
kill).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from asyncio.subprocess import PIPE, STDOUT
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Deque, List, Optional, Sequence

import httpx

from ios_agent.config import DEFAULT_WDA_PORT
from ios_agent.errors import (
    BackendUnavailableError,
    SessionStateError,
    StartupTimeoutError,
    WDANotFoundError,
)

logger = logging.getLogger(__name__)

READY_MARKER = "ServerURLHere"
OUTPUT_TAIL_LINES = 200
HEALTH_CHECK_TIMEOUT = 2.0
_STREAM_LIMIT = 1024 * 1024


class ShutdownPhase(str, Enum):
    """Progress of a :class:`ShutdownSequence`."""

    PENDING = "pending"
    SIGNALLED = "signalled"
    WAITING = "waiting"
    EXITED = "exited"
    KILLED = "killed"


class ShutdownSequence:
    """Terminate, wait for a grace period, then kill.

    The sequence only sees three callables, so it works for any kind of
    process handle. ``terminate`` and ``kill`` may raise
    :class:`ProcessLookupError` when the process is already gone.
    """

    def __init__(
        self,
        terminate: Callable[[], None],
        kill: Callable[[], None],
        wait_exit: Callable[[], Awaitable[object]],
        grace_period: float = 5.0,
    ) -> None:
        self._terminate = terminate
        self._kill = kill
        self._wait_exit = wait_exit
        self.grace_period = grace_period
        self.phase = ShutdownPhase.PENDING
        self.history: List[ShutdownPhase] = [self.phase]

    def _enter(self, phase: ShutdownPhase) -> None:
        self.phase = phase
        self.history.append(phase)

    async def run(self) -> ShutdownPhase:
        if self.phase is not ShutdownPhase.PENDING:
            return self.phase

        try:
            self._terminate()
        except ProcessLookupError:
            await self._wait_exit()
            self._enter(ShutdownPhase.EXITED)
            return self.phase
        self._enter(ShutdownPhase.SIGNALLED)

        self._enter(ShutdownPhase.WAITING)
        try:
            await asyncio.wait_for(self._wait_exit(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            try:
                self._kill()
            except ProcessLookupError:
                pass
            await self._wait_exit()
            self._enter(ShutdownPhase.KILLED)
            return self.phase

        self._enter(ShutdownPhase.EXITED)
        return self.phase


class WDAManager:
    """Owns the ``xcodebuild`` process running WebDriverAgent for one simulator."""

    def __init__(
        self,
        udid: str,
        port: int = DEFAULT_WDA_PORT,
        wda_path: Optional[str] = None,
        *,
        startup_timeout: float = 120.0,
        poll_interval: float = 1.0,
        grace_period: float = 5.0,
        command: Optional[Sequence[str]] = None,
        health_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.udid = udid
        self.port = port
        self.wda_path = wda_path or os.path.join(os.path.expanduser("~"), "WebDriverAgent")
        self.startup_timeout = startup_timeout
        self.poll_interval = poll_interval
        self.grace_period = grace_period
        self._command_override = list(command) if command else None
        self._health_transport = health_transport
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self.last_shutdown: Optional[ShutdownSequence] = None

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def project_path(self) -> str:
        return os.path.join(self.wda_path, "WebDriverAgent.xcodeproj")

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def process_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def output_tail(self) -> List[str]:
        return list(self._tail)

    def check_wda_exists(self) -> None:
        if not os.path.exists(self.project_path):
            raise WDANotFoundError(
                f"WebDriverAgent not found at {self.wda_path}. "
                f"Clone it with: git clone https://github.com/appium/WebDriverAgent.git {self.wda_path} "
                "or set WDA_PATH environment variable."
            )

    def build_command(self) -> List[str]:
        if self._command_override:
            return list(self._command_override)
        return [
            "xcodebuild",
            "-project",
            self.project_path,
            "-scheme",
            "WebDriverAgentRunner",
            "-destination",
            f"platform=iOS Simulator,id={self.udid}",
            "-derivedDataPath",
            os.path.join(self.wda_path, "DerivedData"),
            "test",
        ]

    def _is_ready_line(self, line: str) -> bool:
        return READY_MARKER in line or f"http://[::1]:{self.port}" in line

    async def _consume_output(self, stream: asyncio.StreamReader) -> None:
        """Keep the output pipe drained, remembering the tail and readiness."""

        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.debug("Skipping over-long WDA output line")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            self._tail.append(line)
            logger.debug("wda: %s", line)
            if not self._ready.is_set() and self._is_ready_line(line):
                self._ready.set()

    def _error_summary(self) -> str:
        errors = [line for line in self._tail if "error:" in line or "Error:" in line]
        return "\n".join(errors[-5:])

    async def start(self) -> None:
        """Spawn WDA and wait until it prints its readiness marker."""

        if self._process is not None:
            raise SessionStateError("WDA is already running; stop it before starting again.")

        self.check_wda_exists()
        command = self.build_command()
        env = dict(os.environ, USE_PORT=str(self.port))
        self._tail.clear()
        self._ready = asyncio.Event()

        logger.info("Starting WebDriverAgent for %s on port %s", self.udid, self.port)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.wda_path,
                env=env,
                stdout=PIPE,
                stderr=STDOUT,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise BackendUnavailableError(
                f"Failed to start WDA: {exc}. Install Xcode and check 'xcode-select -p'."
            ) from exc

        assert self._process.stdout is not None
        self._reader = asyncio.create_task(self._consume_output(self._process.stdout))

        ready_task = asyncio.create_task(self._ready.wait())
        exit_task = asyncio.create_task(self._process.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_task, exit_task},
                timeout=self.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready_task, exit_task):
                if not task.done():
                    task.cancel()

        if ready_task in done:
            logger.info("WebDriverAgent reported readiness (pid %s)", self.pid)
            return

        if exit_task in done:
            returncode = self._process.returncode
            await self._finish_reader()
            self._process = None
            summary = self._error_summary() or "Check Xcode setup."
            raise BackendUnavailableError(f"WDA process exited with code {returncode}. {summary}")

        await self.stop()
        raise StartupTimeoutError(
            f"WDA startup timed out after {self.startup_timeout:.0f}s. Check Xcode and simulator."
        )

    async def _finish_reader(self) -> None:
        if self._reader is None:
            return
        try:
            await asyncio.wait_for(self._reader, timeout=1.0)
        except asyncio.TimeoutError:
            self._reader.cancel()
        except asyncio.CancelledError:
            pass
        self._reader = None

    def _signal(self, signum: int) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            raise ProcessLookupError(signum)
        try:
            os.killpg(process.pid, signum)
        except PermissionError:
            process.send_signal(signum)

    async def stop(self) -> ShutdownPhase:
        """Stop the WDA process; a no-op when nothing is running."""

        process = self._process
        if process is None:
            return ShutdownPhase.EXITED

        sequence = ShutdownSequence(
            terminate=lambda: self._signal(signal.SIGTERM),
            kill=lambda: self._signal(signal.SIGKILL),
            wait_exit=process.wait,
            grace_period=self.grace_period,
        )
        self.last_shutdown = sequence
        phase = await sequence.run()
        await self._finish_reader()
        self._process = None
        logger.info("WebDriverAgent stopped (%s)", phase.value)
        return phase

    async def is_running(self) -> bool:
        """Return ``True`` when ``/status`` answers successfully."""

        try:
            async with httpx.AsyncClient(transport=self._health_transport) as client:
                response = await client.get(f"{self.base_url}/status", timeout=HEALTH_CHECK_TIMEOUT)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def wait_for_ready(self, timeout: float = 60.0) -> None:
        """Poll ``/status`` until WDA answers or ``timeout`` seconds pass."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if await self.is_running():
                return
            await asyncio.sleep(self.poll_interval)
        raise StartupTimeoutError(
            f"WDA did not become ready within {timeout:.0f}s. "
            "Check the simulator and 'ios-agent status'."
        )
