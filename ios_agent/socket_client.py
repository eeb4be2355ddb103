"""Client side of the daemon socket protocol."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from ios_agent.errors import (
    CommandTimeoutError,
    DaemonNotRunningError,
    DaemonUnresponsiveError,
    ProtocolError,
)
from ios_agent.protocol import UNKNOWN_COMMAND_ID, Command, Response, encode_command, parse_response
from ios_agent.socket_server import STREAM_LIMIT

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class SocketClient:
    """Send one command per connection and wait for its response."""

    def __init__(self, socket_path: str) -> None:
        self.socket_path = socket_path

    async def send_command(self, command: Command, timeout: float = DEFAULT_TIMEOUT) -> Response:
        """Send ``command`` and return the daemon's response.

        A timeout only closes this connection: the daemon keeps running the
        command and may still change session state afterwards.
        """

        try:
            return await asyncio.wait_for(self._exchange(command), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CommandTimeoutError(
                f"Command '{command.action}' timed out after {timeout:.0f}s. The daemon may "
                "still complete it; run 'ios-agent status' before retrying."
            ) from exc

    async def _exchange(self, command: Command) -> Response:
        logger.debug("Sending %s (%s) to %s", command.action, command.id, self.socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(self.socket_path, limit=STREAM_LIMIT)
        except FileNotFoundError as exc:
            raise DaemonNotRunningError() from exc
        except ConnectionRefusedError as exc:
            raise DaemonUnresponsiveError() from exc

        try:
            writer.write(encode_command(command))
            await writer.drain()
            line = await reader.readline()
        except (ConnectionResetError, BrokenPipeError) as exc:
            raise ProtocolError("Connection closed unexpectedly") from exc
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

        if not line.endswith(b"\n"):
            raise ProtocolError("Connection closed unexpectedly")
        try:
            response = parse_response(line)
        except ValueError as exc:
            raise ProtocolError("Invalid response format from daemon") from exc

        if response.id not in (command.id, UNKNOWN_COMMAND_ID):
            raise ProtocolError(
                f"Response id {response.id!r} does not match command id {command.id!r}"
            )
        return response

    async def is_running(self) -> bool:
        """Return ``True`` when something accepts connections on the socket."""

        try:
            _, writer = await asyncio.open_unix_connection(self.socket_path)
        except (OSError, ValueError):
            return False
        writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await writer.wait_closed()
        return True
