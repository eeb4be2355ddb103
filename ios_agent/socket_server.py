"""Unix socket server speaking the newline-delimited JSON command protocol."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Awaitable, Callable, Optional

from ios_agent.protocol import (
    UNKNOWN_COMMAND_ID,
    Command,
    Response,
    encode_response,
    error_response,
    parse_command,
)

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Awaitable[Response]]
AfterResponseHook = Callable[[Command, Response], Awaitable[None]]

STREAM_LIMIT = 16 * 1024 * 1024
INVALID_COMMAND_MESSAGE = (
    "Invalid command format. Send one JSON object per line with 'id' and 'action' fields."
)


class SocketServer:
    """Serve ``handler`` on ``socket_path``.

    Each connection is read line by line and every line is answered before
    the next one is read, so commands on one connection run in arrival order.
    Separate connections are served concurrently.
    """

    def __init__(
        self,
        socket_path: str,
        handler: CommandHandler,
        *,
        after_response: Optional[AfterResponseHook] = None,
    ) -> None:
        self.socket_path = socket_path
        self._handler = handler
        self._after_response = after_response
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=self.socket_path, limit=STREAM_LIMIT
        )
        # Any local user may connect; there is no authentication.
        os.chmod(self.socket_path, 0o777)
        logger.info("Listening on %s", self.socket_path)

    async def serve_forever(self) -> None:
        """Start if needed and serve until the task is cancelled."""

        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            self._server = None

        if os.path.exists(self.socket_path):
            with contextlib.suppress(OSError):
                os.unlink(self.socket_path)

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    await self._write(writer, error_response(UNKNOWN_COMMAND_ID, "Command frame too large"))
                    continue
                if not line or not line.endswith(b"\n"):
                    # EOF; an unterminated trailing fragment is not a command.
                    break
                if not line.strip():
                    continue

                command = parse_command(line)
                if command is None:
                    logger.debug("Rejected malformed frame: %r", line[:200])
                    await self._write(writer, error_response(UNKNOWN_COMMAND_ID, INVALID_COMMAND_MESSAGE))
                    continue

                response = await self._dispatch(command)
                await self._write(writer, response)
                if self._after_response is not None:
                    await self._after_response(command, response)
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("Client disconnected: %s", exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    async def _dispatch(self, command: Command) -> Response:
        try:
            return await self._handler(command)
        except Exception as exc:
            logger.exception("Unhandled error while running %s", command.action)
            return error_response(command.id, str(exc) or type(exc).__name__)

    @staticmethod
    async def _write(writer: asyncio.StreamWriter, response: Response) -> None:
        writer.write(encode_response(response))
        await writer.drain()
