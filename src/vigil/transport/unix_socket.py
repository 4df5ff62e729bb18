"""Unix domain socket transport.

Producers connect, write newline-delimited JSON objects and disconnect.
Each complete line is one message; a trailing fragment without a newline
is not delivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from vigil.core.callbacks import HandlerSet
from vigil.core.errors import MalformedMessageError
from vigil.transport.protocol import MessageHandler

logger = logging.getLogger(__name__)

# Largest accepted line
READ_LIMIT = 16 * 1024 * 1024

DEFAULT_SEND_TIMEOUT = 5.0


def decode_line(line: bytes) -> dict[str, Any]:
    """Decode one framed line into a message.

    Raises:
        MalformedMessageError: If the line is not a JSON object.
    """
    try:
        message = json.loads(line.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessageError(f"Invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise MalformedMessageError(f"Expected a JSON object, got {type(message).__name__}")
    return message


class UnixSocketTransport:
    """Unix socket server transport.

    Example:
        >>> transport = UnixSocketTransport("/tmp/vigil-monitor.sock")
        >>> transport.on_event(lambda message: print(message["eventType"]))
        >>> await transport.start()
        >>> ...
        >>> await transport.stop()
    """

    mode = "local"

    def __init__(self, socket_path: str | Path) -> None:
        self.socket_path = str(socket_path)
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[Any]] = set()
        self._handlers: HandlerSet[dict[str, Any]] = HandlerSet("unix-socket")
        self._last_error: str | None = None

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def is_running(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def on_event(self, handler: MessageHandler) -> None:
        self._handlers.add(handler)

    def off_event(self, handler: MessageHandler) -> None:
        self._handlers.remove(handler)

    async def start(self) -> None:
        """Bind the socket and start accepting connections.

        A leftover socket file from an unclean shutdown is removed first.
        The socket is made world-writable so any local process can publish.

        Raises:
            OSError: If the socket path cannot be bound.
        """
        if self._server is not None:
            return

        socket_path = Path(self.socket_path)
        try:
            if socket_path.exists() or socket_path.is_symlink():
                socket_path.unlink()
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=self.socket_path,
                limit=READ_LIMIT,
            )
        except OSError as e:
            self._last_error = str(e)
            raise
        os.chmod(self.socket_path, 0o777)
        self._last_error = None

        logger.info("Unix socket transport listening on %s", self.socket_path)

    async def stop(self) -> None:
        """Stop accepting, drop open connections and remove the socket file."""
        if self._server is None:
            return

        server, self._server = self._server, None
        server.close()

        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await server.wait_closed()
        await self._handlers.drain()

        socket_path = Path(self.socket_path)
        try:
            socket_path.unlink()
        except FileNotFoundError:
            pass

        logger.info("Unix socket transport stopped")

    async def publish(self, message: dict[str, Any]) -> None:
        """Send a message to this transport's own socket."""
        await send_event_to_socket(self.socket_path, message)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a producer connection."""
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        logger.debug("Producer connected on %s", self.socket_path)

        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    # Line exceeded READ_LIMIT; the stream cannot be resynced
                    logger.warning("Oversized message on %s, closing connection: %s", self.socket_path, e)
                    break

                if not line:
                    break
                if not line.endswith(b"\n"):
                    logger.debug("Discarding %d-byte unterminated fragment", len(line))
                    break
                if not line.strip():
                    continue

                try:
                    message = decode_line(line)
                except MalformedMessageError as e:
                    logger.warning("Dropping malformed message on %s: %s", self.socket_path, e)
                    continue

                self._handlers.dispatch(message)

        except asyncio.CancelledError:
            logger.debug("Producer connection cancelled")
            raise
        except ConnectionResetError:
            logger.debug("Producer connection reset")
        except Exception as e:
            logger.error("Error handling producer connection: %s", e, exc_info=True)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()

    def __repr__(self) -> str:
        return f"UnixSocketTransport({self.socket_path!r}, running={self.is_running()})"


async def send_event_to_socket(
    socket_path: str | Path,
    message: dict[str, Any] | Any,
    timeout: float = DEFAULT_SEND_TIMEOUT,
) -> None:
    """Send one message to a daemon's socket and disconnect.

    Args:
        socket_path: Daemon socket.
        message: A JSON object, or anything with ``to_dict()``.
        timeout: Seconds allowed for connecting and flushing.

    Raises:
        TimeoutError: If the daemon does not accept within ``timeout``.
        OSError: If the socket is missing or refuses the connection.
    """
    payload = message.to_dict() if hasattr(message, "to_dict") else message
    data = (json.dumps(payload, default=str) + "\n").encode("utf-8")

    async def send() -> None:
        _, writer = await asyncio.open_unix_connection(str(socket_path))
        try:
            writer.write(data)
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    try:
        await asyncio.wait_for(send(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TimeoutError(f"Timed out sending to {socket_path} after {timeout}s") from e
