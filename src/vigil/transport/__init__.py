"""Transport - event delivery between producers and the daemon.

Available transports:
    UnixSocketTransport: Newline-delimited JSON over a Unix domain socket.
    RedisTransport: Redis pub/sub channel (needs the ``redis`` extra).

One-shot producers:
    send_event_to_socket: Connect, write one event, disconnect.
    publish_event_to_redis: Connect, publish one event, disconnect.

Example:
    >>> from vigil.transport import create_transport
    >>>
    >>> transport = create_transport(config)
    >>> transport.on_event(print)
    >>> await transport.start()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from vigil.transport.protocol import MessageHandler, Transport
from vigil.transport.redis_pubsub import RedisTransport, publish_event_to_redis
from vigil.transport.unix_socket import UnixSocketTransport, send_event_to_socket

if TYPE_CHECKING:
    from vigil.config import DaemonConfig


def create_transport(config: DaemonConfig) -> Transport:
    """Build the transport selected by ``config.mode``.

    Raises:
        ValueError: If the mode is unknown.
    """
    if config.mode == "local":
        return UnixSocketTransport(config.socket_path)
    if config.mode == "redis":
        return RedisTransport(config.redis)
    raise ValueError(f"Unknown transport mode: {config.mode!r}")


__all__ = [
    "MessageHandler",
    "RedisTransport",
    "Transport",
    "UnixSocketTransport",
    "create_transport",
    "publish_event_to_redis",
    "send_event_to_socket",
]
