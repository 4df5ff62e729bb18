"""Vigil - a monitor daemon for interactive agent sessions.

Vigil supervises programs running in pseudo-terminals, receives lifecycle
events from hook scripts over a Unix socket or Redis, and keeps a durable
per-session event log for history queries and crash recovery.

Layers:
    core/          Types, errors, PTY backend, wrapper supervisor
    persistence/   Event log store, raw event spool
    transport/     Unix socket and Redis pub/sub transports
    server/        MonitorDaemon composition root

Example:
    >>> import asyncio
    >>> from vigil import MonitorDaemon, load_config
    >>>
    >>> async def main():
    ...     async with MonitorDaemon(load_config()) as daemon:
    ...         wrapper_id = await daemon.spawn_wrapper(cwd="/project")
    ...         print(daemon.status())
    >>>
    >>> asyncio.run(main())
"""

from vigil.__version__ import __version__
from vigil.config import DaemonConfig, load_config
from vigil.core import (
    MalformedMessageError,
    MonitorEvent,
    NotFoundError,
    PersistenceDisabledError,
    SessionMeta,
    SpawnError,
    StoreIOError,
    TransportUnavailableError,
    VigilError,
    WrapperState,
)
from vigil.persistence import FileStore
from vigil.server import DaemonEvent, DaemonEventType, EventSink, MonitorDaemon
from vigil.transport import (
    RedisTransport,
    UnixSocketTransport,
    publish_event_to_redis,
    send_event_to_socket,
)

__all__ = [
    "__version__",
    "DaemonConfig",
    "DaemonEvent",
    "DaemonEventType",
    "EventSink",
    "FileStore",
    "MalformedMessageError",
    "MonitorDaemon",
    "MonitorEvent",
    "NotFoundError",
    "PersistenceDisabledError",
    "RedisTransport",
    "SessionMeta",
    "SpawnError",
    "StoreIOError",
    "TransportUnavailableError",
    "UnixSocketTransport",
    "VigilError",
    "WrapperState",
    "load_config",
    "publish_event_to_redis",
    "send_event_to_socket",
]
