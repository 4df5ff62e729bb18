"""Core - building blocks for the monitor daemon.

This module contains no knowledge of:
- Transports or wire delivery
- The event log store
- How the daemon wires things together

Architecture:
    pty/        PTY backend, liveness probe, executable lookup
    wrappers/   Wrapper supervisor, snapshot file, output classifier
    types       Pure data types (MonitorEvent, SessionMeta, WrapperState)
    errors      Error taxonomy
    callbacks   Failure-isolated handler dispatch

Example:
    >>> from vigil.core import WrapperSupervisor
    >>>
    >>> async def main():
    ...     supervisor = WrapperSupervisor("/tmp/wrappers.json", on_event=print)
    ...     await supervisor.initialize()
    ...     wrapper_id = await supervisor.spawn(cwd="/project", args=["--resume"])
    ...     await supervisor.write_input(wrapper_id, "hello\\r")
    ...     await supervisor.shutdown()
"""

from vigil.core.callbacks import HandlerSet
from vigil.core.errors import (
    MalformedMessageError,
    NotFoundError,
    PersistenceDisabledError,
    SpawnError,
    StoreIOError,
    TransportUnavailableError,
    VigilError,
)
from vigil.core.types import MonitorEvent, SessionMeta, WrapperState
from vigil.core.validation import is_valid_session_id, validate_session_id
from vigil.core.wrappers import (
    WrapperEvent,
    WrapperEventType,
    WrapperSnapshot,
    WrapperSupervisor,
)

__all__ = [
    "HandlerSet",
    "MalformedMessageError",
    "MonitorEvent",
    "NotFoundError",
    "PersistenceDisabledError",
    "SessionMeta",
    "SpawnError",
    "StoreIOError",
    "TransportUnavailableError",
    "VigilError",
    "WrapperEvent",
    "WrapperEventType",
    "WrapperSnapshot",
    "WrapperState",
    "WrapperSupervisor",
    "is_valid_session_id",
    "validate_session_id",
]
