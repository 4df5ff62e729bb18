"""Server - the daemon that wires core, persistence and transport.

This layer knows about core, persistence and transports, but not about:
- HTTP routes or WebSocket fan-out
- CLI argument parsing

Classes:
    MonitorDaemon: Composition root and collaborator-facing API.
    EventProcessor: Maintains session records from inbound events.
    EventSink: Protocol for notice consumers.
    DaemonEvent: Notice message type.

Example:
    >>> from vigil.server import MonitorDaemon
    >>> from vigil.server.protocols import DaemonEvent, EventSink
    >>>
    >>> class PrintSink(EventSink):
    ...     async def emit(self, event: DaemonEvent) -> None:
    ...         print(f"Notice: {event.type}")
    >>>
    >>> daemon = MonitorDaemon()
    >>> daemon.subscribe(PrintSink())
    >>> await daemon.start()
"""

from vigil.server.daemon import MonitorDaemon
from vigil.server.processor import EventProcessor
from vigil.server.protocols import DaemonEvent, DaemonEventType, EventSink

__all__ = [
    "DaemonEvent",
    "DaemonEventType",
    "EventProcessor",
    "EventSink",
    "MonitorDaemon",
]
