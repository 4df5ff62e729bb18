"""Error types shared across vigil.

Operations on live wrapper sessions report a stale id as a False/None
return. Operations on persisted session records raise NotFoundError.
"""

from __future__ import annotations


class VigilError(Exception):
    """Base error for vigil operations."""


class NotFoundError(VigilError):
    """A referenced session or event does not exist.

    Attributes:
        kind: What was looked up ("session", "event", ...).
        identifier: The id that was not found.
    """

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class SpawnError(VigilError):
    """A wrapper process could not be started.

    Raised when:
    - The target executable cannot be located
    - The OS refuses to allocate a pseudo-terminal or fork
    """


class TransportUnavailableError(VigilError):
    """A transport's external dependency could not be loaded or reached.

    Raised from Transport.start() when the client library for the transport
    is not installed, or when the remote broker stays unreachable after the
    bounded reconnect attempts.
    """


class MalformedMessageError(VigilError, ValueError):
    """An inbound event or stored log line could not be parsed."""


class StoreIOError(VigilError):
    """A disk read, write or delete failed in the event log store."""


class PersistenceDisabledError(VigilError):
    """A query needed the event log store but persistence is turned off."""
