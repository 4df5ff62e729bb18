"""Transport protocol definitions.

A transport carries event messages between producers (hook scripts,
remote daemons) and the daemon. Every variant delivers each received
message, as a decoded JSON object, to the registered handlers.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

MessageHandler = Callable[[dict[str, Any]], Any]


@runtime_checkable
class Transport(Protocol):
    """Event transport.

    ``start`` and ``stop`` are idempotent. A failing handler is logged and
    never stops delivery to the others.
    """

    @property
    def mode(self) -> str:
        """Short name of the variant ("local", "redis")."""
        ...

    @property
    def last_error(self) -> str | None:
        """Most recent connection-level error, if any."""
        ...

    async def start(self) -> None:
        """Begin accepting or subscribing.

        Raises:
            TransportUnavailableError: If the transport's dependency is
                missing or unreachable.
        """
        ...

    async def stop(self) -> None:
        """Stop and release the socket or subscription."""
        ...

    def on_event(self, handler: MessageHandler) -> None:
        """Register a handler for received messages."""
        ...

    def off_event(self, handler: MessageHandler) -> None:
        """Unregister a handler."""
        ...

    def is_running(self) -> bool:
        """Whether the transport is accepting messages."""
        ...

    async def publish(self, message: dict[str, Any]) -> None:
        """Send a message through this transport."""
        ...
