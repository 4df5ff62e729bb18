"""Server protocols - daemon notices and the EventSink interface.

Notices are what the daemon tells its collaborators (the HTTP/WebSocket
layer, a CLI, tests) about: inbound events after they have been recorded,
session record updates, and wrapper lifecycle changes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Protocol


class DaemonEventType(Enum):
    """Types of notices emitted by the daemon."""

    # Inbound events
    EVENT = auto()  # Event accepted and recorded
    SESSION_UPDATED = auto()  # Session record created or changed

    # Wrapper lifecycle
    WRAPPER_STARTED = auto()
    WRAPPER_STATE = auto()
    WRAPPER_OUTPUT = auto()  # Raw output chunk
    WRAPPER_ENDED = auto()
    WRAPPER_ORPHANED = auto()  # Found alive at startup, not reattached


@dataclass(frozen=True)
class DaemonEvent:
    """Notice emitted by the daemon.

    Attributes:
        type: The notice type.
        data: Notice payload in wire form.
        session_id: Associated session id (if applicable).
        wrapper_id: Associated wrapper id (if applicable).
        timestamp: When the notice was created.
    """

    type: DaemonEventType
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    wrapper_id: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.name.lower(),
            "data": self.data,
            "sessionId": self.session_id,
            "wrapperId": self.wrapper_id,
            "timestamp": self.timestamp,
        }


class EventSink(Protocol):
    """Protocol for notice consumers.

    The daemon emits notices through this interface.
    """

    async def emit(self, event: DaemonEvent) -> None:
        """Emit a notice.

        Args:
            event: The notice to emit.
        """
        ...
