"""Pure data types for vigil.core.

Wire forms use the camelCase keys that hook scripts emit; Python
attributes are snake_case. Unknown wire keys are kept in ``extra`` /
``fields`` and written back unchanged.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vigil.core.errors import MalformedMessageError


class WrapperState(Enum):
    """Lifecycle states of a supervised wrapper session."""

    STARTING = "starting"
    PROCESSING = "processing"
    WAITING_INPUT = "waiting_input"
    ENDED = "ended"


_EVENT_KEYS = ("id", "timestamp", "sessionId", "eventType", "data")
_META_KEYS = ("sessionId", "status", "startTime", "endTime")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class MonitorEvent:
    """A single lifecycle/activity event.

    The store treats ``kind`` and ``payload`` as opaque. Only the daemon's
    processor looks inside them.

    Attributes:
        id: Unique event id.
        session_id: Session the event belongs to.
        kind: Event kind ("tool_call", "session_end", ...). Open set.
        timestamp: Wall clock in milliseconds.
        payload: Free-form event data.
        extra: Any other wire fields (hookType, workingDirectory, ...).
    """

    id: str
    session_id: str
    kind: str
    timestamp: int | float
    payload: Any = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def hook_type(self) -> str | None:
        """Hook that produced the event, if reported."""
        return self.extra.get("hookType")

    @property
    def working_directory(self) -> str | None:
        """Working directory of the producer, if reported."""
        return self.extra.get("workingDirectory")

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON wire form."""
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "timestamp": self.timestamp,
                "sessionId": self.session_id,
                "eventType": self.kind,
                "data": self.payload,
            }
        )
        return data

    def to_json(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Any) -> MonitorEvent:
        """Create from the JSON wire form.

        Raises:
            MalformedMessageError: If required fields are missing or mistyped.
        """
        if not isinstance(data, dict):
            raise MalformedMessageError(f"Event must be an object, got {type(data).__name__}")

        event_id = data.get("id")
        session_id = data.get("sessionId")
        timestamp = data.get("timestamp")

        if not isinstance(event_id, str) or not event_id:
            raise MalformedMessageError("Event is missing 'id'")
        if not isinstance(session_id, str) or not session_id:
            raise MalformedMessageError("Event is missing 'sessionId'")
        if not _is_number(timestamp):
            raise MalformedMessageError("Event is missing a numeric 'timestamp'")

        return cls(
            id=event_id,
            session_id=session_id,
            kind=str(data.get("eventType", "")),
            timestamp=timestamp,
            payload=data.get("data", {}),
            extra={k: v for k, v in data.items() if k not in _EVENT_KEYS},
        )

    @classmethod
    def from_json(cls, line: str | bytes) -> MonitorEvent:
        """Parse one JSON document into an event.

        Raises:
            MalformedMessageError: If the text is not valid JSON or not an event.
        """
        try:
            data = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessageError(f"Invalid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class SessionMeta:
    """Durable per-session record kept next to the event log.

    The status vocabulary belongs to whoever writes the record; the store
    only filters on it.

    Attributes:
        id: Session id.
        status: "active", "completed", "error", ...
        start_time: Start in milliseconds.
        end_time: End in milliseconds, if ended.
        fields: Any other descriptive fields.
    """

    id: str
    status: str = "active"
    start_time: int | float = 0
    end_time: int | float | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def effective_end_time(self) -> int | float:
        """End time if set, else start time. Used for age-based pruning."""
        return self.end_time if self.end_time else self.start_time

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON wire form."""
        data = dict(self.fields)
        data.update(
            {
                "sessionId": self.id,
                "status": self.status,
                "startTime": self.start_time,
            }
        )
        if self.end_time is not None:
            data["endTime"] = self.end_time
        return data

    @classmethod
    def from_dict(cls, data: Any) -> SessionMeta:
        """Create from the JSON wire form.

        Raises:
            MalformedMessageError: If the record has no session id.
        """
        if not isinstance(data, dict):
            raise MalformedMessageError("Session record must be an object")

        session_id = data.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise MalformedMessageError("Session record is missing 'sessionId'")

        start_time = data.get("startTime", 0)
        end_time = data.get("endTime")

        return cls(
            id=session_id,
            status=str(data.get("status", "active")),
            start_time=start_time if _is_number(start_time) else 0,
            end_time=end_time if _is_number(end_time) else None,
            fields={k: v for k, v in data.items() if k not in _META_KEYS},
        )
