"""Event processor - keeps session records in step with inbound events.

For each new event the processor creates or updates the session's
SessionMeta, persists the record and the event, and reports the updated
record. The same event can arrive twice (socket and spool), so ids are
deduplicated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from vigil.core.errors import MalformedMessageError, StoreIOError
from vigil.core.types import MonitorEvent, SessionMeta
from vigil.core.validation import validate_session_id
from vigil.persistence.file_store import FileStore

logger = logging.getLogger(__name__)

MAX_SEEN_IDS = 10_000
KEEP_SEEN_IDS = 5_000

COMPLETION_KINDS = ("session_end", "agent_complete")
ERROR_KIND = "error"

# Fields copied from the first event of a session into its record
_INHERITED_FIELDS = ("workingDirectory", "machineId")


def _number(value: Any) -> int | float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return 0


class EventProcessor:
    """Turns inbound events into session records.

    Example:
        >>> processor = EventProcessor(store)
        >>> await processor.load()
        >>> meta = await processor.process(event)
        >>> meta.status
        'active'
    """

    def __init__(
        self,
        store: FileStore | None,
        on_session_update: Callable[[SessionMeta], Any] | None = None,
        *,
        max_seen: int = MAX_SEEN_IDS,
        keep_seen: int = KEEP_SEEN_IDS,
    ) -> None:
        """Create a processor.

        Args:
            store: Event log store. None keeps records in memory only.
            on_session_update: Called with each created or updated record.
            max_seen: Number of remembered event ids that triggers a trim.
            keep_seen: Number of most recent ids kept after a trim.
        """
        self._store = store
        self._on_session_update = on_session_update
        self._max_seen = max_seen
        self._keep_seen = keep_seen
        self._seen: dict[str, None] = {}
        self._sessions: dict[str, SessionMeta] = {}

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> SessionMeta | None:
        return self._sessions.get(session_id)

    def cache(self, meta: SessionMeta) -> None:
        """Replace the cached record, e.g. after an external update."""
        self._sessions[meta.id] = meta

    def forget(self, session_id: str) -> None:
        """Drop a cached record, e.g. after the session was deleted."""
        self._sessions.pop(session_id, None)

    def clear(self) -> None:
        self._sessions.clear()

    async def load(self) -> int:
        """Load existing session records from the store.

        Returns:
            Number of records loaded.
        """
        if self._store is None:
            return 0
        for meta in await self._store.get_sessions():
            self._sessions[meta.id] = meta
        logger.info("Loaded %d session record(s)", len(self._sessions))
        return len(self._sessions)

    def is_duplicate(self, event_id: str) -> bool:
        return event_id in self._seen

    async def process(self, event: MonitorEvent, *, check_store: bool = False) -> SessionMeta | None:
        """Record an event and update its session.

        Args:
            event: The inbound event.
            check_store: Also treat the event as a duplicate when its id is
                already in the session's log. Used for spooled events,
                which can outlive the in-memory id set across restarts.

        Returns:
            The updated session record, or None for a duplicate event.

        Raises:
            MalformedMessageError: If the session id cannot be used as a name.
            StoreIOError: If the event cannot be appended, or the log cannot
                be read for the duplicate check.
        """
        try:
            validate_session_id(event.session_id)
        except ValueError as e:
            raise MalformedMessageError(str(e)) from e

        if self.is_duplicate(event.id):
            logger.debug("Skipping duplicate event %s", event.id)
            return None
        self._remember(event.id)

        if check_store and self._store is not None:
            try:
                stored = await self._store.get_event_by_id(event.session_id, event.id)
            except StoreIOError:
                self._seen.pop(event.id, None)
                raise
            if stored is not None:
                logger.debug("Skipping event %s, already in the log", event.id)
                return None

        meta = await self._update_session(event)

        if self._store is not None:
            await self._store.save_event(event)

        return meta

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        if len(self._seen) > self._max_seen:
            recent = list(self._seen)[-self._keep_seen :]
            self._seen = dict.fromkeys(recent)

    async def _update_session(self, event: MonitorEvent) -> SessionMeta:
        meta = self._sessions.get(event.session_id)
        if meta is None and self._store is not None:
            meta = await self._store.get_session(event.session_id)
        if meta is None:
            meta = await self._create_session(event)
        self._sessions[meta.id] = meta

        payload = event.payload if isinstance(event.payload, dict) else {}

        if event.kind in COMPLETION_KINDS:
            meta.status = "completed"
            meta.end_time = event.timestamp
            totals = payload.get("sessionTokenUsage")
            if isinstance(totals, dict):
                meta.fields["tokenUsage"] = {
                    "totalInput": _number(totals.get("input")),
                    "totalOutput": _number(totals.get("output")),
                    "totalCacheRead": _number(totals.get("cacheRead")),
                    "totalCacheCreation": _number(totals.get("cacheCreation5m"))
                    + _number(totals.get("cacheCreation1h")),
                }
            if payload.get("model"):
                meta.fields["model"] = payload["model"]
            if payload.get("transcriptPath"):
                meta.fields["transcriptPath"] = payload["transcriptPath"]
        elif event.kind == ERROR_KIND:
            meta.status = "error"

        usage = payload.get("tokenUsage")
        if isinstance(usage, dict):
            totals = meta.fields.setdefault("tokenUsage", {"totalInput": 0, "totalOutput": 0})
            totals["totalInput"] = _number(totals.get("totalInput")) + _number(usage.get("input"))
            totals["totalOutput"] = _number(totals.get("totalOutput")) + _number(usage.get("output"))

        await self._save(meta)
        return meta

    async def _create_session(self, event: MonitorEvent) -> SessionMeta:
        parent_id = event.extra.get("parentSessionId")
        meta = SessionMeta(
            id=event.session_id,
            status="active",
            start_time=event.timestamp,
            fields={
                "childSessionIds": [],
                "tokenUsage": {"totalInput": 0, "totalOutput": 0},
                "isUserInitiated": not parent_id,
            },
        )
        for key in _INHERITED_FIELDS:
            if event.extra.get(key) is not None:
                meta.fields[key] = event.extra[key]
        if parent_id:
            meta.fields["parentSessionId"] = parent_id
            parent = self._sessions.get(parent_id)
            if parent is not None:
                children = parent.fields.setdefault("childSessionIds", [])
                if event.session_id not in children:
                    children.append(event.session_id)
                    await self._save(parent)

        logger.info("New session %s (parent: %s)", event.session_id, parent_id or "none")
        return meta

    async def _save(self, meta: SessionMeta) -> None:
        if self._store is not None:
            try:
                await self._store.save_session(meta)
            except StoreIOError as e:
                logger.error("Failed to persist session %s: %s", meta.id, e)
        if self._on_session_update is not None:
            try:
                self._on_session_update(meta)
            except Exception:
                logger.error("Session update callback failed", exc_info=True)
