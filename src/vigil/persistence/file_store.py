"""File-based event log store.

Layout under the base directory::

    sessions/<session_id>/meta.json      one SessionMeta record
    sessions/<session_id>/events.jsonl   one MonitorEvent per line, append-only

Appends for one session are serialized through a per-session lock so
lines never interleave. Different sessions proceed independently. All
disk work runs in worker threads to keep the event loop responsive.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from vigil.core.errors import MalformedMessageError, NotFoundError, StoreIOError
from vigil.core.types import MonitorEvent, SessionMeta
from vigil.core.validation import is_valid_session_id, validate_session_id

logger = logging.getLogger(__name__)

META_FILE = "meta.json"
EVENTS_FILE = "events.jsonl"

DEFAULT_EVENT_LIMIT = 1000
DEFAULT_RECENT_LIMIT = 200


def _iter_events(path: Path) -> Iterator[MonitorEvent]:
    """Yield events from a log file, skipping malformed lines."""
    if not path.exists():
        return
    with open(path, encoding="utf-8", errors="replace") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield MonitorEvent.from_json(line)
            except MalformedMessageError as e:
                logger.warning("Malformed event at %s:%d, skipping: %s", path, line_num, e)


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _read_meta(path: Path) -> SessionMeta | None:
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return SessionMeta.from_dict(json.load(f))
    except (json.JSONDecodeError, UnicodeDecodeError, MalformedMessageError) as e:
        logger.warning("Unreadable session record %s: %s", path, e)
        return None


class FileStore:
    """Durable per-session event logs and session records.

    Example:
        >>> store = FileStore(Path("~/.vigil/monitor"))
        >>> await store.init()
        >>> await store.save_event(event)
        >>> events = await store.get_events("abc123", limit=50)
        >>> await store.update_session("abc123", {"status": "completed"})
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir).expanduser()
        self._sessions_dir = self._base_dir / "sessions"
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    async def init(self) -> None:
        """Create the storage directories. Safe to call more than once."""
        try:
            await asyncio.to_thread(self._sessions_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"Cannot create {self._sessions_dir}: {e}") from e
        logger.debug("File store ready at %s", self._base_dir)

    async def close(self) -> None:
        """Release per-session state. Files are not held open between calls."""
        self._locks.clear()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def save_event(self, event: MonitorEvent) -> None:
        """Append an event to its session's log.

        Raises:
            ValueError: If the session id is not a valid name.
            StoreIOError: If the append fails.
        """
        path = self._session_dir(event.session_id) / EVENTS_FILE
        line = event.to_json() + "\n"
        async with self._lock(event.session_id):
            try:
                await asyncio.to_thread(_append_line, path, line)
            except OSError as e:
                raise StoreIOError(f"Failed to append event {event.id}: {e}") from e

    async def get_events(
        self,
        session_id: str,
        limit: int | None = DEFAULT_EVENT_LIMIT,
        before: int | float | None = None,
        after: int | float | None = None,
    ) -> list[MonitorEvent]:
        """Get a session's events in ascending timestamp order.

        Args:
            session_id: Session to read.
            limit: Keep only the most recent ``limit`` matching events.
                None means no cap.
            before: Only events with timestamp strictly below this.
            after: Only events with timestamp strictly above this.

        Returns:
            Matching events, oldest first. Unknown sessions give [].
        """
        path = self._session_dir(session_id) / EVENTS_FILE
        async with self._lock(session_id):
            events = await self._read(lambda: list(_iter_events(path)), path)

        if before is not None:
            events = [e for e in events if e.timestamp < before]
        if after is not None:
            events = [e for e in events if e.timestamp > after]

        events.sort(key=lambda e: e.timestamp)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    async def get_event_by_id(self, session_id: str, event_id: str) -> MonitorEvent | None:
        """Find an event by id. The first match in log order wins."""
        path = self._session_dir(session_id) / EVENTS_FILE

        def scan() -> MonitorEvent | None:
            for event in _iter_events(path):
                if event.id == event_id:
                    return event
            return None

        async with self._lock(session_id):
            return await self._read(scan, path)

    async def get_event_count(self, session_id: str) -> int:
        """Count a session's stored events without loading them all."""
        path = self._session_dir(session_id) / EVENTS_FILE

        def count() -> int:
            if not path.exists():
                return 0
            with open(path, "rb") as f:
                return sum(1 for line in f if line.strip())

        async with self._lock(session_id):
            return await self._read(count, path)

    async def get_all_recent_events(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[MonitorEvent]:
        """Get the most recent events across all sessions, newest first."""
        merged: list[MonitorEvent] = []
        for session_id in await self._list_session_ids():
            merged.extend(await self.get_events(session_id, limit=limit))

        merged.sort(key=lambda e: e.timestamp, reverse=True)
        return merged[:limit]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def save_session(self, meta: SessionMeta) -> None:
        """Write a session record, replacing any previous one.

        Raises:
            StoreIOError: If the write fails.
        """
        path = self._session_dir(meta.id) / META_FILE
        async with self._lock(meta.id):
            await self._write_meta(path, meta)

    async def get_session(self, session_id: str) -> SessionMeta | None:
        """Get a session record, or None if there is none."""
        path = self._session_dir(session_id) / META_FILE
        return await self._read(lambda: _read_meta(path), path)

    async def update_session(self, session_id: str, updates: dict[str, Any]) -> SessionMeta:
        """Shallow-merge wire-form fields over an existing session record.

        Args:
            session_id: Session to update.
            updates: Fields to set, in wire form (``status``, ``endTime``, ...).

        Returns:
            The updated record.

        Raises:
            NotFoundError: If no record exists.
            StoreIOError: If the write fails.
        """
        path = self._session_dir(session_id) / META_FILE
        async with self._lock(session_id):
            existing = await self._read(lambda: _read_meta(path), path)
            if existing is None:
                raise NotFoundError("session", session_id)

            merged = existing.to_dict()
            merged.update(updates)
            merged["sessionId"] = session_id
            meta = SessionMeta.from_dict(merged)
            await self._write_meta(path, meta)
        return meta

    async def get_sessions(
        self,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[SessionMeta]:
        """List session records, newest start first.

        Args:
            status: Only sessions with this status.
            limit: Maximum number of records.
        """
        sessions: list[SessionMeta] = []
        for session_id in await self._list_session_ids():
            meta = await self.get_session(session_id)
            if meta is None:
                continue
            if status is not None and meta.status != status:
                continue
            sessions.append(meta)

        sessions.sort(key=lambda m: m.start_time, reverse=True)
        if limit is not None:
            sessions = sessions[: max(limit, 0)]
        return sessions

    async def delete_session(self, session_id: str) -> None:
        """Remove a session's record and its whole event log.

        Raises:
            NotFoundError: If the session does not exist.
            StoreIOError: If removal fails.
        """
        session_dir = self._session_dir(session_id)
        async with self._lock(session_id):
            if not await asyncio.to_thread(session_dir.is_dir):
                raise NotFoundError("session", session_id)
            try:
                await asyncio.to_thread(shutil.rmtree, session_dir)
            except OSError as e:
                raise StoreIOError(f"Failed to delete session {session_id}: {e}") from e
        # The lock stays mapped: appends already queued on it must keep
        # serializing with appends that arrive after the delete.
        logger.debug("Deleted session %s", session_id)

    async def delete_all_sessions(self) -> int:
        """Delete every session. Failures are logged and skipped.

        Returns:
            Number of sessions deleted.
        """
        deleted = 0
        for session_id in await self._list_session_ids():
            try:
                await self.delete_session(session_id)
                deleted += 1
            except (NotFoundError, StoreIOError) as e:
                logger.error("Failed to delete session %s: %s", session_id, e)
        logger.info("Deleted %d session(s)", deleted)
        return deleted

    async def prune_old_sessions(self, older_than: int | float) -> int:
        """Delete sessions whose effective end time is before a cutoff.

        Args:
            older_than: Cutoff in milliseconds. End time is used when set,
                otherwise start time.

        Returns:
            Number of sessions pruned.
        """
        pruned = 0
        for meta in await self.get_sessions():
            if meta.effective_end_time >= older_than:
                continue
            try:
                await self.delete_session(meta.id)
                pruned += 1
            except (NotFoundError, StoreIOError) as e:
                logger.error("Failed to prune session %s: %s", meta.id, e)
        if pruned:
            logger.info("Pruned %d session(s) older than %s", pruned, older_than)
        return pruned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self._sessions_dir / session_id

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _list_session_ids(self) -> list[str]:
        def scan() -> list[str]:
            if not self._sessions_dir.is_dir():
                return []
            return sorted(
                entry.name
                for entry in self._sessions_dir.iterdir()
                if entry.is_dir() and is_valid_session_id(entry.name)
            )

        return await self._read(scan, self._sessions_dir)

    async def _read(self, fn: Any, path: Path) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except OSError as e:
            raise StoreIOError(f"Failed to read {path}: {e}") from e

    async def _write_meta(self, path: Path, meta: SessionMeta) -> None:
        try:
            await asyncio.to_thread(_write_json_atomic, path, meta.to_dict())
        except OSError as e:
            raise StoreIOError(f"Failed to write session {meta.id}: {e}") from e

    def __repr__(self) -> str:
        return f"FileStore({str(self._base_dir)!r})"
