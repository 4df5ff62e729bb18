"""MonitorDaemon - the composition root.

Wires the transport's inbound messages into the event processor (and
through it the event log store) and into the wrapper supervisor's state
path. Collaborators (an HTTP/WebSocket layer, a CLI) drive everything
through the daemon's public methods and receive notices by subscribing
an EventSink.

Startup order:
    1. Event log store directories, cached session records
    2. Wrapper snapshot recovery (orphans reported)
    3. Raw spool replay
    4. Transport
    5. Live raw spool watcher

A transport whose dependency is missing or unreachable is logged and
reported in status(); the rest of the daemon keeps working. Failing to
bind the local socket is fatal.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

from vigil.config import DaemonConfig
from vigil.core.callbacks import HandlerSet
from vigil.core.errors import (
    MalformedMessageError,
    PersistenceDisabledError,
    StoreIOError,
    TransportUnavailableError,
)
from vigil.core.types import MonitorEvent, SessionMeta, WrapperState
from vigil.core.wrappers import WrapperEvent, WrapperEventType, WrapperSnapshot, WrapperSupervisor
from vigil.persistence import FileStore, RawSpool, SpoolWatcher
from vigil.server.processor import EventProcessor
from vigil.server.protocols import DaemonEvent, DaemonEventType, EventSink
from vigil.transport import Transport, create_transport

logger = logging.getLogger(__name__)

# Hooks that mean the program has stopped and is waiting for the user
WAITING_HOOKS = ("Stop", "Notification")
# Hooks that mean the user has handed the program new work
PROCESSING_HOOKS = ("UserPromptSubmit",)

STATE_MESSAGE_TYPE = "state_changed"

_WRAPPER_NOTICE = {
    WrapperEventType.STARTED: DaemonEventType.WRAPPER_STARTED,
    WrapperEventType.OUTPUT: DaemonEventType.WRAPPER_OUTPUT,
    WrapperEventType.STATE_CHANGED: DaemonEventType.WRAPPER_STATE,
    WrapperEventType.ENDED: DaemonEventType.WRAPPER_ENDED,
    WrapperEventType.ORPHANED: DaemonEventType.WRAPPER_ORPHANED,
}


class MonitorDaemon:
    """Long-lived monitor daemon.

    Example:
        >>> daemon = MonitorDaemon(load_config())
        >>> daemon.subscribe(my_sink)
        >>> await daemon.start()
        >>> wrapper_id = await daemon.spawn_wrapper(cwd="/project")
        >>> sessions = await daemon.get_sessions(status="active")
        >>> await daemon.stop()
    """

    def __init__(
        self,
        config: DaemonConfig | None = None,
        *,
        transport: Transport | None = None,
        store: FileStore | None = None,
        supervisor: WrapperSupervisor | None = None,
    ) -> None:
        """Create a daemon.

        Args:
            config: Daemon configuration. Defaults to built-in defaults.
            transport: Transport to use instead of the configured one.
            store: Event log store to use instead of the configured one.
            supervisor: Wrapper supervisor to use instead of a default one.
        """
        self.config = config or DaemonConfig()
        paths = self.config.paths

        if store is None and self.config.persistence.enabled:
            store = FileStore(paths.base_dir)
        self._store = store

        self._transport = transport or create_transport(self.config)
        self._supervisor = supervisor or WrapperSupervisor(
            paths.wrappers_file, config=self.config.wrapper
        )
        self._supervisor.on_event(self._on_wrapper_event)
        self._processor = EventProcessor(self._store, on_session_update=self._on_session_update)
        self._spool = RawSpool(paths.raw_dir, paths.processed_dir)
        self._spool_watcher = (
            SpoolWatcher(self._spool, self._ingest_spooled) if self.config.watch_raw else None
        )

        self._sinks: HandlerSet[DaemonEvent] = HandlerSet("sink")
        self._session_tails: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False
        self._transport_error: str | None = None

    @property
    def store(self) -> FileStore | None:
        return self._store

    @property
    def supervisor(self) -> WrapperSupervisor:
        return self._supervisor

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def processor(self) -> EventProcessor:
        return self._processor

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> MonitorDaemon:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            OSError: If the local socket cannot be bound.
            StoreIOError: If the store directories cannot be created.
        """
        if self._running:
            return

        if self._store is not None:
            await self._store.init()
            await self._processor.load()

        await self._supervisor.initialize()
        await self._spool.replay(self._ingest_spooled)

        self._transport.on_event(self._on_message)
        self._transport_error = None
        try:
            await self._transport.start()
        except TransportUnavailableError as e:
            self._transport_error = str(e)
            logger.error("Transport %s unavailable, continuing without it: %s", self.config.mode, e)
        except OSError:
            self._transport.off_event(self._on_message)
            await self._supervisor.shutdown()
            raise

        if self._spool_watcher is not None:
            try:
                await self._spool_watcher.start()
            except OSError as e:
                logger.error(
                    "Cannot watch %s, spooled events replay on restart only: %s",
                    self._spool.raw_dir,
                    e,
                )

        self._running = True
        logger.info(
            "Monitor daemon started (mode=%s, persistence=%s)",
            self.config.mode,
            "on" if self._store is not None else "off",
        )

    async def stop(self) -> None:
        """Stop the transport, terminate wrappers and flush pending writes."""
        if not self._running:
            return
        self._running = False

        if self._spool_watcher is not None:
            await self._spool_watcher.stop()
        await self._transport.stop()
        self._transport.off_event(self._on_message)

        await self._supervisor.shutdown()

        pending = list(self._session_tails.values()) + list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._sinks.drain()

        if self._store is not None:
            await self._store.close()

        logger.info("Monitor daemon stopped")

    def status(self) -> dict[str, Any]:
        """Current operating state, for a status report."""
        return {
            "running": self._running,
            "mode": self.config.mode,
            "transport": {
                "running": self._transport.is_running(),
                "lastError": self._transport.last_error or self._transport_error,
            },
            "persistence": {
                "enabled": self._store is not None,
                "type": self.config.persistence.type,
                "baseDir": str(self.config.base_dir),
            },
            "spool": {
                "watching": self._spool_watcher is not None and self._spool_watcher.is_running,
                "pending": len(self._spool.pending()),
            },
            "wrappers": {
                "live": len(self._supervisor.get_all()),
                "orphans": [o.to_dict() for o in self._supervisor.orphans],
            },
            "sessions": self._processor.session_count,
            "config": self.config.to_dict(),
        }

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    def subscribe(self, sink: EventSink) -> None:
        """Register a sink for daemon notices."""
        self._sinks.add(sink.emit)

    def unsubscribe(self, sink: EventSink) -> None:
        self._sinks.remove(sink.emit)

    async def publish(self, event: MonitorEvent | dict[str, Any]) -> None:
        """Send an event through the active transport."""
        message = event.to_dict() if isinstance(event, MonitorEvent) else event
        await self._transport.publish(message)

    # ------------------------------------------------------------------
    # Wrapper operations
    # ------------------------------------------------------------------

    async def spawn_wrapper(
        self,
        cwd: str | None = None,
        args: list[str] | None = None,
        cols: int | None = None,
        rows: int | None = None,
    ) -> str:
        """Start a wrapper session. See WrapperSupervisor.spawn."""
        return await self._supervisor.spawn(cwd=cwd, args=args, cols=cols, rows=rows)

    def list_wrappers(self) -> list[WrapperSnapshot]:
        return self._supervisor.get_all()

    def get_wrapper(self, wrapper_id: str) -> WrapperSnapshot | None:
        return self._supervisor.get(wrapper_id)

    async def kill_wrapper(self, wrapper_id: str) -> bool:
        return await self._supervisor.kill(wrapper_id)

    async def resize_wrapper(self, wrapper_id: str, cols: int, rows: int) -> bool:
        return await self._supervisor.resize(wrapper_id, cols, rows)

    async def write_wrapper_input(self, wrapper_id: str, data: str | bytes) -> bool:
        return await self._supervisor.write_input(wrapper_id, data)

    async def update_wrapper_state(
        self,
        wrapper_id: str,
        state: WrapperState | str,
        correlation_id: str | None = None,
    ) -> bool:
        return await self._supervisor.update_state(wrapper_id, state, correlation_id)

    # ------------------------------------------------------------------
    # Session and event queries
    # ------------------------------------------------------------------

    async def get_sessions(
        self, status: str | None = None, limit: int | None = None
    ) -> list[SessionMeta]:
        return await self._require_store().get_sessions(status=status, limit=limit)

    async def get_session(self, session_id: str) -> SessionMeta | None:
        return await self._require_store().get_session(session_id)

    async def update_session(self, session_id: str, updates: dict[str, Any]) -> SessionMeta:
        """Shallow-merge fields into a session record.

        Raises:
            NotFoundError: If the session does not exist.
        """
        meta = await self._require_store().update_session(session_id, updates)
        self._processor.cache(meta)
        self._on_session_update(meta)
        return meta

    async def delete_session(self, session_id: str) -> None:
        """Delete a session record and its events.

        Raises:
            NotFoundError: If the session does not exist.
        """
        await self._require_store().delete_session(session_id)
        self._processor.forget(session_id)

    async def delete_all_sessions(self) -> int:
        deleted = await self._require_store().delete_all_sessions()
        self._processor.clear()
        await self._processor.load()
        return deleted

    async def prune_old_sessions(self, older_than: int | float) -> int:
        """Delete sessions that ended (or started) before ``older_than`` ms."""
        pruned = await self._require_store().prune_old_sessions(older_than)
        if pruned:
            self._processor.clear()
            await self._processor.load()
        return pruned

    async def get_events(
        self,
        session_id: str,
        limit: int | None = 1000,
        before: int | float | None = None,
        after: int | float | None = None,
    ) -> list[MonitorEvent]:
        return await self._require_store().get_events(
            session_id, limit=limit, before=before, after=after
        )

    async def get_event(self, session_id: str, event_id: str) -> MonitorEvent | None:
        return await self._require_store().get_event_by_id(session_id, event_id)

    async def get_recent_events(self, limit: int = 200) -> list[MonitorEvent]:
        return await self._require_store().get_all_recent_events(limit)

    async def get_event_count(self, session_id: str) -> int:
        return await self._require_store().get_event_count(session_id)

    # ------------------------------------------------------------------
    # Inbound path
    # ------------------------------------------------------------------

    def _on_message(self, message: dict[str, Any]) -> None:
        """Transport handler. Events are queued per session, in arrival order."""
        if message.get("type") == STATE_MESSAGE_TYPE and message.get("wrapperId"):
            self._spawn_task(self._apply_state_message(message))
            return

        try:
            event = MonitorEvent.from_dict(message)
        except MalformedMessageError as e:
            logger.warning("Dropping malformed event: %s", e)
            return

        self._enqueue(event)

    def _enqueue(self, event: MonitorEvent, spooled: bool = False) -> asyncio.Task[None]:
        previous = self._session_tails.get(event.session_id)
        task = asyncio.get_running_loop().create_task(self._ingest_after(previous, event, spooled))
        self._session_tails[event.session_id] = task
        task.add_done_callback(functools.partial(self._release_tail, event.session_id))
        return task

    def _release_tail(self, session_id: str, task: asyncio.Task[None]) -> None:
        if self._session_tails.get(session_id) is task:
            del self._session_tails[session_id]

    async def _ingest_after(
        self, previous: asyncio.Task[None] | None, event: MonitorEvent, spooled: bool
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        if spooled:
            # Failures go back to the spool, which keeps or rejects the file
            await self._ingest(event, check_store=True)
            return
        try:
            await self._ingest(event)
        except MalformedMessageError as e:
            logger.warning("Dropping event %s: %s", event.id, e)
        except StoreIOError as e:
            logger.error("Failed to store event %s: %s", event.id, e)
        except Exception:
            logger.error("Failed to process event %s", event.id, exc_info=True)

    async def _ingest_spooled(self, event: MonitorEvent) -> None:
        """Spool handler. Queued behind socket events of the same session."""
        await self._enqueue(event, spooled=True)

    async def _ingest(self, event: MonitorEvent, check_store: bool = False) -> None:
        meta = await self._processor.process(event, check_store=check_store)
        if meta is None:
            return
        await self._route_hook(event)
        self._notify(
            DaemonEvent(
                type=DaemonEventType.EVENT,
                data=event.to_dict(),
                session_id=event.session_id,
                wrapper_id=event.extra.get("wrapperId"),
            )
        )

    async def _route_hook(self, event: MonitorEvent) -> None:
        """Apply hook-reported lifecycle to the matching wrapper."""
        if event.hook_type in WAITING_HOOKS:
            state = WrapperState.WAITING_INPUT
        elif event.hook_type in PROCESSING_HOOKS:
            state = WrapperState.PROCESSING
        else:
            return

        wrapper = self._match_wrapper(event)
        if wrapper is None:
            return
        await self._supervisor.update_state(wrapper.wrapper_id, state, event.session_id)

    def _match_wrapper(self, event: MonitorEvent) -> WrapperSnapshot | None:
        wrapper_id = event.extra.get("wrapperId")
        if wrapper_id:
            wrapper = self._supervisor.get(str(wrapper_id))
            if wrapper is not None and wrapper.state is not WrapperState.ENDED:
                return wrapper

        wrapper = self._supervisor.find_by_correlation(event.session_id)
        if wrapper is not None:
            return wrapper

        cwd = event.working_directory
        if cwd:
            for wrapper in self._supervisor.get_all():
                if wrapper.correlation_id is None and wrapper.cwd == cwd:
                    return wrapper
        return None

    async def _apply_state_message(self, message: dict[str, Any]) -> None:
        wrapper_id = str(message["wrapperId"])
        correlation_id = message.get("correlationId")
        try:
            updated = await self._supervisor.update_state(
                wrapper_id, str(message.get("state")), correlation_id
            )
        except ValueError:
            logger.warning("Ignoring unknown state %r for wrapper %s", message.get("state"), wrapper_id)
            return
        if not updated:
            logger.debug("State message for unknown wrapper %s", wrapper_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _on_wrapper_event(self, event: WrapperEvent) -> None:
        self._notify(
            DaemonEvent(
                type=_WRAPPER_NOTICE[event.type],
                data=event.to_dict(),
                session_id=event.correlation_id,
                wrapper_id=event.wrapper_id,
            )
        )

    def _on_session_update(self, meta: SessionMeta) -> None:
        self._notify(
            DaemonEvent(
                type=DaemonEventType.SESSION_UPDATED,
                data=meta.to_dict(),
                session_id=meta.id,
            )
        )

    def _notify(self, event: DaemonEvent) -> None:
        self._sinks.dispatch(event)

    def _spawn_task(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _require_store(self) -> FileStore:
        if self._store is None:
            raise PersistenceDisabledError("Persistence is disabled")
        return self._store

    def __repr__(self) -> str:
        return f"MonitorDaemon(mode={self.config.mode!r}, running={self._running})"
