"""Raw event spool.

Producers drop one event per JSON file into ``raw/``, either always or
only when the daemon is unreachable. The daemon replays them in name
order and moves each handled file to ``processed/``. Files that do not
hold a valid event are moved there with a ``.bad`` suffix.

Replay happens once at startup and then continuously: SpoolWatcher
follows ``raw/`` with a watchdog observer while the daemon runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from vigil.core.errors import MalformedMessageError
from vigil.core.types import MonitorEvent

logger = logging.getLogger(__name__)

BAD_SUFFIX = ".bad"

# Seconds of quiet in raw/ before a live replay pass starts
DEFAULT_DEBOUNCE = 0.2

EventHandler = Callable[[MonitorEvent], Awaitable[None]]


class RawSpool:
    """Directory of pending single-event JSON files.

    Example:
        >>> spool = RawSpool(paths.raw_dir, paths.processed_dir)
        >>> spool.write(event)
        >>> count = await spool.replay(handle_event)
    """

    def __init__(self, raw_dir: str | Path, processed_dir: str | Path) -> None:
        self.raw_dir = Path(raw_dir).expanduser()
        self.processed_dir = Path(processed_dir).expanduser()
        self._replay_lock = asyncio.Lock()

    def pending(self) -> list[Path]:
        """Spooled files awaiting replay, in name order."""
        if not self.raw_dir.is_dir():
            return []
        return sorted(p for p in self.raw_dir.iterdir() if p.is_file() and p.suffix == ".json")

    def write(self, event: MonitorEvent) -> Path:
        """Spool an event. Used by producers when the daemon is down.

        Returns:
            Path of the spooled file.
        """
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        name = f"{int(event.timestamp):013d}-{event.id}.json"
        path = self.raw_dir / name
        tmp = path.with_suffix(".tmp")
        tmp.write_text(event.to_json(), encoding="utf-8")
        os.replace(tmp, path)
        return path

    async def replay(self, handler: EventHandler) -> int:
        """Feed every pending file to ``handler`` and mark it processed.

        A handler failure leaves the file in place for the next replay.
        Concurrent calls run one after the other.

        Returns:
            Number of events handled.
        """
        async with self._replay_lock:
            return await self._replay(handler)

    async def _replay(self, handler: EventHandler) -> int:
        files = await asyncio.to_thread(self.pending)
        if not files:
            return 0

        await asyncio.to_thread(self.processed_dir.mkdir, parents=True, exist_ok=True)

        handled = 0
        for path in files:
            try:
                content = await asyncio.to_thread(path.read_bytes)
                event = MonitorEvent.from_json(content)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Cannot read spooled event %s: %s", path, e)
                continue
            except MalformedMessageError as e:
                logger.warning("Malformed spooled event %s: %s", path.name, e)
                await self._move(path, self.processed_dir / (path.name + BAD_SUFFIX))
                continue

            try:
                await handler(event)
            except MalformedMessageError as e:
                logger.warning("Rejected spooled event %s: %s", path.name, e)
                await self._move(path, self.processed_dir / (path.name + BAD_SUFFIX))
                continue
            except Exception:
                logger.error("Failed to replay spooled event %s", path.name, exc_info=True)
                continue

            await self._move(path, self.processed_dir / path.name)
            handled += 1

        if handled:
            logger.info("Replayed %d spooled event(s) from %s", handled, self.raw_dir)
        return handled

    async def _move(self, src: Path, dest: Path) -> None:
        try:
            await asyncio.to_thread(os.replace, src, dest)
        except OSError as e:
            logger.error("Cannot move %s to %s: %s", src, dest, e)


class _RawDirHandler(FileSystemEventHandler):
    """Reports files that appear in raw/ or finish being written there."""

    def __init__(self, notify: Callable[[], None]) -> None:
        super().__init__()
        self._notify = notify

    def on_created(self, event: FileSystemEvent) -> None:
        self._report(event.src_path, event.is_directory)

    def on_closed(self, event: FileSystemEvent) -> None:
        self._report(event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._report(event.dest_path, event.is_directory)

    def _report(self, path: str | bytes, is_directory: bool) -> None:
        if not is_directory and os.fsdecode(path).endswith(".json"):
            self._notify()


class SpoolWatcher:
    """Replays raw/ files as they appear while the daemon runs.

    The observer thread only signals the event loop. Signals are debounced
    and coalesced so a burst of writes becomes one replay pass.

    Example:
        >>> watcher = SpoolWatcher(spool, handle_event)
        >>> await watcher.start()
        >>> ...
        >>> await watcher.stop()
    """

    def __init__(
        self,
        spool: RawSpool,
        handler: EventHandler,
        debounce: float = DEFAULT_DEBOUNCE,
    ) -> None:
        self._spool = spool
        self._handler = handler
        self._debounce = debounce
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._rescan = False

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    async def start(self) -> None:
        """Start following raw/. Files already there are replayed too."""
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        await asyncio.to_thread(self._spool.raw_dir.mkdir, parents=True, exist_ok=True)

        observer = Observer()
        observer.schedule(_RawDirHandler(self._notify), str(self._spool.raw_dir), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for spooled events", self._spool.raw_dir)

        self._schedule()

    async def stop(self) -> None:
        """Stop the observer and wait for a running replay pass."""
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._drain_task is not None:
            await asyncio.gather(self._drain_task, return_exceptions=True)
            self._drain_task = None
        logger.info("Stopped watching %s", self._spool.raw_dir)

    def _notify(self) -> None:
        # Observer thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule)
        except RuntimeError:
            logger.debug("Event loop closed, dropping raw/ notification")

    def _schedule(self) -> None:
        if self._observer is None or self._loop is None:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self._debounce, self._start_drain)

    def _start_drain(self) -> None:
        self._timer = None
        if self._drain_task is not None and not self._drain_task.done():
            self._rescan = True
            return
        if self._loop is None:
            return
        self._drain_task = self._loop.create_task(self._drain())

    async def _drain(self) -> None:
        self._rescan = True
        while self._rescan:
            self._rescan = False
            try:
                await self._spool.replay(self._handler)
            except OSError as e:
                logger.error("Cannot scan %s: %s", self._spool.raw_dir, e)
