"""WrapperSupervisor - owns the live wrapper sessions.

Each wrapper is one program running inside its own pseudo-terminal. The
supervisor spawns it, forwards input, streams output, classifies state
from that output and keeps ``wrappers.json`` in step with the live map.

State machine::

    starting -> processing <-> waiting_input
        \\___________\\______________\\___> ended

Everything except ``ended`` is a best-effort guess from output. Hook
scripts can override it through update_state().
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from vigil.config import WrapperConfig
from vigil.core.callbacks import HandlerSet
from vigil.core.errors import SpawnError
from vigil.core.pty import Backend, BackendConfig, PTYBackend, find_executable, is_process_alive
from vigil.core.types import WrapperState
from vigil.core.wrappers.classifier import append_output, classify_output
from vigil.core.wrappers.snapshot import SnapshotStore, WrapperSnapshot

logger = logging.getLogger(__name__)

WRAPPER_ID_ENV = "VIGIL_WRAPPER_ID"

BackendFactory = Callable[[list[str], BackendConfig], Backend]


class WrapperEventType(Enum):
    STARTED = "started"
    OUTPUT = "output"
    STATE_CHANGED = "state_changed"
    ENDED = "ended"
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class WrapperEvent:
    """Notification emitted by the supervisor.

    Attributes:
        type: What happened.
        wrapper_id: Wrapper the event is about.
        state: Wrapper state after the event.
        data: Output text, for OUTPUT events.
        correlation_id: Reported session id, when known.
        exit_code: Exit status, for ENDED events.
        pid: OS process id.
    """

    type: WrapperEventType
    wrapper_id: str
    state: WrapperState
    data: str | None = None
    correlation_id: str | None = None
    exit_code: int | None = None
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "wrapperId": self.wrapper_id,
            "state": self.state.value,
        }
        if self.data is not None:
            data["data"] = self.data
        if self.correlation_id is not None:
            data["correlationId"] = self.correlation_id
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        if self.pid is not None:
            data["pid"] = self.pid
        return data


@dataclass
class _LiveWrapper:
    """Mutable record of a running wrapper. Never leaves the supervisor."""

    wrapper_id: str
    backend: Backend
    pid: int
    cwd: str
    args: tuple[str, ...]
    cols: int
    rows: int
    start_time: int
    state: WrapperState = WrapperState.STARTING
    correlation_id: str | None = None
    exit_code: int | None = None
    buffer: str = ""
    last_output: float = 0.0
    reader: asyncio.Task[None] | None = None
    idle_handle: asyncio.TimerHandle | None = None
    startup_handle: asyncio.TimerHandle | None = None
    kill_handle: asyncio.TimerHandle | None = None

    def snapshot(self) -> WrapperSnapshot:
        return WrapperSnapshot(
            wrapper_id=self.wrapper_id,
            pid=self.pid,
            state=self.state,
            cwd=self.cwd,
            args=self.args,
            start_time=self.start_time,
            cols=self.cols,
            rows=self.rows,
            correlation_id=self.correlation_id,
            exit_code=self.exit_code,
        )

    def cancel_timers(self) -> None:
        for handle in (self.idle_handle, self.startup_handle, self.kill_handle):
            if handle is not None:
                handle.cancel()
        self.idle_handle = self.startup_handle = self.kill_handle = None


class WrapperSupervisor:
    """Supervises wrapper sessions running in pseudo-terminals.

    All structural changes to the live map are serialized with the
    snapshot write they trigger.

    Example:
        >>> supervisor = WrapperSupervisor(paths.wrappers_file, on_event=print)
        >>> orphans = await supervisor.initialize()
        >>> wrapper_id = await supervisor.spawn(cwd="/project")
        >>> await supervisor.write_input(wrapper_id, "hello\\r")
        >>> supervisor.get(wrapper_id).state
        <WrapperState.PROCESSING: 'processing'>
        >>> await supervisor.kill(wrapper_id)
    """

    def __init__(
        self,
        snapshot_path: str | Path,
        on_event: Callable[[WrapperEvent], Any] | None = None,
        *,
        config: WrapperConfig | None = None,
        backend_factory: BackendFactory | None = None,
        resolve_executable: Callable[[str], str | None] = find_executable,
        probe: Callable[[int], bool] = is_process_alive,
    ) -> None:
        """Create a supervisor.

        Args:
            snapshot_path: Where the live wrapper snapshot is kept.
            on_event: Callback for WrapperEvents.
            config: Program, geometry and timing settings.
            backend_factory: Builds the terminal backend for a command.
            resolve_executable: Maps the program name to a path.
            probe: Liveness check used during recovery and kill escalation.
        """
        self._store = SnapshotStore(Path(snapshot_path))
        self._config = config or WrapperConfig()
        self._backend_factory: BackendFactory = backend_factory or PTYBackend
        self._resolve_executable = resolve_executable
        self._probe = probe

        self._live: dict[str, _LiveWrapper] = {}
        self._ended: dict[str, WrapperSnapshot] = {}
        self._ended_at: dict[str, float] = {}
        self._orphans: list[WrapperSnapshot] = []
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._handlers: HandlerSet[WrapperEvent] = HandlerSet("wrapper")
        if on_event is not None:
            self._handlers.add(on_event)

    @property
    def config(self) -> WrapperConfig:
        return self._config

    @property
    def orphans(self) -> list[WrapperSnapshot]:
        """Processes found alive at initialization that could not be reattached."""
        return list(self._orphans)

    def on_event(self, handler: Callable[[WrapperEvent], Any]) -> None:
        self._handlers.add(handler)

    def off_event(self, handler: Callable[[WrapperEvent], Any]) -> None:
        self._handlers.remove(handler)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> list[WrapperSnapshot]:
        """Reconcile the persisted snapshot with the process table.

        Dead processes are dropped. Live ones cannot be reattached to a
        terminal, so they are reported as orphans and removed from the
        snapshot. Calling this again reports nothing new.

        Returns:
            Orphans found by this call.
        """
        async with self._lock:
            entries = await asyncio.to_thread(self._store.load)
            known = {o.wrapper_id for o in self._orphans}
            found: list[WrapperSnapshot] = []

            for entry in entries:
                if entry.wrapper_id in self._live or entry.wrapper_id in known:
                    continue
                if self._probe(entry.pid):
                    logger.warning(
                        "Orphaned wrapper %s (pid %d) is still running and cannot be reattached",
                        entry.wrapper_id,
                        entry.pid,
                    )
                    found.append(entry)
                else:
                    logger.info("Dropping dead wrapper %s (pid %d)", entry.wrapper_id, entry.pid)

            self._orphans.extend(found)
            await self._persist_locked()

        for orphan in found:
            self._emit(
                WrapperEvent(
                    type=WrapperEventType.ORPHANED,
                    wrapper_id=orphan.wrapper_id,
                    state=orphan.state,
                    correlation_id=orphan.correlation_id,
                    pid=orphan.pid,
                )
            )
        return found

    async def shutdown(self) -> None:
        """Terminate every live wrapper and flush the snapshot."""
        wrappers = list(self._live.values())
        logger.info("Shutting down %d wrapper(s)", len(wrappers))

        for wrapper in wrappers:
            wrapper.cancel_timers()
            wrapper.backend.send_signal(signal.SIGTERM)

        readers = [w.reader for w in wrappers if w.reader is not None]
        if readers:
            _, pending = await asyncio.wait(readers, timeout=self._config.kill_timeout)
        else:
            pending = set()

        stubborn = [w for w in wrappers if w.reader in pending]
        for wrapper in stubborn:
            logger.warning("Wrapper %s ignored SIGTERM, sending SIGKILL", wrapper.wrapper_id)
            wrapper.backend.send_signal(signal.SIGKILL)
        if stubborn:
            _, pending = await asyncio.wait(
                [w.reader for w in stubborn], timeout=self._config.kill_timeout
            )

        for wrapper in stubborn:
            if wrapper.reader not in pending:
                continue
            # Output never closed; reap and finalize here instead of the reader
            wrapper.reader.cancel()
            await asyncio.gather(wrapper.reader, return_exceptions=True)
            if wrapper.state is WrapperState.ENDED:
                continue
            try:
                exit_code = await asyncio.wait_for(
                    wrapper.backend.wait(), timeout=self._config.kill_timeout
                )
            except asyncio.TimeoutError:
                logger.error("Wrapper %s (pid %d) could not be reaped", wrapper.wrapper_id, wrapper.pid)
                exit_code = -1
            await self._finalize(wrapper, exit_code)

        async with self._lock:
            self._live.clear()
            await self._persist_locked()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._handlers.drain()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def spawn(
        self,
        cwd: str | None = None,
        args: list[str] | None = None,
        cols: int | None = None,
        rows: int | None = None,
        program: str | None = None,
    ) -> str:
        """Start a new wrapper.

        Args:
            cwd: Working directory. Defaults to the daemon's cwd.
            args: Arguments passed to the program.
            cols: Terminal width. Defaults to the configured width.
            rows: Terminal height. Defaults to the configured height.
            program: Program to run instead of the configured one.

        Returns:
            The new wrapper id.

        Raises:
            SpawnError: If the program cannot be found or started. Nothing
                is registered in that case.
        """
        program = program or self._config.program
        executable = self._resolve_executable(program)
        if executable is None:
            raise SpawnError(f"Executable not found: {program}")

        cwd = cwd or os.getcwd()
        if not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}")

        cols = cols or self._config.cols
        rows = rows or self._config.rows
        launch_args = tuple(args or ())

        wrapper_id = self._new_id()
        backend = self._backend_factory(
            [executable, *launch_args],
            BackendConfig(rows=rows, cols=cols, env={WRAPPER_ID_ENV: wrapper_id}, cwd=cwd),
        )
        try:
            await backend.start()
        except SpawnError:
            raise
        except OSError as e:
            raise SpawnError(f"Failed to start {program}: {e}") from e

        if backend.pid is None:
            await backend.close()
            raise SpawnError(f"Failed to start {program}: no process id")

        wrapper = _LiveWrapper(
            wrapper_id=wrapper_id,
            backend=backend,
            pid=backend.pid,
            cwd=cwd,
            args=launch_args,
            cols=cols,
            rows=rows,
            start_time=int(time.time() * 1000),
        )

        async with self._lock:
            self._live[wrapper_id] = wrapper
            await self._persist_locked()

        loop = asyncio.get_running_loop()
        wrapper.last_output = loop.time()
        wrapper.startup_handle = loop.call_later(
            self._config.startup_delay, self._promote_from_starting, wrapper_id
        )
        wrapper.reader = asyncio.create_task(self._pump_output(wrapper))

        logger.info("Spawned wrapper %s (pid %d) in %s", wrapper_id, wrapper.pid, cwd)
        self._emit(
            WrapperEvent(
                type=WrapperEventType.STARTED,
                wrapper_id=wrapper_id,
                state=wrapper.state,
                pid=wrapper.pid,
            )
        )
        return wrapper_id

    async def write_input(self, wrapper_id: str, data: str | bytes) -> bool:
        """Forward input to a wrapper's terminal.

        Returns:
            False if the wrapper is unknown, ended or its terminal is gone.
        """
        wrapper = self._live.get(wrapper_id)
        if wrapper is None or wrapper.state is WrapperState.ENDED:
            return False
        try:
            await wrapper.backend.write(data)
        except (OSError, RuntimeError) as e:
            logger.debug("Write to wrapper %s failed: %s", wrapper_id, e)
            return False
        return True

    async def resize(self, wrapper_id: str, cols: int, rows: int) -> bool:
        """Resize a wrapper's terminal.

        Returns:
            False if the wrapper is unknown, ended or its terminal is gone.
        """
        wrapper = self._live.get(wrapper_id)
        if wrapper is None or wrapper.state is WrapperState.ENDED:
            return False
        try:
            await wrapper.backend.resize(rows, cols)
        except OSError as e:
            logger.debug("Resize of wrapper %s failed: %s", wrapper_id, e)
            return False

        async with self._lock:
            wrapper.cols = cols
            wrapper.rows = rows
            await self._persist_locked()
        return True

    async def kill(self, wrapper_id: str) -> bool:
        """Ask a wrapper's process to terminate.

        The wrapper becomes ``ended`` once the process actually exits. A
        process that ignores SIGTERM gets SIGKILL after ``kill_timeout``.

        Returns:
            False if the wrapper is unknown.
        """
        wrapper = self._live.get(wrapper_id)
        if wrapper is None:
            return False

        logger.info("Killing wrapper %s (pid %d)", wrapper_id, wrapper.pid)
        wrapper.backend.send_signal(signal.SIGTERM)
        if wrapper.kill_handle is None:
            wrapper.kill_handle = asyncio.get_running_loop().call_later(
                self._config.kill_timeout, self._escalate_kill, wrapper_id, wrapper.pid
            )
        return True

    async def update_state(
        self,
        wrapper_id: str,
        state: WrapperState | str,
        correlation_id: str | None = None,
    ) -> bool:
        """Set a wrapper's state from an external report.

        Overrides any pending output classification for this wrapper.

        Returns:
            False if the wrapper is unknown or already ended.

        Raises:
            ValueError: If ``state`` is not a known state name.
        """
        state = WrapperState(state)
        wrapper = self._live.get(wrapper_id)
        if wrapper is None or wrapper.state is WrapperState.ENDED:
            return False
        if state is WrapperState.ENDED:
            # Only process exit ends a wrapper.
            return False

        if wrapper.idle_handle is not None:
            wrapper.idle_handle.cancel()
            wrapper.idle_handle = None
        if wrapper.startup_handle is not None:
            wrapper.startup_handle.cancel()
            wrapper.startup_handle = None

        if correlation_id:
            wrapper.correlation_id = correlation_id
        self._set_state(wrapper, state, force=bool(correlation_id))
        return True

    def get(self, wrapper_id: str) -> WrapperSnapshot | None:
        """Get a wrapper by id, live or retained after exit."""
        wrapper = self._live.get(wrapper_id)
        if wrapper is not None:
            return wrapper.snapshot()
        return self._ended.get(wrapper_id)

    def get_all(self) -> list[WrapperSnapshot]:
        """List live wrappers."""
        return [w.snapshot() for w in self._live.values()]

    def find_by_correlation(self, correlation_id: str) -> WrapperSnapshot | None:
        """Find the live wrapper that reported the given session id."""
        for wrapper in self._live.values():
            if wrapper.correlation_id == correlation_id:
                return wrapper.snapshot()
        return None

    def forget(self, wrapper_id: str) -> bool:
        """Drop a retained ended record.

        Returns:
            True if a record was removed.
        """
        self._ended_at.pop(wrapper_id, None)
        return self._ended.pop(wrapper_id, None) is not None

    def prune_ended(self, older_than: float) -> int:
        """Drop ended records that finished before a cutoff.

        Args:
            older_than: Unix timestamp in seconds.

        Returns:
            Number of records dropped.
        """
        stale = [wid for wid, ended_at in self._ended_at.items() if ended_at < older_than]
        for wrapper_id in stale:
            self.forget(wrapper_id)
        return len(stale)

    # ------------------------------------------------------------------
    # Output path
    # ------------------------------------------------------------------

    async def _pump_output(self, wrapper: _LiveWrapper) -> None:
        try:
            async for chunk in wrapper.backend.read_stream():
                self._on_output(wrapper, chunk)
        except Exception:
            logger.error("Output stream of wrapper %s failed", wrapper.wrapper_id, exc_info=True)

        try:
            exit_code = await wrapper.backend.wait()
        except Exception:
            logger.error("Failed to reap wrapper %s", wrapper.wrapper_id, exc_info=True)
            exit_code = -1

        await self._finalize(wrapper, exit_code)

    def _on_output(self, wrapper: _LiveWrapper, chunk: str) -> None:
        loop = asyncio.get_running_loop()
        wrapper.buffer = append_output(wrapper.buffer, chunk)
        wrapper.last_output = loop.time()

        self._emit(
            WrapperEvent(
                type=WrapperEventType.OUTPUT,
                wrapper_id=wrapper.wrapper_id,
                state=wrapper.state,
                data=chunk,
                correlation_id=wrapper.correlation_id,
            )
        )

        if wrapper.state is WrapperState.WAITING_INPUT:
            self._set_state(wrapper, WrapperState.PROCESSING)

        if wrapper.idle_handle is not None:
            wrapper.idle_handle.cancel()
        wrapper.idle_handle = loop.call_later(
            self._config.idle_threshold, self._check_idle, wrapper.wrapper_id
        )

    def _check_idle(self, wrapper_id: str) -> None:
        wrapper = self._live.get(wrapper_id)
        if wrapper is None:
            return
        wrapper.idle_handle = None
        if wrapper.state not in (WrapperState.STARTING, WrapperState.PROCESSING):
            return

        loop = asyncio.get_running_loop()
        idle_for = loop.time() - wrapper.last_output
        if idle_for < self._config.idle_threshold:
            wrapper.idle_handle = loop.call_later(
                self._config.idle_threshold - idle_for, self._check_idle, wrapper_id
            )
            return
        state = classify_output(wrapper.buffer, idle_for, self._config.idle_threshold)
        if state is WrapperState.WAITING_INPUT:
            if wrapper.startup_handle is not None:
                wrapper.startup_handle.cancel()
                wrapper.startup_handle = None
            wrapper.buffer = ""
            self._set_state(wrapper, state)

    def _promote_from_starting(self, wrapper_id: str) -> None:
        wrapper = self._live.get(wrapper_id)
        if wrapper is None:
            return
        wrapper.startup_handle = None
        if wrapper.state is WrapperState.STARTING:
            self._set_state(wrapper, WrapperState.PROCESSING)

    def _escalate_kill(self, wrapper_id: str, pid: int) -> None:
        wrapper = self._live.get(wrapper_id)
        if wrapper is None or wrapper.pid != pid:
            return
        wrapper.kill_handle = None
        if self._probe(pid):
            logger.warning("Wrapper %s (pid %d) ignored SIGTERM, sending SIGKILL", wrapper_id, pid)
            wrapper.backend.send_signal(signal.SIGKILL)

    async def _finalize(self, wrapper: _LiveWrapper, exit_code: int) -> None:
        wrapper.cancel_timers()
        wrapper.state = WrapperState.ENDED
        wrapper.exit_code = exit_code

        async with self._lock:
            if self._live.get(wrapper.wrapper_id) is wrapper:
                del self._live[wrapper.wrapper_id]
            self._ended[wrapper.wrapper_id] = wrapper.snapshot()
            self._ended_at[wrapper.wrapper_id] = time.time()
            await self._persist_locked()

        await wrapper.backend.close()

        logger.info("Wrapper %s exited with code %d", wrapper.wrapper_id, exit_code)
        self._emit(
            WrapperEvent(
                type=WrapperEventType.ENDED,
                wrapper_id=wrapper.wrapper_id,
                state=WrapperState.ENDED,
                correlation_id=wrapper.correlation_id,
                exit_code=exit_code,
                pid=wrapper.pid,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, wrapper: _LiveWrapper, state: WrapperState, force: bool = False) -> None:
        if wrapper.state is state and not force:
            return
        previous = wrapper.state
        wrapper.state = state
        logger.debug("Wrapper %s: %s -> %s", wrapper.wrapper_id, previous.value, state.value)

        self._emit(
            WrapperEvent(
                type=WrapperEventType.STATE_CHANGED,
                wrapper_id=wrapper.wrapper_id,
                state=state,
                correlation_id=wrapper.correlation_id,
            )
        )
        self._spawn_task(self._persist())

    def _emit(self, event: WrapperEvent) -> None:
        self._handlers.dispatch(event)

    def _spawn_task(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _new_id(self) -> str:
        while True:
            wrapper_id = uuid.uuid4().hex[:8]
            if wrapper_id not in self._live and wrapper_id not in self._ended:
                return wrapper_id

    async def _persist(self) -> None:
        async with self._lock:
            await self._persist_locked()

    async def _persist_locked(self) -> None:
        entries = [w.snapshot() for w in self._live.values()]
        try:
            await asyncio.to_thread(self._store.save, entries)
        except OSError:
            logger.error("Failed to persist wrapper snapshot to %s", self._store.path, exc_info=True)

    def __repr__(self) -> str:
        return f"WrapperSupervisor(live={len(self._live)}, ended={len(self._ended)})"
