"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import itertools
import os
import signal
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from vigil.core.pty.backend import Backend, BackendConfig
from vigil.core.types import MonitorEvent
from vigil.persistence.file_store import FileStore

_event_ids = itertools.count(1)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep VIGIL_* variables from the host (or a loaded .env) out of tests."""
    for key in list(os.environ):
        if key.startswith("VIGIL_"):
            monkeypatch.delenv(key)
    yield
    for key in list(os.environ):
        if key.startswith("VIGIL_"):
            del os.environ[key]


@pytest.fixture
def make_event() -> Callable[..., MonitorEvent]:
    """Factory for MonitorEvents with unique ids."""

    def factory(
        session_id: str = "sess-1",
        kind: str = "tool_call",
        timestamp: int | None = None,
        payload: dict | None = None,
        **extra,
    ) -> MonitorEvent:
        return MonitorEvent(
            id=f"evt-{next(_event_ids)}",
            session_id=session_id,
            kind=kind,
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
            payload=payload if payload is not None else {},
            extra=extra,
        )

    return factory


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[FileStore]:
    """Initialized FileStore rooted in a temp directory."""
    file_store = FileStore(tmp_path / "monitor")
    await file_store.init()
    yield file_store
    await file_store.close()


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""

    async def waiter(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return waiter


class FakeBackend(Backend):
    """In-memory terminal backend driven by the test."""

    _pids = itertools.count(50_000)

    def __init__(
        self,
        command: list[str],
        config: BackendConfig,
        start_error: Exception | None = None,
        assign_pid: bool = True,
    ) -> None:
        self.command = command
        self.config = config
        self.start_error = start_error
        self.assign_pid = assign_pid
        self.exit_on_signal = True
        self.written: list[str | bytes] = []
        self.resized: list[tuple[int, int]] = []
        self.signals: list[int] = []
        self.closed = False
        self._pid: int | None = None
        self._running = False
        self._output: asyncio.Queue[str | None] = asyncio.Queue()
        self._exit: asyncio.Future[int] | None = None

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self._pid = next(self._pids) if self.assign_pid else None
        self._running = True
        self._exit = asyncio.get_running_loop().create_future()

    async def write(self, data: str | bytes) -> None:
        if not self._running:
            raise OSError("terminal closed")
        self.written.append(data)

    async def read_stream(self, chunk_size: int = 4096) -> AsyncIterator[str]:
        while True:
            chunk = await self._output.get()
            if chunk is None:
                break
            yield chunk

    async def resize(self, rows: int, cols: int) -> None:
        self.resized.append((rows, cols))

    def send_signal(self, sig: int) -> bool:
        if not self._running:
            return False
        self.signals.append(sig)
        if self.exit_on_signal or sig == signal.SIGKILL:
            self.exit(-sig)
        return True

    async def wait(self) -> int:
        assert self._exit is not None
        return await self._exit

    async def close(self) -> None:
        self.closed = True

    # Test helpers

    def emit(self, text: str) -> None:
        self._output.put_nowait(text)

    def exit(self, code: int = 0) -> None:
        self._running = False
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(code)
        self._output.put_nowait(None)


class FakeBackendFactory:
    """Backend factory that records every backend it builds."""

    def __init__(self) -> None:
        self.backends: list[FakeBackend] = []
        self.start_error: Exception | None = None
        self.assign_pid = True

    def __call__(self, command: list[str], config: BackendConfig) -> FakeBackend:
        backend = FakeBackend(
            command, config, start_error=self.start_error, assign_pid=self.assign_pid
        )
        self.backends.append(backend)
        return backend

    @property
    def last(self) -> FakeBackend:
        return self.backends[-1]


@pytest.fixture
def fake_backends() -> FakeBackendFactory:
    return FakeBackendFactory()
