"""PTY Backend - Direct pseudo-terminal process management.

Uses Python's pty module to spawn the supervised program with a real
terminal, so interactive programs behave as if a human were typing.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import os
import pty
import select
import struct
import termios
from collections.abc import AsyncIterator

from vigil.core.errors import SpawnError
from vigil.core.pty.backend import Backend, BackendConfig


class PTYBackend(Backend):
    """Direct PTY backend using pty.fork().

    Example:
        >>> backend = PTYBackend(["claude"], BackendConfig(cwd="/project"))
        >>> await backend.start()
        >>> await backend.write("hello\\n")
        >>> async for chunk in backend.read_stream():
        ...     print(chunk, end="")
        >>> code = await backend.wait()
    """

    def __init__(self, command: list[str], config: BackendConfig | None = None) -> None:
        """Initialize PTY backend.

        Args:
            command: Command and arguments to run (e.g., ["claude"]).
            config: Backend configuration options.
        """
        if not command:
            raise ValueError("command must not be empty")
        self._command = command
        self._config = config or BackendConfig()
        self._master_fd: int | None = None
        self._pid: int | None = None
        self._running = False
        self._exit_code: int | None = None

    @property
    def pid(self) -> int | None:
        """Process ID of the child process."""
        return self._pid

    @property
    def is_running(self) -> bool:
        """Whether the process is currently running."""
        return self._running

    @property
    def config(self) -> BackendConfig:
        """Backend configuration."""
        return self._config

    async def start(self) -> None:
        """Fork the child inside a new pseudo-terminal.

        Raises:
            SpawnError: If the OS refuses to allocate a pty or fork.
        """
        env = os.environ.copy()
        env.update(self._config.env)
        env["TERM"] = "xterm-256color"

        try:
            pid, master_fd = pty.fork()
        except OSError as e:
            raise SpawnError(f"Failed to allocate pty for {self._command[0]}: {e}") from e

        if pid == 0:
            # Child: never return into the parent's event loop.
            try:
                if self._config.cwd:
                    os.chdir(self._config.cwd)
                os.execvpe(self._command[0], self._command, env)
            finally:
                os._exit(127)

        self._pid = pid
        self._master_fd = master_fd
        self._running = True

        self._set_winsize(self._config.rows, self._config.cols)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

    async def write(self, data: str | bytes) -> None:
        """Write data to PTY stdin.

        Raises:
            RuntimeError: If PTY is not started.
            OSError: If the terminal is closed.
        """
        if self._master_fd is None:
            raise RuntimeError("PTY not started")

        payload = data.encode() if isinstance(data, str) else data
        view = memoryview(payload)
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    async def read_stream(self, chunk_size: int = 4096) -> AsyncIterator[str]:
        """Stream output chunks until the child closes its terminal.

        Args:
            chunk_size: Maximum bytes to read at once.

        Yields:
            Output chunks as strings. Multi-byte characters split across
            reads are reassembled.
        """
        if self._master_fd is None:
            raise RuntimeError("PTY not started")

        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while self._running and self._master_fd is not None:
            try:
                await loop.run_in_executor(None, self._wait_for_data, 0.1)

                data = os.read(self._master_fd, chunk_size)
                if not data:
                    break
                chunk = decoder.decode(data)
                if chunk:
                    yield chunk

            except BlockingIOError:
                await asyncio.sleep(0.01)
            except OSError:
                # EIO once the child side is closed
                break

        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def resize(self, rows: int, cols: int) -> None:
        """Resize the PTY window.

        Args:
            rows: New height in rows.
            cols: New width in columns.
        """
        self._set_winsize(rows, cols)
        self._config.rows = rows
        self._config.cols = cols

    def send_signal(self, sig: int) -> bool:
        """Send a signal to the child process."""
        if self._pid is None or self._exit_code is not None:
            return False
        try:
            os.kill(self._pid, sig)
        except ProcessLookupError:
            return False
        return True

    async def wait(self) -> int:
        """Wait for the process to exit and reap it.

        Returns:
            Exit status, or the negated signal number if it was killed.
        """
        if self._exit_code is not None:
            return self._exit_code
        if self._pid is None:
            return -1

        try:
            _, status = await asyncio.to_thread(os.waitpid, self._pid, 0)
        except ChildProcessError:
            code = -1
        else:
            if os.WIFSIGNALED(status):
                code = -os.WTERMSIG(status)
            else:
                code = os.WEXITSTATUS(status)

        self._running = False
        self._exit_code = code
        return code

    async def close(self) -> None:
        """Close the master side of the terminal."""
        self._running = False
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    def _set_winsize(self, rows: int, cols: int) -> None:
        """Set the terminal window size."""
        if self._master_fd is not None:
            winsize = struct.pack("HHHH", rows, cols, 0, 0)
            fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, winsize)

    def _wait_for_data(self, timeout: float) -> bool:
        """Wait for data to be available on the PTY."""
        fd = self._master_fd
        if fd is None:
            return False
        try:
            r, _, _ = select.select([fd], [], [], timeout)
        except (OSError, ValueError):
            return True
        return bool(r)
