"""Backend interface for terminal process management.

The wrapper supervisor only talks to this interface, so tests can drive
it with an in-memory backend and no live process.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field


@dataclass
class BackendConfig:
    """Configuration for backends.

    Attributes:
        rows: Terminal height in rows.
        cols: Terminal width in columns.
        env: Additional environment variables.
        cwd: Working directory for the process.
    """

    rows: int = 40
    cols: int = 120
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None


class Backend(ABC):
    """Abstract base class for terminal backends.

    A backend owns one child process and its terminal: spawning it,
    sending input, streaming output, signalling and reaping it.
    """

    @property
    @abstractmethod
    def pid(self) -> int | None:
        """OS process id of the child, once started."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the process is believed to be running."""

    @abstractmethod
    async def start(self) -> None:
        """Start the process.

        Raises:
            SpawnError: If the terminal or process cannot be created.
        """

    @abstractmethod
    async def write(self, data: str | bytes) -> None:
        """Write data to the terminal input.

        Raises:
            RuntimeError: If the backend is not started.
            OSError: If the terminal has gone away.
        """

    @abstractmethod
    def read_stream(self, chunk_size: int = 4096) -> AsyncIterator[str]:
        """Stream output chunks until the process closes its terminal."""

    @abstractmethod
    async def resize(self, rows: int, cols: int) -> None:
        """Resize the terminal."""

    @abstractmethod
    def send_signal(self, sig: int) -> bool:
        """Send a signal to the process.

        Returns:
            True if delivered, False if the process no longer exists.
        """

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and reap it.

        Returns:
            Exit code, negative signal number if killed by a signal,
            or -1 if the status is unavailable.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the terminal handle."""
