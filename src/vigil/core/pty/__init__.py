"""PTY process management.

Classes:
    Backend: Abstract terminal backend.
    BackendConfig: Geometry, environment and working directory.
    PTYBackend: pty.fork() implementation.

Functions:
    is_process_alive: Signal-0 liveness probe.
    find_executable: PATH and common-location program lookup.
"""

from vigil.core.pty.backend import Backend, BackendConfig
from vigil.core.pty.executables import find_executable
from vigil.core.pty.probe import is_process_alive
from vigil.core.pty.pty_backend import PTYBackend

__all__ = [
    "Backend",
    "BackendConfig",
    "PTYBackend",
    "find_executable",
    "is_process_alive",
]
