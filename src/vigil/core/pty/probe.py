"""Process liveness probing."""

from __future__ import annotations

import os


def is_process_alive(pid: int) -> bool:
    """Check whether a process id refers to a live process.

    Sends signal 0, which performs the existence and permission checks
    without delivering anything to the target.

    Args:
        pid: Process id to probe.

    Returns:
        True if the process exists (including processes owned by other
        users), False otherwise.
    """
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
