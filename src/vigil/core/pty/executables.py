"""Locate the program a wrapper session runs."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

COMMON_BIN_DIRS = (
    "~/.npm-global/bin",
    "~/.local/bin",
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
)


def find_executable(program: str) -> str | None:
    """Resolve a program name to an executable path.

    Paths containing a separator are checked as-is. Bare names are looked
    up on PATH first, then in a few common install locations that are
    often missing from a daemon's environment.

    Returns:
        Absolute path, or None if nothing executable was found.
    """
    if not program:
        return None

    if os.sep in program:
        candidate = Path(program).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None

    found = shutil.which(program)
    if found:
        return found

    for directory in COMMON_BIN_DIRS:
        candidate = Path(directory).expanduser() / program
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    return None
