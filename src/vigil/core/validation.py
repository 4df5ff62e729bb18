"""Identifier validation.

Session ids become directory names under the store's base dir, so they
are checked before any path is built from them.
"""

from __future__ import annotations

import re

# Alphanumeric start, then alphanumerics plus . _ : -
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")

MAX_SESSION_ID_LENGTH = 128


def validate_session_id(session_id: str) -> None:
    """Validate a session id.

    Rules:
    - 1-128 characters
    - Starts with a letter or digit
    - Letters, digits, dot, underscore, colon and dash only
    - Never "." or ".." segments (excluded by the rules above)

    Args:
        session_id: The id to validate.

    Raises:
        ValueError: If the id is invalid.

    Example:
        >>> validate_session_id("a1b2c3d4e5f6a7b8")  # OK
        >>> validate_session_id("../etc")            # ValueError
    """
    if not session_id:
        raise ValueError("Session id is required")

    if len(session_id) > MAX_SESSION_ID_LENGTH:
        raise ValueError(f"Session id must be {MAX_SESSION_ID_LENGTH} characters or less")

    if not SESSION_ID_PATTERN.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")


def is_valid_session_id(session_id: str) -> bool:
    """Check a session id without raising.

    Args:
        session_id: The id to check.

    Returns:
        True if valid, False otherwise.
    """
    if not session_id or len(session_id) > MAX_SESSION_ID_LENGTH:
        return False
    return bool(SESSION_ID_PATTERN.match(session_id))
