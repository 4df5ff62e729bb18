"""Output heuristics for wrapper state.

Pure functions over the recent output buffer. The result is advisory:
a guess at whether the program is sitting at a prompt.
"""

from __future__ import annotations

import re

from vigil.core.types import WrapperState

OUTPUT_BUFFER_MAX = 1000
OUTPUT_BUFFER_KEEP = 500

PROMPT_PATTERNS = (
    re.compile(r">\s*$"),
    re.compile(r"\?\s*$"),
    re.compile(r":\s*$"),
    re.compile(r"waiting for.*input", re.IGNORECASE),
    re.compile(r"enter.*to continue", re.IGNORECASE),
    re.compile(r"press.*to", re.IGNORECASE),
)

# Status line shown while the program is still working
BUSY_MARKERS = ("esc to interrupt", "esc to cancel")

_ANSI_ESCAPE = re.compile(
    r"\x1b\[[0-9;?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"  # two-byte
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and carriage returns."""
    return _ANSI_ESCAPE.sub("", text).replace("\r", "")


def append_output(buffer: str, chunk: str) -> str:
    """Append a chunk to the rolling output buffer.

    Once the buffer exceeds OUTPUT_BUFFER_MAX characters only the last
    OUTPUT_BUFFER_KEEP are kept.
    """
    buffer += chunk
    if len(buffer) > OUTPUT_BUFFER_MAX:
        buffer = buffer[-OUTPUT_BUFFER_KEEP:]
    return buffer


def detect_input_prompt(buffer: str) -> bool:
    """Check whether recent output looks like a prompt for input."""
    text = strip_ansi(buffer)
    if not text.strip():
        return False

    tail = text.lower().splitlines()[-50:]
    if any(marker in line for line in tail for marker in BUSY_MARKERS):
        return False

    return any(pattern.search(text) for pattern in PROMPT_PATTERNS)


def classify_output(buffer: str, idle_seconds: float, idle_threshold: float) -> WrapperState:
    """Guess the wrapper state from its recent output.

    Args:
        buffer: Recent output.
        idle_seconds: Time since the last output chunk.
        idle_threshold: Quiet period required before a prompt counts.

    Returns:
        WAITING_INPUT if output has gone quiet on a prompt, else PROCESSING.
    """
    if idle_seconds >= idle_threshold and detect_input_prompt(buffer):
        return WrapperState.WAITING_INPUT
    return WrapperState.PROCESSING
