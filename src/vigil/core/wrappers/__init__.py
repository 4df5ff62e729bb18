"""Wrapper sessions: supervised programs running in pseudo-terminals.

Classes:
    WrapperSupervisor: Owns the live wrapper map.
    WrapperSnapshot: Read-only view of one wrapper.
    SnapshotStore: Atomic wrappers.json file.
    WrapperEvent: Notification emitted by the supervisor.
    WrapperEventType: Kinds of WrapperEvent.

Functions:
    classify_output: Guess a wrapper's state from recent output.
    detect_input_prompt: Check output for prompt signatures.
"""

from vigil.core.wrappers.classifier import classify_output, detect_input_prompt
from vigil.core.wrappers.snapshot import SnapshotStore, WrapperSnapshot
from vigil.core.wrappers.supervisor import WrapperEvent, WrapperEventType, WrapperSupervisor

__all__ = [
    "SnapshotStore",
    "WrapperEvent",
    "WrapperEventType",
    "WrapperSnapshot",
    "WrapperSupervisor",
    "classify_output",
    "detect_input_prompt",
]
