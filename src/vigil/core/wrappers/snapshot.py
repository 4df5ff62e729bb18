"""Wrapper snapshot persistence - the recoverable view of live wrappers.

Note: this saves process *metadata*, not the PTY. A restarted daemon can
only use it to find out which processes outlived it.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from vigil.core.types import WrapperState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WrapperSnapshot:
    """Read-only view of one wrapper session.

    Attributes:
        wrapper_id: Supervisor-assigned id.
        pid: OS process id of the child.
        state: Lifecycle state at the time of the snapshot.
        cwd: Working directory the child was started in.
        args: Launch arguments, in order.
        start_time: Spawn time in milliseconds.
        cols: Terminal width.
        rows: Terminal height.
        correlation_id: Session id the program reported for itself.
        exit_code: Exit status once ended.
    """

    wrapper_id: str
    pid: int
    state: WrapperState
    cwd: str
    args: tuple[str, ...] = field(default_factory=tuple)
    start_time: int = 0
    cols: int = 120
    rows: int = 40
    correlation_id: str | None = None
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        data: dict[str, Any] = {
            "wrapperId": self.wrapper_id,
            "pid": self.pid,
            "state": self.state.value,
            "cwd": self.cwd,
            "args": list(self.args),
            "startTime": self.start_time,
            "cols": self.cols,
            "rows": self.rows,
        }
        if self.correlation_id is not None:
            data["correlationId"] = self.correlation_id
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WrapperSnapshot:
        """Create from JSON dict.

        Raises:
            ValueError: If the id or pid is missing.
        """
        wrapper_id = data.get("wrapperId")
        pid = data.get("pid")
        if not isinstance(wrapper_id, str) or not isinstance(pid, int):
            raise ValueError(f"Invalid wrapper entry: {data!r}")

        try:
            state = WrapperState(data.get("state", "processing"))
        except ValueError:
            state = WrapperState.PROCESSING

        return cls(
            wrapper_id=wrapper_id,
            pid=pid,
            state=state,
            cwd=str(data.get("cwd", "")),
            args=tuple(str(a) for a in data.get("args", [])),
            start_time=int(data.get("startTime", 0)),
            cols=int(data.get("cols", 120)),
            rows=int(data.get("rows", 40)),
            correlation_id=data.get("correlationId"),
            exit_code=data.get("exitCode"),
        )


@dataclass
class SnapshotStore:
    """Atomic JSON file holding the live wrapper set.

    The file is always replaced whole (temp file plus rename), so a reader
    never sees a partial write.

    Example:
        >>> store = SnapshotStore(Path("~/.vigil/monitor/wrappers.json"))
        >>> store.save([snapshot])
        >>> store.load()
        [WrapperSnapshot(wrapper_id='1a2b3c4d', ...)]
    """

    path: Path
    version: str = "1.0.0"

    def __post_init__(self) -> None:
        self.path = Path(self.path).expanduser()

    def load(self) -> list[WrapperSnapshot]:
        """Load snapshot entries.

        Returns:
            Entries from the file. A missing or unreadable file yields an
            empty list; invalid entries are skipped.
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable wrapper snapshot %s: %s", self.path, e)
            return []

        raw_entries = data.get("wrappers", []) if isinstance(data, dict) else data
        if not isinstance(raw_entries, list):
            return []

        entries = []
        for raw in raw_entries:
            if not isinstance(raw, dict):
                continue
            try:
                entries.append(WrapperSnapshot.from_dict(raw))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping invalid wrapper snapshot entry: %s", e)
        return entries

    def save(self, entries: list[WrapperSnapshot]) -> None:
        """Replace the snapshot file with the given entries.

        Raises:
            OSError: If the file cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "wrappers": [entry.to_dict() for entry in entries],
            "version": self.version,
        }

        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
