"""Persistence - the event log store and the raw event spool.

Classes:
    FileStore: Per-session JSONL event logs and meta.json records.
    RawSpool: Replay of events dropped into raw/ by producers.
    SpoolWatcher: Live replay of raw/ while the daemon runs.
"""

from vigil.persistence.file_store import FileStore
from vigil.persistence.spool import RawSpool, SpoolWatcher

__all__ = ["FileStore", "RawSpool", "SpoolWatcher"]
