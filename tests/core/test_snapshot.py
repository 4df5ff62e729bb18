"""Tests for the wrapper snapshot file."""

from __future__ import annotations

import json
from pathlib import Path

from vigil.core.types import WrapperState
from vigil.core.wrappers.snapshot import SnapshotStore, WrapperSnapshot


def _snapshot(wrapper_id: str = "abcd1234", pid: int = 100, **kwargs) -> WrapperSnapshot:
    return WrapperSnapshot(
        wrapper_id=wrapper_id,
        pid=pid,
        state=kwargs.pop("state", WrapperState.PROCESSING),
        cwd=kwargs.pop("cwd", "/project"),
        args=kwargs.pop("args", ("--resume",)),
        start_time=kwargs.pop("start_time", 1700000000000),
        **kwargs,
    )


class TestWrapperSnapshot:
    def test_to_dict_wire_form(self):
        data = _snapshot(correlation_id="sess-9").to_dict()

        assert data["wrapperId"] == "abcd1234"
        assert data["state"] == "processing"
        assert data["args"] == ["--resume"]
        assert data["correlationId"] == "sess-9"
        assert "exitCode" not in data

    def test_unknown_state_falls_back(self):
        snapshot = WrapperSnapshot.from_dict({"wrapperId": "w", "pid": 1, "state": "weird"})
        assert snapshot.state is WrapperState.PROCESSING


class TestSnapshotStore:
    def test_missing_file_is_empty(self, tmp_path: Path):
        assert SnapshotStore(tmp_path / "wrappers.json").load() == []

    def test_save_and_load(self, tmp_path: Path):
        store = SnapshotStore(tmp_path / "state" / "wrappers.json")
        entries = [_snapshot("w1", 1), _snapshot("w2", 2, cols=80, rows=24)]

        store.save(entries)

        assert store.load() == entries
        data = json.loads(store.path.read_text())
        assert [w["wrapperId"] for w in data["wrappers"]] == ["w1", "w2"]

    def test_save_replaces_whole_file(self, tmp_path: Path):
        store = SnapshotStore(tmp_path / "wrappers.json")
        store.save([_snapshot("w1", 1), _snapshot("w2", 2)])
        store.save([_snapshot("w3", 3)])

        assert [s.wrapper_id for s in store.load()] == ["w3"]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["wrappers.json"]

    def test_corrupt_file_is_empty(self, tmp_path: Path):
        path = tmp_path / "wrappers.json"
        path.write_text("{not json")
        assert SnapshotStore(path).load() == []

    def test_invalid_entries_skipped(self, tmp_path: Path):
        path = tmp_path / "wrappers.json"
        path.write_text(
            json.dumps({"wrappers": [{"pid": 1}, "junk", _snapshot("ok", 5).to_dict()]})
        )
        assert [s.wrapper_id for s in SnapshotStore(path).load()] == ["ok"]

    def test_bare_list_accepted(self, tmp_path: Path):
        path = tmp_path / "wrappers.json"
        path.write_text(json.dumps([_snapshot("w1", 1).to_dict()]))
        assert len(SnapshotStore(path).load()) == 1
