"""Tests for FileStore."""

from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from vigil.core.errors import NotFoundError
from vigil.core.types import SessionMeta
from vigil.persistence import FileStore
from vigil.persistence import file_store


class TestInit:
    @pytest.mark.asyncio
    async def test_init_is_idempotent(self, tmp_path):
        store = FileStore(tmp_path / "monitor")
        await store.init()
        await store.init()
        assert store.sessions_dir.is_dir()

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await store.get_sessions() == []
        assert await store.get_events("nobody") == []
        assert await store.get_event_count("nobody") == 0
        assert await store.get_all_recent_events() == []


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_returned_in_timestamp_order(self, store, make_event):
        for ts in (300, 100, 200):
            await store.save_event(make_event(timestamp=ts))

        events = await store.get_events("sess-1")

        assert [e.timestamp for e in events] == [100, 200, 300]

    @pytest.mark.asyncio
    async def test_limit_keeps_most_recent(self, store, make_event):
        for ts in range(1, 11):
            await store.save_event(make_event(timestamp=ts))

        events = await store.get_events("sess-1", limit=3)

        assert [e.timestamp for e in events] == [8, 9, 10]
        assert await store.get_events("sess-1", limit=0) == []

    @pytest.mark.asyncio
    async def test_before_and_after_are_strict(self, store, make_event):
        for ts in (10, 20, 30, 40):
            await store.save_event(make_event(timestamp=ts))

        assert [e.timestamp for e in await store.get_events("sess-1", before=30)] == [10, 20]
        assert [e.timestamp for e in await store.get_events("sess-1", after=20)] == [30, 40]
        window = await store.get_events("sess-1", after=10, before=40)
        assert [e.timestamp for e in window] == [20, 30]

    @pytest.mark.asyncio
    async def test_event_round_trips_extra_fields(self, store, make_event):
        event = make_event(payload={"tool": "Bash"}, hookType="PreToolUse", workingDirectory="/repo")
        await store.save_event(event)

        [stored] = await store.get_events("sess-1")

        assert stored == event
        assert stored.hook_type == "PreToolUse"

    @pytest.mark.asyncio
    async def test_get_event_by_id(self, store, make_event):
        first = make_event()
        second = make_event()
        await store.save_event(first)
        await store.save_event(second)

        assert await store.get_event_by_id("sess-1", second.id) == second
        assert await store.get_event_by_id("sess-1", "evt-missing") is None
        assert await store.get_event_by_id("other", first.id) is None

    @pytest.mark.asyncio
    async def test_event_count(self, store, make_event):
        for _ in range(4):
            await store.save_event(make_event())
        await store.save_event(make_event(session_id="sess-2"))

        assert await store.get_event_count("sess-1") == 4
        assert await store.get_event_count("sess-2") == 1

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, store, make_event):
        await store.save_event(make_event(timestamp=1))
        log = store.sessions_dir / "sess-1" / "events.jsonl"
        with open(log, "a", encoding="utf-8") as f:
            f.write("{not json\n")
            f.write(json.dumps({"id": "x"}) + "\n")
        await store.save_event(make_event(timestamp=2))

        events = await store.get_events("sess-1")

        assert [e.timestamp for e in events] == [1, 2]

    @pytest.mark.asyncio
    async def test_concurrent_appends_do_not_interleave(self, store, make_event):
        events = [make_event(payload={"blob": "x" * 5000}) for _ in range(50)]

        await asyncio.gather(*(store.save_event(e) for e in events))

        stored = await store.get_events("sess-1", limit=None)
        assert sorted(e.id for e in stored) == sorted(e.id for e in events)

    @pytest.mark.asyncio
    async def test_invalid_session_id_rejected(self, store, make_event):
        with pytest.raises(ValueError):
            await store.save_event(make_event(session_id="../escape"))
        with pytest.raises(ValueError):
            await store.get_events("a/b")
        assert not (store.base_dir / "escape").exists()

    @pytest.mark.asyncio
    async def test_recent_events_across_sessions(self, store, make_event):
        await store.save_event(make_event(session_id="a", timestamp=1))
        await store.save_event(make_event(session_id="b", timestamp=3))
        await store.save_event(make_event(session_id="a", timestamp=2))
        await store.save_event(make_event(session_id="c", timestamp=4))

        recent = await store.get_all_recent_events(limit=3)

        assert [(e.session_id, e.timestamp) for e in recent] == [("c", 4), ("b", 3), ("a", 2)]


class TestSessions:
    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        meta = SessionMeta(id="sess-1", start_time=100, fields={"model": "opus"})
        await store.save_session(meta)

        assert await store.get_session("sess-1") == meta
        assert await store.get_session("sess-2") is None

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        await store.save_session(SessionMeta(id="sess-1", start_time=100, fields={"model": "opus"}))

        updated = await store.update_session("sess-1", {"status": "completed", "endTime": 500})

        assert updated.status == "completed"
        assert updated.end_time == 500
        assert updated.fields == {"model": "opus"}
        assert await store.get_session("sess-1") == updated

    @pytest.mark.asyncio
    async def test_update_cannot_change_id(self, store):
        await store.save_session(SessionMeta(id="sess-1"))
        updated = await store.update_session("sess-1", {"sessionId": "other"})
        assert updated.id == "sess-1"

    @pytest.mark.asyncio
    async def test_update_missing_session(self, store):
        with pytest.raises(NotFoundError, match="Session not found: ghost"):
            await store.update_session("ghost", {"status": "completed"})

    @pytest.mark.asyncio
    async def test_get_sessions_filters_and_sorts(self, store):
        await store.save_session(SessionMeta(id="old", start_time=100, status="completed"))
        await store.save_session(SessionMeta(id="mid", start_time=200))
        await store.save_session(SessionMeta(id="new", start_time=300))

        assert [m.id for m in await store.get_sessions()] == ["new", "mid", "old"]
        assert [m.id for m in await store.get_sessions(status="active")] == ["new", "mid"]
        assert [m.id for m in await store.get_sessions(limit=1)] == ["new"]

    @pytest.mark.asyncio
    async def test_unreadable_record_is_skipped(self, store):
        await store.save_session(SessionMeta(id="good", start_time=1))
        bad = store.sessions_dir / "bad"
        bad.mkdir()
        (bad / "meta.json").write_text("{broken", encoding="utf-8")

        assert [m.id for m in await store.get_sessions()] == ["good"]
        assert await store.get_session("bad") is None

    @pytest.mark.asyncio
    async def test_delete_session_removes_log(self, store, make_event):
        await store.save_session(SessionMeta(id="sess-1"))
        await store.save_event(make_event())

        await store.delete_session("sess-1")

        assert await store.get_session("sess-1") is None
        assert await store.get_events("sess-1") == []
        assert not (store.sessions_dir / "sess-1").exists()

    @pytest.mark.asyncio
    async def test_appends_stay_serialized_across_delete(self, store, make_event, monkeypatch):
        await store.save_event(make_event(session_id="s", timestamp=0))
        active = peak = 0
        guard = threading.Lock()
        append_line = file_store._append_line

        def slow_append(path, line):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.1)
            append_line(path, line)
            with guard:
                active -= 1

        monkeypatch.setattr(file_store, "_append_line", slow_append)
        first = make_event(session_id="s", timestamp=1)
        second = make_event(session_id="s", timestamp=2)

        delete = asyncio.create_task(store.delete_session("s"))
        await asyncio.sleep(0)
        queued = asyncio.create_task(store.save_event(first))
        await delete
        await store.save_event(second)
        await queued

        assert peak == 1
        lines = (store.sessions_dir / "s" / "events.jsonl").read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["id"] for line in lines] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_delete_missing_session(self, store):
        with pytest.raises(NotFoundError):
            await store.delete_session("ghost")

    @pytest.mark.asyncio
    async def test_delete_all_sessions(self, store, make_event):
        for sid in ("a", "b", "c"):
            await store.save_session(SessionMeta(id=sid))
        await store.save_event(make_event(session_id="d"))

        assert await store.delete_all_sessions() == 4
        assert await store.get_sessions() == []

    @pytest.mark.asyncio
    async def test_prune_uses_end_time_then_start_time(self, store):
        await store.save_session(SessionMeta(id="ended-early", start_time=10, end_time=50))
        await store.save_session(SessionMeta(id="ended-late", start_time=10, end_time=500))
        await store.save_session(SessionMeta(id="running-old", start_time=20))
        await store.save_session(SessionMeta(id="running-new", start_time=900))

        pruned = await store.prune_old_sessions(older_than=100)

        assert pruned == 2
        remaining = {m.id for m in await store.get_sessions()}
        assert remaining == {"ended-late", "running-new"}
