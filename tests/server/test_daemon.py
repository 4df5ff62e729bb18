"""Tests for MonitorDaemon wiring."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from vigil.config import DaemonConfig, PersistenceConfig, WrapperConfig
from vigil.core.errors import NotFoundError, PersistenceDisabledError, TransportUnavailableError
from vigil.core.types import WrapperState
from vigil.core.wrappers import WrapperSupervisor
from vigil.persistence import RawSpool
from vigil.server import DaemonEvent, DaemonEventType, MonitorDaemon

FAST = WrapperConfig(program="agent", idle_threshold=5.0, startup_delay=5.0, kill_timeout=0.1)


class FakeTransport:
    """Transport double: the test delivers messages directly."""

    mode = "local"

    def __init__(self, start_error: Exception | None = None) -> None:
        self.start_error = start_error
        self.handlers = []
        self.published = []
        self.running = False
        self.last_error = None

    def is_running(self) -> bool:
        return self.running

    def on_event(self, handler) -> None:
        if handler not in self.handlers:
            self.handlers.append(handler)

    def off_event(self, handler) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    async def start(self) -> None:
        if self.start_error is not None:
            self.last_error = str(self.start_error)
            raise self.start_error
        self.running = True

    async def stop(self) -> None:
        self.running = False

    async def publish(self, message) -> None:
        self.published.append(message)

    def deliver(self, message: dict) -> None:
        for handler in list(self.handlers):
            handler(message)


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[DaemonEvent] = []

    async def emit(self, event: DaemonEvent) -> None:
        self.events.append(event)

    def of(self, event_type: DaemonEventType) -> list[DaemonEvent]:
        return [e for e in self.events if e.type is event_type]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return RecordingSink()


def _build(tmp_path, transport, fake_backends, **config_kwargs) -> MonitorDaemon:
    config = DaemonConfig(base_dir=tmp_path / "monitor", wrapper=FAST, **config_kwargs)
    supervisor = WrapperSupervisor(
        config.paths.wrappers_file,
        config=config.wrapper,
        backend_factory=fake_backends,
        resolve_executable=lambda program: program,
    )
    return MonitorDaemon(config, transport=transport, supervisor=supervisor)


@pytest_asyncio.fixture
async def daemon(tmp_path, transport, fake_backends, sink):
    d = _build(tmp_path, transport, fake_backends)
    d.subscribe(sink)
    await d.start()
    yield d
    await d.stop()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path, transport, fake_backends):
        daemon = _build(tmp_path, transport, fake_backends)

        async with daemon:
            assert daemon.is_running
            assert transport.running
            assert transport.handlers
            assert (tmp_path / "monitor" / "sessions").is_dir()

        assert not daemon.is_running
        assert not transport.running
        assert transport.handlers == []

    @pytest.mark.asyncio
    async def test_unavailable_transport_is_not_fatal(self, tmp_path, fake_backends):
        transport = FakeTransport(TransportUnavailableError("redis not installed"))
        daemon = _build(tmp_path, transport, fake_backends)

        await daemon.start()
        try:
            status = daemon.status()
            assert status["running"] is True
            assert status["transport"] == {"running": False, "lastError": "redis not installed"}
        finally:
            await daemon.stop()

    @pytest.mark.asyncio
    async def test_bind_failure_is_fatal(self, tmp_path, fake_backends):
        transport = FakeTransport(OSError("address in use"))
        daemon = _build(tmp_path, transport, fake_backends)

        with pytest.raises(OSError, match="address in use"):
            await daemon.start()
        assert not daemon.is_running

    @pytest.mark.asyncio
    async def test_spool_replayed_on_start(self, tmp_path, transport, fake_backends, make_event):
        daemon = _build(tmp_path, transport, fake_backends)
        event = make_event(session_id="offline")
        RawSpool(daemon.config.paths.raw_dir, daemon.config.paths.processed_dir).write(event)

        async with daemon:
            assert await daemon.get_events("offline") == [event]
            assert (await daemon.get_session("offline")).status == "active"

    @pytest.mark.asyncio
    async def test_spool_followed_while_running(self, daemon, sink, make_event, wait_until):
        event = make_event(session_id="hooked")
        spool = RawSpool(daemon.config.paths.raw_dir, daemon.config.paths.processed_dir)
        assert daemon.status()["spool"]["watching"] is True

        spool.write(event)

        await wait_until(lambda: sink.of(DaemonEventType.EVENT), timeout=5.0)
        await wait_until(lambda: spool.pending() == [], timeout=5.0)
        assert await daemon.get_events("hooked") == [event]

    @pytest.mark.asyncio
    async def test_spooled_copy_not_stored_twice_across_restart(
        self, tmp_path, transport, fake_backends, make_event, wait_until
    ):
        event = make_event(session_id="twice", payload={"tokenUsage": {"input": 7, "output": 3}})
        first = _build(tmp_path, transport, fake_backends, watch_raw=False)
        spool = RawSpool(first.config.paths.raw_dir, first.config.paths.processed_dir)

        async with first:
            spool.write(event)
            transport.deliver(event.to_dict())
            await wait_until(lambda: first.processor.get("twice") is not None)
        assert spool.pending() != []

        second = _build(tmp_path, FakeTransport(), fake_backends)
        async with second:
            assert await second.get_event_count("twice") == 1
            meta = await second.get_session("twice")
            assert meta.fields["tokenUsage"] == {"totalInput": 7, "totalOutput": 3}
        assert spool.pending() == []

    @pytest.mark.asyncio
    async def test_status_report(self, daemon):
        status = daemon.status()

        assert status["mode"] == "local"
        assert status["persistence"]["enabled"] is True
        assert status["persistence"]["baseDir"].endswith("monitor")
        assert status["wrappers"] == {"live": 0, "orphans": []}
        assert status["sessions"] == 0
        assert status["config"]["wrapper"]["program"] == "agent"


class TestInbound:
    @pytest.mark.asyncio
    async def test_event_recorded_and_announced(self, daemon, transport, sink, make_event, wait_until):
        event = make_event(timestamp=1000)

        transport.deliver(event.to_dict())

        await wait_until(lambda: sink.of(DaemonEventType.EVENT))
        notice = sink.of(DaemonEventType.EVENT)[0]
        assert notice.session_id == "sess-1"
        assert notice.data["id"] == event.id
        assert sink.of(DaemonEventType.SESSION_UPDATED)[0].session_id == "sess-1"
        assert await daemon.get_events("sess-1") == [event]
        assert await daemon.get_event("sess-1", event.id) == event
        assert await daemon.get_event_count("sess-1") == 1

    @pytest.mark.asyncio
    async def test_events_kept_in_arrival_order(self, daemon, transport, sink, make_event, wait_until):
        events = [make_event(timestamp=5000) for _ in range(20)]

        for event in events:
            transport.deliver(event.to_dict())

        await wait_until(lambda: len(sink.of(DaemonEventType.EVENT)) == 20)
        stored = await daemon.get_events("sess-1")
        assert [e.id for e in stored] == [e.id for e in events]

    @pytest.mark.asyncio
    async def test_duplicate_delivery_recorded_once(self, daemon, transport, sink, make_event, wait_until):
        event = make_event()

        transport.deliver(event.to_dict())
        transport.deliver(event.to_dict())

        await wait_until(lambda: sink.of(DaemonEventType.EVENT))
        await asyncio.sleep(0.05)
        assert len(sink.of(DaemonEventType.EVENT)) == 1
        assert await daemon.get_event_count("sess-1") == 1

    @pytest.mark.asyncio
    async def test_malformed_messages_dropped(self, daemon, transport, sink, make_event, wait_until):
        transport.deliver({"eventType": "tool_call"})
        transport.deliver(make_event(session_id="../escape").to_dict())
        good = make_event()
        transport.deliver(good.to_dict())

        await wait_until(lambda: sink.of(DaemonEventType.EVENT))
        assert [n.data["id"] for n in sink.of(DaemonEventType.EVENT)] == [good.id]

    @pytest.mark.asyncio
    async def test_recent_events(self, daemon, transport, sink, make_event, wait_until):
        transport.deliver(make_event(session_id="a", timestamp=1).to_dict())
        transport.deliver(make_event(session_id="b", timestamp=2).to_dict())

        await wait_until(lambda: len(sink.of(DaemonEventType.EVENT)) == 2)
        recent = await daemon.get_recent_events(limit=10)
        assert [e.session_id for e in recent] == ["b", "a"]


class TestWrapperRouting:
    @pytest.mark.asyncio
    async def test_stop_hook_matches_by_cwd(self, daemon, transport, sink, make_event, tmp_path, wait_until):
        wrapper_id = await daemon.spawn_wrapper(cwd=str(tmp_path))

        transport.deliver(
            make_event(session_id="sess-9", hookType="Stop", workingDirectory=str(tmp_path)).to_dict()
        )
        await wait_until(lambda: sink.of(DaemonEventType.EVENT))

        wrapper = daemon.get_wrapper(wrapper_id)
        assert wrapper.state is WrapperState.WAITING_INPUT
        assert wrapper.correlation_id == "sess-9"

        transport.deliver(make_event(session_id="sess-9", hookType="UserPromptSubmit").to_dict())
        await wait_until(lambda: len(sink.of(DaemonEventType.EVENT)) == 2)
        assert daemon.get_wrapper(wrapper_id).state is WrapperState.PROCESSING

    @pytest.mark.asyncio
    async def test_explicit_wrapper_id_wins(self, daemon, transport, sink, make_event, tmp_path, wait_until):
        other = tmp_path / "other"
        other.mkdir()
        decoy = await daemon.spawn_wrapper(cwd=str(tmp_path))
        target = await daemon.spawn_wrapper(cwd=str(other))

        transport.deliver(
            make_event(
                hookType="Notification", wrapperId=target, workingDirectory=str(tmp_path)
            ).to_dict()
        )
        await wait_until(lambda: sink.of(DaemonEventType.EVENT))

        assert daemon.get_wrapper(target).state is WrapperState.WAITING_INPUT
        assert daemon.get_wrapper(decoy).state is WrapperState.STARTING
        assert sink.of(DaemonEventType.EVENT)[0].wrapper_id == target

    @pytest.mark.asyncio
    async def test_unmatched_hook_is_still_recorded(self, daemon, transport, sink, make_event, wait_until):
        transport.deliver(make_event(hookType="Stop", workingDirectory="/nowhere").to_dict())
        await wait_until(lambda: sink.of(DaemonEventType.EVENT))
        assert await daemon.get_event_count("sess-1") == 1

    @pytest.mark.asyncio
    async def test_state_changed_message(self, daemon, transport, tmp_path, wait_until):
        wrapper_id = await daemon.spawn_wrapper(cwd=str(tmp_path))

        transport.deliver(
            {"type": "state_changed", "wrapperId": wrapper_id, "state": "waiting_input", "correlationId": "s7"}
        )

        await wait_until(lambda: daemon.get_wrapper(wrapper_id).state is WrapperState.WAITING_INPUT)
        assert daemon.get_wrapper(wrapper_id).correlation_id == "s7"

    @pytest.mark.asyncio
    async def test_state_changed_unknown_state_ignored(self, daemon, transport, tmp_path):
        wrapper_id = await daemon.spawn_wrapper(cwd=str(tmp_path))

        transport.deliver({"type": "state_changed", "wrapperId": wrapper_id, "state": "dozing"})
        transport.deliver({"type": "state_changed", "wrapperId": "missing", "state": "processing"})
        await asyncio.sleep(0.05)

        assert daemon.get_wrapper(wrapper_id).state is WrapperState.STARTING

    @pytest.mark.asyncio
    async def test_wrapper_notices(self, daemon, sink, fake_backends, tmp_path, wait_until):
        wrapper_id = await daemon.spawn_wrapper(cwd=str(tmp_path))
        fake_backends.last.emit("hello")
        await daemon.resize_wrapper(wrapper_id, 90, 30)
        assert await daemon.write_wrapper_input(wrapper_id, "x") is True
        assert await daemon.update_wrapper_state(wrapper_id, "processing") is True
        assert [w.wrapper_id for w in daemon.list_wrappers()] == [wrapper_id]

        await daemon.kill_wrapper(wrapper_id)

        await wait_until(lambda: sink.of(DaemonEventType.WRAPPER_ENDED))
        assert sink.of(DaemonEventType.WRAPPER_STARTED)[0].wrapper_id == wrapper_id
        assert sink.of(DaemonEventType.WRAPPER_OUTPUT)[0].data["data"] == "hello"
        assert sink.of(DaemonEventType.WRAPPER_STATE)
        assert daemon.list_wrappers() == []


class TestSessions:
    @pytest.mark.asyncio
    async def test_update_session(self, daemon, transport, sink, make_event, wait_until):
        transport.deliver(make_event().to_dict())
        await wait_until(lambda: sink.of(DaemonEventType.EVENT))

        meta = await daemon.update_session("sess-1", {"title": "refactor"})

        assert meta.fields["title"] == "refactor"
        assert daemon.processor.get("sess-1").fields["title"] == "refactor"
        assert sink.of(DaemonEventType.SESSION_UPDATED)[-1].data["title"] == "refactor"

    @pytest.mark.asyncio
    async def test_missing_session_errors(self, daemon):
        with pytest.raises(NotFoundError):
            await daemon.update_session("ghost", {})
        with pytest.raises(NotFoundError):
            await daemon.delete_session("ghost")
        assert await daemon.get_session("ghost") is None

    @pytest.mark.asyncio
    async def test_delete_and_prune(self, daemon, transport, sink, make_event, wait_until):
        transport.deliver(make_event(session_id="old", timestamp=100).to_dict())
        transport.deliver(make_event(session_id="new", timestamp=10_000).to_dict())
        transport.deliver(make_event(session_id="gone", timestamp=10_000).to_dict())
        await wait_until(lambda: len(sink.of(DaemonEventType.EVENT)) == 3)

        await daemon.delete_session("gone")
        assert daemon.processor.get("gone") is None

        assert await daemon.prune_old_sessions(older_than=1000) == 1
        assert [m.id for m in await daemon.get_sessions()] == ["new"]
        assert daemon.status()["sessions"] == 1

        assert await daemon.delete_all_sessions() == 1
        assert daemon.status()["sessions"] == 0

    @pytest.mark.asyncio
    async def test_persistence_disabled(self, tmp_path, transport, fake_backends, make_event, wait_until):
        daemon = _build(
            tmp_path, transport, fake_backends, persistence=PersistenceConfig(enabled=False)
        )
        sink = RecordingSink()
        daemon.subscribe(sink)

        async with daemon:
            transport.deliver(make_event().to_dict())
            await wait_until(lambda: sink.of(DaemonEventType.EVENT))

            assert daemon.store is None
            assert daemon.processor.session_count == 1
            with pytest.raises(PersistenceDisabledError):
                await daemon.get_sessions()
            with pytest.raises(PersistenceDisabledError):
                await daemon.get_events("sess-1")

        assert not (tmp_path / "monitor" / "sessions").exists()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, daemon, transport, sink, make_event):
        daemon.unsubscribe(sink)
        transport.deliver(make_event().to_dict())
        await asyncio.sleep(0.05)
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_publish_goes_through_transport(self, daemon, transport, make_event):
        event = make_event()
        await daemon.publish(event)
        assert transport.published == [event.to_dict()]
