from __future__ import annotations

import asyncio
import json
import zlib

import pytest
from conftest import CountingCompressor, FakeConnection, ScriptedEngine, drain

from gridcast.runtime.grid_adapter import GridEngineError
from gridcast.sync import codec
from gridcast.sync.codec import Delta, Keyframe, MessageTag, decode_message
from gridcast.sync.frames import CellChange
from gridcast.sync.scheduler import BroadcastScheduler
from gridcast.sync.sessions import Session, SessionRegistry


def _setup(width=4, height=4, cell_bytes=4, *, compressor=None):
    engine = ScriptedEngine(width, height, cell_bytes=cell_bytes)
    registry = SessionRegistry(engine.layout)
    scheduler = BroadcastScheduler(
        engine, registry, compressor=compressor or CountingCompressor(), stats_interval=0
    )
    return engine, registry, scheduler


def _join(registry: SessionRegistry, **kwargs) -> Session:
    session = Session(FakeConnection(), **kwargs)
    registry.register(session)
    assert registry.mark_ready(session)
    return session


def _binary(items):
    return [zlib.decompress(item) for item in items if isinstance(item, bytes)]


def test_end_to_end_small_grid() -> None:
    async def scenario():
        engine, registry, scheduler = _setup(cell_bytes=1)
        session = _join(registry)
        await scheduler.tick()
        engine.set_cell(2, 2, b"\x05")
        await scheduler.tick()
        return engine.layout, drain(session)

    layout, queued = asyncio.run(scenario())
    config, keyframe, delta = queued

    assert json.loads(config) == {"type": "config", "width": 4, "height": 4, "cellBytes": 1}
    keyframe = zlib.decompress(keyframe)
    assert len(keyframe) == 17
    assert keyframe[0] == MessageTag.KEYFRAME
    message = decode_message(zlib.decompress(delta), layout)
    assert isinstance(message, Delta)
    assert list(message.changes) == [CellChange(10, b"\x05")]


def test_idle_ticks_do_no_encoding_or_compression(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(codec, "encode_delta", lambda *args: calls.append("delta"))
    monkeypatch.setattr(codec, "encode_keyframe", lambda *args: calls.append("keyframe"))

    async def scenario():
        engine, registry, scheduler = _setup()
        for _ in range(5):
            engine.set_cell(0, 0, bytes([scheduler.tick_count + 1, 0, 0, 0]))
            assert await scheduler.tick() == 0
        return engine, scheduler

    engine, scheduler = asyncio.run(scenario())

    assert calls == []
    assert scheduler.compressor.calls == 0
    assert engine.steps == 5
    assert engine.snapshots == 0
    assert scheduler.previous_frame is None


def test_keyframe_flag_is_edge_triggered() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        session = _join(registry)
        drain(session)
        tags = []
        for tick in range(4):
            engine.set_cell(tick, 0, bytes([tick + 1, 0, 0, 0]))
            await scheduler.tick()
            tags.append([message[0] for message in _binary(drain(session))])
        registry.mark_needs_keyframe(session)
        await scheduler.tick()
        tags.append([message[0] for message in _binary(drain(session))])
        return tags

    tags = asyncio.run(scenario())

    assert tags == [[1], [2], [2], [2], [1]]


def test_unchanged_tick_sends_nothing() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        session = _join(registry)
        await scheduler.tick()
        drain(session)
        sent = await scheduler.tick()
        return sent, drain(session), scheduler.compressor.calls

    sent, queued, compress_calls = asyncio.run(scenario())

    assert sent == 0
    assert queued == []
    assert compress_calls == 1


def test_late_joiner_gets_keyframe_others_get_nothing_on_quiet_tick() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        early = _join(registry)
        await scheduler.tick()
        drain(early)

        late = _join(registry)
        drain(late)
        await scheduler.tick()
        return drain(early), _binary(drain(late))

    early_queue, late_messages = asyncio.run(scenario())

    assert early_queue == []
    assert [message[0] for message in late_messages] == [MessageTag.KEYFRAME]


def test_large_change_falls_back_to_keyframe() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        session = _join(registry)
        await scheduler.tick()
        drain(session)
        for x in range(4):
            for y in range(3):
                engine.set_cell(x, y, b"\x02\x01\x00\x00")
        await scheduler.tick()
        return engine, _binary(drain(session))

    engine, messages = asyncio.run(scenario())

    assert len(messages) == 1
    decoded = decode_message(messages[0], engine.layout)
    assert isinstance(decoded, Keyframe)
    assert decoded.data == bytes(engine.buffer)


def test_compression_failure_reflags_sessions() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        session = _join(registry)
        drain(session)

        scheduler.compressor.fail = True
        assert await scheduler.tick() == 0
        assert session.needs_full_frame
        assert scheduler.skipped_ticks == 1
        assert drain(session) == []

        scheduler.compressor.fail = False
        await scheduler.tick()
        return _binary(drain(session))

    messages = asyncio.run(scenario())

    assert [message[0] for message in messages] == [MessageTag.KEYFRAME]


def test_encoding_failure_skips_tick_and_reflags(monkeypatch) -> None:
    def broken(*args):
        raise codec.EncodingError("boom")

    async def scenario():
        engine, registry, scheduler = _setup()
        session = _join(registry)
        monkeypatch.setattr(codec, "encode_keyframe", broken)
        assert await scheduler.tick() == 0
        return session, scheduler

    session, scheduler = asyncio.run(scenario())

    assert session.needs_full_frame
    assert scheduler.skipped_ticks == 1
    assert scheduler.compressor.calls == 0


def test_session_closed_mid_tick_is_skipped() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        staying = _join(registry)
        leaving = _join(registry)
        drain(staying)
        drain(leaving)

        plan = scheduler.prepare()
        leaving.connection.drop()
        await scheduler.deliver(plan)
        return drain(staying), drain(leaving)

    staying_queue, leaving_queue = asyncio.run(scenario())

    assert len(staying_queue) == 1
    assert leaving_queue == []


def test_session_removed_mid_tick_is_skipped() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        session = _join(registry)
        drain(session)
        plan = scheduler.prepare()
        registry.remove(session)
        sent = await scheduler.deliver(plan)
        return sent, drain(session)

    sent, queued = asyncio.run(scenario())

    assert sent == 0
    assert queued == []


def test_full_queue_drops_message_and_requests_keyframe() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        slow = _join(registry, queue_size=1)
        fast = _join(registry)
        drain(fast)
        # The config message still occupies the slow viewer's only slot.
        await scheduler.tick()
        return slow, drain(fast)

    slow, fast_queue = asyncio.run(scenario())

    assert slow.needs_full_frame
    assert len(fast_queue) == 1


def test_bandwidth_meter_counts_delivered_bytes() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        first = _join(registry)
        second = _join(registry)
        sent = await scheduler.tick()
        return sent, scheduler.meter.snapshot()

    sent, snapshot = asyncio.run(scenario())

    assert sent > 0
    assert snapshot.messages == 2
    assert snapshot.total_bytes == sent


def test_engine_fault_during_tick() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        engine.fail_step = True
        with pytest.raises(GridEngineError):
            await scheduler.tick()

    asyncio.run(scenario())


def test_engine_fault_stops_the_loop() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        scheduler.tick_interval = 0.001
        engine.fail_step = True
        await scheduler.start()
        for _ in range(100):
            if not scheduler.running:
                break
            await asyncio.sleep(0.01)
        running = scheduler.running
        await scheduler.stop()
        return running

    assert asyncio.run(scenario()) is False


def test_start_fails_on_bad_snapshot() -> None:
    async def scenario():
        engine, registry, scheduler = _setup()
        engine.snapshot_size = 3
        with pytest.raises(GridEngineError):
            await scheduler.start()
        assert not scheduler.running

    asyncio.run(scenario())


def test_layout_mismatch_is_rejected() -> None:
    engine = ScriptedEngine(4, 4)
    with pytest.raises(ValueError):
        BroadcastScheduler(engine, SessionRegistry(ScriptedEngine(2, 2).layout))


def test_unexpected_compression_error_reflags_sessions() -> None:
    class ShutdownCompressor(CountingCompressor):
        async def compress(self, payload: bytes) -> bytes:
            raise RuntimeError("cannot schedule new futures after shutdown")

    async def scenario():
        engine, registry, scheduler = _setup(compressor=ShutdownCompressor())
        session = _join(registry)
        drain(session)
        sent = await scheduler.tick()
        return sent, session, scheduler

    sent, session, scheduler = asyncio.run(scenario())

    assert sent == 0
    assert session.needs_full_frame
    assert scheduler.skipped_ticks == 1
    assert drain(session) == []
