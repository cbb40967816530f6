from __future__ import annotations

import asyncio
import json
import zlib

import pytest
from fastapi.testclient import TestClient
from conftest import FakeConnection, ScriptedEngine, drain, json_messages

from gridcast.api.server import SyncManager, create_app
from gridcast.config import GridConfig
from gridcast.runtime.sandbox import SandboxEngine
from gridcast.sync.codec import MessageTag
from gridcast.sync.sessions import Session


@pytest.fixture
def config() -> GridConfig:
    return GridConfig(width=8, height=8, tick_hz=50.0, keepalive_interval=0, profile="test")


def test_healthz_and_stats(config) -> None:
    app = create_app(config=config)
    with TestClient(app) as client:
        health = client.get("/healthz").json()
        stats = client.get("/stats").json()

    assert health["status"] == "ok"
    assert (health["width"], health["height"]) == (8, 8)
    assert health["profile"] == "test"
    assert health["sessions"] == 0
    assert health["schedulerRunning"] is True
    assert stats["sessions"] == 0
    assert stats["bandwidth"]["totalBytes"] == 0


def test_literal_and_json_ping(config) -> None:
    app = create_app(config=config)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("ping")
            assert websocket.receive_text() == "pong"

            websocket.send_text(json.dumps({"type": "PING"}))
            assert json.loads(websocket.receive_text())["type"] == "pong"


def test_ready_receives_config_then_keyframe(config) -> None:
    app = create_app(config=config)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text(json.dumps({"type": "ready"}))
            message = json.loads(websocket.receive_text())
            keyframe = zlib.decompress(websocket.receive_bytes())

        stats = client.get("/stats").json()

    assert message == {"type": "config", "width": 8, "height": 8, "cellBytes": 4}
    assert keyframe[0] == MessageTag.KEYFRAME
    assert len(keyframe) == 1 + 8 * 8 * 4
    assert stats["bandwidth"]["messages"] >= 1


def test_draw_commands_reach_the_engine(config) -> None:
    app = create_app(config=config, engine=SandboxEngine(8, 8, seeded=False))
    manager = app.state.manager
    memo = {"app": "falling-sands", "type": "draw", "s": [[1, 1, 6, 1, 2, 1]]}

    assert manager.apply_draw_command(memo, source="test") == 1

    cells = manager.engine.snapshot()
    assert cells[manager.engine.layout.offset_of(3, 1)] == 1


def test_control_messages_drive_the_session() -> None:
    async def scenario():
        engine = ScriptedEngine(4, 4, cell_bytes=1)
        manager = SyncManager(GridConfig(width=4, height=4, cell_bytes=1, keepalive_interval=0), engine)
        session = Session(FakeConnection())
        manager.registry.register(session)

        manager.handle_text(session, '{"type": "ready"}')
        assert session.is_ready and session.take_keyframe_request()

        manager.handle_text(session, '{"type": "reset"}')
        assert engine.resets == 1
        assert session.take_keyframe_request()

        manager.handle_text(session, '{"type": "resync"}')
        assert session.take_keyframe_request()

        session.pending_pong = True
        manager.handle_text(session, '{"type": "pong"}')
        assert not session.pending_pong

        manager.handle_text(session, "[1, 2]")
        manager.handle_text(session, "garbage")
        manager.handle_text(session, '{"type": "unknown"}')
        return drain(session)

    queued = asyncio.run(scenario())

    assert json_messages(queued) == [{"type": "config", "width": 4, "height": 4, "cellBytes": 1}]


def test_shutdown_closes_every_session_despite_transport_errors() -> None:
    class UnclosableConnection(FakeConnection):
        async def close(self, code: int = 1000, reason=None) -> None:
            self.closed = (code, reason)
            raise LookupError("transport gone")

    async def scenario():
        engine = ScriptedEngine(4, 4, cell_bytes=1)
        manager = SyncManager(GridConfig(width=4, height=4, cell_bytes=1, keepalive_interval=0), engine)
        connections = [UnclosableConnection(), FakeConnection(), UnclosableConnection()]
        for connection in connections:
            manager.registry.register(Session(connection))
        await manager.stop()
        return manager, connections

    manager, connections = asyncio.run(scenario())

    assert len(manager.registry) == 0
    assert [connection.closed for connection in connections] == [(1001, "server shutting down")] * 3
