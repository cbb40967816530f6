"""
FastAPI application exposing the grid broadcast over a WebSocket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Union

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from ..config import GridConfig
from ..runtime.drawing import apply_draw_command
from ..runtime.grid_adapter import GridEngine
from ..runtime.sandbox import SandboxEngine
from ..sync.compression import FrameCompressor
from ..sync.keepalive import KeepAliveMonitor
from ..sync.scheduler import BroadcastScheduler
from ..sync.sessions import Session, SessionRegistry
from ..sync.stats import BandwidthMeter
from . import schemas

LOG = logging.getLogger(__name__)


class SyncManager:
    """Own the engine, the session registry and the background loops."""

    def __init__(self, config: GridConfig, engine: GridEngine) -> None:
        self.config = config
        self.engine = engine
        self.registry = SessionRegistry(engine.layout)
        self.meter = BandwidthMeter(window=config.stats_interval or 5.0)
        self.scheduler = BroadcastScheduler(
            engine,
            self.registry,
            compressor=FrameCompressor(level=config.compression_level),
            tick_interval=config.tick_interval,
            meter=self.meter,
            stats_interval=config.stats_interval,
        )
        self.keepalive = KeepAliveMonitor(self.registry, interval=config.keepalive_interval)

    async def start(self) -> None:
        await self.scheduler.start()
        await self.keepalive.start()

    async def stop(self) -> None:
        await self.keepalive.stop()
        await self.scheduler.stop()
        for session in self.registry.snapshot():
            self.registry.remove(session)
            await session.close(code=1001, reason="server shutting down")

    # ------------------------------------------------------------------ sessions

    async def run(self, websocket: WebSocket) -> None:
        try:
            await websocket.accept()
        except Exception:  # pragma: no cover
            LOG.exception("Failed to accept WebSocket connection")
            return

        session = Session(websocket, queue_size=self.config.queue_size, peer=_peer_of(websocket))
        self.registry.register(session)
        recv_task = asyncio.create_task(self._recv_loop(session))
        send_task = asyncio.create_task(session.pump())
        try:
            await session.wait_stopped()
        finally:
            # Deregister first; the awaits below may be cancelled.
            self.registry.remove(session)
            for task in (recv_task, send_task):
                task.cancel()
            await asyncio.gather(recv_task, send_task, return_exceptions=True)
            await session.close(code=1000)

    async def _recv_loop(self, session: Session) -> None:
        websocket = session.connection
        try:
            while not session.is_stopped:
                try:
                    message = await websocket.receive()  # type: ignore[attr-defined]
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError):
                    break
                if message.get("type") == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    # Viewers have nothing to say in binary.
                    continue
                try:
                    self.handle_text(session, text)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    session.logger.exception("Unhandled error while processing message")
        finally:
            session.stop()

    def handle_text(self, session: Session, text: str) -> None:
        if text.strip() == "ping":
            session.offer("pong")
            return
        try:
            payload = json.loads(text)
        except ValueError:
            session.logger.debug("Ignoring non-JSON text frame")
            return
        if not isinstance(payload, dict):
            return
        try:
            message = schemas.ControlMessage.model_validate(payload)
        except ValidationError:
            session.logger.debug("Ignoring malformed control message")
            return
        self.handle_message(session, message)

    def handle_message(self, session: Session, message: schemas.ControlMessage) -> None:
        message_type = message.type

        if message_type == "ready":
            self.registry.mark_ready(session)
            return

        if message_type == "reset":
            try:
                self.engine.reset()
            except Exception:
                session.logger.exception("Engine reset failed")
            self.registry.mark_needs_keyframe(session)
            return

        if message_type == "resync":
            self.registry.mark_needs_keyframe(session)
            return

        if message_type == "pong":
            self.keepalive.acknowledge(session)
            return

        if message_type == "ping":
            session.offer_json({"type": "pong", "ts": time.time()})
            return

        session.logger.debug("Unknown control message type %r", message_type)

    # ------------------------------------------------------------------ feeds

    def apply_draw_command(self, memo: Union[str, bytes, Mapping[str, Any]], *, source: str = "") -> int:
        return apply_draw_command(self.engine, memo, source=source)

    # ------------------------------------------------------------------ views

    def health(self) -> schemas.HealthModel:
        layout = self.engine.layout
        return schemas.HealthModel(
            profile=self.config.profile,
            width=layout.width,
            height=layout.height,
            tickHz=self.config.tick_hz,
            sessions=len(self.registry),
            schedulerRunning=self.scheduler.running,
        )

    def stats(self) -> schemas.StatsModel:
        return schemas.StatsModel(
            tick=self.scheduler.tick_count,
            sessions=len(self.registry),
            readySessions=len(self.registry.ready_sessions()),
            skippedTicks=self.scheduler.skipped_ticks,
            bandwidth=schemas.BandwidthModel(**self.meter.snapshot().to_dict()),
        )


def _peer_of(websocket: WebSocket) -> str:
    forwarded = websocket.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if websocket.client is not None:
        return websocket.client.host
    return ""


def create_app(
    *,
    config: Optional[GridConfig] = None,
    engine: Optional[GridEngine] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    config = config or GridConfig()
    if engine is None:
        engine = SandboxEngine(config.width, config.height, cell_bytes=config.cell_bytes)
    manager = SyncManager(config, engine)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await manager.start()
        try:
            if lifespan is not None:
                async with lifespan(app):  # type: ignore[attr-defined]
                    yield
            else:
                yield
        finally:
            await manager.stop()

    app = FastAPI(title="Gridcast", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.manager = manager

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await manager.run(websocket)

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        return manager.health()

    @app.get("/stats", response_model=schemas.StatsModel)
    async def stats() -> schemas.StatsModel:
        return manager.stats()

    return app
