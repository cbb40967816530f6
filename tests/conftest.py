from __future__ import annotations

import json
from typing import List, Optional, Tuple

import pytest
from starlette.websockets import WebSocketState

from gridcast.runtime.grid_adapter import GridEngine
from gridcast.sync.compression import CompressionError, FrameCompressor
from gridcast.sync.frames import GridLayout
from gridcast.sync.sessions import Session


class FakeConnection:
    """Records whatever a session pushes through it."""

    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: List[object] = []
        self.closed: Optional[Tuple[int, Optional[str]]] = None

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = (code, reason)
        self.client_state = WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.DISCONNECTED

    def drop(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED


class ScriptedEngine(GridEngine):
    """Engine whose buffer only changes when a test says so."""

    def __init__(self, width: int, height: int, *, cell_bytes: int = 4) -> None:
        super().__init__(GridLayout(width=width, height=height, cell_bytes=cell_bytes))
        self.buffer = bytearray(self.layout.frame_size)
        self.steps = 0
        self.snapshots = 0
        self.resets = 0
        self.paints: List[Tuple[int, int, int, int]] = []
        self.fail_step = False
        self.snapshot_size: Optional[int] = None

    def step(self) -> None:
        if self.fail_step:
            raise RuntimeError("simulation crashed")
        self.steps += 1

    def snapshot(self) -> bytes:
        self.snapshots += 1
        if self.snapshot_size is not None:
            return bytes(self.snapshot_size)
        return bytes(self.buffer)

    def paint(self, x: int, y: int, size: int, species: int) -> None:
        self.paints.append((x, y, size, species))

    def reset(self) -> None:
        self.resets += 1
        self.buffer = bytearray(self.layout.frame_size)

    def set_cell(self, x: int, y: int, value: bytes) -> None:
        offset = self.layout.offset_of(x, y)
        self.buffer[offset : offset + len(value)] = value


class CountingCompressor(FrameCompressor):
    def __init__(self) -> None:
        super().__init__(level=1)
        self.calls = 0
        self.fail = False

    async def compress(self, payload: bytes) -> bytes:
        self.calls += 1
        if self.fail:
            raise CompressionError("compressor offline")
        return await super().compress(payload)


def drain(session: Session) -> List[object]:
    """Pop everything queued for ``session`` without sending it."""

    items = []
    while not session.send_queue.empty():
        items.append(session.send_queue.get_nowait().payload)
    return items


def json_messages(items) -> List[dict]:
    return [json.loads(item) for item in items if isinstance(item, str)]


@pytest.fixture
def layout() -> GridLayout:
    return GridLayout(width=4, height=4, cell_bytes=4)
