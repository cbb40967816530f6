"""
Viewer-side reconstruction of the grid from wire messages.
"""

from __future__ import annotations

from typing import Optional

from .sync.codec import DecodedMessage, Delta, EncodingError, Keyframe, decode_message
from .sync.compression import decompress
from .sync.frames import GridLayout


class GridReplica:
    """
    Apply compressed keyframe/delta messages to a local copy of the grid.

    A delta is meaningless without a baseline, so one arriving before the
    first keyframe raises :class:`EncodingError`.
    """

    def __init__(self, layout: GridLayout) -> None:
        self.layout = layout
        self._buffer: Optional[bytes] = None
        self.keyframes = 0
        self.deltas = 0

    @property
    def synced(self) -> bool:
        return self._buffer is not None

    @property
    def buffer(self) -> bytes:
        if self._buffer is None:
            raise EncodingError("replica has not received a keyframe yet")
        return self._buffer

    def apply(self, payload: bytes, *, compressed: bool = True) -> DecodedMessage:
        raw = decompress(payload) if compressed else payload
        message = decode_message(raw, self.layout)
        if isinstance(message, Keyframe):
            self._buffer = message.data
            self.keyframes += 1
        elif isinstance(message, Delta):
            self._buffer = message.changes.apply_to(self.buffer)
            self.deltas += 1
        return message

    def cell(self, x: int, y: int) -> bytes:
        offset = self.layout.offset_of(x, y)
        return self.buffer[offset : offset + self.layout.cell_bytes]
