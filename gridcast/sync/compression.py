"""
Off-loop compression of encoded grid messages.

zlib releases the GIL while it deflates, so running it in a worker thread
keeps the event loop free to accept connections and handle control messages
while a tick's payloads are being compressed.
"""

from __future__ import annotations

import asyncio
import zlib
from typing import List, Optional, Tuple

from .. import GridcastError

DEFAULT_LEVEL = 1


class CompressionError(GridcastError):
    """Raised when the codec fails to compress a payload."""


def _deflate(payload: bytes, level: int) -> bytes:
    try:
        return zlib.compress(payload, level)
    except (zlib.error, TypeError, ValueError) as exc:
        raise CompressionError(f"zlib compression failed: {exc}") from exc


def decompress(payload: bytes) -> bytes:
    try:
        return zlib.decompress(payload)
    except zlib.error as exc:
        raise CompressionError(f"zlib decompression failed: {exc}") from exc


class FrameCompressor:
    """
    Compress encoded messages in a worker thread.
    """

    def __init__(self, level: int = DEFAULT_LEVEL) -> None:
        self.level = int(level)

    async def compress(self, payload: bytes) -> bytes:
        return await asyncio.to_thread(_deflate, payload, self.level)

    async def compress_many(self, *payloads: Optional[bytes]) -> Tuple[Optional[bytes], ...]:
        """
        Compress every non-``None`` payload concurrently, preserving positions.
        """

        pending = [(index, payload) for index, payload in enumerate(payloads) if payload is not None]
        results: List[Optional[bytes]] = [None] * len(payloads)
        if not pending:
            return tuple(results)
        compressed = await asyncio.gather(*(self.compress(payload) for _, payload in pending))
        for (index, _), data in zip(pending, compressed):
            results[index] = data
        return tuple(results)
