"""
Rolling outbound bandwidth accounting.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Tuple

MonotonicCallable = Callable[[], float]


@dataclass(frozen=True, slots=True)
class BandwidthSnapshot:
    bytes_per_second: float
    window_bytes: int
    total_bytes: int
    messages: int
    window_seconds: float

    def to_dict(self) -> dict:
        return {
            "bytesPerSecond": round(float(self.bytes_per_second), 1),
            "windowBytes": int(self.window_bytes),
            "totalBytes": int(self.total_bytes),
            "messages": int(self.messages),
            "windowSeconds": float(self.window_seconds),
        }


class BandwidthMeter:
    """
    Sum of bytes sent over a sliding time window.
    """

    def __init__(self, window: float = 5.0, *, monotonic: Optional[MonotonicCallable] = None) -> None:
        self.window = max(0.001, float(window))
        self._monotonic: MonotonicCallable = monotonic if monotonic is not None else time.monotonic
        self._samples: Deque[Tuple[float, int]] = deque()
        self._window_bytes = 0
        self.total_bytes = 0
        self.messages = 0

    def _expire(self, now: float) -> None:
        cutoff = now - self.window
        while self._samples and self._samples[0][0] <= cutoff:
            _, size = self._samples.popleft()
            self._window_bytes -= size

    def record(self, size: int) -> None:
        if size <= 0:
            return
        now = self._monotonic()
        self._expire(now)
        self._samples.append((now, int(size)))
        self._window_bytes += int(size)
        self.total_bytes += int(size)
        self.messages += 1

    def snapshot(self) -> BandwidthSnapshot:
        self._expire(self._monotonic())
        return BandwidthSnapshot(
            bytes_per_second=self._window_bytes / self.window,
            window_bytes=self._window_bytes,
            total_bytes=self.total_bytes,
            messages=self.messages,
            window_seconds=self.window,
        )
