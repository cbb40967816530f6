"""
Tick-driven broadcast of grid state to viewer sessions.

A tick is split in two phases:

compute
    step the engine, snapshot, diff, encode and capture the recipient list.
    This runs synchronously without awaiting so the frame, change-set and
    session snapshot are consistent with each other.
deliver
    compress the (at most two) encoded messages in a worker thread, then fan
    the shared payloads out to the captured sessions.

Sessions that join while a tick is being delivered simply wait for the next
tick, where their keyframe request is served.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ..runtime.grid_adapter import GridEngine, GridEngineError, capture_frame, step_engine
from . import codec
from .compression import FrameCompressor
from .frames import ChangeSet, Frame, diff_frames
from .sessions import Session, SessionRegistry
from .stats import BandwidthMeter

LOG = logging.getLogger(__name__)


@dataclass
class TickPlan:
    """Everything the deliver phase needs, captured by the compute phase."""

    tick: int
    changes: Optional[ChangeSet]
    keyframe: Optional[bytes]
    delta: Optional[bytes]
    targets: List[Tuple[Session, bool]] = field(default_factory=list)

    def payload_for(
        self,
        wants_keyframe: bool,
        keyframe: Optional[bytes],
        delta: Optional[bytes],
    ) -> Optional[bytes]:
        if wants_keyframe:
            return keyframe
        if delta is not None:
            return delta
        if self.changes is not None and not self.changes:
            # Nothing changed for this viewer; the keyframe was built for someone else.
            # Up-to-date viewers skip the keyframe fallback on a quiet tick.
            return None
        return keyframe


class BroadcastScheduler:
    """
    Drive the engine at a fixed cadence and broadcast each tick's state.
    """

    def __init__(
        self,
        engine: GridEngine,
        registry: SessionRegistry,
        *,
        compressor: Optional[FrameCompressor] = None,
        tick_interval: float = 1.0 / 30.0,
        meter: Optional[BandwidthMeter] = None,
        stats_interval: float = 5.0,
    ) -> None:
        if engine.layout != registry.layout:
            raise ValueError("engine and registry disagree on the grid layout")
        self.engine = engine
        self.registry = registry
        self.layout = engine.layout
        self.compressor = compressor or FrameCompressor()
        self.tick_interval = max(0.001, float(tick_interval))
        self.meter = meter or BandwidthMeter(window=stats_interval)
        self.stats_interval = max(0.0, float(stats_interval))
        self.tick_count = 0
        self.skipped_ticks = 0
        self._previous: Optional[Frame] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_stats_at = time.monotonic()

    @property
    def previous_frame(self) -> Optional[Frame]:
        return self._previous

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._running:
            return
        # A missing or mis-sized buffer at startup is fatal.
        capture_frame(self.engine, self.tick_count)
        self._running = True
        self._last_stats_at = time.monotonic()
        self._task = asyncio.create_task(self._loop())
        LOG.info(
            "Broadcast scheduler started (%dx%d, %.1f Hz)",
            self.layout.width,
            self.layout.height,
            1.0 / self.tick_interval,
        )

    async def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_deadline = loop.time()
        try:
            while self._running:
                try:
                    await self.tick()
                except GridEngineError:
                    LOG.exception("Grid engine failed; stopping the broadcast scheduler.")
                    self._running = False
                    break
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOG.exception("Tick %d failed; continuing with the next tick.", self.tick_count)
                    self.skipped_ticks += 1

                next_deadline += self.tick_interval
                delay = next_deadline - loop.time()
                if delay < 0:
                    # Fell behind; restart the cadence instead of bursting.
                    next_deadline = loop.time()
                    delay = 0
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            pass
        except Exception:  # pragma: no cover - last line of defence for the loop
            LOG.exception("Broadcast loop failed.")
            self._running = False
        finally:
            self._task = None

    # ------------------------------------------------------------------ tick

    async def tick(self) -> int:
        """Run one full tick and return the number of bytes queued."""

        plan = self.prepare()
        if plan is None:
            return 0
        return await self.deliver(plan)

    def prepare(self) -> Optional[TickPlan]:
        """
        Compute phase.  Never awaits.
        """

        step_engine(self.engine)
        self.tick_count += 1
        tick = self.tick_count

        if not self.registry:
            # Nobody is listening: skip the snapshot and forget the baseline.
            self._previous = None
            return None

        frame = capture_frame(self.engine, tick)
        previous = self._previous
        self._previous = frame
        changes = diff_frames(frame, previous)

        recipients = self.registry.ready_sessions()
        any_needs_keyframe = any(session.needs_full_frame for session in recipients)
        if changes is not None and not changes and not any_needs_keyframe:
            return None
        if not recipients:
            return None

        try:
            delta = codec.encode_delta(changes, self.layout) if changes else None
            keyframe = None
            if any_needs_keyframe or previous is None or (changes and delta is None):
                keyframe = codec.encode_keyframe(frame)
        except codec.EncodingError:
            LOG.exception("Failed to encode tick %d; skipping broadcast.", tick)
            self._resync(recipients)
            self.skipped_ticks += 1
            return None

        targets = [(session, session.take_keyframe_request()) for session in recipients]
        return TickPlan(
            tick=tick,
            changes=changes,
            keyframe=keyframe,
            delta=delta,
            targets=targets,
        )

    async def deliver(self, plan: TickPlan) -> int:
        """
        Deliver phase: compress shared payloads, then fan out.
        """

        try:
            keyframe, delta = await self.compressor.compress_many(plan.keyframe, plan.delta)
        except asyncio.CancelledError:
            self._resync(session for session, _ in plan.targets)
            raise
        except Exception:
            # CompressionError, or the executor going away during shutdown.
            LOG.exception("Failed to compress tick %d; skipping broadcast.", plan.tick)
            self._resync(session for session, _ in plan.targets)
            self.skipped_ticks += 1
            return 0

        sent = 0
        for session, wants_keyframe in plan.targets:
            if not session.is_open or session not in self.registry:
                continue
            payload = plan.payload_for(wants_keyframe, keyframe, delta)
            if payload is None:
                continue
            if session.offer(payload):
                self.meter.record(len(payload))
                sent += len(payload)
            else:
                # The viewer missed a frame; its replica is stale until a keyframe.
                session.logger.debug("Tick %d not delivered; requesting keyframe", plan.tick)
                self.registry.mark_needs_keyframe(session)

        self._maybe_log_stats()
        return sent

    # ------------------------------------------------------------------ helpers

    def _resync(self, sessions: Iterable[Session]) -> None:
        for session in sessions:
            self.registry.mark_needs_keyframe(session)

    def _maybe_log_stats(self) -> None:
        if self.stats_interval <= 0:
            return
        now = time.monotonic()
        if now - self._last_stats_at < self.stats_interval:
            return
        self._last_stats_at = now
        snapshot = self.meter.snapshot()
        LOG.info(
            "[stats] %.1f KB/s out  |  %d client(s)  |  tick %d  |  total %.1f MB",
            snapshot.bytes_per_second / 1024,
            len(self.registry),
            self.tick_count,
            snapshot.total_bytes / 1048576,
        )
