"""
Liveness probing for viewer sessions.

Mobile browsers routinely vanish without a close frame.  Every interval each
session either acknowledges the previous probe or gets evicted, which bounds
the registry under silently dead connections.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import List, Optional

from .sessions import Session, SessionRegistry

LOG = logging.getLogger(__name__)

PROBE_TIMEOUT_CODE = 1011


class KeepAliveMonitor:
    def __init__(self, registry: SessionRegistry, interval: float = 20.0) -> None:
        self.registry = registry
        self.interval = max(0.0, float(interval))
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        if self._running or self.interval <= 0:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def acknowledge(self, session: Session) -> None:
        session.acknowledge_probe()

    async def sweep(self) -> List[Session]:
        """
        Run one probe round and return the sessions that were evicted.
        """

        evicted: List[Session] = []
        for session in self.registry.snapshot():
            if session.pending_pong or not session.is_open:
                if session.pending_pong:
                    session.logger.warning("Keep-alive probe unanswered; evicting session")
                else:
                    session.logger.info("Connection no longer open; evicting session")
                self.registry.remove(session)
                await session.close(code=PROBE_TIMEOUT_CODE, reason="ping timeout")
                evicted.append(session)
                continue
            if session.offer_json({"type": "ping", "ts": time.time()}):
                session.pending_pong = True
            else:
                session.logger.debug("Outbound queue full; keep-alive probe deferred")
        return evicted

    async def _loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.interval)
                if not self._running:
                    break
                try:
                    await self.sweep()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOG.exception("Keep-alive sweep failed.")
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
