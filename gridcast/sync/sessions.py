"""
Viewer sessions and the registry that owns them.

Sessions are only touched from the event loop thread: the connection handlers
flip their flags and the broadcast scheduler reads them between awaits, so no
locking is required.  Iteration always goes through :meth:`SessionRegistry.snapshot`
which returns an immutable tuple.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple, Union

from starlette.websockets import WebSocketDisconnect, WebSocketState

from .frames import GridLayout

LOG = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 64
SEND_POLL_INTERVAL = 0.5

Payload = Union[bytes, str]


class Connection(Protocol):
    """Subset of :class:`starlette.websockets.WebSocket` used by sessions."""

    client_state: WebSocketState
    application_state: WebSocketState

    async def send_bytes(self, data: bytes) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class SessionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class OutboundMessage:
    payload: Payload
    kind: str = "binary"


class Session:
    """Track per-connection sync state and the outbound queue."""

    def __init__(
        self,
        connection: Connection,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        peer: str = "",
    ) -> None:
        self.connection = connection
        self.session_id = uuid.uuid4().hex
        self.peer = peer
        self.state = SessionState.CONNECTING
        self.needs_full_frame = False
        self.pending_pong = False
        self.connected_at = time.monotonic()
        self.bytes_queued = 0
        self.send_queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=max(1, queue_size))
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"session.{self.session_id[:8]}")

    def __repr__(self) -> str:
        return f"<Session {self.session_id[:8]} {self.state.value}>"

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def is_open(self) -> bool:
        """Whether the underlying connection can still carry messages."""

        if self.state is SessionState.CLOSED or self.is_stopped:
            return False
        return (
            self.connection.client_state == WebSocketState.CONNECTED
            and self.connection.application_state == WebSocketState.CONNECTED
        )

    # ------------------------------------------------------------------ flags

    def request_keyframe(self) -> None:
        self.needs_full_frame = True

    def take_keyframe_request(self) -> bool:
        """Return and clear ``needs_full_frame``."""

        wanted = self.needs_full_frame
        self.needs_full_frame = False
        return wanted

    def acknowledge_probe(self) -> None:
        self.pending_pong = False

    # ------------------------------------------------------------------ sending

    def offer(self, payload: Payload) -> bool:
        """
        Queue ``payload`` without waiting.

        Returns ``False`` when the session is closed or its queue is full; a
        slow viewer never holds up the caller.
        """

        if not self.is_open:
            return False
        kind = "text" if isinstance(payload, str) else "binary"
        try:
            self.send_queue.put_nowait(OutboundMessage(payload=payload, kind=kind))
        except asyncio.QueueFull:
            self.logger.debug("Dropping %s message due to backpressure", kind)
            return False
        if kind == "binary":
            self.bytes_queued += len(payload)
        return True

    def offer_json(self, message: Dict[str, Any]) -> bool:
        return self.offer(json.dumps(message, separators=(",", ":")))

    async def pump(self) -> None:
        """Drain the outbound queue onto the connection until stopped."""

        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=SEND_POLL_INTERVAL)
                except asyncio.TimeoutError:
                    continue

                try:
                    if outbound.kind == "text":
                        await self.connection.send_text(outbound.payload)  # type: ignore[arg-type]
                    else:
                        await self.connection.send_bytes(outbound.payload)  # type: ignore[arg-type]
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message or "disconnect" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    def stop(self) -> None:
        self._stop_event.set()

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self.state = SessionState.CLOSED
        self._stop_event.set()
        try:
            await self.connection.close(code=code, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect):
            self.logger.debug("Socket already closed")
        except Exception:
            # anyio.ClosedResourceError once the transport is gone.
            self.logger.warning("Failed to close WebSocket", exc_info=True)


class SessionRegistry:
    """
    Own every live :class:`Session` and drive its state machine.
    """

    def __init__(self, layout: GridLayout) -> None:
        self.layout = layout
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __bool__(self) -> bool:
        return bool(self._sessions)

    def __contains__(self, session: object) -> bool:
        return isinstance(session, Session) and self._sessions.get(session.session_id) is session

    def __iter__(self) -> Iterator[Session]:
        return iter(self.snapshot())

    def snapshot(self) -> Tuple[Session, ...]:
        return tuple(self._sessions.values())

    def register(self, session: Session) -> None:
        session.state = SessionState.CONNECTING
        self._sessions[session.session_id] = session
        LOG.info("Viewer connected     (total: %d) peer=%s", len(self._sessions), session.peer or "?")

    def config_message(self) -> Dict[str, Any]:
        return {
            "type": "config",
            "width": self.layout.width,
            "height": self.layout.height,
            "cellBytes": self.layout.cell_bytes,
        }

    def mark_ready(self, session: Session) -> bool:
        """
        Promote ``session`` to READY, queue the grid config and request a keyframe.
        """

        if session not in self or not session.is_open:
            return False
        if not session.offer_json(self.config_message()):
            session.logger.warning("Could not queue config message; session stays %s", session.state.value)
            return False
        session.state = SessionState.READY
        session.request_keyframe()
        LOG.info("Viewer ready         (total ready: %d)", len(self.ready_sessions()))
        return True

    def mark_needs_keyframe(self, session: Session) -> None:
        if session in self and session.is_ready:
            session.request_keyframe()

    def remove(self, session: Session) -> bool:
        removed = self._sessions.pop(session.session_id, None) is not None
        session.state = SessionState.CLOSED
        session.stop()
        if removed:
            elapsed_ms = int((time.monotonic() - session.connected_at) * 1000)
            LOG.info(
                "Viewer disconnected  after=%dms  remaining=%d", elapsed_ms, len(self._sessions)
            )
        return removed

    def ready_sessions(self) -> List[Session]:
        return [session for session in self._sessions.values() if session.is_ready and session.is_open]
