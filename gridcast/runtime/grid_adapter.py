"""
Contract between the broadcast scheduler and the stepping grid engine.

The scheduler never reaches into engine memory: it asks for a step, then for a
snapshot copy of the cell buffer.  Engines that fail to produce a frame are an
unrecoverable condition and surface as :class:`GridEngineError`.
"""

from __future__ import annotations

import logging

from .. import GridcastError
from ..sync.frames import Frame, GridLayout

LOG = logging.getLogger(__name__)


class GridEngineError(GridcastError):
    """Raised when the engine cannot step or produce a snapshot."""


class GridEngine:
    """
    Base class for grid engines.

    Subclasses own the authoritative cell buffer and must return copies from
    :meth:`snapshot`; the buffer may be reused on the next :meth:`step`.
    """

    def __init__(self, layout: GridLayout) -> None:
        self.layout = layout

    def step(self) -> None:
        raise NotImplementedError

    def snapshot(self) -> bytes:
        raise NotImplementedError

    def paint(self, x: int, y: int, size: int, species: int) -> None:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


def step_engine(engine: GridEngine) -> None:
    try:
        engine.step()
    except GridEngineError:
        raise
    except Exception as exc:
        raise GridEngineError(f"engine step failed: {exc}") from exc


def capture_frame(engine: GridEngine, tick: int) -> Frame:
    """Snapshot ``engine`` into an immutable :class:`Frame`."""

    try:
        data = engine.snapshot()
    except GridEngineError:
        raise
    except Exception as exc:
        raise GridEngineError(f"engine snapshot failed: {exc}") from exc
    if not isinstance(data, bytes):
        data = bytes(data)
    try:
        return Frame(tick=tick, data=data, layout=engine.layout)
    except ValueError as exc:
        raise GridEngineError(str(exc)) from exc
