"""
gridcast grid-state synchronisation server.

The package streams the cell buffer of a stepping grid simulation to many
WebSocket viewers.  Each tick the buffer is diffed against the previous one,
encoded as either a keyframe or a sparse delta, compressed once off the event
loop and fanned out to every ready session.
"""

from __future__ import annotations

from .config import GridConfig

__all__ = [
    "GridConfig",
    "GridcastError",
]


class GridcastError(RuntimeError):
    """Base class for errors raised by the synchronisation engine."""
