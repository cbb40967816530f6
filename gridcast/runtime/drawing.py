"""
Entry point for paint commands coming from the transaction feed.

A draw memo looks like::

    {"app": "falling-sands", "type": "draw", "s": [[x1, y1, x2, y2, size, species], ...]}

Each stroke segment is interpolated into brush stamps spaced a little closer
than the brush size so the stroke renders without gaps.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .grid_adapter import GridEngine

LOG = logging.getLogger(__name__)

DRAW_APP = "falling-sands"
MIN_BRUSH = 1
MAX_BRUSH = 20


def segment_to_points(segment: Sequence[float]) -> List[Tuple[int, int]]:
    x1, y1, x2, y2, size = (float(value) for value in segment[:5])
    dx = x2 - x1
    dy = y2 - y1
    distance = math.hypot(dx, dy)
    step = max(1, math.floor(size * 0.6))
    steps = max(1, math.ceil(distance / step))
    return [
        (_round_half_up(x1 + dx * i / steps), _round_half_up(y1 + dy * i / steps))
        for i in range(steps + 1)
    ]


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _parse_memo(memo: Union[str, bytes, Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if isinstance(memo, (str, bytes)):
        try:
            memo = json.loads(memo)
        except ValueError:
            LOG.debug("Ignoring draw memo that is not valid JSON")
            return None
    if not isinstance(memo, Mapping):
        return None
    return dict(memo)


def apply_draw_command(
    engine: GridEngine,
    memo: Union[str, bytes, Mapping[str, Any]],
    *,
    source: str = "",
    app: str = DRAW_APP,
) -> int:
    """
    Paint every stroke in ``memo`` onto ``engine``.

    Returns the number of strokes applied; memos addressed to another app or
    of another type apply nothing.
    """

    parsed = _parse_memo(memo)
    if parsed is None:
        return 0
    strokes = parsed.get("s")
    if parsed.get("app") != app or parsed.get("type") != "draw" or not isinstance(strokes, list):
        return 0

    layout = engine.layout
    applied = 0
    for segment in strokes:
        if not isinstance(segment, (list, tuple)) or len(segment) < 6:
            continue
        try:
            species = int(segment[5])
            size = max(MIN_BRUSH, min(MAX_BRUSH, int(segment[4])))
            points = segment_to_points([segment[0], segment[1], segment[2], segment[3], size])
        except (TypeError, ValueError, OverflowError):
            continue
        for x, y in points:
            cx, cy = layout.clamp(x, y)
            engine.paint(cx, cy, size, species)
        applied += 1

    LOG.info("Applied drawing: %d stroke(s) from %s", applied, source or "unknown")
    return applied
