"""
Grid engine adapters feeding the broadcast scheduler.
"""

from __future__ import annotations

from .drawing import apply_draw_command
from .grid_adapter import GridEngine, GridEngineError
from .sandbox import SandboxEngine, Species

__all__ = [
    "GridEngine",
    "GridEngineError",
    "SandboxEngine",
    "Species",
    "apply_draw_command",
]
