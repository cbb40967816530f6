"""
Small numpy falling-sand engine.

It exists so the server can run without a native simulation attached: sand
falls straight down or slides diagonally, water additionally spreads sideways,
walls stay put.  Each cell is ``{species, shade, reserved, clock}`` where the
clock byte records the generation that last moved the cell.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Optional, Tuple

import numpy as np

from ..sync.frames import GridLayout
from .grid_adapter import GridEngine

LOG = logging.getLogger(__name__)

SEED_REFERENCE_SIZE = (300, 450)
SEED_STROKES: Tuple[Tuple[int, int, int, int], ...] = (
    # x, y, size, species on the 300x450 reference grid
    (150, 40, 8, 2),
    (100, 40, 6, 2),
    (200, 40, 6, 2),
    (150, 100, 6, 3),
    (100, 120, 5, 3),
)


class Species(IntEnum):
    EMPTY = 0
    WALL = 1
    SAND = 2
    WATER = 3


SPECIES_COLUMN = 0
SHADE_COLUMN = 1
CLOCK_COLUMN = 3


class SandboxEngine(GridEngine):
    def __init__(
        self,
        width: int,
        height: int,
        *,
        cell_bytes: int = 4,
        seed: Optional[int] = None,
        seeded: bool = True,
    ) -> None:
        super().__init__(GridLayout(width=width, height=height, cell_bytes=cell_bytes))
        self._rng = np.random.default_rng(seed)
        self._cells = np.zeros((height, width, cell_bytes), dtype=np.uint8)
        self._seeded = seeded
        self.generation = 0
        self.reset()

    # ------------------------------------------------------------------ contract

    def snapshot(self) -> bytes:
        return self._cells.tobytes()

    def reset(self) -> None:
        self._cells.fill(0)
        self.generation = 0
        if self._seeded:
            self._seed()
        LOG.debug("Sandbox reset (%dx%d)", self.layout.width, self.layout.height)

    def paint(self, x: int, y: int, size: int, species: int) -> None:
        layout = self.layout
        if not layout.contains(x, y):
            raise ValueError(f"paint origin ({x}, {y}) outside the grid")
        species = int(species) & 0xFF
        radius = max(0, int(size) // 2)

        y0, y1 = max(0, y - radius), min(layout.height, y + radius + 1)
        x0, x1 = max(0, x - radius), min(layout.width, x + radius + 1)
        ys, xs = np.ogrid[y0:y1, x0:x1]
        disk = (xs - x) ** 2 + (ys - y) ** 2 <= radius * radius

        region = self._cells[y0:y1, x0:x1]
        if species != Species.EMPTY:
            disk &= region[..., SPECIES_COLUMN] == Species.EMPTY
        count = int(disk.sum())
        if not count:
            return

        stamp = np.zeros((count, layout.cell_bytes), dtype=np.uint8)
        if species != Species.EMPTY:
            stamp[:, SPECIES_COLUMN] = species
            if layout.cell_bytes > SHADE_COLUMN:
                stamp[:, SHADE_COLUMN] = self._rng.integers(0, 100, size=count, dtype=np.uint8)
        region[disk] = stamp

    def step(self) -> None:
        self.generation = (self.generation + 1) & 0xFF
        species = self._cells[..., SPECIES_COLUMN]
        moved = np.zeros(species.shape, dtype=bool)
        height = self.layout.height

        for y in range(height - 2, -1, -1):
            self._fall(y, species, moved)
            self._slide(y, species, moved, self._direction())
            self._spread(y, species, moved, self._direction())

    # ------------------------------------------------------------------ rules

    def _direction(self) -> int:
        return 1 if self._rng.random() < 0.5 else -1

    def _move(self, y: int, xs: np.ndarray, ty: int, txs: np.ndarray, moved: np.ndarray) -> None:
        if not xs.size:
            return
        self._cells[ty, txs] = self._cells[y, xs]
        self._cells[y, xs] = 0
        if self.layout.cell_bytes > CLOCK_COLUMN:
            self._cells[ty, txs, CLOCK_COLUMN] = self.generation
        moved[ty, txs] = True

    def _fall(self, y: int, species: np.ndarray, moved: np.ndarray) -> None:
        row = species[y]
        loose = ((row == Species.SAND) | (row == Species.WATER)) & ~moved[y]
        xs = np.flatnonzero(loose & (species[y + 1] == Species.EMPTY))
        self._move(y, xs, y + 1, xs, moved)

    def _slide(self, y: int, species: np.ndarray, moved: np.ndarray, direction: int) -> None:
        row = species[y]
        loose = ((row == Species.SAND) | (row == Species.WATER)) & ~moved[y]
        xs = np.flatnonzero(loose)
        txs = xs + direction
        inside = (txs >= 0) & (txs < self.layout.width)
        xs, txs = xs[inside], txs[inside]
        free = species[y + 1, txs] == Species.EMPTY
        self._move(y, xs[free], y + 1, txs[free], moved)

    def _spread(self, y: int, species: np.ndarray, moved: np.ndarray, direction: int) -> None:
        row = species[y]
        xs = np.flatnonzero((row == Species.WATER) & ~moved[y])
        txs = xs + direction
        inside = (txs >= 0) & (txs < self.layout.width)
        xs, txs = xs[inside], txs[inside]
        free = row[txs] == Species.EMPTY
        self._move(y, xs[free], y, txs[free], moved)

    def _seed(self) -> None:
        ref_width, ref_height = SEED_REFERENCE_SIZE
        scale_x = self.layout.width / ref_width
        scale_y = self.layout.height / ref_height
        for x, y, size, species in SEED_STROKES:
            sx, sy = self.layout.clamp(round(x * scale_x), round(y * scale_y))
            scaled = max(1, round(size * min(scale_x, scale_y)))
            self.paint(sx, sy, scaled, species)
