"""
Frame snapshots and the per-tick differencer.

A frame is an immutable copy of the engine's cell buffer.  Change detection
looks only at the leading ``compare_bytes`` of each cell (species and the two
state bytes); the trailing clock byte churns every tick and is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, NamedTuple, Optional, Union

import numpy as np

BufferLike = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True, slots=True)
class GridLayout:
    """
    Geometry of a cell buffer.
    """

    width: int
    height: int
    cell_bytes: int = 4
    compare_bytes: int = 3

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"grid size must be positive, got {self.width}x{self.height}")
        if self.cell_bytes <= 0:
            raise ValueError("cell_bytes must be positive")
        if self.compare_bytes <= 0:
            raise ValueError("compare_bytes must be positive")

    @property
    def cell_count(self) -> int:
        return self.width * self.height

    @property
    def frame_size(self) -> int:
        return self.cell_count * self.cell_bytes

    @property
    def compared(self) -> int:
        return min(self.compare_bytes, self.cell_bytes)

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def offset_of(self, x: int, y: int) -> int:
        if not self.contains(x, y):
            raise IndexError(f"cell ({x}, {y}) outside {self.width}x{self.height} grid")
        return (y * self.width + x) * self.cell_bytes

    def clamp(self, x: int, y: int) -> tuple[int, int]:
        return (
            max(0, min(self.width - 1, int(x))),
            max(0, min(self.height - 1, int(y))),
        )


@dataclass(frozen=True, slots=True)
class Frame:
    """
    One snapshot of the grid at ``tick``.
    """

    tick: int
    data: bytes
    layout: GridLayout

    def __post_init__(self) -> None:
        if len(self.data) != self.layout.frame_size:
            raise ValueError(
                f"frame holds {len(self.data)} bytes, layout expects {self.layout.frame_size}"
            )

    def cells(self) -> np.ndarray:
        """Read-only ``(cell_count, cell_bytes)`` view of the buffer."""

        return np.frombuffer(self.data, dtype=np.uint8).reshape(
            self.layout.cell_count, self.layout.cell_bytes
        )


class CellChange(NamedTuple):
    offset: int
    cell: bytes


@dataclass(frozen=True, eq=False)
class ChangeSet:
    """
    Cells that differ from the previous frame, in ascending byte-offset order.

    ``offsets`` holds byte offsets into the frame, ``cells`` the matching rows
    of the current frame.  An empty change-set means nothing visible changed.
    """

    offsets: np.ndarray
    cells: np.ndarray

    def __post_init__(self) -> None:
        if self.cells.ndim != 2 or self.cells.shape[0] != self.offsets.shape[0]:
            raise ValueError("offsets and cells must describe the same number of entries")
        self.offsets.setflags(write=False)
        self.cells.setflags(write=False)

    @classmethod
    def empty(cls, cell_bytes: int) -> "ChangeSet":
        return cls(
            offsets=np.zeros(0, dtype=np.int64),
            cells=np.zeros((0, cell_bytes), dtype=np.uint8),
        )

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[int, bytes]], cell_bytes: int) -> "ChangeSet":
        entries = sorted((int(offset), bytes(cell)) for offset, cell in pairs)
        if not entries:
            return cls.empty(cell_bytes)
        for _, cell in entries:
            if len(cell) != cell_bytes:
                raise ValueError(f"cell payload must be {cell_bytes} bytes, got {len(cell)}")
        offsets = np.array([offset for offset, _ in entries], dtype=np.int64)
        cells = np.frombuffer(b"".join(cell for _, cell in entries), dtype=np.uint8)
        return cls(offsets=offsets, cells=cells.reshape(len(entries), cell_bytes).copy())

    @property
    def cell_bytes(self) -> int:
        return int(self.cells.shape[1])

    def __len__(self) -> int:
        return int(self.offsets.shape[0])

    def __bool__(self) -> bool:
        return len(self) > 0

    def __iter__(self) -> Iterator[CellChange]:
        for offset, row in zip(self.offsets.tolist(), self.cells):
            yield CellChange(offset, row.tobytes())

    def apply_to(self, base: BufferLike) -> bytes:
        """Return ``base`` with every entry written at its offset."""

        buffer = np.frombuffer(bytes(base), dtype=np.uint8).copy()
        if len(self) == 0:
            return buffer.tobytes()
        if buffer.size % self.cell_bytes:
            raise ValueError("base buffer is not a whole number of cells")
        if int(self.offsets.max()) + self.cell_bytes > buffer.size:
            raise ValueError("change-set offset beyond the end of the buffer")
        rows = buffer.reshape(-1, self.cell_bytes)
        rows[self.offsets // self.cell_bytes] = self.cells
        return rows.tobytes()


def diff_frames(current: Frame, previous: Optional[Frame]) -> Optional[ChangeSet]:
    """
    Compute the change-set turning ``previous`` into ``current``.

    Returns ``None`` when there is no previous frame to diff against.
    """

    if previous is None:
        return None
    if previous.layout != current.layout:
        raise ValueError("cannot diff frames with different layouts")

    layout = current.layout
    compared = layout.compared
    current_cells = current.cells()
    previous_cells = previous.cells()
    changed = np.any(current_cells[:, :compared] != previous_cells[:, :compared], axis=1)
    indices = np.flatnonzero(changed)
    return ChangeSet(
        offsets=indices.astype(np.int64) * layout.cell_bytes,
        cells=current_cells[indices],
    )
