"""
Binary wire format for grid updates.

Every binary message starts with a one byte tag:

``0x01`` keyframe
    followed by the raw frame bytes.
``0x02`` delta
    followed by a big-endian ``uint32`` entry count and, per entry, a
    big-endian ``uint32`` byte offset plus ``cell_bytes`` of cell data.

Messages are compressed by :mod:`gridcast.sync.compression` before they hit
the socket; the functions here only deal with the uncompressed form.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

import numpy as np

from .. import GridcastError
from .frames import ChangeSet, Frame, GridLayout

MAX_OFFSET = 0xFFFFFFFF
DELTA_HEADER = struct.Struct(">BI")


class EncodingError(GridcastError):
    """Raised when a change-set or wire message cannot be (de)serialised."""


class MessageTag(IntEnum):
    KEYFRAME = 0x01
    DELTA = 0x02


@dataclass(frozen=True)
class Keyframe:
    data: bytes


@dataclass(frozen=True)
class Delta:
    changes: ChangeSet


DecodedMessage = Union[Keyframe, Delta]


def _record_dtype(cell_bytes: int) -> np.dtype:
    return np.dtype([("offset", ">u4"), ("cell", np.uint8, (cell_bytes,))])


def keyframe_size(layout: GridLayout) -> int:
    return 1 + layout.frame_size


def delta_size(entries: int, layout: GridLayout) -> int:
    return DELTA_HEADER.size + entries * (4 + layout.cell_bytes)


def encode_keyframe(frame: Frame) -> bytes:
    return bytes((MessageTag.KEYFRAME,)) + frame.data


def encode_delta(changes: ChangeSet, layout: GridLayout) -> Optional[bytes]:
    """
    Serialise ``changes`` as a delta message.

    Returns ``None`` when the delta would be at least as large as a keyframe;
    the caller must fall back to sending the full frame.
    """

    if changes.cell_bytes != layout.cell_bytes:
        raise EncodingError(
            f"change-set carries {changes.cell_bytes}-byte cells, layout uses {layout.cell_bytes}"
        )
    count = len(changes)
    if delta_size(count, layout) >= keyframe_size(layout):
        return None
    if count and (int(changes.offsets[0]) < 0 or int(changes.offsets[-1]) > MAX_OFFSET):
        raise EncodingError("change-set offset does not fit the 32-bit wire field")

    records = np.empty(count, dtype=_record_dtype(layout.cell_bytes))
    records["offset"] = changes.offsets
    records["cell"] = changes.cells
    return DELTA_HEADER.pack(MessageTag.DELTA, count) + records.tobytes()


def decode_message(payload: bytes, layout: GridLayout) -> DecodedMessage:
    """Parse an uncompressed wire message."""

    if not payload:
        raise EncodingError("empty message")
    tag = payload[0]

    if tag == MessageTag.KEYFRAME:
        body = bytes(payload[1:])
        if len(body) != layout.frame_size:
            raise EncodingError(
                f"keyframe body is {len(body)} bytes, layout expects {layout.frame_size}"
            )
        return Keyframe(body)

    if tag == MessageTag.DELTA:
        if len(payload) < DELTA_HEADER.size:
            raise EncodingError("truncated delta header")
        _, count = DELTA_HEADER.unpack_from(payload)
        if len(payload) != delta_size(count, layout):
            raise EncodingError(
                f"delta declares {count} entries but carries {len(payload)} bytes"
            )
        records = np.frombuffer(
            payload, dtype=_record_dtype(layout.cell_bytes), count=count, offset=DELTA_HEADER.size
        )
        offsets = records["offset"].astype(np.int64)
        if count and int(offsets.max()) + layout.cell_bytes > layout.frame_size:
            raise EncodingError("delta offset outside the frame")
        if count and np.any(offsets % layout.cell_bytes):
            raise EncodingError("delta offset not aligned to a cell boundary")
        return Delta(ChangeSet(offsets=offsets, cells=np.array(records["cell"], dtype=np.uint8)))

    raise EncodingError(f"unknown message tag 0x{tag:02x}")
