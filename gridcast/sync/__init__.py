"""
Grid-state synchronisation: frames, wire codec, compression, sessions and the
broadcast scheduler (see :mod:`gridcast.sync.scheduler`).
"""

from __future__ import annotations

from .frames import CellChange, ChangeSet, Frame, GridLayout, diff_frames
from .codec import EncodingError, MessageTag, decode_message, encode_delta, encode_keyframe
from .compression import CompressionError, FrameCompressor, decompress
from .sessions import Session, SessionRegistry, SessionState
from .stats import BandwidthMeter
from .keepalive import KeepAliveMonitor

__all__ = [
    "BandwidthMeter",
    "CellChange",
    "ChangeSet",
    "CompressionError",
    "EncodingError",
    "Frame",
    "FrameCompressor",
    "GridLayout",
    "KeepAliveMonitor",
    "MessageTag",
    "Session",
    "SessionRegistry",
    "SessionState",
    "decode_message",
    "decompress",
    "diff_frames",
    "encode_delta",
    "encode_keyframe",
]
