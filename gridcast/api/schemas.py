"""
Pydantic schemas mirroring the WebSocket control contract and the HTTP views.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class ControlMessage(BaseModel):
    """JSON text frame sent by a viewer."""

    type: str = ""
    model_config = ConfigDict(extra="allow")

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: object) -> str:
        return str(value or "").strip().lower()


class BandwidthModel(BaseModel):
    bytesPerSecond: float = 0.0
    windowBytes: int = 0
    totalBytes: int = 0
    messages: int = 0
    windowSeconds: float = 0.0


class StatsModel(BaseModel):
    tick: int
    sessions: int
    readySessions: int
    skippedTicks: int
    bandwidth: BandwidthModel


class HealthModel(BaseModel):
    status: str = "ok"
    profile: str
    width: int
    height: int
    tickHz: float
    sessions: int
    schedulerRunning: bool
