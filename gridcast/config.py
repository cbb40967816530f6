"""
Startup configuration for the grid server.

Values are resolved once, lowest precedence first: dataclass defaults, a named
profile from ``configs/profiles.yaml``, ``GRIDCAST_*`` environment variables
and finally explicit overrides (usually CLI flags).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"
ENV_PREFIX = "GRIDCAST_"


@dataclass(frozen=True)
class GridConfig:
    width: int = 300
    height: int = 450
    cell_bytes: int = 4
    tick_hz: float = 30.0
    keepalive_interval: float = 20.0
    compression_level: int = 1
    queue_size: int = 64
    stats_interval: float = 5.0
    host: str = "127.0.0.1"
    port: int = 3333
    profile: str = "default"

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"grid size must be positive, got {self.width}x{self.height}")
        if self.cell_bytes <= 0:
            raise ValueError("cell_bytes must be positive")
        if self.tick_hz <= 0:
            raise ValueError("tick_hz must be positive")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be positive")
        if not -1 <= self.compression_level <= 9:
            raise ValueError(f"compression_level must be between -1 and 9, got {self.compression_level}")

    @property
    def tick_interval(self) -> float:
        return 1.0 / self.tick_hz

    def with_overrides(self, overrides: Mapping[str, Any]) -> "GridConfig":
        """Return a copy with ``overrides`` applied, ignoring ``None`` values."""

        known = {item.name for item in fields(self)}
        updates: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                LOG.warning("Ignoring unknown config key '%s'", key)
                continue
            updates[key] = _coerce(key, value, type(getattr(self, key)))
        return replace(self, **updates)

    @classmethod
    def load(
        cls,
        profile: Optional[str] = None,
        *,
        profiles_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "GridConfig":
        env_values = read_environment(os.environ if environ is None else environ)
        profile = profile or env_values.pop("profile", None) or "default"
        env_values.pop("profile", None)

        config = cls(profile=profile)
        config = config.with_overrides(load_profile(profile, profiles_path or PROFILES_PATH))
        config = config.with_overrides(env_values)
        if overrides:
            config = config.with_overrides(overrides)
        return config


def _coerce(key: str, value: Any, target: type) -> Any:
    try:
        if target is int:
            return int(value)
        if target is float:
            return float(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for '{key}': {value!r}") from exc


def load_profile(profile: str, path: Path = PROFILES_PATH) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.debug("Profiles file %s not found; using defaults", path)
        return {}

    if profile not in profiles:
        if profile != "default":
            LOG.warning("Profile '%s' not found in %s; using defaults", profile, path)
        return {}
    values = profiles.get(profile) or {}
    if not isinstance(values, dict):
        raise ValueError(f"Profile '{profile}' in {path} must be a mapping")
    return dict(values)


def read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for item in fields(GridConfig):
        raw = environ.get(ENV_PREFIX + item.name.upper())
        if raw is not None and raw.strip():
            values[item.name] = raw.strip()
    return values
