"""Utility helpers for the grid server."""

from .logging import configure_logging

__all__ = ["configure_logging"]
