"""API routes for the dashboard."""

from . import items, progress

__all__ = ["items", "progress"]
