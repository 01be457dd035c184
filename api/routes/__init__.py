"""API routes module."""

from . import chapters, downloads, follows, health

__all__ = ["chapters", "downloads", "follows", "health"]
