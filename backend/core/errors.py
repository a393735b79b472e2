"""Error taxonomy shared by the cache layers."""
from __future__ import annotations


class CacheError(RuntimeError):
    """Base class for cache failures surfaced to callers."""


class NotInitializedError(CacheError):
    """Raised when an operation needs cache metadata that was never created."""

    def __init__(self, message: str = "cache not initialized") -> None:
        super().__init__(message)


class SourceFetchError(CacheError):
    """Raised when the upstream task source cannot deliver the task list."""


class StoreIOError(CacheError):
    """Raised when a cache entry cannot be written."""


__all__ = ["CacheError", "NotInitializedError", "SourceFetchError", "StoreIOError"]
