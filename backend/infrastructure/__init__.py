"""Infrastructure layer exports."""

from .clickup import ClickUpTaskSource, TaskSource
from .store import CacheStore, InMemoryCacheStore, JsonFileCacheStore

__all__ = [
    "CacheStore",
    "ClickUpTaskSource",
    "InMemoryCacheStore",
    "JsonFileCacheStore",
    "TaskSource",
]
