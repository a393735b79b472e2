"""Domain layer definitions."""

from .cache import MergeOutcome, MergePolicy, MonthCacheResult

__all__ = [
    "MergeOutcome",
    "MergePolicy",
    "MonthCacheResult",
]
