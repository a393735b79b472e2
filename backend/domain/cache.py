"""Domain entities for month-partition caching."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from backend.core.schema import CacheMonthData, TaskRecord


class MergePolicy(str, Enum):
    """How a fresh fetch is combined with the cached current month."""

    SUPERSET = "superset"
    REPLACE = "replace"
    EVICT_STALE = "evict-stale"

    @classmethod
    def parse(cls, value: str | None, default: "MergePolicy" | None = None) -> "MergePolicy":
        fallback = default or cls.SUPERSET
        if not value:
            return fallback
        try:
            return cls(value.strip().lower())
        except ValueError:
            return fallback


@dataclass(slots=True)
class MergeOutcome:
    """Result of folding fetched month tasks into the cached ones."""

    tasks: list[TaskRecord]
    added: int = 0
    updated: int = 0
    kept: int = 0
    evicted: int = 0
    miss_counts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class MonthCacheResult:
    """A persisted month partition plus the delta that produced it."""

    data: CacheMonthData
    previous_count: int = 0
    added: int = 0
    updated: int = 0
    kept: int = 0
    evicted: int = 0
