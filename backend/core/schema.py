from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, constr
from pydantic.alias_generators import to_camel

MonthKey = constr(pattern=r"^\d{4}-\d{2}$")

MonthStatus = Literal["not-started", "in-progress", "completed", "current", "error"]

CACHED_STATUSES: frozenset[str] = frozenset({"completed", "current"})
RETRY_STATUSES: frozenset[str] = frozenset({"not-started", "error"})


class CacheModel(BaseModel):
    """Base for persisted shapes; JSON keys are camelCase on disk and on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TaskRecord(BaseModel):
    """Upstream task. Only the fields the cache reasons about are declared."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    date_created: str | None = None
    date_updated: str | None = None
    date_closed: str | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CacheMonthMeta(CacheModel):
    month: MonthKey
    status: MonthStatus
    task_count: int = 0
    first_cached_at: str
    last_updated_at: str
    last_task_update: str | None = None
    is_frozen: bool = False
    error: str | None = None


class CacheMonthData(CacheModel):
    month: MonthKey
    tasks: list[TaskRecord] = Field(default_factory=list)
    metadata: CacheMonthMeta
    miss_counts: dict[str, int] = Field(default_factory=dict)


class BuildProgress(CacheModel):
    is_running: bool = False
    run_id: str | None = None
    current_month: str | None = None
    total_months: int = 0
    completed_months: int = 0
    started_at: str | None = None
    finished_at: str | None = None
    errors: list[str] = Field(default_factory=list)


class CacheMetadata(CacheModel):
    version: str
    list_id: str = ""
    space_id: str = ""
    created_at: str
    last_build_at: str | None = None
    current_month: MonthKey
    months: dict[str, CacheMonthMeta] = Field(default_factory=dict)
    build_progress: BuildProgress | None = None


class CacheStats(CacheModel):
    total_months: int
    cached_months: int
    total_tasks: int
    last_updated: str | None = None


class CacheStatusResponse(CacheModel):
    is_initialized: bool
    current_month: str
    months: list[CacheMonthMeta] = Field(default_factory=list)
    build_progress: BuildProgress | None = None
    stats: CacheStats


class CacheRefreshResponse(CacheModel):
    month: str
    previous_count: int
    new_count: int
    added_tasks: int
    updated_tasks: int
    last_updated_at: str
    message: str | None = None


class CacheBuildResponse(CacheModel):
    success: bool
    message: str
    progress: BuildProgress | None = None


class BuildStatusResponse(CacheModel):
    is_running: bool
    persisted_running: bool = False
    progress: BuildProgress | None = None
    last_error: str | None = None


class TaskQueryResponse(CacheModel):
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int = 0
    members: list[dict[str, Any]] = Field(default_factory=list)
    tags: list[dict[str, Any]] = Field(default_factory=list)
    filters: dict[str, Any] = Field(default_factory=dict)
