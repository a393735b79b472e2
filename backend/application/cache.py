"""Application service owning the month-partitioned task cache."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from backend.core.errors import NotInitializedError
from backend.core.months import is_month_key, isoformat, month_key, trailing_months, utc_now
from backend.core.partition import filter_tasks_by_month, latest_task_update, merge_month_tasks, updated_since
from backend.core.schema import (
    CACHED_STATUSES,
    RETRY_STATUSES,
    BuildProgress,
    CacheMetadata,
    CacheMonthData,
    CacheMonthMeta,
    CacheRefreshResponse,
    CacheStats,
    CacheStatusResponse,
    TaskQueryResponse,
    TaskRecord,
)
from backend.core.settings import Settings
from backend.core.task_filters import TaskFilterCriteria, apply_filters, collect_members, collect_tags
from backend.domain import MergePolicy, MonthCacheResult
from backend.infrastructure import CacheStore, ClickUpTaskSource, JsonFileCacheStore, TaskSource

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0.0"
MAX_HISTORY_MONTHS = 12

Clock = Callable[[], datetime]


def coerce_tasks(tasks: Iterable[TaskRecord | dict[str, Any]]) -> list[TaskRecord]:
    """Validate raw upstream records, dropping the ones without an id."""

    records: list[TaskRecord] = []
    skipped = 0
    for task in tasks:
        if isinstance(task, TaskRecord):
            records.append(task)
            continue
        try:
            records.append(TaskRecord.model_validate(task))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.warning("Skipped %s malformed task records", skipped)
    return records


class CacheService:
    """Coordinates month partitions, the metadata singleton and build progress.

    Only this service writes to the store. Every write of the metadata record
    happens under ``_lock`` on a copy read inside the same critical section.
    Reads of missing or unreadable entries yield ``None``; write failures
    propagate as ``StoreIOError``.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        list_id: str = "",
        space_id: str = "",
        clock: Clock = utc_now,
        merge_policy: MergePolicy = MergePolicy.SUPERSET,
        stale_after_misses: int = 3,
    ) -> None:
        self._store = store
        self._list_id = list_id
        self._space_id = space_id
        self._clock = clock
        self._merge_policy = merge_policy
        self._stale_after_misses = stale_after_misses
        self._lock = asyncio.Lock()

    def current_month(self) -> str:
        return month_key(self._clock())

    def _now(self) -> str:
        return isoformat(self._clock())

    # ------------------------------------------------------------------
    # metadata
    # ------------------------------------------------------------------
    async def get_metadata(self) -> CacheMetadata | None:
        raw = await self._store.read_metadata()
        if raw is None:
            return None
        try:
            return CacheMetadata.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring invalid cache metadata: %s", exc.error_count())
            return None

    async def _write_metadata(self, meta: CacheMetadata) -> None:
        await self._store.write_metadata(meta.to_json_dict())

    async def _create_metadata(self) -> CacheMetadata:
        meta = CacheMetadata(
            version=CACHE_VERSION,
            list_id=self._list_id,
            space_id=self._space_id,
            created_at=self._now(),
            current_month=self.current_month(),
        )
        await self._write_metadata(meta)
        logger.info("Initialized cache metadata for %s", meta.current_month)
        return meta

    async def _load_metadata(self) -> CacheMetadata:
        meta = await self.get_metadata()
        if meta is None:
            meta = await self._create_metadata()
        return meta

    async def initialize_metadata(self) -> CacheMetadata:
        """Create and persist a fresh metadata record, replacing any prior one."""

        async with self._lock:
            return await self._create_metadata()

    async def ensure_initialized(self) -> CacheMetadata:
        async with self._lock:
            return await self._load_metadata()

    async def recover_interrupted_build(self) -> bool:
        """Clear a persisted running flag that no live build owns.

        Call only when no build is active in this process, typically at
        start-up after an unclean shutdown.
        """

        async with self._lock:
            meta = await self.get_metadata()
            if meta is None or meta.build_progress is None or not meta.build_progress.is_running:
                return False
            progress = meta.build_progress
            progress.is_running = False
            progress.finished_at = self._now()
            progress.errors.append(f"{progress.current_month or 'build'}: interrupted before completion")
            await self._write_metadata(meta)
        logger.warning("Recovered interrupted build run_id=%s", progress.run_id)
        return True

    # ------------------------------------------------------------------
    # month partitions
    # ------------------------------------------------------------------
    async def get_month_cache(self, month: str) -> CacheMonthData | None:
        raw = await self._store.read_month(month)
        if raw is None:
            return None
        try:
            return CacheMonthData.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring invalid cache for %s: %s errors", month, exc.error_count())
            return None

    async def _save_month(self, meta: CacheMetadata, data: CacheMonthData) -> None:
        # Caller holds the lock.
        await self._store.write_month(data.month, data.to_json_dict())
        meta.months[data.month] = data.metadata
        await self._write_metadata(meta)

    async def cache_current_month(
        self,
        tasks: Iterable[TaskRecord | dict[str, Any]],
        force_refresh: bool = False,
        *,
        policy: MergePolicy | None = None,
    ) -> MonthCacheResult:
        """Merge the fetched tasks into the current month partition.

        ``force_refresh`` replaces the partition with the fetched month tasks.
        """

        month = self.current_month()
        month_tasks = filter_tasks_by_month(coerce_tasks(tasks), month)
        effective_policy = MergePolicy.REPLACE if force_refresh else (policy or self._merge_policy)

        async with self._lock:
            meta = await self._load_metadata()
            existing = await self.get_month_cache(month)
            now = self._now()
            outcome = merge_month_tasks(
                existing.tasks if existing else None,
                month_tasks,
                policy=effective_policy,
                miss_counts=existing.miss_counts if existing else None,
                stale_after_misses=self._stale_after_misses,
            )

            month_meta = CacheMonthMeta(
                month=month,
                status="current",
                task_count=len(outcome.tasks),
                first_cached_at=existing.metadata.first_cached_at if existing else now,
                last_updated_at=now,
                last_task_update=latest_task_update(outcome.tasks),
                is_frozen=False,
            )
            data = CacheMonthData(month=month, tasks=outcome.tasks, metadata=month_meta, miss_counts=outcome.miss_counts)

            meta.current_month = month
            await self._save_month(meta, data)
        logger.info(
            "Cached current month %s: %s tasks (added=%s updated=%s kept=%s evicted=%s)",
            month,
            month_meta.task_count,
            outcome.added,
            outcome.updated,
            outcome.kept,
            outcome.evicted,
        )
        return MonthCacheResult(
            data=data,
            previous_count=len(existing.tasks) if existing else 0,
            added=outcome.added,
            updated=outcome.updated,
            kept=outcome.kept,
            evicted=outcome.evicted,
        )

    async def cache_historical_month(self, month: str, tasks: Iterable[TaskRecord | dict[str, Any]]) -> CacheMonthData:
        """Replace a past month's partition and freeze it."""

        if not is_month_key(month):
            raise ValueError(f"invalid month key: {month!r}")
        month_tasks = filter_tasks_by_month(coerce_tasks(tasks), month)

        async with self._lock:
            meta = await self.get_metadata()
            if meta is None:
                raise NotInitializedError()
            now = self._now()
            month_meta = CacheMonthMeta(
                month=month,
                status="completed",
                task_count=len(month_tasks),
                first_cached_at=now,
                last_updated_at=now,
                last_task_update=latest_task_update(month_tasks),
                is_frozen=True,
            )
            data = CacheMonthData(month=month, tasks=month_tasks, metadata=month_meta)
            await self._save_month(meta, data)
        return data

    async def mark_month_error(self, month: str, message: str) -> None:
        """Record a failed historical attempt; the month stays retryable."""

        async with self._lock:
            meta = await self.get_metadata()
            if meta is None:
                return
            previous = meta.months.get(month)
            if previous is not None and previous.status == "completed":
                return
            now = self._now()
            meta.months[month] = CacheMonthMeta(
                month=month,
                status="error",
                task_count=previous.task_count if previous else 0,
                first_cached_at=previous.first_cached_at if previous else now,
                last_updated_at=now,
                last_task_update=previous.last_task_update if previous else None,
                is_frozen=False,
                error=message,
            )
            await self._write_metadata(meta)

    def get_months_to_cache(self) -> list[str]:
        return trailing_months(self.current_month(), MAX_HISTORY_MONTHS)

    async def get_uncached_months(self) -> list[str]:
        """Historical months that still need a (re)build, newest first.

        A month left in ``current`` status after the calendar rolled over is
        also returned so that it gets frozen.
        """

        months = self.get_months_to_cache()
        meta = await self.get_metadata()
        if meta is None:
            return months

        pending: list[str] = []
        for month in months:
            entry = meta.months.get(month)
            if entry is None or entry.status in RETRY_STATUSES or entry.status == "current":
                pending.append(month)
        return pending

    async def get_all_cached_tasks(self, start_month: str | None = None, end_month: str | None = None) -> list[TaskRecord]:
        """Tasks of every cached month in range, each id once, oldest month first."""

        meta = await self.get_metadata()
        if meta is None:
            return []

        months = sorted(
            month
            for month, entry in meta.months.items()
            if entry.status in CACHED_STATUSES
            and (not start_month or month >= start_month)
            and (not end_month or month <= end_month)
        )

        collected: list[TaskRecord] = []
        seen: set[str] = set()
        for month in months:
            cache = await self.get_month_cache(month)
            if cache is None:
                continue
            for task in cache.tasks:
                if task.id in seen:
                    continue
                seen.add(task.id)
                collected.append(task)
        return collected

    # ------------------------------------------------------------------
    # status & build progress
    # ------------------------------------------------------------------
    async def get_cache_status(self) -> CacheStatusResponse:
        meta = await self.get_metadata()
        current = self.current_month()
        total_months = MAX_HISTORY_MONTHS + 1

        if meta is None:
            return CacheStatusResponse(
                is_initialized=False,
                current_month=current,
                stats=CacheStats(total_months=total_months, cached_months=0, total_tasks=0),
            )

        months = sorted(meta.months.values(), key=lambda entry: entry.month, reverse=True)
        cached = [entry for entry in months if entry.status in CACHED_STATUSES]
        last_updated = max((entry.last_updated_at for entry in months), default=None)

        return CacheStatusResponse(
            is_initialized=True,
            current_month=current,
            months=months,
            build_progress=meta.build_progress,
            stats=CacheStats(
                total_months=total_months,
                cached_months=len(cached),
                total_tasks=sum(entry.task_count for entry in cached),
                last_updated=last_updated,
            ),
        )

    async def start_build_progress(self, total_months: int, run_id: str | None = None) -> BuildProgress:
        async with self._lock:
            meta = await self._load_metadata()
            meta.build_progress = BuildProgress(
                is_running=True,
                run_id=run_id,
                total_months=total_months,
                completed_months=0,
                started_at=self._now(),
                errors=[],
            )
            await self._write_metadata(meta)
        return meta.build_progress

    async def update_build_progress(
        self,
        month: str,
        completed_months: int,
        error: str | None = None,
    ) -> BuildProgress | None:
        async with self._lock:
            meta = await self.get_metadata()
            if meta is None or meta.build_progress is None:
                return None
            progress = meta.build_progress
            progress.current_month = month
            progress.completed_months = max(progress.completed_months, completed_months)
            if error:
                progress.errors.append(f"{month}: {error}")
            await self._write_metadata(meta)
        return progress

    async def finish_build_progress(self) -> BuildProgress | None:
        """Close the running build record and stamp ``lastBuildAt``.

        A record that is not running belongs to an earlier run and keeps its
        ``finishedAt``.
        """

        async with self._lock:
            meta = await self.get_metadata()
            if meta is None:
                return None
            now = self._now()
            progress = meta.build_progress
            if progress is not None and progress.is_running:
                progress.is_running = False
                progress.finished_at = now
            meta.last_build_at = now
            await self._write_metadata(meta)
        return progress

    # ------------------------------------------------------------------
    # consumer operations
    # ------------------------------------------------------------------
    async def refresh_current_month(self, source: TaskSource) -> CacheRefreshResponse:
        """Fetch upstream tasks and merge them into the current month.

        Nothing is written when no month task changed since the watermark,
        except under ``evict-stale`` where every refresh counts misses.
        """

        month = self.current_month()
        records = coerce_tasks(await source.fetch_all_tasks())

        existing = await self.get_month_cache(month)
        watermark = existing.metadata.last_task_update if existing else None
        if existing is not None and watermark and self._merge_policy is not MergePolicy.EVICT_STALE:
            changed = updated_since(filter_tasks_by_month(records, month), watermark)
            if not changed:
                return CacheRefreshResponse(
                    month=month,
                    previous_count=len(existing.tasks),
                    new_count=len(existing.tasks),
                    added_tasks=0,
                    updated_tasks=0,
                    last_updated_at=self._now(),
                    message="No new or updated tasks",
                )

        result = await self.cache_current_month(records, False)
        return CacheRefreshResponse(
            month=month,
            previous_count=result.previous_count,
            new_count=len(result.data.tasks),
            added_tasks=result.added,
            updated_tasks=result.updated,
            last_updated_at=result.data.metadata.last_updated_at,
        )

    async def query_tasks(self, criteria: TaskFilterCriteria) -> TaskQueryResponse:
        if await self.get_metadata() is None:
            raise NotInitializedError()
        tasks = await self.get_all_cached_tasks(criteria.start_month, criteria.end_month)
        filtered = apply_filters(tasks, criteria)
        return TaskQueryResponse(
            tasks=filtered,
            total_count=len(filtered),
            members=collect_members(filtered),
            tags=collect_tags(filtered),
            filters=criteria.describe(),
        )


_settings: Settings | None = None
_service: CacheService | None = None
_source: TaskSource | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_cache_service() -> CacheService:
    """Return the cache service for the process, building it from settings."""

    global _service
    if _service is None:
        settings = get_settings()
        _service = CacheService(
            JsonFileCacheStore(settings.cache_dir),
            list_id=settings.clickup_list_id,
            space_id=settings.clickup_space_id,
            merge_policy=MergePolicy.parse(settings.merge_policy),
            stale_after_misses=settings.stale_after_misses,
        )
    return _service


def configure_cache_service(service: CacheService) -> None:
    global _service
    _service = service


def get_task_source() -> TaskSource:
    global _source
    if _source is None:
        settings = get_settings()
        _source = ClickUpTaskSource(
            settings.clickup_api_key,
            settings.clickup_list_id,
            api_base=settings.clickup_api_base,
            page_limit=settings.clickup_page_limit,
        )
    return _source


def configure_task_source(source: TaskSource) -> None:
    """Install the task source used by refreshes and builds."""

    global _source
    _source = source


def reset_cache_state() -> None:
    """Drop the process-wide service, source and settings (used in tests)."""

    global _settings, _service, _source
    _settings = None
    _service = None
    _source = None


async def aclose_task_source() -> None:
    """Release the process task source, if one was created or configured."""

    global _source
    source, _source = _source, None
    if source is not None:
        await source.aclose()
