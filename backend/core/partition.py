"""Month partitioning and merge rules for cached tasks."""
from __future__ import annotations

from typing import Iterable, Sequence

from backend.core.months import month_bounds, parse_task_date
from backend.core.schema import TaskRecord
from backend.domain.cache import MergeOutcome, MergePolicy


def filter_tasks_by_month(tasks: Iterable[TaskRecord], month: str) -> list[TaskRecord]:
    """Select the tasks created in ``month`` or still open when it started.

    A task closed exactly at the first instant of the month still counts as
    open during it. Tasks without a creation date never belong to a month.
    """

    month_start, next_month_start = month_bounds(month)
    selected: list[TaskRecord] = []
    for task in tasks:
        created_at = parse_task_date(task.date_created)
        if created_at is None:
            continue
        created_in_month = month_start <= created_at < next_month_start
        closed_at = parse_task_date(task.date_closed)
        open_during_month = closed_at is None or closed_at >= month_start
        if created_in_month or (created_at < month_start and open_during_month):
            selected.append(task)
    return selected


def latest_task_update(tasks: Iterable[TaskRecord]) -> str | None:
    """Return the raw ``date_updated`` of the most recently updated task."""

    latest_raw: str | None = None
    latest_at = None
    for task in tasks:
        updated_at = parse_task_date(task.date_updated)
        if updated_at is None:
            continue
        if latest_at is None or updated_at > latest_at:
            latest_at = updated_at
            latest_raw = task.date_updated
    return latest_raw


def updated_since(tasks: Iterable[TaskRecord], watermark: str | None) -> list[TaskRecord]:
    """Tasks whose ``date_updated`` is strictly after the watermark."""

    tasks = list(tasks)
    threshold = parse_task_date(watermark)
    if threshold is None:
        return tasks
    changed: list[TaskRecord] = []
    for task in tasks:
        updated_at = parse_task_date(task.date_updated)
        if updated_at is not None and updated_at > threshold:
            changed.append(task)
    return changed


def merge_month_tasks(
    existing: Sequence[TaskRecord] | None,
    fetched: Sequence[TaskRecord],
    *,
    policy: MergePolicy = MergePolicy.SUPERSET,
    miss_counts: dict[str, int] | None = None,
    stale_after_misses: int = 3,
) -> MergeOutcome:
    """Fold the fetched month tasks into the cached ones.

    Fetched copies replace cached tasks with the same id and new ids are
    appended. Cached tasks missing from the fetch are retained, except under
    ``REPLACE`` (dropped) and ``EVICT_STALE`` (dropped once they have been
    missing from ``stale_after_misses`` consecutive fetches).
    """

    fetched_ids = {task.id for task in fetched}
    if existing is None:
        return MergeOutcome(tasks=list(fetched), added=len(fetched))

    existing_ids = {task.id for task in existing}
    refreshed = [task for task in fetched if task.id in existing_ids]
    added = [task for task in fetched if task.id not in existing_ids]
    missing = [task for task in existing if task.id not in fetched_ids]

    if policy is MergePolicy.REPLACE:
        return MergeOutcome(
            tasks=refreshed + added,
            added=len(added),
            updated=len(refreshed),
            evicted=len(missing),
        )

    kept: list[TaskRecord] = []
    counts: dict[str, int] = {}
    evicted = 0
    previous_counts = miss_counts or {}
    for task in missing:
        if policy is MergePolicy.EVICT_STALE:
            misses = previous_counts.get(task.id, 0) + 1
            if misses >= stale_after_misses:
                evicted += 1
                continue
            counts[task.id] = misses
        kept.append(task)

    return MergeOutcome(
        tasks=refreshed + added + kept,
        added=len(added),
        updated=len(refreshed),
        kept=len(kept),
        evicted=evicted,
        miss_counts=counts,
    )
