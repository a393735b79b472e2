from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query

from backend.application import get_cache_service, get_task_source
from backend.core.months import month_bounds, month_key, utc_now
from backend.core.task_filters import TaskFilterCriteria
from backend.workers.build import get_build_worker

router = APIRouter(prefix="/cache", tags=["cache"])

DATE_CRITERIA = {"created", "closed", "updated"}


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_date(value: str | None, field: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{field} must be an ISO date") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@router.post("/build")
async def start_build() -> dict:
    """Kick off a background backfill of the historical months."""
    response = await get_build_worker().start()
    return response.to_json_dict()


@router.get("/build")
async def get_build_status() -> dict:
    status = await get_build_worker().status()
    return {"success": True, "data": status.to_json_dict()}


@router.post("/refresh")
async def refresh_current_month() -> dict:
    service = get_cache_service()
    result = await service.refresh_current_month(get_task_source())
    return {"success": True, "data": result.to_json_dict()}


@router.get("/status")
async def get_cache_status() -> dict:
    status = await get_cache_service().get_cache_status()
    return {"success": True, "data": status.to_json_dict()}


@router.get("/tasks")
async def get_cached_tasks(
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    assignee_ids: str | None = Query(default=None, alias="assigneeIds"),
    tags: str | None = Query(default=None),
    categories: str | None = Query(default=None),
    priorities: str | None = Query(default=None),
    search: str | None = Query(default=None),
    date_criteria: str = Query(default="closed", alias="dateCriteria"),
) -> dict:
    if date_criteria not in DATE_CRITERIA:
        raise HTTPException(status_code=400, detail="dateCriteria must be created, closed or updated")

    month_start, next_month_start = month_bounds(month_key(utc_now()))
    start = _parse_date(start_date, "startDate") or month_start
    end = _parse_date(end_date, "endDate") or next_month_start - timedelta(milliseconds=1)

    ids: list[int] = []
    for item in _split(assignee_ids):
        try:
            ids.append(int(item))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="assigneeIds must be integers") from exc

    criteria = TaskFilterCriteria(
        start=start,
        end=end,
        date_criteria=date_criteria,  # type: ignore[arg-type]
        assignee_ids=ids,
        tags=_split(tags),
        categories=_split(categories),
        priorities=_split(priorities),
        search=(search or "").strip().lower(),
    )
    result = await get_cache_service().query_tasks(criteria)
    return {"success": True, "data": result.to_json_dict()}
