"""Post-filters applied to cached tasks before they reach the dashboard."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal

from backend.core.months import month_key, parse_task_date
from backend.core.schema import TaskRecord

DateCriteria = Literal["created", "closed", "updated"]

STATUS_CATEGORIES: dict[str, tuple[str, ...]] = {
    "inactive": ("backlog", "diagnóstico", "falta de requisitos", "para fazer"),
    "active": ("em desenvolvimento", "bloqueio"),
    "done": ("homologação",),
    "closed": ("concluído",),
}


def status_category(status: str | None) -> str:
    normalised = (status or "").strip().lower()
    for category, statuses in STATUS_CATEGORIES.items():
        if any(name in normalised for name in statuses):
            return category
    return "inactive"


@dataclass(slots=True)
class TaskFilterCriteria:
    start: datetime
    end: datetime
    date_criteria: DateCriteria = "closed"
    assignee_ids: list[int] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    priorities: list[str] = field(default_factory=list)
    search: str = ""

    @property
    def start_month(self) -> str:
        return month_key(self.start)

    @property
    def end_month(self) -> str:
        return month_key(self.end)

    def describe(self) -> dict[str, Any]:
        return {
            "startDate": self.start.isoformat(),
            "endDate": self.end.isoformat(),
            "dateCriteria": self.date_criteria,
            "assigneeIds": list(self.assignee_ids),
            "tags": list(self.tags),
            "categories": list(self.categories),
            "priorities": list(self.priorities),
            "search": self.search,
        }


def _status_name(task: dict[str, Any]) -> str:
    status = task.get("status")
    if isinstance(status, dict):
        return str(status.get("status") or "")
    return str(status or "")


def _matches(task: dict[str, Any], criteria: TaskFilterCriteria) -> bool:
    if criteria.date_criteria == "created":
        moment = parse_task_date(task.get("date_created"))
    elif criteria.date_criteria == "closed":
        moment = parse_task_date(task.get("date_closed"))
        if moment is None:
            return False
    else:
        moment = parse_task_date(task.get("date_updated"))

    if moment is not None and not (criteria.start <= moment <= criteria.end):
        return False

    if criteria.assignee_ids:
        task_assignees = {item.get("id") for item in task.get("assignees") or [] if isinstance(item, dict)}
        if not any(assignee in task_assignees for assignee in criteria.assignee_ids):
            return False

    if criteria.tags:
        task_tags = {str(item.get("name", "")).lower() for item in task.get("tags") or [] if isinstance(item, dict)}
        if not any(tag.lower() in task_tags for tag in criteria.tags):
            return False

    if criteria.categories and task["category"] not in criteria.categories:
        return False

    if criteria.priorities:
        priority = task.get("priority")
        name = priority.get("priority") if isinstance(priority, dict) else None
        if (name or "none") not in criteria.priorities:
            return False

    if criteria.search and criteria.search.lower() not in str(task.get("name") or "").lower():
        return False

    return True


def apply_filters(tasks: Iterable[TaskRecord], criteria: TaskFilterCriteria) -> list[dict[str, Any]]:
    """Annotate each task with its status category and keep the matches."""

    filtered: list[dict[str, Any]] = []
    for task in tasks:
        record = task.to_json_dict()
        record["category"] = status_category(_status_name(record))
        if _matches(record, criteria):
            filtered.append(record)
    return filtered


def collect_members(tasks: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    members: dict[Any, dict[str, Any]] = {}
    for task in tasks:
        for assignee in task.get("assignees") or []:
            if not isinstance(assignee, dict) or assignee.get("id") in members:
                continue
            username = str(assignee.get("username") or "")
            members[assignee.get("id")] = {
                "id": assignee.get("id"),
                "username": username,
                "email": assignee.get("email") or "",
                "color": assignee.get("color") or "#666",
                "profilePicture": assignee.get("profilePicture"),
                "initials": assignee.get("initials") or username[:2].upper() or "U",
            }
    return list(members.values())


def collect_tags(tasks: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    tags: dict[str, dict[str, Any]] = {}
    for task in tasks:
        for tag in task.get("tags") or []:
            if not isinstance(tag, dict):
                continue
            name = str(tag.get("name") or "")
            key = name.lower()
            if key and key not in tags:
                tags[key] = {"name": name, "tag_bg": tag.get("tag_bg") or "#666"}
    return list(tags.values())
