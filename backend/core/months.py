"""Month-key arithmetic and upstream timestamp parsing.

Month keys are ``YYYY-MM`` strings. They are fixed width and zero padded, so
plain string comparison orders them chronologically. All month boundaries are
computed in UTC.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone

MONTH_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def is_month_key(value: str) -> bool:
    match = MONTH_KEY_PATTERN.fullmatch(value or "")
    return bool(match) and 1 <= int(match.group(2)) <= 12


def parse_month_key(value: str) -> tuple[int, int]:
    if not is_month_key(value):
        raise ValueError(f"invalid month key: {value!r}")
    year, month = value.split("-")
    return int(year), int(month)


def shift_month(value: str, delta: int) -> str:
    year, month = parse_month_key(value)
    index = year * 12 + (month - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def month_bounds(value: str) -> tuple[datetime, datetime]:
    """Return ``[start, next_start)`` for the month in UTC."""

    year, month = parse_month_key(value)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    next_year, next_month = parse_month_key(shift_month(value, 1))
    return start, datetime(next_year, next_month, 1, tzinfo=timezone.utc)


def trailing_months(current: str, count: int) -> list[str]:
    """The ``count`` calendar months before ``current``, newest first."""

    return [shift_month(current, -offset) for offset in range(1, count + 1)]


def parse_task_date(value: object) -> datetime | None:
    """Parse an upstream timestamp.

    ClickUp sends Unix epoch milliseconds as strings; ISO 8601 strings are
    accepted as well. Anything unparseable is treated as absent.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    raw = str(value).strip()
    if not raw:
        return None
    if re.fullmatch(r"-?\d+", raw):
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
