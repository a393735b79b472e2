"""Settings loaded from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_API_BASE = "https://api.clickup.com/api/v2"
DEFAULT_CORS_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


def _env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    return default if value is None else value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items or default


def _default_cache_dir() -> Path:
    return Path(__file__).resolve().parents[2] / "cache"


@dataclass(frozen=True, slots=True)
class Settings:
    clickup_api_key: str | None
    clickup_list_id: str
    clickup_space_id: str
    clickup_api_base: str = DEFAULT_API_BASE
    clickup_page_limit: int = 10
    cache_dir: Path = field(default_factory=_default_cache_dir)
    merge_policy: str = "superset"
    stale_after_misses: int = 3
    build_pause_seconds: float = 0.1
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        cache_dir_raw = _env("CACHE_DIR")
        cache_dir = Path(cache_dir_raw).expanduser().resolve() if cache_dir_raw else _default_cache_dir()
        return Settings(
            clickup_api_key=_env("CLICKUP_API_KEY") or None,
            clickup_list_id=_env("CLICKUP_LIST_ID"),
            clickup_space_id=_env("CLICKUP_SPACE_ID"),
            clickup_api_base=_env("CLICKUP_API_BASE", DEFAULT_API_BASE) or DEFAULT_API_BASE,
            clickup_page_limit=max(1, _env_int("CLICKUP_PAGE_LIMIT", 10)),
            cache_dir=cache_dir,
            merge_policy=_env("CACHE_MERGE_POLICY", "superset") or "superset",
            stale_after_misses=max(1, _env_int("CACHE_STALE_AFTER_MISSES", 3)),
            build_pause_seconds=max(0.0, _env_float("CACHE_BUILD_PAUSE_SECONDS", 0.1)),
            cors_origins=_env_list("API_CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
            log_level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
        )
