"""Application services."""

from .cache import (
    CacheService,
    aclose_task_source,
    configure_cache_service,
    configure_task_source,
    get_cache_service,
    get_settings,
    get_task_source,
    reset_cache_state,
)

__all__ = [
    "CacheService",
    "aclose_task_source",
    "configure_cache_service",
    "configure_task_source",
    "get_cache_service",
    "get_settings",
    "get_task_source",
    "reset_cache_state",
]
