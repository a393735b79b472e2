"""Integration with the ClickUp task API."""
from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from backend.core.errors import SourceFetchError
from backend.core.settings import DEFAULT_API_BASE

logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    """Contract for the upstream task provider."""

    async def fetch_all_tasks(self) -> list[dict[str, Any]]:
        """Return every task of the configured list, open and closed."""

    async def aclose(self) -> None:
        """Release connections held by the source."""


class ClickUpTaskSource:
    """Client for the ClickUp v2 list-tasks endpoint.

    The endpoint pages 100 tasks at a time and reports ``last_page`` once the
    list is exhausted. Paging stops at ``page_limit`` pages as a guard against
    runaway loops.
    """

    def __init__(
        self,
        api_key: str | None,
        list_id: str | None,
        *,
        api_base: str = DEFAULT_API_BASE,
        page_limit: int = 10,
        include_closed: bool = True,
        include_subtasks: bool = True,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        parsed = urlparse(api_base)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("api_base must include scheme and host")

        self._api_key = api_key
        self._list_id = list_id
        self._api_base = api_base.rstrip("/")
        self._page_limit = page_limit
        self._include_closed = include_closed
        self._include_subtasks = include_subtasks
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise SourceFetchError("CLICKUP_API_KEY is not configured")
        return {"Authorization": self._api_key, "Content-Type": "application/json"}

    def _params(self, page: int) -> dict[str, str]:
        return {
            "page": str(page),
            "include_closed": str(self._include_closed).lower(),
            "subtasks": str(self._include_subtasks).lower(),
        }

    async def _fetch_page(self, page: int) -> tuple[list[dict[str, Any]], bool]:
        url = f"{self._api_base}/list/{self._list_id}/task"
        try:
            response = await self._client.get(url, params=self._params(page), headers=self._headers())
        except httpx.HTTPError as exc:
            raise SourceFetchError(f"failed to fetch tasks: {exc}") from exc

        if response.status_code >= 400:
            raise SourceFetchError(f"failed to fetch tasks: {response.status_code} - {response.text}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceFetchError("task response is not valid JSON") from exc

        tasks = payload.get("tasks") if isinstance(payload, dict) else None
        if not isinstance(tasks, list):
            raise SourceFetchError("task response has no task list")
        return [task for task in tasks if isinstance(task, dict)], bool(payload.get("last_page", True))

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def fetch_all_tasks(self) -> list[dict[str, Any]]:
        if not self._list_id:
            raise SourceFetchError("CLICKUP_LIST_ID is not configured")

        collected: list[dict[str, Any]] = []
        page = 0
        while True:
            tasks, last_page = await self._fetch_page(page)
            collected.extend(tasks)
            page += 1
            if last_page:
                break
            if page >= self._page_limit:
                logger.warning("Pagination limit reached after %s pages (%s tasks)", page, len(collected))
                break
        logger.debug("Fetched %s tasks from list %s", len(collected), self._list_id)
        return collected

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["ClickUpTaskSource", "DEFAULT_API_BASE", "TaskSource"]
