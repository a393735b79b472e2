from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable
from uuid import uuid4

from backend.application import CacheService, get_cache_service, get_settings, get_task_source
from backend.application.cache import coerce_tasks
from backend.core.schema import BuildStatusResponse, CacheBuildResponse
from backend.infrastructure import TaskSource

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class BuildWorker:
    """Backfills uncached historical months in the background.

    At most one build runs per process. The in-memory flag is the guard; the
    persisted ``buildProgress`` only reports what happened.
    """

    def __init__(
        self,
        service: CacheService,
        source: TaskSource,
        *,
        pause_seconds: float = 0.1,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._service = service
        self._source = source
        self._pause_seconds = pause_seconds
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def _claim(self) -> bool:
        async with self._lock:
            if self._running:
                return False
            self._running = True
            return True

    async def start(self) -> CacheBuildResponse:
        """Start a build in the background, or report the one in flight."""

        if not await self._claim():
            meta = await self._service.get_metadata()
            return CacheBuildResponse(
                success=False,
                message="Build already in progress",
                progress=meta.build_progress if meta else None,
            )
        self._task = asyncio.create_task(self._execute(), name="cache-build")
        return CacheBuildResponse(success=True, message="Build started in background")

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def shutdown(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def status(self) -> BuildStatusResponse:
        meta = await self._service.get_metadata()
        progress = meta.build_progress if meta else None
        return BuildStatusResponse(
            is_running=self._running,
            persisted_running=bool(progress and progress.is_running),
            progress=progress,
            last_error=self._last_error,
        )

    async def _execute(self) -> None:
        self._last_error = None
        try:
            await self._build()
        except Exception as exc:
            self._last_error = str(exc) or exc.__class__.__name__
            logger.exception("Cache build aborted")
        finally:
            try:
                await self._service.finish_build_progress()
            except Exception:
                logger.exception("Failed to finalize build progress")
            self._running = False

    async def _build(self) -> None:
        service = self._service
        await service.ensure_initialized()

        logger.info("Fetching all tasks")
        tasks = coerce_tasks(await self._source.fetch_all_tasks())
        logger.info("%s tasks fetched", len(tasks))

        await service.cache_current_month(tasks, True)

        months = await service.get_uncached_months()
        if not months:
            logger.info("All historical months already cached")
            return

        run_id = uuid4().hex
        total = len(months)
        await service.start_build_progress(total, run_id)
        logger.info("Build %s caching %s months", run_id, total)

        for index, month in enumerate(months, start=1):
            logger.info("Caching %s (%s/%s)", month, index, total)
            try:
                await service.cache_historical_month(month, tasks)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                logger.error("Failed to cache %s: %s", month, message)
                await self._mark_failed(month, message)
                await service.update_build_progress(month, index, message)
            else:
                await service.update_build_progress(month, index)

            if index < total:
                await self._sleep(self._pause_seconds)

        logger.info("Build %s finished", run_id)

    async def _mark_failed(self, month: str, message: str) -> None:
        try:
            await self._service.mark_month_error(month, message)
        except Exception:
            logger.exception("Could not record failure for %s", month)


_worker: BuildWorker | None = None


def get_build_worker() -> BuildWorker:
    global _worker
    if _worker is None:
        _worker = BuildWorker(
            get_cache_service(),
            get_task_source(),
            pause_seconds=get_settings().build_pause_seconds,
        )
    return _worker


def reset_build_worker() -> None:
    global _worker
    _worker = None
