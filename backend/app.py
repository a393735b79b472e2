from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.application import aclose_task_source, get_cache_service, get_settings
from backend.core.errors import CacheError, NotInitializedError, SourceFetchError
from backend.core.logging_setup import setup_logging
from backend.routes import cache
from backend.workers.build import get_build_worker


def _error_status(exc: CacheError) -> int:
    if isinstance(exc, NotInitializedError):
        return 404
    if isinstance(exc, SourceFetchError):
        return 502
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    # No build can be running in a fresh process; clear any flag left behind.
    await get_cache_service().recover_interrupted_build()
    yield
    await get_build_worker().shutdown()
    await aclose_task_source()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title="Task Dashboard Cache API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CacheError)
    async def cache_error_handler(request: Request, exc: CacheError) -> JSONResponse:
        return JSONResponse(status_code=_error_status(exc), content={"success": False, "error": str(exc)})

    app.include_router(cache.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Task Dashboard Cache API",
                "docs": "/docs",
                "health": "/api/cache/status",
            }
        )

    return app


app = create_app()
