from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from examprep.app.api.practice_sessions import router as practice_sessions_router
from examprep.app.core.cache import get_cache
from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger, setup_logging
from examprep.app.db import models  # noqa: F401 - import to register models
from examprep.app.db.async_session import close_async_engine, get_async_engine, init_async_db
from examprep.app.exceptions import ExamPrepException, LockContentionError
from examprep.app.middleware.request_id import RequestIdMiddleware, get_request_id
from examprep.app.services.session_creator import get_session_creator
from examprep.app.services.session_sweeper import get_session_sweeper


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Create tables, wire the coordinator and run the sweeper."""
        await init_async_db()
        get_session_creator()

        sweeper = get_session_sweeper()
        if settings.sweep_enabled:
            await sweeper.start()

        logger.info(
            "Application startup complete",
            extra={"debug_mode": settings.debug},
        )

        yield

        await sweeper.stop()
        await get_cache().close()
        await close_async_engine()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ExamPrep Practice Sessions",
        description="Practice session creation with quota, freemium gating and idempotent retries",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestIdMiddleware)

    app.include_router(practice_sessions_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint with database and cache status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            from sqlalchemy import text

            async with get_async_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "ok"}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {
                "status": "error",
                "error": str(e)[:100],
            }

        try:
            cache = get_cache()
            await cache.exists("_health_check_test")
            cache_type = "redis" if cache.__class__.__name__ == "RedisCache" else "memory"
            health_status["components"]["cache"] = {"status": "ok", "type": cache_type}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["cache"] = {
                "status": "error",
                "error": str(e)[:100],
            }

        return health_status

    @app.exception_handler(ExamPrepException)
    async def examprep_exception_handler(request: Request, exc: ExamPrepException) -> JSONResponse:
        """Map domain errors to their HTTP status and error body."""
        headers = None
        if isinstance(exc, LockContentionError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": get_request_id(request)},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled exceptions and return a generic 500."""
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id},
        )
        content = {"error": "internal_error", "message": "Internal server error"}
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
