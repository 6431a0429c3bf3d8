"""
FastAPI Application
==================

HTTP surface for screenshot requests, cache administration and maintenance.
"""

from contextlib import asynccontextmanager
import uuid
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from pagesnap.config.settings import get_settings
from pagesnap.config.logging import bind_request_context, clear_request_context, get_logger
from pagesnap.api.dependencies import build_services
from pagesnap.api.routes.health import router as health_router
from pagesnap.api.routes.screenshots import router as screenshots_router
from pagesnap.api.routes.maintenance import router as maintenance_router
from pagesnap.core.cache.store import CacheIOError
from pagesnap.models.schemas import ErrorResponse

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting PageSnap API", environment=settings.environment)

    try:
        services = await build_services(settings)
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        raise RuntimeError(f"Service initialization failed: {e}")

    # A failed launch leaves the pool unavailable instead of aborting startup
    await services.pool.start()
    if settings.housekeeping_enabled:
        services.housekeeping.start()

    app.state.services = services
    try:
        yield
    finally:
        logger.info("Shutting down PageSnap API")
        try:
            await services.close()
        except Exception as e:
            logger.error("Error closing services", error=str(e))


settings = get_settings()
app = FastAPI(
    title="PageSnap",
    description="Render web pages to images behind a time-to-live cache",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_hosts,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(screenshots_router)
app.include_router(maintenance_router)


@app.middleware("http")
async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a request id to each response and to the records logged for it."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    bind_request_context(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(CacheIOError)
async def cache_error_handler(request: Request, exc: CacheIOError) -> JSONResponse:
    logger.error("Cache metadata error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(error="cache_unavailable", message=str(exc)).model_dump(),
    )


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    uvicorn.run(
        "pagesnap.api.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
