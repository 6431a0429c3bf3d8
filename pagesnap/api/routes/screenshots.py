"""
Screenshot Routes
=================

Render requests and cache administration.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from pagesnap.api.dependencies import Services, get_services
from pagesnap.config.logging import get_logger
from pagesnap.core.rendering.capture_engine import CaptureFailed
from pagesnap.core.screenshot_service import describe_failure
from pagesnap.models.schemas import CacheEntryView, RenderRequest, ScreenshotResult

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Screenshots"])


class PublishRequest(RenderRequest):
    caption: Optional[str] = None


class ClearCacheResponse(BaseModel):
    deleted: int


@router.post("/screenshots", response_model=ScreenshotResult)
async def publish_screenshot(
    request: PublishRequest, services: Services = Depends(get_services)
) -> ScreenshotResult:
    """Serve a cached reference or render, upload and cache a fresh image."""
    render_request = RenderRequest(
        url=request.url, cache_key=request.cache_key, force_refresh=request.force_refresh
    )
    try:
        return await services.screenshots.publish(render_request, caption=request.caption)
    except CaptureFailed as e:
        logger.error("Error getting screenshot", cache_key=request.cache_key, error=str(e))
        raise HTTPException(
            status_code=504 if e.is_timeout else 503,
            detail={"error": "capture_failed", "message": describe_failure(e)},
        )


@router.get("/cache", response_model=List[CacheEntryView])
async def list_cache(services: Services = Depends(get_services)) -> List[CacheEntryView]:
    entries = await services.screenshots.list_cached()
    return [
        CacheEntryView(
            cache_key=entry.cache_key,
            remote_entry_id=entry.remote_entry_id,
            remote_locator_id=entry.remote_locator_id,
            created_at=entry.created_at,
            is_expired=entry.is_expired,
            age=entry.format_age(),
        )
        for entry in entries
    ]


@router.delete("/cache", response_model=ClearCacheResponse)
async def clear_cache(services: Services = Depends(get_services)) -> ClearCacheResponse:
    return ClearCacheResponse(deleted=await services.screenshots.clear_cache())


@router.delete("/cache/{cache_key}", status_code=204)
async def evict_cache_entry(cache_key: str, services: Services = Depends(get_services)) -> None:
    if not await services.screenshots.evict(cache_key):
        raise HTTPException(status_code=404, detail=f"No cache entry for {cache_key!r}")
