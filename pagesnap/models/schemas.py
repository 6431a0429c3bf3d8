"""
Pydantic Models and Schemas
===========================

Data models for render requests, cache entries, pool status and API responses.
"""

from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# Enums
class EngineStatus(str, Enum):
    """Lifecycle states of the shared browser engine."""
    UNINITIALIZED = "uninitialized"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    UNAVAILABLE = "unavailable"


class PageState(str, Enum):
    """States of a keyed page handle."""
    IDLE = "idle"
    IN_USE = "in_use"
    CLOSED = "closed"


# Requests
class RenderRequest(BaseModel):
    """Request to render a page into an image for a cache key."""
    url: str = Field(..., min_length=1, description="Page to render")
    cache_key: str = Field(..., min_length=1, max_length=255, description="Cache key")
    force_refresh: bool = Field(default=False, description="Bypass a fresh cache entry")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://", "file://")):
            raise ValueError("URL must use http, https or file scheme")
        return v

    @field_validator("cache_key")
    @classmethod
    def validate_cache_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Cache key must not be blank")
        return v


# Cache
class CacheEntry(BaseModel):
    """Cache row mapping a key to a remote reference.

    ``is_expired`` is derived from ``created_at`` when the entry is read and is
    never persisted.
    """
    cache_key: str
    remote_entry_id: str
    remote_locator_id: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    is_expired: bool = Field(default=False, exclude=True)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.created_at).total_seconds()

    def format_age(self, now: Optional[datetime] = None) -> str:
        """Human readable age such as ``4h 59m``."""
        total_minutes = int(self.age_seconds(now) // 60)
        return f"{total_minutes // 60}h {total_minutes % 60}m"


class CacheEntryView(BaseModel):
    """Cache entry as exposed over the API."""
    cache_key: str
    remote_entry_id: str
    remote_locator_id: int
    created_at: datetime
    is_expired: bool
    age: str


class RemoteReference(BaseModel):
    """Identifiers returned by the durable remote store."""
    locator_id: int
    entry_id: str


# Results
class ScreenshotResult(BaseModel):
    """Outcome of a cache-aside screenshot request.

    Exactly one of ``remote_entry_id`` or ``file_path`` is normally set: a cache
    hit carries the remote reference, a fresh capture carries the local file.
    After a successful publish both the reference and ``uploaded`` are set.
    """
    cache_key: str
    remote_entry_id: Optional[str] = None
    remote_locator_id: Optional[int] = None
    file_path: Optional[Path] = None
    from_cache: bool = False
    uploaded: bool = False


class HousekeepingReport(BaseModel):
    """Summary of one housekeeping run."""
    expired_entries: int = 0
    deleted_files: int = 0
    skipped: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)


class PoolStatus(BaseModel):
    """Snapshot of the render session pool."""
    engine_status: EngineStatus
    live_pages: int
    page_keys: List[str]
    screenshots_since_restart: int
    last_restart_at: Optional[datetime] = None
    browser_version: Optional[str] = None


# API responses
class HealthStatus(BaseModel):
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    version: str = "1.0.0"


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[dict] = None
