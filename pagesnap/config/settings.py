"""
Application Settings
===================

Main application settings and environment configuration using Pydantic Settings.
Supports development, testing, and production environments.
"""

from typing import Optional, List, Union
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
from pathlib import Path


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    # Application Configuration
    app_name: str = Field(default="PageSnap", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(
        default="development", description="Environment: development, testing, production"
    )
    debug: bool = Field(default=True, description="Debug mode")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    allowed_hosts: List[str] = Field(default=["*"], description="Allowed hosts for CORS")

    # Cache Metadata Configuration
    cache_backend: str = Field(
        default="memory", description="Cache metadata backend: memory, postgres, redis"
    )
    cache_ttl_seconds: int = Field(default=5 * 60 * 60, description="Cache entry TTL in seconds")
    cache_table_name: str = Field(default="channel_cache", description="PostgreSQL cache table")
    cache_redis_prefix: str = Field(default="pagesnap:cache", description="Redis key prefix")
    database_url: Optional[str] = Field(default=None, description="PostgreSQL connection URL")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_max_connections: int = Field(default=20, description="Redis connection pool size")

    # Storage Configuration
    storage_path: Path = Field(default=Path("./storage"), description="Storage directory path")
    screenshot_dir: Path = Field(
        default=Path("./screenshots"), description="Local capture output directory"
    )

    # Remote Store Configuration
    telegram_bot_token: Optional[str] = Field(default=None, description="Bot API token")
    cache_channel_id: Optional[str] = Field(
        default=None, description="Channel used as durable image storage"
    )
    telegram_api_url: str = Field(
        default="https://api.telegram.org", description="Bot API base URL"
    )
    remote_upload_timeout: int = Field(default=60, description="Upload timeout in seconds")

    # Browser Configuration
    browser_headless: bool = Field(default=True, description="Run browser in headless mode")
    browser_executable_path: Optional[str] = Field(
        default=None, description="Chromium executable, falls back to CHROME_BIN"
    )
    browser_launch_timeout_ms: int = Field(default=60000, description="Browser launch timeout")
    browser_viewport_width: int = Field(default=3840, description="Page viewport width")
    browser_viewport_height: int = Field(default=2160, description="Page viewport height")
    browser_default_timeout_ms: int = Field(
        default=120000, description="Default page and navigation timeout"
    )
    browser_max_pages: int = Field(default=20, description="Hard cap on live pages")
    browser_restart_after_screenshots: int = Field(
        default=50, description="Restart the browser after this many screenshots"
    )
    browser_restart_min_interval_seconds: float = Field(
        default=30.0, description="Minimum time between two restarts"
    )
    browser_restart_delay_seconds: float = Field(
        default=2.0, description="Pause between closing and relaunching the browser"
    )

    # Capture Configuration
    capture_max_attempts: int = Field(default=3, description="Attempts per capture")
    capture_retry_backoff_seconds: float = Field(default=5.0, description="Sleep between attempts")
    capture_idle_page_limit: int = Field(
        default=5, description="Pages kept before each capture attempt"
    )
    navigation_timeout_ms: int = Field(default=120000, description="Navigation timeout")
    content_selector: str = Field(
        default='table, .timetable, [class*="schedule"], [class*="table"], #schedule, #timetable',
        description="Selectors signalling rendered content",
    )
    content_selector_timeout_ms: int = Field(default=20000, description="Content selector wait")
    body_selector_timeout_ms: int = Field(default=15000, description="Fallback body wait")
    content_height_timeout_ms: int = Field(default=20000, description="Page height wait")
    min_content_height_px: int = Field(default=500, description="Non-trivial page height")
    settle_delay_seconds: float = Field(default=3.0, description="Fixed settle delay")
    capture_element_selector: Optional[str] = Field(
        default="#timetable, .timetable", description="Element captured instead of the full page"
    )
    screenshot_timeout_ms: int = Field(default=60000, description="Screenshot timeout")
    screenshot_jpeg_quality: int = Field(default=100, ge=1, le=100, description="JPEG quality")

    # Housekeeping Configuration
    housekeeping_enabled: bool = Field(default=True, description="Run the hourly loop in-process")
    housekeeping_interval_seconds: float = Field(default=3600.0, description="Housekeeping cadence")
    housekeeping_max_file_age_hours: float = Field(
        default=24.0, description="Age after which local captures are deleted"
    )

    # Celery Configuration
    celery_broker_url: str = Field(
        default="redis://localhost:6379/1", description="Celery broker URL"
    )
    celery_result_backend: str = Field(
        default="redis://localhost:6379/1", description="Celery result backend URL"
    )

    # Monitoring Configuration
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "testing", "production"}
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        """Validate cache backend name."""
        allowed = {"memory", "postgres", "redis"}
        if v.lower() not in allowed:
            raise ValueError(f"Cache backend must be one of: {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def parse_allowed_hosts(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse allowed hosts from string or list."""
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("[") and v.endswith("]"):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [host.strip() for host in v.split(",") if host.strip()]
        return v

    @field_validator("storage_path", "screenshot_dir")
    @classmethod
    def create_directories(cls, v: Path) -> Path:
        """Ensure directories exist."""
        v.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def remote_store_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.cache_channel_id)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, env_prefix="PAGESNAP_"
    )


# Global settings instance - will be initialized when needed
settings = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
