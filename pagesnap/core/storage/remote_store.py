"""
Remote Store
============

Durable storage for captured images. The production store posts photos to a
Telegram channel and keeps the returned message id and file id; the file id
can be re-sent by any bot client without re-uploading the image.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional
import asyncio

import aiohttp

from pagesnap.config.logging import get_logger
from pagesnap.config.settings import Settings, get_settings
from pagesnap.models.schemas import RemoteReference

logger = get_logger(__name__)


class RemoteStoreError(Exception):
    """Raised when an upload to the remote store fails."""

    pass


def default_caption(cache_key: str) -> str:
    return f"📦 Cache: {cache_key}"


class RemoteStore(ABC):
    """Opaque upload-only store returning (locator id, entry id)."""

    @abstractmethod
    async def upload(self, local_file: Path, caption: str) -> RemoteReference: ...

    async def close(self) -> None:
        """Release any held connections."""


class TelegramChannelStore(RemoteStore):
    """Uploads images to a channel through the Bot API ``sendPhoto`` method."""

    def __init__(
        self,
        bot_token: str,
        channel_id: str,
        api_url: str = "https://api.telegram.org",
        timeout: int = 60,
    ):
        self.bot_token = bot_token
        self.channel_id = channel_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.logger: Any = logger.bind(component="telegram_channel_store")  # structlog.BoundLoggerBase
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TelegramChannelStore":
        settings = settings or get_settings()
        if not settings.remote_store_enabled:
            raise RemoteStoreError("Remote store requires a bot token and a cache channel id")
        return cls(
            bot_token=settings.telegram_bot_token,  # type: ignore[arg-type]
            channel_id=settings.cache_channel_id,  # type: ignore[arg-type]
            api_url=settings.telegram_api_url,
            timeout=settings.remote_upload_timeout,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout, connect=10)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    @staticmethod
    def parse_send_photo_response(payload: Dict[str, Any]) -> RemoteReference:
        """Extract message id and the largest photo size's file id."""
        if not payload.get("ok"):
            raise RemoteStoreError(
                f"Bot API error {payload.get('error_code')}: {payload.get('description')}"
            )
        message = payload.get("result") or {}
        photos = message.get("photo") or []
        if not photos or "message_id" not in message:
            raise RemoteStoreError("Bot API response carries no photo")
        return RemoteReference(
            locator_id=int(message["message_id"]), entry_id=photos[-1]["file_id"]
        )

    async def upload(self, local_file: Path, caption: str) -> RemoteReference:
        """
        Post ``local_file`` to the cache channel.

        Raises:
            RemoteStoreError: On transport, HTTP or API-level failure
        """
        url = f"{self.api_url}/bot{self.bot_token}/sendPhoto"
        try:
            image = await asyncio.to_thread(local_file.read_bytes)
        except OSError as e:
            raise RemoteStoreError(f"Cannot read capture file {local_file}: {e}") from e

        form = aiohttp.FormData()
        form.add_field("chat_id", str(self.channel_id))
        form.add_field("caption", caption)
        form.add_field("photo", image, filename=local_file.name, content_type="image/jpeg")

        try:
            session = await self._get_session()
            async with session.post(url, data=form) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {"ok": False, "description": await response.text()}
                if response.status != 200 and payload.get("ok", False):
                    payload = {"ok": False, "error_code": response.status}
        except aiohttp.ClientError as e:
            raise RemoteStoreError(f"Upload to cache channel failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise RemoteStoreError("Upload to cache channel timed out") from e

        reference = self.parse_send_photo_response(payload)
        self.logger.info(
            "Uploaded capture to cache channel",
            file=local_file.name,
            message_id=reference.locator_id,
        )
        return reference
