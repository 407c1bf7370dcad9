"""
Recording delivery through the Telegram Bot API.

With an attachment the recording is sent by URL via ``sendAudio`` and
the message becomes its caption; without one a plain ``sendMessage`` is
used. Failures are reported in the result, never raised.
"""

from __future__ import annotations

from typing import Optional

import httpx

from sentinel.config import Settings, get_settings
from sentinel.logging_config import get_logger
from sentinel.schemas.verdict import DeliveryResult

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/{method}"
CAPTION_LIMIT = 1024


class TelegramSink:
    def __init__(self, http: httpx.AsyncClient, settings: Settings | None = None) -> None:
        self._http = http
        self._settings = settings or get_settings()

    async def deliver(self, message: str, attachment_url: Optional[str] = None) -> DeliveryResult:
        if not self._settings.telegram_bot_token or not self._settings.telegram_chat_id:
            logger.warning("telegram_not_configured")
            return DeliveryResult(success=False, error="Telegram is not configured")

        if attachment_url:
            method = "sendAudio"
            payload = {
                "chat_id": self._settings.telegram_chat_id,
                "audio": attachment_url,
                "caption": message[:CAPTION_LIMIT],
                "parse_mode": "HTML",
            }
        else:
            method = "sendMessage"
            payload = {
                "chat_id": self._settings.telegram_chat_id,
                "text": message,
                "parse_mode": "HTML",
            }

        url = TELEGRAM_API_URL.format(token=self._settings.telegram_bot_token, method=method)
        try:
            response = await self._http.post(url, json=payload, timeout=self._settings.collaborator_timeout_seconds)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("telegram_delivery_error", method=method, error=str(e))
            return DeliveryResult(success=False, error=str(e))

        if not data.get("ok"):
            error = data.get("description", f"HTTP {response.status_code}")
            logger.error("telegram_delivery_rejected", method=method, error=error)
            return DeliveryResult(success=False, error=error)

        logger.info("telegram_delivery_sent", method=method, has_attachment=bool(attachment_url))
        return DeliveryResult(success=True)
