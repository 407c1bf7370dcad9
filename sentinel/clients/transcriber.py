"""
Voicemail transcription via Deepgram's pre-recorded API.

Only used when the telephony provider did not supply its own
transcription text.
"""

from __future__ import annotations

from typing import Optional

import httpx

from sentinel.config import Settings, get_settings
from sentinel.errors import CollaboratorError
from sentinel.logging_config import get_logger

logger = get_logger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"


class Transcriber:
    def __init__(self, http: httpx.AsyncClient, settings: Settings | None = None) -> None:
        self._http = http
        self._settings = settings or get_settings()

    async def transcribe(self, recording_url: str) -> Optional[str]:
        """Return the transcript of the recording at ``recording_url``, or ``None`` if empty."""
        try:
            response = await self._http.post(
                DEEPGRAM_LISTEN_URL,
                params={"model": "nova-2", "smart_format": "true", "punctuate": "true"},
                headers={"Authorization": f"Token {self._settings.deepgram_api_key}"},
                json={"url": recording_url},
                timeout=self._settings.classification_timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
            transcript = data["results"]["channels"][0]["alternatives"][0]["transcript"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.error("transcription_error", error=str(e))
            raise CollaboratorError("transcriber", str(e)) from e

        transcript = (transcript or "").strip()
        logger.info("transcription_complete", length=len(transcript))
        return transcript or None
