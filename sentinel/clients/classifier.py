"""
Scam Classifier.

Sends a voicemail transcript or SMS body to an LLM and turns the JSON
answer into a ``Verdict``. The model is an opaque collaborator: any
field may be missing, and callers must treat absence as "unknown".
"""

from __future__ import annotations

import json
import re
from typing import Any

import httpx
from pydantic import ValidationError

from sentinel.config import Settings, get_settings
from sentinel.errors import CollaboratorError
from sentinel.logging_config import get_logger
from sentinel.schemas.verdict import CallbackDetails, Verdict

logger = get_logger(__name__)

CRYPTO_EXCHANGES = {"kraken", "coinbase", "binance"}

CLASSIFICATION_PROMPT = """You are a cybersecurity expert specializing in detecting voice and text scams.

Analyze the message below and determine:
1. Is this a scam message?
2. Which company or service is it impersonating?
3. What callback method is requested (phone number to call back, press a key, ...)?
4. What type of scam is it (crypto exchange, IT support, banking, ...)?
5. How confident are you (0-100)?

Scammers often leave a callback number different from the number they call from;
extract it exactly as it appears. Correct common transcription errors ("Crack and"
means "Kraken"). The impersonated_company field must contain ONLY the company name.

MESSAGE:
---
{message}
---

Respond ONLY with a JSON object of this exact shape:
{
  "is_scam": true,
  "impersonated_company": "Kraken",
  "callback_method": {"type": "phone_number", "details": "+15551234567"},
  "scam_type": "crypto_exchange",
  "confidence": 85,
  "reasoning": "brief explanation"
}
Use scam_type "crypto_exchange", "it_support", "banking", "other" or "not_a_scam"."""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class ScamClassifier:
    def __init__(self, http: httpx.AsyncClient, settings: Settings | None = None) -> None:
        self._http = http
        self._settings = settings or get_settings()

    async def classify(self, text: str) -> Verdict:
        """
        Classify ``text``.

        Raises:
            CollaboratorError: the model could not be reached or its answer
                was not JSON.
        """
        prompt = CLASSIFICATION_PROMPT.replace("{message}", text)
        try:
            response = await self._http.post(
                "https://api.openai.com/v1/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._settings.openai_api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self._settings.openai_model,
                    "messages": [
                        {"role": "system", "content": "You are a cybersecurity expert specializing in scam detection."},
                        {"role": "user", "content": prompt},
                    ],
                    "response_format": {"type": "json_object"},
                    "temperature": 0.1,
                },
                timeout=self._settings.classification_timeout_seconds,
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.error("classification_request_error", error=str(e))
            raise CollaboratorError("classifier", str(e)) from e

        verdict = parse_verdict(content)
        logger.info(
            "classification_complete",
            is_scam=verdict.is_scam,
            company=verdict.impersonated_company,
            scam_type=verdict.scam_type,
            confidence=verdict.confidence,
        )
        return verdict


def parse_verdict(content: str) -> Verdict:
    """Parse a model answer, tolerating markdown fences and partial fields."""
    match = _FENCED_JSON.search(content)
    raw = match.group(1) if match else content
    try:
        parsed: dict[str, Any] = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CollaboratorError("classifier", f"non-JSON answer: {e}") from e

    callback = parsed.get("callback_method") or parsed.get("callbackMethod") or {}
    company = parsed.get("impersonated_company") or parsed.get("impersonatedCompany")
    scam_type = parsed.get("scam_type") or parsed.get("scamType")
    if company and company.lower() in CRYPTO_EXCHANGES:
        scam_type = "crypto_exchange"

    confidence = parsed.get("confidence")
    try:
        confidence = None if confidence is None else min(100.0, max(0.0, float(confidence)))
    except (TypeError, ValueError):
        confidence = None

    try:
        return Verdict(
            is_scam=bool(parsed.get("is_scam", parsed.get("isScam", False))),
            impersonated_company=company,
            scam_type=scam_type,
            confidence=confidence,
            callback_details=CallbackDetails(
                method=callback.get("type"),
                details=callback.get("details"),
            ) if isinstance(callback, dict) and callback else None,
        )
    except ValidationError as e:
        logger.warning("classification_parse_error", error=str(e))
        return Verdict()
