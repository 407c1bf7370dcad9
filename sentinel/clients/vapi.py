"""
Outbound agent calls through VAPI.

``start_call`` dials a scammer back with a conversational agent, picked
by the company the scammer impersonated when one matches;
``poll_recording`` asks whether that call's recording exists yet. The
recording appears some unpredictable time after the call ends, so
"not yet" is a normal answer, not an error.
"""

from __future__ import annotations

import re
from datetime import datetime
from difflib import SequenceMatcher
from typing import Any, Optional

import httpx

from sentinel.config import Settings, get_settings
from sentinel.errors import CollaboratorError
from sentinel.logging_config import get_logger, redact_phone_number
from sentinel.schemas.verdict import Recording, StartedCall

logger = get_logger(__name__)

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

# Companies agents are built to impersonate; an agent belongs to the one its name mentions.
KNOWN_TARGETS = ("coinbase", "kraken", "binance", "microsoft", "apple", "google", "amazon", "paypal")
MATCH_THRESHOLD = 0.6


def format_e164(number: str) -> Optional[str]:
    """Normalize a North American or already-international number to E.164."""
    if not number:
        return None
    if number.startswith("+") and number[1:].isdigit():
        return number
    digits = re.sub(r"\D", "", number)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) > 11:
        return f"+{digits}"
    return None


def _extract_recording_url(call: dict[str, Any]) -> Optional[str]:
    artifact = call.get("artifact") or {}
    recording = call.get("recording") or {}
    return (
        call.get("recordingUrl")
        or artifact.get("recordingUrl")
        or recording.get("url")
        or (call.get("recordingData") or {}).get("url")
    )


def match_assistant(company: Optional[str], assistants: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """
    Pick the assistant whose target company best resembles ``company``.

    Similarity is fuzzy so "Coin Base" or "Krakken" still find their
    agent; below ``MATCH_THRESHOLD`` there is no match.
    """
    if not company or not assistants:
        return None
    wanted = company.strip().lower()

    best: Optional[dict[str, Any]] = None
    best_score = 0.0
    for assistant in assistants:
        name = (assistant.get("name") or "").lower()
        target = next((t for t in KNOWN_TARGETS if t in name), None)
        if target is None:
            continue
        score = SequenceMatcher(None, wanted, target).ratio()
        if score > best_score:
            best, best_score = assistant, score

    if best is not None and best_score >= MATCH_THRESHOLD:
        return best
    return None


def _duration(call: dict[str, Any]) -> Optional[float]:
    started, ended = call.get("startedAt"), call.get("endedAt")
    if not started or not ended:
        return None
    try:
        start = datetime.fromisoformat(started.replace("Z", "+00:00"))
        end = datetime.fromisoformat(ended.replace("Z", "+00:00"))
    except ValueError:
        return None
    return max(0.0, (end - start).total_seconds())


class VapiClient:
    def __init__(self, http: httpx.AsyncClient, settings: Settings | None = None) -> None:
        self._http = http
        self._settings = settings or get_settings()

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.vapi_api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self._settings.vapi_api_url.rstrip('/')}{path}"

    async def list_assistants(self) -> list[dict[str, Any]]:
        response = await self._http.get(
            self._url("/assistant"),
            headers=self._headers,
            timeout=self._settings.collaborator_timeout_seconds,
        )
        response.raise_for_status()
        assistants = response.json()
        return assistants if isinstance(assistants, list) else []

    async def find_assistant(self, company: Optional[str]) -> Optional[dict[str, Any]]:
        """The agent built for ``company``, or ``None`` to use the default assistant."""
        if not company or company == "Unknown":
            return None
        try:
            assistants = await self.list_assistants()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("vapi_assistant_list_error", company=company, error=str(e))
            return None

        assistant = match_assistant(company, assistants)
        if assistant is None:
            logger.info("vapi_assistant_not_matched", company=company, candidates=len(assistants))
        else:
            logger.info("vapi_assistant_matched", company=company, assistant_name=assistant.get("name"))
        return assistant

    async def start_call(self, target: str, context: dict[str, Any]) -> StartedCall:
        """
        Dial ``target`` with the agent for the impersonated company, or
        the configured default assistant when none matches.

        ``context`` (scam type, company, originating call) is passed as
        call metadata and as assistant variables.

        Raises:
            CollaboratorError: invalid number or VAPI refused the call.
        """
        number = format_e164(target)
        if not number:
            raise CollaboratorError("vapi", f"unformattable phone number: {target!r}")

        assistant = await self.find_assistant(context.get("impersonatedCompany"))
        assistant_id = (assistant or {}).get("id") or self._settings.vapi_assistant_id

        metadata = {"source": "SIPSentinel", **{k: v for k, v in context.items() if v is not None}}
        body = {
            "assistantId": assistant_id,
            "phoneNumberId": self._settings.vapi_phone_number_id,
            "customer": {"number": number},
            "metadata": metadata,
            "assistantOverrides": {"variableValues": {k: str(v) for k, v in metadata.items()}},
        }

        try:
            response = await self._http.post(
                self._url("/call"),
                headers=self._headers,
                json=body,
                timeout=self._settings.collaborator_timeout_seconds,
            )
            response.raise_for_status()
            call = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("vapi_call_create_error", target=redact_phone_number(number), error=str(e))
            raise CollaboratorError("vapi", str(e)) from e

        assistant_name = (call.get("assistant") or {}).get("name") or (assistant or {}).get("name")
        started = StartedCall(id=call["id"], assistant_name=assistant_name)
        logger.info(
            "vapi_call_created",
            agent_call_id=started.id,
            assistant_id=assistant_id,
            target=redact_phone_number(number),
        )
        return started

    async def poll_recording(self, call_id: str) -> Optional[Recording]:
        """
        Return the finished call's recording, or ``None`` if it is not available yet.

        Raises:
            httpx.HTTPError: transport failures and unexpected status codes.
        """
        if not _UUID.match(call_id):
            logger.warning("vapi_call_id_not_uuid", agent_call_id=call_id)
            return None

        response = await self._http.get(
            self._url(f"/call/{call_id}"),
            headers=self._headers,
            timeout=self._settings.collaborator_timeout_seconds,
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        call = response.json()

        recording_url = _extract_recording_url(call)
        if not recording_url:
            logger.info("vapi_recording_not_ready", agent_call_id=call_id, status=call.get("status"))
            return None

        return Recording(
            call_id=call_id,
            recording_url=recording_url,
            duration=_duration(call),
            assistant_name=(call.get("assistant") or {}).get("name"),
            impersonated_company=(call.get("metadata") or {}).get("impersonatedCompany"),
            started_at=call.get("startedAt"),
            ended_at=call.get("endedAt"),
            ended_reason=call.get("endedReason"),
            raw=call,
        )
