"""
API Router: Inbound Webhooks.

Twilio posts form-encoded callbacks for the voicemail line and SMS;
VAPI posts JSON server messages about agent calls. Every handler
answers straight away and leaves the pipeline work to a background
task, so a slow store or queue never delays the provider's response.
"""

from __future__ import annotations

from typing import Any, Optional
from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from sentinel.api.deps import Services, get_services
from sentinel.logging_config import call_id_var, get_logger, redact_phone_number

logger = get_logger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

TWIML_MEDIA_TYPE = "application/xml"
MAX_RECORDING_SECONDS = 120


def twiml(*verbs: str) -> Response:
    body = '<?xml version="1.0" encoding="UTF-8"?><Response>' + "".join(verbs) + "</Response>"
    return Response(content=body, media_type=TWIML_MEDIA_TYPE)


def voicemail_twiml(greeting: str, base_url: str) -> Response:
    base = base_url.rstrip("/")
    record = (
        f"<Record maxLength=\"{MAX_RECORDING_SECONDS}\" playBeep=\"true\" transcribe=\"true\""
        f" transcribeCallback={quoteattr(base + '/api/webhooks/transcription')}"
        f" recordingStatusCallback={quoteattr(base + '/api/webhooks/recording-status')}"
        f" recordingStatusCallbackEvent=\"in-progress completed\"/>"
    )
    return twiml(f"<Say>{escape(greeting)}</Say>", record, "<Hangup/>")


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _form(request: Request) -> dict[str, str]:
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


@router.post("/voice")
async def voice_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Response:
    """A call reached the voicemail line: answer with the greeting and start recording."""
    form = await _form(request)
    call_id = form.get("CallSid")
    caller = form.get("From", "")
    if call_id:
        call_id_var.set(call_id)
        logger.info("voice_webhook_received", caller=redact_phone_number(caller))
        background.add_task(services.pipeline.on_call_started, call_id, caller)
    else:
        logger.warning("voice_webhook_missing_call_sid")

    return voicemail_twiml(services.settings.voicemail_greeting, services.settings.public_base_url)


@router.post("/recording-status")
async def recording_status_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Response:
    form = await _form(request)
    call_id = form.get("CallSid")
    status = form.get("RecordingStatus", "completed")
    if not call_id:
        logger.warning("recording_webhook_missing_call_sid")
        return twiml()

    call_id_var.set(call_id)
    logger.info("recording_webhook_received", recording_status=status)
    if status == "in-progress":
        background.add_task(services.pipeline.on_recording_started, call_id)
    elif status == "completed":
        background.add_task(
            services.pipeline.on_recording_ready,
            call_id,
            form.get("From"),
            form.get("RecordingSid"),
            form.get("RecordingUrl"),
            _as_int(form.get("RecordingDuration")),
        )
    return twiml()


@router.post("/transcription")
async def transcription_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Response:
    form = await _form(request)
    call_id = form.get("CallSid")
    if not call_id:
        logger.warning("transcription_webhook_missing_call_sid")
        return twiml()

    call_id_var.set(call_id)
    status = form.get("TranscriptionStatus", "")
    logger.info("transcription_webhook_received", transcription_status=status)
    if status == "completed" and form.get("TranscriptionText"):
        background.add_task(
            services.pipeline.on_transcription_ready,
            call_id,
            form.get("From"),
            form.get("RecordingSid"),
            form["TranscriptionText"],
            status,
        )
    return twiml()


@router.post("/sms")
async def sms_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Response:
    form = await _form(request)
    message_id = form.get("MessageSid")
    body = form.get("Body", "")
    if message_id and body.strip():
        logger.info("sms_webhook_received", message_id=message_id, caller=redact_phone_number(form.get("From")))
        background.add_task(services.pipeline.on_sms_received, message_id, form.get("From"), body)
    else:
        logger.warning("sms_webhook_ignored", has_sid=bool(message_id))
    return twiml(f"<Message>{escape(services.settings.sms_reply)}</Message>")


@router.post("/vapi")
async def vapi_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Agent call lifecycle messages from VAPI."""
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")

    background.add_task(services.pipeline.on_agent_call_event, payload)
    return {"status": "received"}
