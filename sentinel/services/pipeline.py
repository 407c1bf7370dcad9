"""
Pipeline Coordinator.

Sequences registry updates, event publications and task enqueues for
every stage of a call:

    inbound call      -> record (ringing) + incoming_call event
    recording ready   -> record (recording_completed) + status event
                         + process_transcription task (long initial delay)
    transcription     -> classify; if worth engaging, scam_detected event
                         + trigger_agent_call task
    agent call        -> start the callback, record it
    agent call ended  -> deliver_recording task, then mark the call ended

Webhook-facing methods never raise: bookkeeping failures are logged so
the telephony provider always gets its response. Task handlers raise on
failures that a redelivery could fix.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from sentinel.clients.classifier import ScamClassifier
from sentinel.clients.transcriber import Transcriber
from sentinel.clients.vapi import VapiClient, format_e164
from sentinel.config import Settings, get_settings
from sentinel.errors import CollaboratorError, SentinelError
from sentinel.logging_config import get_logger, redact_phone_number
from sentinel.schemas.call import POST_TRANSCRIPTION_STATUSES, ActiveCallRecord, CallStatus, CallType
from sentinel.schemas.event import Channel, EventType
from sentinel.schemas.task import (
    AgentCallTask,
    RecordingDeliveryTask,
    ScamDetails,
    SmsTask,
    TaskType,
    TranscriptionTask,
)
from sentinel.schemas.verdict import Verdict
from sentinel.services.event_bus import EventBus
from sentinel.services.registry import CallRegistry
from sentinel.services.task_dispatcher import TaskDispatcher
from sentinel.utils.budget import current_budget, with_timeout

logger = get_logger(__name__)

MIN_USABLE_TRANSCRIPT = 5
CALL_STARTED_TYPES = {"call.start", "call.started"}
CALL_ENDED_TYPES = {"call.end", "call.ended"}
END_OF_CALL_REPORT = "end-of-call-report"


def should_engage(
    verdict: Verdict,
    text: str,
    duration: Optional[int],
    settings: Settings | None = None,
) -> bool:
    """Whether a classified message is worth calling back."""
    settings = settings or get_settings()
    if not text or len(text.strip()) < settings.min_transcript_length:
        return False
    if duration is not None and duration < settings.min_recording_duration:
        return False
    if not verdict.is_scam:
        return False
    return verdict.confidence is not None and verdict.confidence >= settings.min_engage_confidence


def _known(value: Optional[str]) -> Optional[str]:
    return None if value in (None, "", "Unknown") else value


def callback_target(verdict: Verdict, caller_number: Optional[str]) -> Optional[str]:
    """The callback number left in the message if it is dialable, otherwise the caller."""
    details = verdict.callback_details.details if verdict.callback_details else None
    if details and format_e164(details):
        return details
    return caller_number or None


class PipelineCoordinator:
    def __init__(
        self,
        registry: CallRegistry,
        bus: EventBus,
        dispatcher: TaskDispatcher,
        classifier: ScamClassifier,
        transcriber: Transcriber,
        outbound: VapiClient,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._dispatcher = dispatcher
        self._classifier = classifier
        self._transcriber = transcriber
        self._outbound = outbound
        self._settings = settings or get_settings()

    # -- Inbound telephony events --

    async def on_call_started(self, call_id: str, caller_number: str) -> None:
        """A voicemail call is ringing."""
        record = ActiveCallRecord(call_id=call_id, status=CallStatus.RINGING, phone_number=caller_number)
        await self._registry.put(call_id, record)
        await self._bus.publish(EventType.INCOMING_CALL, {
            "call_id": call_id,
            "caller_number": redact_phone_number(caller_number),
            "status": CallStatus.RINGING.value,
            "timestamp": record.start_time.isoformat(),
        })
        logger.info("incoming_call_tracked", call_id=call_id, caller=redact_phone_number(caller_number))

    async def on_recording_started(self, call_id: str) -> None:
        await self._registry.update(call_id, status=CallStatus.RECORDING)
        await self._bus.publish(EventType.CALL_STATUS_UPDATE, {
            "call_id": call_id,
            "status": CallStatus.RECORDING.value,
        })

    async def on_recording_ready(
        self,
        call_id: str,
        caller_number: Optional[str],
        recording_id: Optional[str],
        recording_url: Optional[str],
        recording_duration: Optional[int],
    ) -> None:
        """The voicemail recording finished; queue transcription once the file has settled."""
        record = await self._registry.update(
            call_id,
            status=CallStatus.RECORDING_COMPLETED,
            phone_number=caller_number,
            duration=recording_duration,
        )
        # Recording callbacks do not carry the caller; the ringing record does.
        caller_number = caller_number or (record.phone_number if record else None)
        await self._bus.publish(EventType.CALL_STATUS_UPDATE, {
            "call_id": call_id,
            "status": CallStatus.RECORDING_COMPLETED.value,
            "recording_duration": recording_duration,
        })

        if not recording_id:
            logger.warning("recording_ready_missing_fields", call_id=call_id, recording_id=recording_id)
            return

        task = TranscriptionTask(
            call_id=call_id,
            caller_number=caller_number,
            recording_id=recording_id,
            recording_url=recording_url,
            recording_duration=recording_duration,
        )
        try:
            await self._dispatcher.enqueue(
                TaskType.PROCESS_TRANSCRIPTION,
                task,
                delay_seconds=self._settings.transcription_initial_delay_seconds,
            )
        except SentinelError as e:
            logger.error("transcription_enqueue_failed", call_id=call_id, recording_id=recording_id, error=str(e))

    async def on_transcription_ready(
        self,
        call_id: str,
        caller_number: Optional[str],
        recording_id: Optional[str],
        transcription_text: str,
        transcription_status: str,
    ) -> None:
        """The provider's own transcription arrived; process it right away."""
        task = TranscriptionTask(
            call_id=call_id,
            caller_number=caller_number,
            recording_id=recording_id,
            transcription_text=transcription_text,
            transcription_status=transcription_status,
        )
        try:
            await self._dispatcher.enqueue(TaskType.PROCESS_TRANSCRIPTION, task)
        except SentinelError as e:
            logger.error("transcription_enqueue_failed", call_id=call_id, error=str(e))

    async def on_sms_received(self, message_id: str, caller_number: Optional[str], body: str) -> None:
        try:
            await self._dispatcher.enqueue(
                TaskType.PROCESS_SMS,
                SmsTask(message_id=message_id, caller_number=caller_number, message=body),
            )
        except SentinelError as e:
            logger.error("sms_enqueue_failed", message_id=message_id, error=str(e))

    async def on_agent_call_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Handle a VAPI server message (``{"message": {"type", "call"}}`` or the legacy flat form)."""
        message = payload.get("message") if isinstance(payload.get("message"), dict) else payload
        event_type = message.get("type")
        call = message.get("call") or {}
        call_id = call.get("id")
        if not event_type or not call_id:
            logger.warning("agent_webhook_invalid", event_type=event_type)
            return {"status": "ignored", "reason": "Invalid webhook payload"}

        if event_type in CALL_STARTED_TYPES:
            await self._registry.update(call_id, status=CallStatus.AGENT_CALL_STARTED, call_type=CallType.AGENT)
            return {"status": "ok", "call_id": call_id}

        if event_type in CALL_ENDED_TYPES or event_type == END_OF_CALL_REPORT:
            delay = (
                self._settings.delivery_delay_after_report_seconds
                if event_type == END_OF_CALL_REPORT
                else self._settings.delivery_delay_after_call_end_seconds
            )
            queued = await self._queue_recording_delivery(call, delay, message)
            return {"status": "ok", "call_id": call_id, "delivery_queued": queued}

        logger.debug("agent_webhook_ignored", event_type=event_type, agent_call_id=call_id)
        return {"status": "ignored", "reason": f"Unhandled type {event_type}"}

    async def _queue_recording_delivery(self, call: dict[str, Any], delay: int, message: dict[str, Any]) -> bool:
        call_id = call["id"]
        record = await self._registry.get(call_id)
        if record is not None and record.delivery_queued:
            logger.info("recording_delivery_already_queued", agent_call_id=call_id)
            return False

        metadata = call.get("metadata") or {}
        task = RecordingDeliveryTask(
            call_id=call_id,
            assistant_name=(call.get("assistant") or {}).get("name") or (record.agent_name if record else None),
            scam_details=ScamDetails(
                impersonated_company=metadata.get("impersonatedCompany") or _known(record.company if record else None),
                scam_type=metadata.get("scamType") or (record.scam_type if record else None),
                confidence=metadata.get("confidence"),
            ),
        )
        try:
            await self._dispatcher.enqueue(TaskType.DELIVER_RECORDING, task, delay_seconds=delay)
        except SentinelError as e:
            # The record keeps its active status so the call is still visible.
            logger.error("recording_delivery_enqueue_failed", agent_call_id=call_id, error=str(e))
            return False

        # Only now is the call marked ended; the delivery task reads this record.
        duration = message.get("durationSeconds") or call.get("duration")
        await self._registry.update(
            call_id,
            status=CallStatus.AGENT_CALL_ENDED,
            call_type=CallType.AGENT,
            delivery_queued=True,
            duration=duration,
        )
        if record is not None and record.original_call_id:
            await self._registry.update(
                record.original_call_id,
                status=CallStatus.AGENT_CALL_ENDED,
                ttl_seconds=self._settings.processed_call_ttl_seconds,
            )
        await self._bus.publish(EventType.AGENT_CALL_ENDED, {
            "call_id": call_id,
            "ended_reason": call.get("endedReason"),
            "duration": duration,
        }, channel=Channel.LIVE_UPDATES)
        logger.info("recording_delivery_queued", agent_call_id=call_id, delay_seconds=delay)
        return True

    # -- Task handlers --

    async def handle_transcription(self, task: TranscriptionTask) -> dict[str, Any]:
        log = logger.bind(call_id=task.call_id)
        record = await self._registry.get(task.call_id)
        if record is not None and record.status in POST_TRANSCRIPTION_STATUSES:
            log.info("transcription_duplicate_skipped", status=record.status.value)
            return {"status": "duplicate"}

        text = (task.transcription_text or "").strip()
        if len(text) < MIN_USABLE_TRANSCRIPT and task.recording_url:
            text = (await self._transcriber.transcribe(task.recording_url)) or ""

        if len(text) < MIN_USABLE_TRANSCRIPT:
            log.info("transcription_empty", status=task.transcription_status)
            await self._registry.update(task.call_id, ttl_seconds=self._settings.processed_call_ttl_seconds)
            await self._bus.publish(EventType.CALL_PROCESSED, {"call_id": task.call_id, "result": "empty_transcript"})
            return {"status": "empty"}

        previous_status = record.status if record else CallStatus.RECORDING_COMPLETED
        await self._registry.update(task.call_id, status=CallStatus.TRANSCRIBED, phone_number=task.caller_number)
        await self._bus.publish(EventType.CALL_STATUS_UPDATE, {
            "call_id": task.call_id,
            "status": "transcription_completed",
            "has_transcript": True,
        })

        try:
            return await self._classify_and_engage(
                source_id=task.call_id,
                caller_number=task.caller_number,
                text=text,
                duration=task.recording_duration,
                source="voicemail",
            )
        except Exception:
            # Undo the status change so a redelivery is not mistaken for a duplicate.
            await self._registry.update(task.call_id, status=previous_status)
            raise

    async def handle_sms(self, task: SmsTask) -> dict[str, Any]:
        return await self._classify_and_engage(
            source_id=task.message_id,
            caller_number=task.caller_number,
            text=task.message,
            duration=None,
            source="sms",
        )

    async def _classify_and_engage(
        self,
        source_id: str,
        caller_number: Optional[str],
        text: str,
        duration: Optional[int],
        source: str,
    ) -> dict[str, Any]:
        log = logger.bind(source_id=source_id, source=source)
        verdict = await with_timeout(
            self._classifier.classify(text),
            self._settings.classification_timeout_seconds,
        )
        engage = should_engage(verdict, text, duration, self._settings)

        await self._bus.publish(EventType.CALL_PROCESSED, {
            "call_id": source_id,
            "source": source,
            "is_scam": verdict.is_scam,
            "confidence": verdict.confidence,
            "company": verdict.impersonated_company,
            "scam_type": verdict.scam_type,
            "engaging": engage,
        })

        target = callback_target(verdict, caller_number)
        if not engage or not target:
            log.info("not_engaging", is_scam=verdict.is_scam, confidence=verdict.confidence, has_target=bool(target))
            if source == "voicemail":
                await self._registry.update(source_id, ttl_seconds=self._settings.processed_call_ttl_seconds)
            return {"status": "processed", "engaging": False}

        company = verdict.impersonated_company or "Unknown"
        scam_type = verdict.scam_type or "Unknown"
        if source == "voicemail":
            await self._registry.update(
                source_id,
                status=CallStatus.SCAM_DETECTED,
                company=company,
                scam_type=scam_type,
            )
        await self._bus.publish(EventType.SCAM_DETECTED, {
            "call_id": source_id,
            "source": source,
            "caller_number": redact_phone_number(caller_number),
            "company": company,
            "scam_type": scam_type,
            "confidence": verdict.confidence,
        })

        await self._dispatcher.enqueue(TaskType.TRIGGER_AGENT_CALL, AgentCallTask(
            target_number=target,
            scam_type=verdict.scam_type,
            company=verdict.impersonated_company,
            confidence=verdict.confidence,
            original_call_id=source_id,
            original_caller_number=caller_number,
        ))
        log.info("agent_call_queued", company=company, target=redact_phone_number(target))
        return {"status": "processed", "engaging": True}

    async def handle_agent_call(self, task: AgentCallTask) -> dict[str, Any]:
        log = logger.bind(original_call_id=task.original_call_id)
        original: Optional[ActiveCallRecord] = None
        if task.original_call_id:
            original = await self._registry.get(task.original_call_id)
            if original is not None and original.status in (CallStatus.AGENT_CALL_STARTED, CallStatus.AGENT_CALL_ENDED):
                log.info("agent_call_duplicate_skipped")
                return {"status": "duplicate"}

        budget = current_budget(self._settings.worker_time_budget_seconds)
        if not budget.allows(self._settings.agent_call_creation_seconds):
            log.warning("agent_call_skipped_time_budget", remaining=round(budget.remaining, 2))
            await self._publish_agent_failure(task, "timeout_protection")
            return {"status": "skipped", "reason": "timeout_protection"}

        context = {
            "scamType": task.scam_type,
            "impersonatedCompany": task.company,
            "confidence": task.confidence,
            "originalCallSid": task.original_call_id,
            "originalCaller": task.original_caller_number,
        }
        try:
            started = await with_timeout(
                self._outbound.start_call(task.target_number, context),
                self._settings.agent_call_creation_seconds,
            )
        except (CollaboratorError, asyncio.TimeoutError) as e:
            # Not retried: a redelivery could ring the same number twice.
            log.error("agent_call_failed", error=str(e) or type(e).__name__)
            await self._publish_agent_failure(task, str(e) or "timeout")
            return {"status": "failed"}

        await self._registry.put(started.id, ActiveCallRecord(
            call_id=started.id,
            status=CallStatus.AGENT_CALL_STARTED,
            call_type=CallType.AGENT,
            phone_number=task.target_number,
            company=task.company or "Unknown",
            agent_name=started.assistant_name,
            scam_type=task.scam_type,
            original_call_id=task.original_call_id,
        ))
        # SMS-origin callbacks have no tracked call to advance.
        if original is not None:
            await self._registry.update(original.call_id, status=CallStatus.AGENT_CALL_STARTED)
        await self._bus.publish(EventType.AGENT_CALL_STARTED, {
            "call_id": started.id,
            "original_call_id": task.original_call_id,
            "target_number": redact_phone_number(task.target_number),
            "company": task.company,
            "agent_name": started.assistant_name,
        })
        log.info("agent_call_started", agent_call_id=started.id)
        return {"status": "started", "call_id": started.id}

    async def _publish_agent_failure(self, task: AgentCallTask, reason: str) -> None:
        await self._bus.publish(EventType.AGENT_CALL_FAILED, {
            "original_call_id": task.original_call_id,
            "target_number": redact_phone_number(task.target_number),
            "reason": reason,
        })
