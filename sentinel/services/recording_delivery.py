"""
Recording Delivery Task.

After an agent call ends its recording becomes available at some
unknown later time. This task checks for it once per delivery and
either sends it to the delivery sink or reschedules itself:

    PENDING -> FETCHING -> DELIVERING  -> DONE | FAILED_DELIVERY
                        -> RESCHEDULED            (recording absent, attempts left)
                        -> GIVEN_UP               (recording absent, attempts exhausted)

A task whose registry entry is already gone was handled by an earlier
delivery of the same chain and ends as ALREADY_HANDLED.

Every outcome except an exception counts as handled: the worker answers
200, so QStash stops redelivering. Rescheduling is done by this task
enqueueing its successor, never by failing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from sentinel.config import Settings, get_settings
from sentinel.clients.telegram import TelegramSink
from sentinel.clients.vapi import VapiClient
from sentinel.logging_config import get_logger
from sentinel.schemas.call import ActiveCallRecord
from sentinel.schemas.event import EventType
from sentinel.schemas.task import EnqueueResult, RecordingDeliveryTask, TaskType
from sentinel.schemas.verdict import Recording
from sentinel.services.event_bus import EventBus
from sentinel.services.registry import CallRegistry
from sentinel.services.task_dispatcher import TaskDispatcher
from sentinel.utils.budget import with_timeout

logger = get_logger(__name__)

DEFAULT_AGENT_NAME = "Unknown Agent"
DEFAULT_COMPANY = "Unknown Company"


class DeliveryState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    DELIVERING = "delivering"
    RESCHEDULED = "rescheduled"
    GIVEN_UP = "given_up"
    DONE = "done"
    FAILED_DELIVERY = "failed_delivery"
    ALREADY_HANDLED = "already_handled"


@dataclass
class DeliveryOutcome:
    """Where one execution of the task ended up."""
    state: DeliveryState
    call_id: str
    retry_count: int
    follow_up: Optional[EnqueueResult] = None
    error: Optional[str] = None


def next_transition(recording_present: bool, retry_count: int, max_retries: int) -> DeliveryState:
    """The state that follows FETCHING; ``retry_count`` alone decides give-up."""
    if recording_present:
        return DeliveryState.DELIVERING
    if retry_count < max_retries:
        return DeliveryState.RESCHEDULED
    return DeliveryState.GIVEN_UP


def extract_agent_name(assistant_name: Optional[str], company: Optional[str]) -> str:
    """
    Reduce an assistant's display name to "<Company> <FirstName>".

    Handles the naming schemes used for agents over time:
    "Coinbase Jim", "Coinbase User Jim Smith",
    "Microsoft Support Call - Mike Johnson", "Generic Alex",
    "Kraken Karen Wilson".
    """
    if not assistant_name:
        return DEFAULT_AGENT_NAME

    words = assistant_name.split()
    if len(words) == 2 and "User" not in assistant_name and "Support Call" not in assistant_name:
        return assistant_name

    for marker in ("User ", "Support Call - "):
        if marker in assistant_name:
            company_part, _, rest = assistant_name.partition(marker)
            first_name = rest.split()[0] if rest.split() else ""
            return f"{company_part.strip()} {first_name}".strip()

    if assistant_name.startswith("Generic "):
        return assistant_name

    if company and company.lower() in assistant_name.lower():
        lowered = [w.lower() for w in words]
        if company.lower() in lowered:
            index = lowered.index(company.lower())
            if index + 1 < len(words):
                return f"{company} {words[index + 1]}"
        return f"{company} {words[-1]}"

    return assistant_name


@dataclass
class DeliveryMetadata:
    agent_name: str
    company: str
    duration: float
    successful: bool


def enrich(
    task: RecordingDeliveryTask,
    record: Optional[ActiveCallRecord],
    recording: Recording,
    successful_call_seconds: int,
) -> DeliveryMetadata:
    """
    Describe the recording, taking each field from the first source that has it:
    the task payload, then the registry record, then the provider, then a default.
    """
    company = (
        task.scam_details.impersonated_company
        or (record.company if record and record.company != "Unknown" else None)
        or recording.impersonated_company
        or DEFAULT_COMPANY
    )
    raw_agent_name = (
        task.assistant_name
        or (record.agent_name if record else None)
        or recording.assistant_name
    )
    duration = recording.duration
    if duration is None and record is not None:
        duration = record.duration
    duration = float(duration or 0)

    return DeliveryMetadata(
        agent_name=extract_agent_name(raw_agent_name, company),
        company=company,
        duration=duration,
        successful=duration >= successful_call_seconds,
    )


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def build_message(call_id: str, meta: DeliveryMetadata) -> str:
    outcome = "Kept the scammer busy" if meta.successful else "Short call"
    return (
        f"<b>Agent call recording</b>\n"
        f"Agent: {meta.agent_name}\n"
        f"Impersonated: {meta.company}\n"
        f"Duration: {format_duration(meta.duration)}\n"
        f"Outcome: {outcome}\n"
        f"Call ID: <code>{call_id}</code>"
    )


class RecordingDeliveryHandler:
    """Runs one attempt of a recording-delivery chain."""

    def __init__(
        self,
        registry: CallRegistry,
        dispatcher: TaskDispatcher,
        outbound: VapiClient,
        sink: TelegramSink,
        bus: EventBus,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._outbound = outbound
        self._sink = sink
        self._bus = bus
        self._settings = settings or get_settings()

    async def __call__(self, task: RecordingDeliveryTask) -> DeliveryOutcome:
        # Raises asyncio.TimeoutError past the ceiling; the worker turns that into a retriable 500.
        return await with_timeout(self.run(task), self._settings.delivery_task_timeout_seconds)

    async def run(self, task: RecordingDeliveryTask) -> DeliveryOutcome:
        log = logger.bind(call_id=task.call_id, retry_count=task.retry_count)
        max_retries = self._settings.delivery_max_retries
        log.info("recording_delivery_started", state=DeliveryState.PENDING.value, max_retries=max_retries)

        # A store error propagates so the worker answers 500 and QStash
        # redelivers; only an absent record means the chain already finished.
        record = await self._registry.get(task.call_id, raise_errors=True)
        if record is None:
            log.info("recording_delivery_already_handled")
            return DeliveryOutcome(DeliveryState.ALREADY_HANDLED, task.call_id, task.retry_count)

        log.debug("recording_delivery_fetching", state=DeliveryState.FETCHING.value)
        recording = await self._fetch(task.call_id)
        state = next_transition(recording is not None, task.retry_count, max_retries)
        if recording is not None:
            return await self._deliver(task, record, recording)

        if state is DeliveryState.RESCHEDULED:
            follow_up_task = task.next_attempt()
            # An enqueue failure propagates: the worker answers 500 and QStash
            # redelivers this same attempt.
            follow_up = await self._dispatcher.enqueue(
                TaskType.DELIVER_RECORDING,
                follow_up_task,
                delay_seconds=self._settings.delivery_retry_delay_seconds,
            )
            log.info(
                "recording_not_ready_rescheduled",
                next_retry=follow_up_task.retry_count,
                max_retries=max_retries,
                delay_seconds=self._settings.delivery_retry_delay_seconds,
            )
            return DeliveryOutcome(state, task.call_id, task.retry_count, follow_up=follow_up)

        await self._registry.delete(task.call_id)
        log.warning("recording_delivery_given_up", max_retries=max_retries)
        return DeliveryOutcome(state, task.call_id, task.retry_count)

    async def _fetch(self, call_id: str) -> Optional[Recording]:
        try:
            return await self._outbound.poll_recording(call_id)
        except httpx.HTTPError as e:
            # Provider hiccups count as "not ready"; the attempt budget bounds them.
            logger.warning("recording_fetch_error", call_id=call_id, error=str(e))
            return None

    async def _deliver(
        self,
        task: RecordingDeliveryTask,
        record: Optional[ActiveCallRecord],
        recording: Recording,
    ) -> DeliveryOutcome:
        log = logger.bind(call_id=task.call_id, retry_count=task.retry_count)
        meta = enrich(task, record, recording, self._settings.successful_call_seconds)
        log.info(
            "recording_delivering",
            state=DeliveryState.DELIVERING.value,
            agent_name=meta.agent_name,
            company=meta.company,
            duration=meta.duration,
        )

        result = await self._sink.deliver(build_message(task.call_id, meta), recording.recording_url)

        if result.success:
            await self._registry.delete(task.call_id)
            await self._bus.publish(EventType.RECORDING_DELIVERED, {
                "call_id": task.call_id,
                "agent_name": meta.agent_name,
                "company": meta.company,
                "duration": meta.duration,
                "successful": meta.successful,
            })
            log.info("recording_delivered")
            return DeliveryOutcome(DeliveryState.DONE, task.call_id, task.retry_count)

        await self._registry.update(task.call_id, delivery_failed=True)
        log.error("recording_delivery_failed", error=result.error)
        return DeliveryOutcome(DeliveryState.FAILED_DELIVERY, task.call_id, task.retry_count, error=result.error)
