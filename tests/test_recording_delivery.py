"""
Tests for the recording delivery task and its helpers.
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from sentinel.clients.telegram import TelegramSink
from sentinel.clients.vapi import VapiClient
from sentinel.config import Settings
from sentinel.errors import TaskEnqueueError
from sentinel.schemas.call import ActiveCallRecord, CallStatus, CallType
from sentinel.schemas.task import RecordingDeliveryTask, ScamDetails, TaskType
from sentinel.schemas.verdict import DeliveryResult, Recording
from sentinel.services.recording_delivery import (
    DeliveryState,
    RecordingDeliveryHandler,
    enrich,
    extract_agent_name,
    format_duration,
    next_transition,
)

CALL_ID = "7d1f3a52-9c1e-4a57-8f0b-3b8e6f2d4c19"


def _recording(**fields) -> Recording:
    return Recording(call_id=CALL_ID, recording_url="https://storage.vapi.ai/rec.wav", **fields)


def _agent_record(**fields) -> ActiveCallRecord:
    return ActiveCallRecord(
        call_id=CALL_ID,
        status=CallStatus.AGENT_CALL_ENDED,
        call_type=CallType.AGENT,
        delivery_queued=True,
        **fields,
    )


@pytest.fixture
def outbound() -> AsyncMock:
    mock = AsyncMock(spec=VapiClient)
    mock.poll_recording.return_value = None
    return mock


@pytest.fixture
def sink() -> AsyncMock:
    mock = AsyncMock(spec=TelegramSink)
    mock.deliver.return_value = DeliveryResult(success=True)
    return mock


@pytest.fixture
def handler(registry, dispatcher, outbound, sink, bus, settings: Settings) -> RecordingDeliveryHandler:
    return RecordingDeliveryHandler(registry, dispatcher, outbound, sink, bus, settings)


# ── state transitions ────────────────────────────────────────────


@pytest.mark.parametrize(
    "present, retry_count, expected",
    [
        (True, 0, DeliveryState.DELIVERING),
        (True, 8, DeliveryState.DELIVERING),
        (False, 0, DeliveryState.RESCHEDULED),
        (False, 7, DeliveryState.RESCHEDULED),
        (False, 8, DeliveryState.GIVEN_UP),
    ],
)
def test_next_transition(present, retry_count, expected):
    assert next_transition(present, retry_count, max_retries=8) is expected


# ── handler ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_recording_reschedules_next_attempt(handler, registry, dispatcher, settings):
    await registry.put(CALL_ID, _agent_record(company="Kraken"))
    task = RecordingDeliveryTask(call_id=CALL_ID, retry_count=0, assistant_name="Kraken Karen")

    outcome = await handler(task)

    assert outcome.state is DeliveryState.RESCHEDULED
    dispatcher.enqueue.assert_awaited_once()
    call = dispatcher.enqueue.await_args
    assert call.args[0] is TaskType.DELIVER_RECORDING
    follow_up = call.args[1]
    assert follow_up.call_id == CALL_ID
    assert follow_up.retry_count == 1
    assert follow_up.assistant_name == "Kraken Karen"
    assert call.kwargs["delay_seconds"] == settings.delivery_retry_delay_seconds
    assert await registry.get(CALL_ID) is not None


@pytest.mark.asyncio
async def test_exhausted_retries_give_up_and_clean_up(handler, registry, dispatcher, sink, settings):
    await registry.put(CALL_ID, _agent_record())

    outcome = await handler(RecordingDeliveryTask(call_id=CALL_ID, retry_count=settings.delivery_max_retries))

    assert outcome.state is DeliveryState.GIVEN_UP
    dispatcher.enqueue.assert_not_awaited()
    sink.deliver.assert_not_awaited()
    assert await registry.get(CALL_ID) is None


@pytest.mark.asyncio
async def test_available_recording_is_delivered(handler, registry, outbound, sink, bus):
    await registry.put(CALL_ID, _agent_record(company="Coinbase", agent_name="Coinbase User Jim Smith"))
    outbound.poll_recording.return_value = _recording(duration=360)

    outcome = await handler(RecordingDeliveryTask(call_id=CALL_ID, retry_count=3))

    assert outcome.state is DeliveryState.DONE
    message, attachment = sink.deliver.await_args.args
    assert attachment == "https://storage.vapi.ai/rec.wav"
    assert "Coinbase Jim" in message
    assert "6:00" in message
    assert await registry.get(CALL_ID) is None
    events = await bus.get_recent(limit=1)
    assert events[0].type == "recording_delivered"


@pytest.mark.asyncio
async def test_failed_delivery_keeps_record_for_operator(handler, registry, outbound, sink, dispatcher):
    await registry.put(CALL_ID, _agent_record())
    outbound.poll_recording.return_value = _recording()
    sink.deliver.return_value = DeliveryResult(success=False, error="chat not found")

    outcome = await handler(RecordingDeliveryTask(call_id=CALL_ID))

    assert outcome.state is DeliveryState.FAILED_DELIVERY
    assert outcome.error == "chat not found"
    dispatcher.enqueue.assert_not_awaited()
    record = await registry.get(CALL_ID)
    assert record is not None and record.delivery_failed is True


@pytest.mark.asyncio
async def test_redelivered_task_after_completion_is_a_no_op(handler, outbound, sink, dispatcher):
    outcome = await handler(RecordingDeliveryTask(call_id=CALL_ID, retry_count=2))

    assert outcome.state is DeliveryState.ALREADY_HANDLED
    outbound.poll_recording.assert_not_awaited()
    sink.deliver.assert_not_awaited()
    dispatcher.enqueue.assert_not_awaited()


@pytest.mark.asyncio
async def test_unreadable_registry_propagates_for_redelivery(handler, registry, redis, outbound, sink, monkeypatch):
    await registry.put(CALL_ID, _agent_record())
    outbound.poll_recording.return_value = _recording()
    monkeypatch.setattr(redis, "get", AsyncMock(side_effect=RedisConnectionError("connection reset")))

    with pytest.raises(RedisError):
        await handler(RecordingDeliveryTask(call_id=CALL_ID))

    sink.deliver.assert_not_awaited()
    monkeypatch.undo()
    assert await registry.get(CALL_ID) is not None


@pytest.mark.asyncio
async def test_provider_error_counts_as_not_ready(handler, registry, outbound):
    await registry.put(CALL_ID, _agent_record())
    outbound.poll_recording.side_effect = httpx.ConnectError("unreachable")

    outcome = await handler(RecordingDeliveryTask(call_id=CALL_ID))

    assert outcome.state is DeliveryState.RESCHEDULED


@pytest.mark.asyncio
async def test_reschedule_failure_propagates(handler, registry, dispatcher):
    await registry.put(CALL_ID, _agent_record())
    dispatcher.enqueue.side_effect = TaskEnqueueError("qstash down")

    with pytest.raises(TaskEnqueueError):
        await handler(RecordingDeliveryTask(call_id=CALL_ID))
    assert await registry.get(CALL_ID) is not None


# ── enrichment ───────────────────────────────────────────────────


def test_enrich_prefers_task_payload():
    task = RecordingDeliveryTask(
        call_id=CALL_ID,
        assistant_name="Kraken Karen Wilson",
        scam_details=ScamDetails(impersonated_company="Kraken"),
    )
    record = _agent_record(company="Coinbase", agent_name="Coinbase Jim", duration=100)

    meta = enrich(task, record, _recording(duration=400, impersonated_company="Binance"), successful_call_seconds=300)

    assert meta.company == "Kraken"
    assert meta.agent_name == "Kraken Karen"
    assert meta.duration == 400
    assert meta.successful is True


def test_enrich_falls_back_to_registry_then_provider():
    task = RecordingDeliveryTask(call_id=CALL_ID)
    record = _agent_record(company="Unknown", agent_name="Coinbase Jim", duration=90)

    meta = enrich(task, record, _recording(impersonated_company="Binance"), successful_call_seconds=300)

    assert meta.company == "Binance"
    assert meta.agent_name == "Coinbase Jim"
    assert meta.duration == 90
    assert meta.successful is False


def test_enrich_defaults_when_nothing_is_known():
    meta = enrich(RecordingDeliveryTask(call_id=CALL_ID), None, _recording(), successful_call_seconds=300)

    assert meta.company == "Unknown Company"
    assert meta.agent_name == "Unknown Agent"
    assert meta.duration == 0


@pytest.mark.parametrize(
    "assistant_name, company, expected",
    [
        ("Coinbase Jim", "Coinbase", "Coinbase Jim"),
        ("Coinbase User Jim Smith", "Coinbase", "Coinbase Jim"),
        ("Microsoft Support Call - Mike Johnson", "Microsoft", "Microsoft Mike"),
        ("Generic Alex", None, "Generic Alex"),
        ("Kraken Karen Wilson", "Kraken", "Kraken Karen"),
        (None, "Kraken", "Unknown Agent"),
    ],
)
def test_extract_agent_name(assistant_name, company, expected):
    assert extract_agent_name(assistant_name, company) == expected


def test_format_duration():
    assert format_duration(0) == "0:00"
    assert format_duration(125.7) == "2:05"
