"""
Tests for task enqueueing, signature verification and routing.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from sentinel.config import Settings
from sentinel.errors import InvalidTaskPayloadError, TaskEnqueueError, UnknownTaskTypeError
from sentinel.schemas.task import RecordingDeliveryTask, TaskEnvelope, TaskType
from sentinel.services.task_dispatcher import TaskDispatcher, TaskRouter, verify_signature

from qstash_signing import NEXT_KEY, sign

WORKER_URL = "https://sentinel.test/api/queue-worker"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── enqueue ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_enqueue_posts_envelope_with_delivery_headers(settings: Settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messageId": "msg_123"})

    async with _client(handler) as http:
        result = await TaskDispatcher(http, settings).enqueue(
            TaskType.DELIVER_RECORDING,
            RecordingDeliveryTask(call_id="call-1"),
            delay_seconds=45,
            retries=2,
        )

    assert result.message_id == "msg_123"
    assert result.task_id.startswith("deliver_recording_")
    request = seen[0]
    assert str(request.url) == f"https://qstash.upstash.io/v2/publish/{WORKER_URL}"
    assert request.headers["Authorization"] == "Bearer qstash-token"
    assert request.headers["Upstash-Retries"] == "2"
    assert request.headers["Upstash-Delay"] == "45s"
    body = json.loads(request.content)
    assert body["taskType"] == "deliver_recording"
    assert body["taskData"]["call_id"] == "call-1"
    assert body["taskData"]["retry_count"] == 0
    assert body["taskId"] == result.task_id
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_enqueue_without_delay_omits_delay_header(settings: Settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messageId": "msg_1"})

    async with _client(handler) as http:
        await TaskDispatcher(http, settings).enqueue(TaskType.PROCESS_SMS, {"message_id": "SM1"})

    assert "Upstash-Delay" not in seen[0].headers
    assert seen[0].headers["Upstash-Retries"] == str(settings.task_default_retries)


@pytest.mark.asyncio
async def test_enqueue_failure_raises(settings: Settings):
    async with _client(lambda request: httpx.Response(500, text="boom")) as http:
        with pytest.raises(TaskEnqueueError):
            await TaskDispatcher(http, settings).enqueue(TaskType.PROCESS_SMS, {"message_id": "SM1"})


# ── verify_signature ─────────────────────────────────────────────


def test_valid_signature_is_accepted(settings: Settings):
    body = b'{"taskType":"process_sms"}'

    assert verify_signature(sign(body, WORKER_URL), body, WORKER_URL, settings) is True


def test_signature_with_next_key_is_accepted(settings: Settings):
    body = b'{"taskType":"process_sms"}'

    assert verify_signature(sign(body, WORKER_URL, NEXT_KEY), body, WORKER_URL, settings) is True


def test_tampered_body_is_rejected(settings: Settings):
    body = b'{"taskType":"process_sms"}'
    signature = sign(body, WORKER_URL)

    assert verify_signature(signature, b'{"taskType":"trigger_agent_call"}', WORKER_URL, settings) is False


def test_signature_for_other_url_is_rejected(settings: Settings):
    body = b"{}"

    assert verify_signature(sign(body, "https://elsewhere.test/api/queue-worker"), body, WORKER_URL, settings) is False


def test_signature_with_unknown_key_is_rejected(settings: Settings):
    body = b"{}"

    assert verify_signature(sign(body, WORKER_URL, "not-a-key"), body, WORKER_URL, settings) is False


def test_expired_signature_is_rejected(settings: Settings):
    body = b"{}"

    assert verify_signature(sign(body, WORKER_URL, expires_in=-60), body, WORKER_URL, settings) is False


def test_wrong_issuer_is_rejected(settings: Settings):
    body = b"{}"

    assert verify_signature(sign(body, WORKER_URL, iss="Someone"), body, WORKER_URL, settings) is False


@pytest.mark.parametrize("signature", [None, "", "not.a.jwt"])
def test_missing_or_garbage_signature_is_rejected(settings: Settings, signature):
    assert verify_signature(signature, b"{}", WORKER_URL, settings) is False


def test_no_signing_keys_rejects_everything(settings: Settings):
    body = b"{}"
    unkeyed = settings.model_copy(update={"qstash_current_signing_key": "", "qstash_next_signing_key": ""})

    assert verify_signature(sign(body, WORKER_URL), body, WORKER_URL, unkeyed) is False


# ── TaskRouter ───────────────────────────────────────────────────


def _handlers() -> dict[TaskType, AsyncMock]:
    return {task_type: AsyncMock(return_value={"handled": task_type.value}) for task_type in TaskType}


def test_router_requires_a_handler_for_every_task_type():
    handlers = _handlers()
    del handlers[TaskType.DELIVER_RECORDING]

    with pytest.raises(ValueError, match="deliver_recording"):
        TaskRouter(handlers)


@pytest.mark.asyncio
async def test_router_dispatches_typed_payload_to_one_handler():
    handlers = _handlers()
    router = TaskRouter(handlers)

    result = await router.route(TaskEnvelope(task_type="deliver_recording", task_data={"call_id": "c1", "retry_count": 2}))

    assert result == {"handled": "deliver_recording"}
    payload = handlers[TaskType.DELIVER_RECORDING].await_args.args[0]
    assert isinstance(payload, RecordingDeliveryTask)
    assert payload.retry_count == 2
    for task_type in (TaskType.PROCESS_SMS, TaskType.PROCESS_TRANSCRIPTION, TaskType.TRIGGER_AGENT_CALL):
        handlers[task_type].assert_not_awaited()


@pytest.mark.asyncio
async def test_router_rejects_unknown_task_type():
    router = TaskRouter(_handlers())

    with pytest.raises(UnknownTaskTypeError):
        await router.route(TaskEnvelope(task_type="launch_missiles", task_data={}))


@pytest.mark.asyncio
async def test_router_rejects_invalid_payload():
    router = TaskRouter(_handlers())

    with pytest.raises(InvalidTaskPayloadError):
        await router.route(TaskEnvelope(task_type="deliver_recording", task_data={"retry_count": -1}))
