"""
Shared fixtures.

Redis-backed components run against fakeredis; HTTP collaborators and
the task dispatcher are replaced with ``AsyncMock`` objects.
"""
from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import fakeredis
import pytest
import pytest_asyncio

from sentinel.config import Settings
from sentinel.schemas.task import EnqueueResult, TaskType
from sentinel.services.event_bus import EventBus
from sentinel.services.registry import CallRegistry
from sentinel.services.task_dispatcher import TaskDispatcher

from qstash_signing import CURRENT_KEY, NEXT_KEY


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        public_base_url="https://sentinel.test",
        qstash_token="qstash-token",
        qstash_current_signing_key=CURRENT_KEY,
        qstash_next_signing_key=NEXT_KEY,
        telegram_bot_token="bot-token",
        telegram_chat_id="12345",
        vapi_api_key="vapi-key",
        vapi_assistant_id="assistant-1",
        vapi_phone_number_id="phone-1",
    )


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def registry(redis, settings: Settings) -> CallRegistry:
    return CallRegistry(redis, settings.active_call_ttl_seconds)


@pytest.fixture
def bus(redis, settings: Settings) -> EventBus:
    return EventBus(redis, settings.event_log_max_entries, settings.event_log_ttl_seconds)


@pytest.fixture
def dispatcher() -> AsyncMock:
    mock = AsyncMock(spec=TaskDispatcher)

    async def _enqueue(task_type: TaskType, task_data: Any, delay_seconds: int = 0, retries: int | None = None):
        return EnqueueResult(message_id=f"msg_{mock.enqueue.await_count}", task_id="task_1", task_type=task_type)

    mock.enqueue.side_effect = _enqueue
    return mock

