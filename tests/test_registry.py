"""
Tests for the ephemeral call registry.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sentinel.schemas.call import ActiveCallRecord, CallStatus, CallType
from sentinel.services.registry import CallRegistry


def _record(call_id: str, **fields) -> ActiveCallRecord:
    return ActiveCallRecord(call_id=call_id, status=fields.pop("status", CallStatus.RINGING), **fields)


@pytest.mark.asyncio
async def test_put_then_get_returns_record(registry: CallRegistry):
    await registry.put("CA1", _record("CA1", phone_number="+15551234567"))

    record = await registry.get("CA1")

    assert record is not None
    assert record.call_id == "CA1"
    assert record.phone_number == "+15551234567"
    assert record.status is CallStatus.RINGING


@pytest.mark.asyncio
async def test_get_unknown_call_is_none(registry: CallRegistry):
    assert await registry.get("missing") is None


@pytest.mark.asyncio
async def test_put_sets_ttl(registry: CallRegistry, redis):
    await registry.put("CA1", _record("CA1"), ttl_seconds=120)

    ttl = await redis.ttl("active_call:CA1")

    assert 0 < ttl <= 120


@pytest.mark.asyncio
async def test_record_expires_after_ttl(registry: CallRegistry):
    await registry.put("CA1", _record("CA1"), ttl_seconds=1)

    await asyncio.sleep(1.2)

    assert await registry.get("CA1") is None
    assert await registry.list_all() == []


@pytest.mark.asyncio
async def test_delete_removes_record(registry: CallRegistry):
    await registry.put("CA1", _record("CA1"))

    assert await registry.delete("CA1") is True
    assert await registry.get("CA1") is None


@pytest.mark.asyncio
async def test_list_all_skips_malformed_entries(registry: CallRegistry, redis):
    await registry.put("CA1", _record("CA1"))
    await registry.put("CA2", _record("CA2", status=CallStatus.RECORDING))
    await redis.set("active_call:broken", "{not json")

    calls = await registry.list_all()

    assert sorted(c.call_id for c in calls) == ["CA1", "CA2"]


@pytest.mark.asyncio
async def test_update_merges_and_ignores_none(registry: CallRegistry):
    await registry.put("CA1", _record("CA1", phone_number="+15551234567"))

    updated = await registry.update("CA1", status=CallStatus.RECORDING_COMPLETED, phone_number=None, duration=42)

    assert updated is not None
    stored = await registry.get("CA1")
    assert stored.status is CallStatus.RECORDING_COMPLETED
    assert stored.phone_number == "+15551234567"
    assert stored.duration == 42
    assert stored.last_update >= stored.start_time


@pytest.mark.asyncio
async def test_update_without_status_does_not_create(registry: CallRegistry):
    assert await registry.update("ghost", duration=10) is None
    assert await registry.get("ghost") is None


@pytest.mark.asyncio
async def test_update_with_status_creates_missing_record(registry: CallRegistry):
    record = await registry.update("agent-1", status=CallStatus.AGENT_CALL_STARTED, call_type=CallType.AGENT)

    assert record is not None
    assert (await registry.get("agent-1")).call_type is CallType.AGENT


@pytest.mark.asyncio
async def test_update_with_invalid_field_keeps_existing_record(registry: CallRegistry):
    await registry.put("CA1", _record("CA1", duration=12))

    assert await registry.update("CA1", status=CallStatus.AGENT_CALL_ENDED, duration="not-a-number") is None

    stored = await registry.get("CA1")
    assert stored.status is CallStatus.RINGING
    assert stored.duration == 12


@pytest.mark.asyncio
async def test_redis_errors_become_neutral_results():
    broken = AsyncMock()
    broken.setex.side_effect = RedisConnectionError("down")
    broken.get.side_effect = RedisConnectionError("down")
    broken.delete.side_effect = RedisConnectionError("down")
    broken.ping.side_effect = RedisConnectionError("down")
    registry = CallRegistry(broken, default_ttl=60)

    assert await registry.put("CA1", _record("CA1")) is False
    assert await registry.get("CA1") is None
    assert await registry.delete("CA1") is False
    assert await registry.health_check() is False


@pytest.mark.asyncio
async def test_get_can_surface_store_errors():
    broken = AsyncMock()
    broken.get.side_effect = RedisConnectionError("down")
    registry = CallRegistry(broken, default_ttl=60)

    with pytest.raises(RedisConnectionError):
        await registry.get("CA1", raise_errors=True)
