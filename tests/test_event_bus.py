"""
Tests for the event bus replay log and publishing.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sentinel.schemas.event import Channel, Event, EventType
from sentinel.services.event_bus import EventBus


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


@pytest.mark.asyncio
async def test_publish_appends_to_replay_log(bus: EventBus, redis):
    event = await bus.publish(EventType.INCOMING_CALL, {"call_id": "CA1"})

    assert event is not None
    raw = await redis.lrange("events:live_updates", 0, -1)
    assert len(raw) == 1
    assert json.loads(raw[0])["data"] == {"call_id": "CA1"}
    assert 0 < await redis.ttl("events:live_updates") <= 300


@pytest.mark.asyncio
async def test_get_recent_is_newest_first(bus: EventBus):
    for n in range(3):
        await bus.publish(EventType.CALL_STATUS_UPDATE, {"n": n})

    events = await bus.get_recent(Channel.LIVE_UPDATES, limit=10)

    assert [e.data["n"] for e in events] == [2, 1, 0]


@pytest.mark.asyncio
async def test_replay_log_is_capped(redis):
    bus = EventBus(redis, max_entries=100, ttl_seconds=300)
    for n in range(105):
        await bus.publish(EventType.CALL_STATUS_UPDATE, {"n": n})

    assert await redis.llen("events:live_updates") == 100
    newest = await bus.get_recent(limit=1)
    assert newest[0].data["n"] == 104


@pytest.mark.asyncio
async def test_get_recent_since_is_strictly_after(bus: EventBus):
    base = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    for offset in (0, 10, 20):
        await bus.publish_event(
            Event(type="call_status_update", data={"offset": offset}, timestamp=_iso(base + timedelta(seconds=offset)))
        )

    events = await bus.get_recent(limit=10, since=_iso(base + timedelta(seconds=10)))

    assert [e.data["offset"] for e in events] == [20]


@pytest.mark.asyncio
async def test_get_recent_naive_since_is_utc(bus: EventBus):
    base = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    await bus.publish_event(Event(type="call_status_update", timestamp=_iso(base)))

    events = await bus.get_recent(limit=10, since=datetime(2024, 5, 1, 11, 59, 59))

    assert len(events) == 1


@pytest.mark.asyncio
async def test_get_recent_skips_malformed_entries(bus: EventBus, redis):
    await bus.publish(EventType.INCOMING_CALL, {"call_id": "CA1"})
    await redis.lpush("events:live_updates", "not-json")
    await redis.lpush("events:live_updates", json.dumps({"no": "type"}))

    events = await bus.get_recent(limit=10)

    assert [e.type for e in events] == ["incoming_call"]


@pytest.mark.asyncio
async def test_get_recent_with_zero_limit_is_empty(bus: EventBus):
    await bus.publish(EventType.INCOMING_CALL)

    assert await bus.get_recent(limit=0) == []


@pytest.mark.asyncio
async def test_publish_failure_is_swallowed():
    broken = MagicMock()
    broken.publish = AsyncMock(side_effect=RedisConnectionError("down"))
    broken.pipeline.side_effect = RedisConnectionError("down")
    bus = EventBus(broken, max_entries=100, ttl_seconds=300)

    assert await bus.publish(EventType.INCOMING_CALL, {"call_id": "CA1"}) is None
