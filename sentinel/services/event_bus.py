"""
Event Bus.

Every event is written twice: to a Redis pub/sub channel for live
subscribers, and onto the head of a capped, expiring list
(``events:{channel}``) that clients without a live subscription can
replay. Publishing is best-effort; a broadcasting failure is logged and
never slows down or fails the pipeline stage that produced the event.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from sentinel.config import get_settings
from sentinel.logging_config import get_logger
from sentinel.schemas.event import Channel, Event, EventType, parse_timestamp

logger = get_logger(__name__)

EVENT_LOG_KEY = "events:{}"


def _channel_name(channel: Channel | str) -> str:
    return channel.value if isinstance(channel, Channel) else channel


class EventBus:
    """Publish/subscribe plus a bounded replay log per channel."""

    def __init__(
        self,
        redis: aioredis.Redis,
        max_entries: int | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._max_entries = max_entries or settings.event_log_max_entries
        self._ttl_seconds = ttl_seconds or settings.event_log_ttl_seconds

    async def publish(
        self,
        event_type: EventType | str,
        data: dict[str, Any] | None = None,
        channel: Channel | str = Channel.LIVE_UPDATES,
    ) -> Optional[Event]:
        """Build an event and publish it; returns ``None`` if Redis refused it."""
        return await self.publish_event(Event.create(event_type, data), channel)

    async def publish_event(self, event: Event, channel: Channel | str = Channel.LIVE_UPDATES) -> Optional[Event]:
        name = _channel_name(channel)
        payload = event.model_dump_json()
        ok = True

        try:
            await self._redis.publish(name, payload)
        except RedisError as e:
            ok = False
            logger.error("event_publish_error", channel=name, event_type=event.type, error=str(e))

        # The replay log is written even when the live publish failed.
        list_key = EVENT_LOG_KEY.format(name)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lpush(list_key, payload)
                pipe.ltrim(list_key, 0, self._max_entries - 1)
                pipe.expire(list_key, self._ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            ok = False
            logger.error("event_log_write_error", channel=name, event_type=event.type, error=str(e))

        if ok:
            logger.info("event_published", channel=name, event_type=event.type, event_id=event.id)
            return event
        return None

    async def get_recent(
        self,
        channel: Channel | str = Channel.LIVE_UPDATES,
        limit: int = 10,
        since: str | datetime | None = None,
    ) -> list[Event]:
        """
        Read up to ``limit`` events from the replay log, newest first.

        With ``since``, only events whose timestamp is strictly later are
        returned. Entries that fail to parse are skipped.
        """
        if limit <= 0:
            return []
        name = _channel_name(channel)
        try:
            raw_entries = await self._redis.lrange(EVENT_LOG_KEY.format(name), 0, limit - 1)
        except RedisError as e:
            logger.error("event_log_read_error", channel=name, error=str(e))
            return []

        events: list[Event] = []
        for raw in raw_entries:
            try:
                events.append(Event.model_validate_json(raw))
            except (ValidationError, ValueError) as e:
                logger.warning("event_parse_error", channel=name, error=str(e))

        if since is not None:
            cutoff = since if isinstance(since, datetime) else parse_timestamp(since)
            if cutoff is None:
                logger.warning("invalid_since_timestamp", since=str(since))
            else:
                if cutoff.tzinfo is None:
                    cutoff = cutoff.replace(tzinfo=timezone.utc)
                events = [e for e in events if _is_after(e, cutoff)]

        return events

    def subscriber(self) -> PubSub:
        """A dedicated pub/sub connection; the caller must close it."""
        return self._redis.pubsub(ignore_subscribe_messages=True)

    async def health_check(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return False


def _is_after(event: Event, cutoff: datetime) -> bool:
    occurred = event.occurred_at()
    return occurred is not None and occurred > cutoff
