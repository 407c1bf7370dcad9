"""
Ephemeral Call Registry.

One JSON record per in-flight call under ``active_call:{call_id}``,
each with its own TTL so abandoned calls clean themselves up. The
registry is bookkeeping for the dashboard and the delivery task, not a
lock: concurrent writers race and the last write wins.

Every operation is a network round-trip that may fail. Failures are
logged and turned into a neutral result (``None``, ``[]``, ``False``)
so a Redis outage never aborts a webhook response.
"""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from sentinel.config import get_settings
from sentinel.logging_config import get_logger
from sentinel.schemas.call import ActiveCallRecord, CallStatus

logger = get_logger(__name__)

ACTIVE_CALL_KEY = "active_call:{}"
ACTIVE_CALL_PATTERN = "active_call:*"
SCAN_BATCH = 100


class CallRegistry:
    """TTL-bounded key/value store of active-call records."""

    def __init__(self, redis: aioredis.Redis, default_ttl: int | None = None) -> None:
        self._redis = redis
        self._default_ttl = default_ttl or get_settings().active_call_ttl_seconds

    async def put(self, call_id: str, record: ActiveCallRecord, ttl_seconds: int | None = None) -> bool:
        """Store ``record`` for ``call_id``, replacing any previous one."""
        ttl = ttl_seconds or self._default_ttl
        try:
            await self._redis.setex(ACTIVE_CALL_KEY.format(call_id), ttl, record.model_dump_json())
            logger.debug("active_call_stored", call_id=call_id, status=record.status.value, ttl=ttl)
            return True
        except RedisError as e:
            logger.error("active_call_store_error", call_id=call_id, error=str(e))
            return False

    async def get(self, call_id: str, raise_errors: bool = False) -> Optional[ActiveCallRecord]:
        """
        Fetch the record for ``call_id``; ``None`` if unknown, expired or unreadable.

        With ``raise_errors`` a store failure propagates instead, so a
        caller can tell an absent record from one it could not read.
        """
        try:
            raw = await self._redis.get(ACTIVE_CALL_KEY.format(call_id))
        except RedisError as e:
            logger.error("active_call_fetch_error", call_id=call_id, error=str(e))
            if raise_errors:
                raise
            return None
        if not raw:
            return None
        return _parse_record(raw, call_id)

    async def delete(self, call_id: str) -> bool:
        try:
            removed = await self._redis.delete(ACTIVE_CALL_KEY.format(call_id))
            logger.info("active_call_removed", call_id=call_id, existed=bool(removed))
            return True
        except RedisError as e:
            logger.error("active_call_remove_error", call_id=call_id, error=str(e))
            return False

    async def list_all(self) -> list[ActiveCallRecord]:
        """
        Best-effort scan of every live record.

        Not consistent with concurrent writers: records created or
        expiring during the scan may or may not be included.
        """
        calls: list[ActiveCallRecord] = []
        try:
            keys = [key async for key in self._redis.scan_iter(match=ACTIVE_CALL_PATTERN, count=SCAN_BATCH)]
            if not keys:
                return calls
            values = await self._redis.mget(keys)
        except RedisError as e:
            logger.error("active_calls_list_error", error=str(e))
            return calls

        for key, raw in zip(keys, values):
            if not raw:
                continue  # expired between SCAN and MGET
            record = _parse_record(raw, key)
            if record is not None:
                calls.append(record)

        logger.debug("active_calls_listed", count=len(calls))
        return calls

    async def update(
        self,
        call_id: str,
        status: CallStatus | None = None,
        ttl_seconds: int | None = None,
        **changes: Any,
    ) -> Optional[ActiveCallRecord]:
        """
        Read-merge-write helper; creates the record when it does not exist.

        ``None`` values in ``changes`` are ignored so callers can pass
        optional webhook fields straight through.
        """
        if status is not None:
            changes["status"] = status

        existing = await self.get(call_id)
        if existing is not None:
            try:
                record = existing.merged(changes)
            except ValidationError as e:
                logger.error("active_call_invalid_update", call_id=call_id, error=str(e))
                return None
        else:
            if "status" not in changes:
                logger.warning("active_call_update_without_status", call_id=call_id)
                return None
            data = {k: v for k, v in changes.items() if v is not None}
            try:
                record = ActiveCallRecord(call_id=call_id, **data)
            except ValidationError as e:
                logger.error("active_call_invalid_update", call_id=call_id, error=str(e))
                return None

        stored = await self.put(call_id, record, ttl_seconds)
        return record if stored else None

    async def health_check(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return False


def _parse_record(raw: str, key: str) -> Optional[ActiveCallRecord]:
    try:
        return ActiveCallRecord.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("active_call_parse_error", key=key, error=str(e))
        return None
