"""
Live Update Channel.

Two ways for the dashboard to follow the pipeline:

* **Polling** - a stateless snapshot of the replay log plus the
  registry (``poll_snapshot``).
* **Push** - a ``LiveUpdateSession`` that streams server-sent events
  for a bounded time: handshake, initial snapshot, every message on the
  channel as it arrives, a heartbeat, and a forced close just under the
  host's execution limit.

A push session is torn down either by its ceiling or by the client
going away (the response task is cancelled). Both paths end in
``close()``, which runs its cleanup exactly once and cannot itself be
cancelled half way.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import anyio
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from sentinel.config import get_settings
from sentinel.logging_config import generate_trace_id, get_logger
from sentinel.schemas.event import Channel, StreamMessageType
from sentinel.services.event_bus import EventBus
from sentinel.services.registry import CallRegistry

logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def sse_frame(payload: str) -> str:
    return f"data: {payload}\n\n"


def control_message(message_type: StreamMessageType, **fields: Any) -> str:
    body = {"type": message_type.value, "timestamp": _now_iso(), **fields}
    return sse_frame(json.dumps(body, default=str))


async def poll_snapshot(
    bus: EventBus,
    registry: CallRegistry,
    since: str | None = None,
    limit: int | None = None,
    channel: Channel = Channel.LIVE_UPDATES,
) -> dict[str, Any]:
    """Everything a polling client needs in one response."""
    limit = limit or get_settings().live_poll_limit
    events = await bus.get_recent(channel, limit, since)
    active_calls = await registry.list_all()
    return {
        "success": True,
        "events": [e.model_dump() for e in events],
        "activeCalls": [c.model_dump(mode="json") for c in active_calls],
        "timestamp": _now_iso(),
        "mode": "polling",
    }


class LiveUpdateSession:
    """One bounded push connection to a single channel."""

    def __init__(
        self,
        bus: EventBus,
        registry: CallRegistry,
        channel: Channel = Channel.LIVE_UPDATES,
        heartbeat_seconds: float | None = None,
        ceiling_seconds: float | None = None,
        degraded_close_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self.session_id = generate_trace_id()
        self._bus = bus
        self._registry = registry
        self._channel = channel
        self._heartbeat_seconds = heartbeat_seconds or settings.live_heartbeat_seconds
        self._ceiling_seconds = ceiling_seconds or settings.live_ceiling_seconds
        self._degraded_close_seconds = (
            settings.live_degraded_close_seconds if degraded_close_seconds is None else degraded_close_seconds
        )
        self._initial_events = settings.live_initial_events

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pubsub: Optional[PubSub] = None
        self._tasks: list[asyncio.Task[None]] = []
        self._closing = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until the ceiling or a degraded handshake; cancel to disconnect."""
        log = logger.bind(session_id=self.session_id, channel=self._channel.value)
        try:
            if not await self._bus.health_check():
                log.warning("live_stream_degraded")
                yield control_message(
                    StreamMessageType.CONNECTION_ESTABLISHED,
                    degraded=True,
                    serverless=True,
                    message="Redis unavailable - switching to polling mode",
                )
                await asyncio.sleep(self._degraded_close_seconds)
                yield control_message(
                    StreamMessageType.CONNECTION_TIMEOUT,
                    serverless=True,
                    message="Please switch to polling mode",
                )
                return

            yield control_message(
                StreamMessageType.CONNECTION_ESTABLISHED,
                message="SSE connection established with Redis Pub/Sub.",
            )
            yield await self._initial_data()

            await self._subscribe()
            self._tasks = [
                asyncio.create_task(self._forward_messages()),
                asyncio.create_task(self._heartbeat()),
            ]
            log.info("live_stream_opened", ceiling_seconds=self._ceiling_seconds)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._ceiling_seconds
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    frame = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield frame

            log.info("live_stream_ceiling_reached")
            yield control_message(
                StreamMessageType.CONNECTION_TIMEOUT,
                message="Connection closed before the host time limit; reconnect to continue.",
            )
        except asyncio.CancelledError:
            log.info("live_stream_client_disconnected")
            raise
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop the heartbeat, unsubscribe and release the connection. Idempotent."""
        if self._closed or self._closing:
            return
        self._closing = True

        # Runs while the response task is being cancelled by the server.
        with anyio.CancelScope(shield=True):
            for task in self._tasks:
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            await self._release_subscription()
        self._closed = True
        logger.info("live_stream_closed", session_id=self.session_id)

    # -- internals --

    async def _initial_data(self) -> str:
        calls = await self._registry.list_all()
        recent = await self._bus.get_recent(self._channel, self._initial_events)
        return control_message(
            StreamMessageType.INITIAL_DATA,
            data={
                "activeCalls": len(calls),
                "calls": [c.model_dump(mode="json") for c in calls],
                "recentEvents": [e.model_dump() for e in recent],
            },
        )

    async def _subscribe(self) -> None:
        self._pubsub = self._bus.subscriber()
        await self._pubsub.subscribe(self._channel.value)

    async def _release_subscription(self) -> None:
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.unsubscribe(self._channel.value)
        except RedisError as e:
            logger.error("live_stream_unsubscribe_error", session_id=self.session_id, error=str(e))
        finally:
            try:
                await pubsub.aclose()
            except RedisError as e:
                logger.error("live_stream_release_error", session_id=self.session_id, error=str(e))

    def _emit(self, frame: str) -> None:
        # Writes after close are dropped.
        if self._closing or self._closed:
            return
        self._queue.put_nowait(frame)

    async def _forward_messages(self) -> None:
        pubsub = self._pubsub
        if pubsub is None:
            return
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8", errors="replace")
                self._emit(sse_frame(str(data)))
        except RedisError as e:
            logger.error("live_stream_subscription_error", session_id=self.session_id, error=str(e))

    async def _heartbeat(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._heartbeat_seconds)
            self._emit(control_message(StreamMessageType.HEARTBEAT))
