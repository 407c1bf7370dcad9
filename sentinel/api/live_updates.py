"""
API Router: Live Updates.

``GET /api/live-updates`` streams server-sent events for a bounded time;
``?mode=poll`` returns a single snapshot instead.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from sentinel.api.deps import Services, get_services
from sentinel.logging_config import get_logger
from sentinel.schemas.event import Channel
from sentinel.services.live_updates import LiveUpdateSession, poll_snapshot

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["Live Updates"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/live-updates", response_model=None)
async def live_updates(
    mode: Optional[str] = Query(default=None),
    since: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> StreamingResponse | dict[str, Any]:
    if mode == "poll":
        return await poll_snapshot(services.bus, services.registry, since)

    session = LiveUpdateSession(services.bus, services.registry, Channel.LIVE_UPDATES)
    logger.info("live_stream_requested", session_id=session.session_id)
    return StreamingResponse(session.stream(), media_type="text/event-stream", headers=SSE_HEADERS)
