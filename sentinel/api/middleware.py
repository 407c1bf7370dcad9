"""
API Middleware.

Request ID injection and structured access logging for every incoming
request. QStash deliveries carry their message id, which is bound to
the log context so a task can be followed across redeliveries.
"""

from __future__ import annotations

import time
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from sentinel.logging_config import generate_trace_id, get_logger, trace_id_var

logger = get_logger(__name__)

QSTASH_MESSAGE_ID_HEADER = "Upstash-Message-Id"
QSTASH_RETRIED_HEADER = "Upstash-Retried"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Inject a unique request ID into every request and response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", generate_trace_id())
        trace_id_var.set(request_id)

        structlog.contextvars.clear_contextvars()
        message_id = request.headers.get(QSTASH_MESSAGE_ID_HEADER)
        if message_id:
            structlog.contextvars.bind_contextvars(
                qstash_message_id=message_id,
                qstash_retried=request.headers.get(QSTASH_RETRIED_HEADER, "0"),
            )

        start = time.monotonic()

        response = await call_next(request)

        elapsed_ms = round((time.monotonic() - start) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        logger.info(
            "api_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=elapsed_ms,
            request_id=request_id,
        )

        return response
