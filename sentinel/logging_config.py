"""
Structured JSON logging with correlation IDs.

Uses structlog to produce machine-parseable JSON logs in production
and human-readable colored output in development. Every log entry
automatically includes the ``trace_id`` of the invocation plus the
``call_id`` / ``task_id`` being worked on, so one logical call can be
followed across webhooks, queued tasks and live-update sessions.

Usage:
    from sentinel.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("task_enqueued", task_type="deliver_recording", delay=45)
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from sentinel.config import get_settings

# ── Context variables for per-invocation correlation ─────────────
# Each webhook, worker delivery and stream runs in its own invocation;
# set these at the entry point so every log line carries them.
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
call_id_var: ContextVar[str] = ContextVar("call_id", default="")
task_id_var: ContextVar[str] = ContextVar("task_id", default="")


def _inject_context_vars(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Inject trace_id, call_id and task_id from context vars into every log entry."""
    for key, var in (("trace_id", trace_id_var), ("call_id", call_id_var), ("task_id", task_id_var)):
        value = var.get("")
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def generate_trace_id() -> str:
    """Generate a short, unique trace ID for request/task correlation."""
    return uuid.uuid4().hex[:12]


def redact_phone_number(number: str | None) -> str:
    """Mask all but the last four digits of a phone number for logs and events."""
    if not number:
        return "Unknown"
    digits = [c for c in number if c.isdigit()]
    if len(digits) <= 4:
        return number
    return "*" * (len(digits) - 4) + "".join(digits[-4:])


def setup_logging() -> None:
    """
    Configure structlog and stdlib logging.

    - **Production**: JSON output to stdout (for log aggregators).
    - **Development**: Colored, human-readable console output.
    """
    settings = get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # ── Route stdlib logging (uvicorn, redis, httpx) through the
    #    same renderer ────────────────────────────────────────────
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for noisy in ("httpx", "httpcore", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Return a named, structured logger.

    Args:
        name: Typically ``__name__`` of the calling module.

    Returns:
        A bound structlog logger with all shared processors attached.
    """
    return structlog.get_logger(name)
