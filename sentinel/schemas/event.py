"""
Data models for broadcast events.
"""

from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Channel(str, Enum):
    LIVE_UPDATES = "live_updates"


class EventType(str, Enum):
    INCOMING_CALL = "incoming_call"
    CALL_STATUS_UPDATE = "call_status_update"
    SCAM_DETECTED = "scam_detected"
    CALL_PROCESSED = "call_processed"
    AGENT_CALL_STARTED = "agent_call_started"
    AGENT_CALL_ENDED = "agent_call_ended"
    AGENT_CALL_FAILED = "agent_call_failed"
    RECORDING_DELIVERED = "recording_delivered"


class StreamMessageType(str, Enum):
    """Control messages of a push session; never stored in the replay log."""

    CONNECTION_ESTABLISHED = "connection_established"
    INITIAL_DATA = "initial_data"
    HEARTBEAT = "heartbeat"
    CONNECTION_TIMEOUT = "connection_timeout"


_ID_ALPHABET = string.ascii_lowercase + string.digits


def make_id(prefix: str) -> str:
    """``{prefix}_{epoch_millis}_{9 random chars}``; unique enough, not guaranteed."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_now_iso)
    id: str = ""

    @classmethod
    def create(cls, event_type: EventType | str, data: dict[str, Any] | None = None) -> Event:
        type_value = event_type.value if isinstance(event_type, Enum) else event_type
        return cls(type=type_value, data=data or {}, id=make_id(type_value))

    def occurred_at(self) -> datetime | None:
        return parse_timestamp(self.timestamp)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed); naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
