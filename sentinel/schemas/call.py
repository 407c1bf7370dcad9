"""
Data models for tracked calls and telephony events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class CallStatus(str, Enum):
    RINGING = "ringing"
    RECORDING = "recording"
    RECORDING_COMPLETED = "recording_completed"
    TRANSCRIBED = "transcribed"
    SCAM_DETECTED = "scam_detected"
    AGENT_CALL_STARTED = "agent_call_started"
    AGENT_CALL_ENDED = "agent_call_ended"


# Statuses reached once a voicemail has been transcribed; a second
# transcription task for such a call is a redelivery.
POST_TRANSCRIPTION_STATUSES = frozenset({
    CallStatus.TRANSCRIBED,
    CallStatus.SCAM_DETECTED,
    CallStatus.AGENT_CALL_STARTED,
    CallStatus.AGENT_CALL_ENDED,
})


class CallType(str, Enum):
    INCOMING = "incoming_call"
    AGENT = "agent_call"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActiveCallRecord(BaseModel):
    """Per-call state shared across invocations through the registry."""

    call_id: str
    status: CallStatus
    call_type: CallType = CallType.INCOMING
    phone_number: Optional[str] = None
    company: str = "Unknown"
    agent_name: Optional[str] = None
    scam_type: Optional[str] = None
    original_call_id: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    last_update: datetime = Field(default_factory=utcnow)
    duration: float = 0
    delivery_queued: bool = False
    delivery_failed: bool = False

    def merged(self, changes: dict[str, Any]) -> "ActiveCallRecord":
        """Return a copy with ``changes`` applied and ``last_update`` stamped."""
        data = self.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        data["last_update"] = utcnow()
        return ActiveCallRecord.model_validate(data)
