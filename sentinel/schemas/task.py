"""
Data models for queued tasks.

The envelope travels through QStash in camelCase (``taskType``,
``taskData``, ``taskId``, ``timestamp``). ``taskData`` is validated into
one payload model per task type before a handler sees it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt


class TaskType(str, Enum):
    PROCESS_TRANSCRIPTION = "process_transcription"
    PROCESS_SMS = "process_sms"
    TRIGGER_AGENT_CALL = "trigger_agent_call"
    DELIVER_RECORDING = "deliver_recording"


class TaskEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_type: str = Field(alias="taskType")
    task_data: dict[str, Any] = Field(default_factory=dict, alias="taskData")
    task_id: str = Field(default="", alias="taskId")
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TranscriptionTask(BaseModel):
    call_id: str
    caller_number: Optional[str] = None
    recording_id: Optional[str] = None
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    transcription_text: Optional[str] = None
    transcription_status: Optional[str] = None


class SmsTask(BaseModel):
    message_id: str
    caller_number: Optional[str] = None
    message: str = ""


class AgentCallTask(BaseModel):
    target_number: str
    scam_type: Optional[str] = None
    company: Optional[str] = None
    confidence: Optional[float] = None
    original_call_id: Optional[str] = None
    original_caller_number: Optional[str] = None


class ScamDetails(BaseModel):
    impersonated_company: Optional[str] = None
    scam_type: Optional[str] = None
    confidence: Optional[float] = None


class RecordingDeliveryTask(BaseModel):
    call_id: str
    retry_count: NonNegativeInt = 0
    assistant_name: Optional[str] = None
    scam_details: ScamDetails = Field(default_factory=ScamDetails)

    def next_attempt(self) -> RecordingDeliveryTask:
        """Same chain, one attempt later; every other field is carried unchanged."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})


PAYLOAD_MODELS: dict[TaskType, type[BaseModel]] = {
    TaskType.PROCESS_TRANSCRIPTION: TranscriptionTask,
    TaskType.PROCESS_SMS: SmsTask,
    TaskType.TRIGGER_AGENT_CALL: AgentCallTask,
    TaskType.DELIVER_RECORDING: RecordingDeliveryTask,
}


class EnqueueResult(BaseModel):
    message_id: str
    task_id: str
    task_type: TaskType
