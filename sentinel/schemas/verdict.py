"""
Data models returned by the external collaborators.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class CallbackDetails(BaseModel):
    """How the message asks to be called back."""
    method: Optional[str] = None  # "phone", "email", ...
    details: Optional[str] = None  # the number/address itself


class Verdict(BaseModel):
    """Classifier output. Every field is optional; absence means unknown."""
    is_scam: bool = False
    impersonated_company: Optional[str] = None
    scam_type: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    callback_details: Optional[CallbackDetails] = None


class Recording(BaseModel):
    """A finished agent call as reported by the outbound-call provider."""
    call_id: str
    recording_url: str
    duration: Optional[float] = None
    assistant_name: Optional[str] = None
    impersonated_company: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    ended_reason: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class StartedCall(BaseModel):
    id: str
    assistant_name: Optional[str] = None


class DeliveryResult(BaseModel):
    success: bool
    error: Optional[str] = None
