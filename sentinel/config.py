"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the app can start with minimal configuration.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Central configuration for the SIP Sentinel service.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed; use `.env.example` as the template.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT
    public_base_url: str = Field(default="http://localhost:8000", description="Externally reachable base URL")

    # ── Redis ────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # ── QStash ───────────────────────────────────────────────────
    qstash_url: str = Field(default="https://qstash.upstash.io", description="QStash API base URL")
    qstash_token: str = Field(default="", description="QStash publish token")
    qstash_current_signing_key: str = Field(default="", description="QStash current signing key")
    qstash_next_signing_key: str = Field(default="", description="QStash next signing key")
    qstash_clock_tolerance_seconds: int = Field(default=0, ge=0, le=300)
    worker_path: str = Field(default="/api/queue-worker", description="Path QStash delivers tasks to")

    # ── Twilio ───────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="", description="Twilio account SID")
    voicemail_greeting: str = Field(
        default=(
            "Hi, you've reached me but I can't come to the phone right now. "
            "Please leave your name, number, and a message and I'll get back to you."
        ),
    )
    sms_reply: str = Field(default="Thank you for your message. It has been received and is being processed.")

    # ── VAPI (outbound agent calls) ──────────────────────────────
    vapi_api_url: str = Field(default="https://api.vapi.ai", description="VAPI REST base URL")
    vapi_api_key: str = Field(default="", description="VAPI private API key")
    vapi_assistant_id: str = Field(default="", description="Assistant used for callbacks")
    vapi_phone_number_id: str = Field(default="", description="VAPI phone number used as caller ID")

    # ── Telegram (recording delivery) ────────────────────────────
    telegram_bot_token: str = Field(default="", description="Telegram bot token")
    telegram_chat_id: str = Field(default="", description="Telegram chat receiving recordings")

    # ── AI Model Keys ────────────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key for classification")
    openai_model: str = Field(default="gpt-4o-mini")
    deepgram_api_key: str = Field(default="", description="Deepgram API key for STT")

    # ── Registry & Event Bus ─────────────────────────────────────
    active_call_ttl_seconds: int = Field(default=3600, ge=1, description="Registry record TTL")
    processed_call_ttl_seconds: int = Field(default=600, ge=1, description="TTL once a voicemail is classified")
    event_log_max_entries: int = Field(default=100, ge=1, description="Replay log cap per channel")
    event_log_ttl_seconds: int = Field(default=300, ge=1, description="Replay log expiry")

    # ── Live updates ─────────────────────────────────────────────
    live_heartbeat_seconds: float = Field(default=5.0, gt=0)
    live_ceiling_seconds: float = Field(default=9.5, gt=0, description="Forced close, under host limit")
    live_degraded_close_seconds: float = Field(default=0.5, ge=0)
    live_poll_limit: int = Field(default=20, ge=1)
    live_initial_events: int = Field(default=10, ge=1)

    # ── Task pipeline ────────────────────────────────────────────
    task_default_retries: int = Field(default=3, ge=0, le=10)
    transcription_initial_delay_seconds: int = Field(default=30, ge=0)
    delivery_delay_after_call_end_seconds: int = Field(default=60, ge=0)
    delivery_delay_after_report_seconds: int = Field(default=15, ge=0)
    delivery_retry_delay_seconds: int = Field(default=45, ge=0)
    delivery_max_retries: int = Field(default=8, ge=0, le=50)
    delivery_task_timeout_seconds: float = Field(default=45.0, gt=0)
    successful_call_seconds: int = Field(default=300, description="Agent call length counted as a win")

    # ── Engagement thresholds ────────────────────────────────────
    min_engage_confidence: int = Field(default=70, ge=0, le=100)
    min_transcript_length: int = Field(default=10, ge=0)
    min_recording_duration: int = Field(default=1, ge=0)

    # ── Time budgets (seconds) ───────────────────────────────────
    worker_time_budget_seconds: float = Field(default=45.0, gt=0, description="Per-invocation ceiling")
    classification_timeout_seconds: float = Field(default=15.0, gt=0)
    agent_call_creation_seconds: float = Field(default=10.0, gt=0)
    collaborator_timeout_seconds: float = Field(default=10.0, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def worker_url(self) -> str:
        return self.public_base_url.rstrip("/") + self.worker_path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
