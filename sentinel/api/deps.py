"""
Service wiring.

One ``Services`` bundle is built in the app lifespan from the shared
Redis and httpx clients and kept on ``app.state``. Routes pull it in
with ``Depends(get_services)``; tests swap in their own bundle.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis
from fastapi import Request

from sentinel.clients.classifier import ScamClassifier
from sentinel.clients.telegram import TelegramSink
from sentinel.clients.transcriber import Transcriber
from sentinel.clients.vapi import VapiClient
from sentinel.config import Settings, get_settings
from sentinel.schemas.task import TaskType
from sentinel.services.event_bus import EventBus
from sentinel.services.pipeline import PipelineCoordinator
from sentinel.services.recording_delivery import RecordingDeliveryHandler
from sentinel.services.registry import CallRegistry
from sentinel.services.task_dispatcher import TaskDispatcher, TaskRouter


@dataclass
class Services:
    settings: Settings
    registry: CallRegistry
    bus: EventBus
    dispatcher: TaskDispatcher
    pipeline: PipelineCoordinator
    router: TaskRouter


def build_services(
    redis: aioredis.Redis,
    http: httpx.AsyncClient,
    settings: Settings | None = None,
) -> Services:
    settings = settings or get_settings()
    registry = CallRegistry(redis, settings.active_call_ttl_seconds)
    bus = EventBus(redis, settings.event_log_max_entries, settings.event_log_ttl_seconds)
    dispatcher = TaskDispatcher(http, settings)
    outbound = VapiClient(http, settings)

    pipeline = PipelineCoordinator(
        registry=registry,
        bus=bus,
        dispatcher=dispatcher,
        classifier=ScamClassifier(http, settings),
        transcriber=Transcriber(http, settings),
        outbound=outbound,
        settings=settings,
    )
    delivery = RecordingDeliveryHandler(
        registry=registry,
        dispatcher=dispatcher,
        outbound=outbound,
        sink=TelegramSink(http, settings),
        bus=bus,
        settings=settings,
    )
    router = TaskRouter({
        TaskType.PROCESS_TRANSCRIPTION: pipeline.handle_transcription,
        TaskType.PROCESS_SMS: pipeline.handle_sms,
        TaskType.TRIGGER_AGENT_CALL: pipeline.handle_agent_call,
        TaskType.DELIVER_RECORDING: delivery,
    })
    return Services(settings, registry, bus, dispatcher, pipeline, router)


def get_services(request: Request) -> Services:
    return request.app.state.services
