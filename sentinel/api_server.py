"""
FastAPI API Server.

Receives telephony and agent-call webhooks, executes queued tasks
delivered by QStash, and streams pipeline activity to the dashboard.

Start with:
    uvicorn sentinel.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from dotenv import load_dotenv
load_dotenv(".env.local")

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sentinel.api.deps import build_services
from sentinel.api.live_updates import router as live_updates_router
from sentinel.api.middleware import RequestIdMiddleware
from sentinel.api.webhooks import router as webhooks_router
from sentinel.api.worker import router as worker_router
from sentinel.config import get_settings
from sentinel.logging_config import get_logger, setup_logging
from sentinel.store import close_redis, get_redis

setup_logging()
logger = get_logger(__name__)

SERVICE_NAME = "sip-sentinel"
VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the shared Redis and HTTP clients and wire the services."""
    settings = get_settings()
    logger.info("api_server_starting", environment=settings.environment.value)

    http = httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds)
    app.state.services = build_services(get_redis(), http, settings)
    try:
        yield
    finally:
        await http.aclose()
        await close_redis()
        logger.info("api_server_stopping")


app = FastAPI(
    title="SIP Sentinel",
    description="Voicemail honeypot that classifies scam messages and calls the scammers back",
    version=VERSION,
    lifespan=lifespan,
)

# Middleware (order matters: outermost first)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Dashboard is served from a separate origin
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(webhooks_router)
app.include_router(worker_router)
app.include_router(live_updates_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, Any]:
    """Health check endpoint; reports whether Redis answers."""
    redis_ok = await app.state.services.registry.health_check()
    return {
        "status": "ok" if redis_ok else "degraded",
        "service": SERVICE_NAME,
        "redis": redis_ok,
    }


@app.get("/", tags=["System"])
async def root() -> dict[str, str]:
    """API root."""
    return {
        "service": "SIP Sentinel",
        "version": VERSION,
        "docs": "/docs",
    }
