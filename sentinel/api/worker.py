"""
API Router: Task Worker.

QStash delivers every queued task here. The signature is checked on the
raw body before anything is parsed. The status code tells QStash what
to do next:

    200  handled (including a delivery chain that gave up)
    400  malformed or unknown task, redelivery cannot help
    403  signature rejected
    500  handler failure or timeout, QStash redelivers
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from sentinel.api.deps import Services, get_services
from sentinel.errors import InvalidTaskError
from sentinel.logging_config import get_logger, task_id_var
from sentinel.schemas.task import TaskEnvelope
from sentinel.services.task_dispatcher import SIGNATURE_HEADER, verify_signature
from sentinel.utils.budget import start_invocation_budget

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["Worker"])


def request_url(request: Request) -> str:
    """The URL QStash signed: the public one, as seen through any proxy."""
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    url = f"{proto}://{host}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"
    return url


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@router.post("/queue-worker")
async def queue_worker(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    start_invocation_budget(services.settings.worker_time_budget_seconds)
    raw_body = await request.body()

    url = request_url(request)
    if not verify_signature(request.headers.get(SIGNATURE_HEADER), raw_body, url, services.settings):
        logger.warning("worker_signature_rejected", url=url)
        return _error(403, "Invalid signature")

    try:
        envelope = TaskEnvelope.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning("worker_invalid_envelope", error=str(e))
        return _error(400, "Invalid task envelope")

    task_id_var.set(envelope.task_id)
    log = logger.bind(task_type=envelope.task_type)

    try:
        result = await services.router.route(envelope)
    except InvalidTaskError as e:
        log.warning("worker_task_rejected", error=str(e))
        return _error(400, str(e))
    except asyncio.TimeoutError:
        log.error("worker_task_timeout")
        return _error(500, "Task timed out")
    except Exception as e:
        log.exception("worker_task_failed", error=str(e))
        return _error(500, str(e) or type(e).__name__)

    log.info("worker_task_completed")
    return JSONResponse(content={
        "success": True,
        "message": f"Task {envelope.task_type} processed",
        "outcome": jsonable_encoder(result),
    })
