"""
Task Dispatcher.

Sending side: wrap a typed payload in an envelope and hand it to QStash,
which delivers it to the worker endpoint at least once, after an
optional delay, retrying on non-2xx responses. QStash owns the backoff
between its own redeliveries.

Receiving side: verify the QStash signature on the raw body before
anything is parsed, then route the envelope to exactly one handler per
task type.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx
import jwt
from pydantic import BaseModel, ValidationError

from sentinel.config import Settings, get_settings
from sentinel.errors import InvalidTaskPayloadError, TaskEnqueueError, UnknownTaskTypeError
from sentinel.logging_config import get_logger
from sentinel.schemas.event import make_id
from sentinel.schemas.task import PAYLOAD_MODELS, EnqueueResult, TaskEnvelope, TaskType

logger = get_logger(__name__)

QSTASH_ISSUER = "Upstash"
SIGNATURE_HEADER = "Upstash-Signature"


class TaskDispatcher:
    """Publishes tasks to QStash, addressed at the worker endpoint."""

    def __init__(self, http: httpx.AsyncClient, settings: Settings | None = None) -> None:
        self._http = http
        self._settings = settings or get_settings()

    async def enqueue(
        self,
        task_type: TaskType,
        task_data: BaseModel | dict[str, Any],
        delay_seconds: int = 0,
        retries: int | None = None,
    ) -> EnqueueResult:
        """
        Queue a task for background processing.

        Args:
            task_type: Routing key for the worker.
            task_data: Payload; a model is serialized as JSON.
            delay_seconds: Delay before the first delivery attempt.
            retries: Redelivery attempts QStash makes on a non-2xx answer.

        Returns:
            The QStash message ID and the generated task ID.

        Raises:
            TaskEnqueueError: QStash could not be reached or refused the task.
        """
        retries = self._settings.task_default_retries if retries is None else retries
        data = task_data.model_dump(mode="json") if isinstance(task_data, BaseModel) else dict(task_data)
        envelope = TaskEnvelope(
            task_type=task_type.value,
            task_data=data,
            task_id=make_id(task_type.value),
        )

        headers = {
            "Authorization": f"Bearer {self._settings.qstash_token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(retries),
        }
        if delay_seconds > 0:
            headers["Upstash-Delay"] = f"{delay_seconds}s"

        destination = self._settings.worker_url
        url = f"{self._settings.qstash_url.rstrip('/')}/v2/publish/{destination}"

        try:
            response = await self._http.post(url, headers=headers, json=envelope.wire())
            response.raise_for_status()
            message_id = response.json().get("messageId", "")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "task_enqueue_error",
                task_type=task_type.value,
                task_id=envelope.task_id,
                error=str(e),
            )
            raise TaskEnqueueError(f"Failed to queue {task_type.value}: {e}") from e

        logger.info(
            "task_enqueued",
            task_type=task_type.value,
            task_id=envelope.task_id,
            message_id=message_id,
            delay_seconds=delay_seconds,
            retries=retries,
        )
        return EnqueueResult(message_id=message_id, task_id=envelope.task_id, task_type=task_type)


def _body_hash(raw_body: bytes) -> str:
    digest = hashlib.sha256(raw_body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_signature(
    signature: Optional[str],
    raw_body: bytes,
    url: str,
    settings: Settings | None = None,
) -> bool:
    """
    Check a QStash request signature.

    The signature is an HS256 JWT signed with either the current or the
    next signing key (keys rotate). It must be issued by Upstash, name
    ``url`` as its subject, be within its validity window and carry the
    base64url SHA-256 of the exact body that was received.
    """
    settings = settings or get_settings()
    keys = [k for k in (settings.qstash_current_signing_key, settings.qstash_next_signing_key) if k]
    if not keys:
        logger.error("qstash_signing_keys_missing")
        return False
    if not signature:
        logger.warning("qstash_signature_missing")
        return False

    last_error = ""
    for key in keys:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer=QSTASH_ISSUER,
                leeway=settings.qstash_clock_tolerance_seconds,
                options={"require": ["iss", "sub", "exp", "nbf", "body"]},
            )
        except jwt.InvalidTokenError as e:
            last_error = str(e)
            continue

        if claims.get("sub") != url:
            logger.warning("qstash_signature_url_mismatch", expected=url, got=claims.get("sub"))
            return False
        if str(claims.get("body", "")).rstrip("=") != _body_hash(raw_body):
            logger.warning("qstash_signature_body_mismatch", body_length=len(raw_body))
            return False
        return True

    logger.warning("qstash_signature_invalid", error=last_error)
    return False


TaskHandler = Callable[[Any], Awaitable[Any]]


class TaskRouter:
    """
    Maps every ``TaskType`` to exactly one handler.

    Construction fails if a task type has no handler, so adding a task
    type without wiring it up is caught at startup rather than in
    production.
    """

    def __init__(self, handlers: Mapping[TaskType, TaskHandler]) -> None:
        missing = [t.value for t in TaskType if t not in handlers]
        if missing:
            raise ValueError(f"No handler registered for task types: {', '.join(missing)}")
        self._handlers = dict(handlers)

    def parse(self, envelope: TaskEnvelope) -> tuple[TaskType, BaseModel]:
        try:
            task_type = TaskType(envelope.task_type)
        except ValueError:
            raise UnknownTaskTypeError(envelope.task_type) from None
        try:
            payload = PAYLOAD_MODELS[task_type].model_validate(envelope.task_data)
        except ValidationError as e:
            raise InvalidTaskPayloadError(f"Invalid {task_type.value} payload: {e}") from e
        return task_type, payload

    async def route(self, envelope: TaskEnvelope) -> Any:
        task_type, payload = self.parse(envelope)
        logger.info("task_routing", task_type=task_type.value, task_id=envelope.task_id)
        return await self._handlers[task_type](payload)
