"""
Domain exceptions.

Raised by the dispatcher and the task handlers; the worker endpoint
maps them onto HTTP status codes the delivery layer understands.
"""

from __future__ import annotations


class SentinelError(Exception):
    """Base class for all service errors."""


class TaskEnqueueError(SentinelError):
    """The delivery layer refused or failed to accept a task."""


class InvalidTaskError(SentinelError):
    """A delivered task could not be understood (maps to 400)."""


class UnknownTaskTypeError(InvalidTaskError):
    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type: {task_type}")
        self.task_type = task_type


class InvalidTaskPayloadError(InvalidTaskError):
    pass


class CollaboratorError(SentinelError):
    """An external collaborator (classifier, VAPI, Telegram, Deepgram) failed."""

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
