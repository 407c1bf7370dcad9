"""
Per-invocation time budget.

The host kills an invocation at a hard limit, so long steps check how
much time is left before they start and are skipped when they would
not finish.
"""

from __future__ import annotations

import asyncio
import time
from contextvars import ContextVar
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")

_invocation_budget: ContextVar[Optional["TimeBudget"]] = ContextVar("invocation_budget", default=None)


class TimeBudget:
    def __init__(self, total_seconds: float) -> None:
        self.total_seconds = total_seconds
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    @property
    def remaining(self) -> float:
        return max(0.0, self.total_seconds - self.elapsed)

    def allows(self, seconds: float) -> bool:
        """True if a step needing ``seconds`` can still finish in time."""
        return self.remaining >= seconds


def start_invocation_budget(total_seconds: float) -> TimeBudget:
    """Start the clock for the current invocation (call once at the entry point)."""
    budget = TimeBudget(total_seconds)
    _invocation_budget.set(budget)
    return budget


def current_budget(default_seconds: float) -> TimeBudget:
    """The running invocation's budget, or a fresh one if none was started."""
    budget = _invocation_budget.get()
    if budget is None:
        budget = start_invocation_budget(default_seconds)
    return budget


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """``asyncio.wait_for`` under a name that reads well at call sites."""
    return await asyncio.wait_for(awaitable, timeout=seconds)
