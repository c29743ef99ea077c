"""Caller-supplied deadlines for awaited network calls."""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import DeadlineExceeded

T = TypeVar("T")


class Deadline:
    """
    Absolute point in time after which awaited calls are cancelled.

    Usage:
        deadline = Deadline.after(30)
        code = await deadline.run(provider.get_code(address), "get_code")
    """

    def __init__(self, expires_at: float, clock: Callable[[], float] = time.monotonic):
        self._expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(clock() + seconds, clock)

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    async def run(self, awaitable: Awaitable[T], operation: str = "call") -> T:
        """Await ``awaitable``, cancelling it once the deadline passes."""
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceeded(operation, 0.0)
        timeout = self.remaining()
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(operation, timeout) from e


async def within(
    deadline: Optional[Deadline],
    awaitable: Awaitable[T],
    operation: str = "call",
) -> T:
    """Await under ``deadline`` when one is given."""
    if deadline is None:
        return await awaitable
    return await deadline.run(awaitable, operation)
