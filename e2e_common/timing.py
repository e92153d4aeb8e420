"""
Clock, TTL cache and polling primitives.

Every wait loop in the engine goes through poll_until(), and every component
reads time through an injected Clock so that tests can run the loops against
a fake clock without sleeping.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Generic, Protocol, TypeVar

from .errors import ReadinessTimeoutError

T = TypeVar("T")


class Clock(Protocol):
    """Source of monotonic time and suspension."""

    def monotonic(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Clock backed by time.monotonic() and asyncio.sleep()."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class TTLCache(Generic[T]):
    """
    Key/value cache whose entries expire a fixed time after being stored.

    There is no invalidation API: readers that need fresher data wait out
    the TTL. No locking; callers are serialized by the single worker.
    """

    def __init__(self, ttl: float, clock: Clock):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, tuple[float, T]] = {}

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self.clock.monotonic() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: T) -> None:
        self._entries[key] = (self.clock.monotonic(), value)


async def poll_until(
    check: Callable[[], Awaitable[T]],
    *,
    interval: float,
    timeout: float,
    clock: Clock,
    description: str,
    pending: Callable[[], list[str]] | None = None,
) -> T:
    """
    Call check() until it returns a truthy value or the timeout budget is spent.

    The first check runs immediately; later checks run every interval seconds.
    The last sleep is shortened so the loop gives up at the deadline rather
    than one full interval after it.

    Args:
        check: Async callable returning a truthy value once the condition holds
        interval: Seconds between checks
        timeout: Total budget in seconds
        clock: Clock used for the deadline and for sleeping
        description: Human-readable condition, used in the timeout message
        pending: Optional callable naming what is still outstanding at timeout

    Returns:
        The first truthy value returned by check()

    Raises:
        ReadinessTimeoutError: If the budget is exhausted
    """
    deadline = clock.monotonic() + timeout
    while True:
        result = await check()
        if result:
            return result

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            raise ReadinessTimeoutError(
                description, timeout, pending() if pending else None
            )
        await clock.sleep(min(interval, remaining))
