"""
Clock and scheduler abstractions.

Session timestamps, pool maintenance, retry backoff and retry deadlines all
read time through a Clock and sleep through a Scheduler, so tests can drive
them deterministically instead of waiting on the wall clock.
"""
import asyncio
import time
from typing import Optional


class Clock:
    """Source of monotonic time in seconds."""

    def now(self) -> float:
        raise NotImplementedError


class SystemClock(Clock):
    """Clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


class Scheduler:
    """Suspends the caller for a period of time."""

    async def delay(self, seconds: float) -> None:
        raise NotImplementedError


class SystemScheduler(Scheduler):
    """Scheduler backed by asyncio.sleep()."""

    async def delay(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


SYSTEM_CLOCK = SystemClock()
SYSTEM_SCHEDULER = SystemScheduler()


def timeout_or_none(seconds: Optional[float]) -> Optional[float]:
    """
    Normalize a user-facing timeout.

    A timeout of 0 (or None) means "no deadline", matching the connection
    string convention.
    """
    if not seconds:
        return None
    return float(seconds)
