"""
Tests for the clock and scheduler helpers.
"""
import pytest

from spannerdata.utility.clock import (
    SYSTEM_CLOCK,
    SYSTEM_SCHEDULER,
    timeout_or_none,
)


def test_system_clock_is_monotonic():
    first = SYSTEM_CLOCK.now()
    assert SYSTEM_CLOCK.now() >= first


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_system_scheduler_accepts_negative_delay():
    await SYSTEM_SCHEDULER.delay(-1)


@pytest.mark.parametrize(
    "seconds,expected",
    [(None, None), (0, None), (5, 5.0), (0.5, 0.5)],
)
def test_timeout_or_none(seconds, expected):
    assert timeout_or_none(seconds) == expected
