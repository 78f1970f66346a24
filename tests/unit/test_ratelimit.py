"""Unit tests for group pacing."""

from __future__ import annotations

import pytest

from conftest import FakeClock
from docbot.services.ratelimit import IntervalRateLimiter, UnlimitedRateLimiter


class TestIntervalRateLimiter:
    async def test_first_group_starts_immediately(self, clock: FakeClock) -> None:
        limiter = IntervalRateLimiter(61.0, clock=clock, sleep=clock.sleep)
        async with limiter.group():
            pass
        assert clock.sleeps == []

    async def test_next_group_waits_full_delay(self, clock: FakeClock) -> None:
        limiter = IntervalRateLimiter(61.0, clock=clock, sleep=clock.sleep)
        starts: list[float] = []
        for _ in range(3):
            async with limiter.group():
                starts.append(clock.now)
                clock.now += 5  # time spent inside the group
        assert clock.sleeps == [61.0, 61.0]
        assert starts == [0.0, 66.0, 132.0]

    async def test_elapsed_time_counts_toward_delay(self, clock: FakeClock) -> None:
        limiter = IntervalRateLimiter(61.0, clock=clock, sleep=clock.sleep)
        async with limiter.group():
            pass
        clock.now += 50
        assert limiter.seconds_until_ready() == pytest.approx(11.0)
        async with limiter.group():
            pass
        assert clock.sleeps == [pytest.approx(11.0)]

    async def test_failed_group_still_starts_the_delay(self, clock: FakeClock) -> None:
        limiter = IntervalRateLimiter(10.0, clock=clock, sleep=clock.sleep)
        with pytest.raises(RuntimeError):
            async with limiter.group():
                raise RuntimeError("provider down")
        assert limiter.seconds_until_ready() == 10.0

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ValueError):
            IntervalRateLimiter(-1)


async def test_unlimited_limiter_never_waits() -> None:
    limiter = UnlimitedRateLimiter()
    for _ in range(3):
        async with limiter.group():
            pass
