"""Tests for resolver rate limiting and block tracking."""

import asyncio
import time

import pytest

from chromasync.acquisition.guard import ConcurrencyGuard
from chromasync.errors import ResolverBlocked


class FakeTime:
    """Monotonic clock whose sleep advances the clock."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ParkedTime(FakeTime):
    """Clock that stands still while sleepers yield to each other."""

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


def make_guard(min_interval=2.0):
    fake = FakeTime()
    return ConcurrencyGuard(min_interval=min_interval, clock=fake.clock, sleep=fake.sleep), fake


async def echo(value):
    return value


class TestSpacing:
    @pytest.mark.asyncio
    async def test_first_call_not_delayed(self):
        guard, fake = make_guard()
        assert await guard.wait_turn() == 0.0
        assert fake.sleeps == []

    @pytest.mark.asyncio
    async def test_back_to_back_calls_spaced(self):
        guard, fake = make_guard()
        await guard.call(echo, 1)
        fake.now += 0.5
        assert await guard.call(echo, 2) == 2
        assert fake.sleeps == [pytest.approx(1.5)]

    @pytest.mark.asyncio
    async def test_no_wait_after_interval(self):
        guard, fake = make_guard()
        await guard.call(echo, 1)
        fake.now += 3.0
        await guard.call(echo, 2)
        assert fake.sleeps == []


class TestBlocking:
    @pytest.mark.asyncio
    async def test_block_is_permanent(self):
        guard, _ = make_guard()
        calls = []

        async def refuse():
            calls.append(1)
            raise ResolverBlocked("quota exceeded")

        with pytest.raises(ResolverBlocked):
            await guard.call(refuse)
        assert guard.blocked
        assert guard.block_reason == "quota exceeded"

        with pytest.raises(ResolverBlocked, match="quota exceeded"):
            await guard.call(refuse)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_other_errors_do_not_block(self):
        guard, _ = make_guard()

        async def broken():
            raise RuntimeError("network")

        with pytest.raises(RuntimeError):
            await guard.call(broken)
        assert not guard.blocked

    @pytest.mark.asyncio
    async def test_reset(self):
        guard, fake = make_guard()
        guard.block("forbidden")
        guard.reset()

        assert not guard.blocked
        assert guard.block_reason is None
        assert await guard.call(echo, "ok") == "ok"
        assert fake.sleeps == []


class TestConcurrentCallers:
    @pytest.mark.asyncio
    async def test_gathered_calls_queue_up(self):
        fake = ParkedTime()
        guard = ConcurrencyGuard(min_interval=2.0, clock=fake.clock, sleep=fake.sleep)
        await guard.call(echo, 0)

        results = await asyncio.gather(guard.call(echo, 1), guard.call(echo, 2))

        assert results == [1, 2]
        assert fake.sleeps == [pytest.approx(2.0), pytest.approx(4.0)]

    @pytest.mark.asyncio
    async def test_gathered_calls_spaced_on_real_clock(self):
        guard = ConcurrencyGuard(min_interval=0.05)
        started = []

        async def stamp():
            started.append(time.monotonic())

        await asyncio.gather(*(guard.call(stamp) for _ in range(3)))

        gaps = [b - a for a, b in zip(started, started[1:])]
        assert len(gaps) == 2
        assert all(gap >= 0.04 for gap in gaps)

    @pytest.mark.asyncio
    async def test_block_seen_after_waking(self):
        fake = ParkedTime()
        guard = ConcurrencyGuard(min_interval=2.0, clock=fake.clock, sleep=fake.sleep)
        calls = []

        async def refuse():
            await asyncio.sleep(0)
            raise ResolverBlocked("forbidden")

        async def record():
            calls.append(1)

        results = await asyncio.gather(guard.call(refuse), guard.call(record), return_exceptions=True)

        assert all(isinstance(r, ResolverBlocked) for r in results)
        assert calls == []
        assert guard.blocked
