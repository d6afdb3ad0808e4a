"""Token bucket and rolling window limiter tests."""

import asyncio

import pytest

from clipforge.services.provider.rate_limiter import RollingWindowLimiter, TokenBucket


class FakeTime:
    """Clock plus sleep that advances the clock instead of blocking."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_bucket_allows_burst_then_waits():
    t = FakeTime()
    bucket = TokenBucket(capacity=3, refill_rate=2.0, clock=t.clock, sleep=t.sleep)

    waits = [await bucket.acquire() for _ in range(3)]
    assert waits == [0.0, 0.0, 0.0]
    assert t.sleeps == []

    # Empty bucket: next token arrives after 1 / refill_rate seconds
    waited = await bucket.acquire()
    assert waited == pytest.approx(0.5)
    assert t.sleeps == [pytest.approx(0.5)]


@pytest.mark.asyncio
async def test_bucket_refills_over_time_up_to_capacity():
    t = FakeTime()
    bucket = TokenBucket(capacity=2, refill_rate=1.0, clock=t.clock, sleep=t.sleep)
    await bucket.acquire()
    await bucket.acquire()

    t.now += 100
    await bucket.acquire()

    # Refill is capped at capacity, one token was just taken
    assert bucket.tokens == pytest.approx(1.0)
    assert t.sleeps == []


@pytest.mark.asyncio
async def test_waiting_callers_sleep_concurrently():
    t = FakeTime()
    released = asyncio.Event()
    parked: list[float] = []

    async def parked_sleep(seconds: float) -> None:
        parked.append(seconds)
        await released.wait()

    bucket = TokenBucket(capacity=1, refill_rate=1.0, clock=t.clock, sleep=parked_sleep)
    await bucket.acquire()

    first = asyncio.create_task(bucket.acquire())
    second = asyncio.create_task(bucket.acquire())
    await asyncio.sleep(0)

    # Both are suspended at once, each behind the tokens reserved before it
    assert parked == [pytest.approx(1.0), pytest.approx(2.0)]

    released.set()
    assert await asyncio.gather(first, second) == [pytest.approx(1.0), pytest.approx(2.0)]


def test_bucket_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        TokenBucket(capacity=0)
    with pytest.raises(ValueError):
        TokenBucket(refill_rate=0)


def test_rolling_window_caps_events():
    t = FakeTime()
    limiter = RollingWindowLimiter(max_events=2, window=60, clock=t.clock)

    assert limiter.try_acquire()
    t.now = 10
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    assert limiter.time_until_available() == pytest.approx(50)

    t.now = 60
    assert limiter.try_acquire()
    assert not limiter.try_acquire()


def test_record_counts_without_checking():
    t = FakeTime()
    limiter = RollingWindowLimiter(max_events=1, window=5, clock=t.clock)

    limiter.record()
    assert limiter.time_until_available() == pytest.approx(5)
