# tests/test_rate_limiter.py
import asyncio

import pytest

from infra.rate_limiter import RateLimiter, RateLimitType


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def test_effective_quota_and_capacity():
    lim = RateLimiter(RateLimitType.NON_TRADING, 3, 60, 0.5, clock=FakeClock())
    assert lim.effective_quota == 1.5
    # 1.5 calls per minute: one admission per 40s window
    assert lim.capacity == 1
    assert lim.window_seconds == 40.0


def test_provider_defaults_per_type():
    assert RateLimiter(RateLimitType.TRADING, safety_margin=1.0).capacity == 100
    assert RateLimiter(RateLimitType.NON_TRADING, safety_margin=1.0).capacity == 30
    assert RateLimiter(RateLimitType.APP_NON_TRADING).capacity == 48
    assert RateLimitType.parse("non-trading") is RateLimitType.NON_TRADING
    with pytest.raises(ValueError):
        RateLimitType.parse("bogus")


@pytest.mark.parametrize("margin", [0, -0.1, 1.5])
def test_invalid_safety_margin(margin):
    with pytest.raises(ValueError):
        RateLimiter(RateLimitType.NON_TRADING, 10, 60, margin)


@pytest.mark.asyncio
async def test_wait_sleeps_until_window_frees(monkeypatch):
    clock = FakeClock()
    lim = RateLimiter(RateLimitType.NON_TRADING, 3, 60, 0.5, clock=clock)
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)
        clock.advance(delay)

    monkeypatch.setattr(lim, "_sleep", fake_sleep)

    await lim.wait()
    await lim.wait()
    await lim.wait()
    assert slept == [40.0, 40.0]
    assert lim.stats().count_in_window == 1


@pytest.mark.asyncio
async def test_second_call_suspends_and_cancel_leaves_window_untouched():
    lim = RateLimiter(RateLimitType.NON_TRADING, 3, 60, 0.5, clock=FakeClock())
    await lim.wait()

    task = asyncio.create_task(lim.wait())
    for _ in range(5):
        await asyncio.sleep(0)
    assert not task.done()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    st = lim.stats()
    assert st.count_in_window == 1
    assert st.remaining == 0
    assert not lim._lock.locked()


def test_check_is_non_blocking():
    clock = FakeClock()
    lim = RateLimiter(RateLimitType.NON_TRADING, 2, 10, 1.0, clock=clock)
    assert lim.check() is True
    assert lim.check() is True
    assert lim.check() is False
    assert lim.stats().count_in_window == 2

    clock.advance(10)
    assert lim.check() is True


def test_burst_caps_back_to_back_calls():
    clock = FakeClock()
    lim = RateLimiter(RateLimitType.TRADING, 10, 60, 1.0, burst_size=2, clock=clock)
    assert lim.burst_window == 12.0

    assert lim.check() and lim.check()
    assert lim.check() is False
    clock.advance(12)
    assert lim.check() is True


def test_burst_not_smaller_than_capacity_is_ignored():
    lim = RateLimiter(RateLimitType.NON_TRADING, 29, 60, 0.8, burst_size=50)
    assert lim.capacity == 23
    assert lim.burst_size == 23


def test_stats_has_no_side_effects():
    clock = FakeClock()
    lim = RateLimiter(RateLimitType.NON_TRADING, 5, 60, 1.0, clock=clock)
    lim.check()
    first = lim.stats()
    second = lim.stats()
    assert first == second
    assert first.count_in_window == 1
    assert first.remaining == 4
    assert "non_trading" in str(first)

    clock.advance(61)
    assert lim.stats().count_in_window == 0


def test_fractional_quota_is_enforced_over_the_full_period():
    clock = FakeClock()
    lim = RateLimiter(RateLimitType.NON_TRADING, 3, 60, 0.5, clock=clock)
    admitted = 0
    for _ in range(240):
        if lim.check():
            admitted += 1
        clock.advance(1)
    # 1.5/min over four minutes
    assert admitted == 6

    assert lim.check() is True
    clock.advance(39)
    assert lim.check() is False
    clock.advance(1)
    assert lim.check() is True
