# infra/rate_limiter.py
from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional

from utils.logger import logger


class RateLimitType(Enum):
    TRADING = "trading"
    NON_TRADING = "non_trading"
    APP_NON_TRADING = "app_non_trading"

    @property
    def default_max_requests(self) -> int:
        return _DEFAULT_QUOTAS[self][0]

    @property
    def default_period_seconds(self) -> float:
        return _DEFAULT_QUOTAS[self][1]

    @classmethod
    def parse(cls, value: "str | RateLimitType") -> "RateLimitType":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown rate limit type: {value!r}")


# provider quotas: (requests, period seconds)
_DEFAULT_QUOTAS = {
    RateLimitType.TRADING: (100, 60.0),
    RateLimitType.NON_TRADING: (30, 60.0),
    RateLimitType.APP_NON_TRADING: (60, 60.0),
}


@dataclass(frozen=True)
class RateLimiterStats:
    limit_type: RateLimitType
    count_in_window: int
    capacity: int
    remaining: int
    window_seconds: float

    def __str__(self) -> str:
        return (
            f"{self.limit_type.value}: {self.count_in_window}/{self.capacity} "
            f"in {self.window_seconds:g}s window, {self.remaining} remaining"
        )


class RateLimiter:
    """
    Rolling-window limiter shared by every task issuing calls under one quota.

    Effective quota is ``max_requests * safety_margin`` calls per ``period_seconds``.
    The window admits ``capacity = floor(quota)`` calls (never less than one) per
    ``window_seconds = period * capacity / quota``, so a fractional quota such as
    1.5/min is enforced as one call per 40s. When ``burst_size`` is smaller than
    the capacity, admissions are also capped at ``burst_size`` per
    ``window * burst_size / capacity`` seconds so the quota is not spent in a
    single clump.

    A call is recorded only once it is admitted: a task cancelled while
    suspended in :meth:`wait` leaves no trace in the window.
    """

    def __init__(
        self,
        limit_type: RateLimitType,
        max_requests: Optional[int] = None,
        period_seconds: Optional[float] = None,
        safety_margin: float = 0.8,
        *,
        burst_size: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not (0 < safety_margin <= 1):
            raise ValueError(f"safety_margin must be in (0, 1], got {safety_margin}")
        self.limit_type = limit_type
        self.max_requests = int(max_requests or limit_type.default_max_requests)
        self.period_seconds = float(period_seconds or limit_type.default_period_seconds)
        self.safety_margin = float(safety_margin)

        self.capacity = max(1, math.floor(self.max_requests * self.safety_margin))
        self.window_seconds = self.period_seconds * self.capacity / self.effective_quota
        self.burst_size = self.capacity
        if burst_size and 0 < int(burst_size) < self.capacity:
            self.burst_size = int(burst_size)
        self.burst_window = self.window_seconds * self.burst_size / self.capacity

        self._clock = clock or time.monotonic
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def effective_quota(self) -> float:
        return self.max_requests * self.safety_margin

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._calls and self._calls[0] <= horizon:
            self._calls.popleft()

    def _delay_until_admission(self, now: float) -> float:
        """Seconds until one more call fits; 0 when it fits now. Expects a pruned window."""
        delay = 0.0
        if len(self._calls) >= self.capacity:
            oldest = self._calls[len(self._calls) - self.capacity]
            delay = max(delay, oldest + self.window_seconds - now)
        if self.burst_size < self.capacity and len(self._calls) >= self.burst_size:
            oldest_burst = self._calls[len(self._calls) - self.burst_size]
            delay = max(delay, oldest_burst + self.burst_window - now)
        return delay

    async def wait(self) -> None:
        """Suspend the calling task until a call can be issued, then record it."""
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)
                delay = self._delay_until_admission(now)
                if delay <= 0:
                    self._calls.append(now)
                    return
            logger.debug(f"Rate limiter [{self.limit_type.value}] full, waiting {delay:.2f}s")
            await self._sleep(delay)

    def check(self) -> bool:
        """Admit and record a call only if it fits right now; never suspends."""
        if self._lock.locked():
            return False
        now = self._clock()
        self._prune(now)
        if self._delay_until_admission(now) > 0:
            return False
        self._calls.append(now)
        return True

    def stats(self) -> RateLimiterStats:
        now = self._clock()
        horizon = now - self.window_seconds
        count = sum(1 for ts in self._calls if ts > horizon)
        return RateLimiterStats(
            limit_type=self.limit_type,
            count_in_window=count,
            capacity=self.capacity,
            remaining=max(0, self.capacity - count),
            window_seconds=self.window_seconds,
        )

    async def _sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    def __repr__(self) -> str:
        return (
            f"RateLimiter(type={self.limit_type.value}, capacity={self.capacity}, "
            f"window={self.window_seconds:g}s, burst={self.burst_size})"
        )
