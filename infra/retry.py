# infra/retry.py
from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_RETRY_DELAY_S = 10.0


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for quota-exceeded (403) responses. ``max_retries=0`` means unbounded."""
    max_retries: int = 0
    delay_seconds: float = DEFAULT_RETRY_DELAY_S

    @classmethod
    def infinite(cls) -> "RetryConfig":
        return cls()

    @classmethod
    def with_max_retries(cls, max_retries: int) -> "RetryConfig":
        return cls(max_retries=max_retries)

    @classmethod
    def with_delay(cls, delay_seconds: float) -> "RetryConfig":
        return cls(delay_seconds=delay_seconds)

    @classmethod
    def with_max_retries_and_delay(cls, max_retries: int, delay_seconds: float) -> "RetryConfig":
        return cls(max_retries=max_retries, delay_seconds=delay_seconds)

    @classmethod
    def from_env(cls) -> "RetryConfig":
        max_retries = os.getenv("MAX_RETRY_COUNT")
        delay = os.getenv("RETRY_DELAY_SECS")
        return cls(
            max_retries=int(max_retries) if max_retries else 0,
            delay_seconds=float(delay) if delay else DEFAULT_RETRY_DELAY_S,
        )

    @property
    def is_unbounded(self) -> bool:
        return self.max_retries == 0

    def exhausted(self, retry_count: int) -> bool:
        return not self.is_unbounded and retry_count > self.max_retries
