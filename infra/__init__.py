# infra/__init__.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from infra.http_client import HttpClient, HttpError, HttpResponse
from infra.rate_limiter import RateLimiter, RateLimiterStats, RateLimitType
from infra.retry import RetryConfig


# Services depend on this port rather than on the concrete HttpClient.
class HttpPort(Protocol):
    async def send(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        json_body: Optional[Any] = None,
        timeout_s: Optional[float] = None,
    ) -> HttpResponse: ...

    async def close(self) -> None: ...


__all__ = [
    "HttpClient",
    "HttpError",
    "HttpPort",
    "HttpResponse",
    "RateLimiter",
    "RateLimiterStats",
    "RateLimitType",
    "RetryConfig",
]
