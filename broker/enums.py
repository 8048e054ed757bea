# broker/enums.py
from enum import Enum

from infra.rate_limiter import RateLimitType


class AuthScheme(Enum):
    TOKEN = "token"     # CST / X-SECURITY-TOKEN headers (API v2)
    OAUTH = "oauth"     # bearer access/refresh tokens (API v3)


__all__ = ["AuthScheme", "RateLimitType"]
