# broker/session.py
from __future__ import annotations

import datetime as dt
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Union

from broker.enums import AuthScheme
from infra.rate_limiter import RateLimiter, RateLimitType

SESSION_LIFETIME = dt.timedelta(hours=6)
SESSION_MAX_AGE = dt.timedelta(hours=72)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class TokenTimer:
    """
    Soft expiry plus a hard max-age ceiling for one session.

    ``refresh()`` only moves ``expiry`` and never clamps it to ``max_age``;
    ``is_expired()`` checks both bounds, so it is the only authoritative check.
    """

    def __init__(self, now: Optional[dt.datetime] = None) -> None:
        now = now or _utcnow()
        self.expiry = now + SESSION_LIFETIME
        self.last_refreshed = now
        self.max_age = now + SESSION_MAX_AGE

    def is_expired(self) -> bool:
        now = _utcnow()
        return now >= self.expiry or now >= self.max_age

    def is_expired_with_margin(self, margin_seconds: float) -> bool:
        margin = dt.timedelta(seconds=margin_seconds)
        now = _utcnow()
        return now >= self.expiry - margin or now >= self.max_age - margin

    def refresh(self) -> None:
        now = _utcnow()
        self.expiry = now + SESSION_LIFETIME
        self.last_refreshed = now

    def __repr__(self) -> str:
        return (
            f"TokenTimer(expiry={self.expiry.isoformat()}, "
            f"last_refreshed={self.last_refreshed.isoformat()}, max_age={self.max_age.isoformat()})"
        )


@dataclass(frozen=True, kw_only=True)
class _BaseSession(ABC):
    account_id: str
    client_id: str = ""
    lightstreamer_endpoint: str = ""
    api_version: int = 2
    issued_at: dt.datetime = field(default_factory=lambda: _utcnow())
    timer: TokenTimer = field(default_factory=TokenTimer, compare=False)
    rate_limiters: Mapping[RateLimitType, RateLimiter] = field(default_factory=dict, compare=False, repr=False)

    scheme = AuthScheme.TOKEN

    def is_oauth(self) -> bool:
        return self.scheme is AuthScheme.OAUTH

    def is_token_auth(self) -> bool:
        return self.scheme is AuthScheme.TOKEN

    @abstractmethod
    def auth_headers(self) -> Dict[str, str]:
        ...

    @property
    @abstractmethod
    def expires_at(self) -> dt.datetime:
        ...

    def seconds_until_expiry(self) -> float:
        return (self.expires_at - _utcnow()).total_seconds()

    @abstractmethod
    def needs_refresh(self, margin_seconds: float = 300) -> bool:
        ...

    @abstractmethod
    def is_expired(self) -> bool:
        ...

    def limiter(self, limit_type: RateLimitType = RateLimitType.NON_TRADING) -> Optional[RateLimiter]:
        return self.rate_limiters.get(limit_type)


@dataclass(frozen=True, kw_only=True)
class TokenAuthSession(_BaseSession):
    """CST / X-SECURITY-TOKEN session (API v2). Tokens are replaced on account switch."""
    cst: str
    x_security_token: str

    scheme = AuthScheme.TOKEN

    def auth_headers(self) -> Dict[str, str]:
        return {"CST": self.cst, "X-SECURITY-TOKEN": self.x_security_token}

    @property
    def expires_at(self) -> dt.datetime:
        return min(self.timer.expiry, self.timer.max_age)

    def needs_refresh(self, margin_seconds: float = 300) -> bool:
        return self.timer.is_expired_with_margin(margin_seconds)

    def is_expired(self) -> bool:
        return self.timer.is_expired()

    def with_tokens(self, *, account_id: str, cst: str, x_security_token: str) -> "TokenAuthSession":
        return replace(
            self,
            account_id=account_id,
            cst=cst,
            x_security_token=x_security_token,
            issued_at=_utcnow(),
            timer=TokenTimer(),
        )

    def __repr__(self) -> str:
        return (
            f"TokenAuthSession(account_id={self.account_id!r}, api_version={self.api_version}, "
            f"cst=<{len(self.cst)} chars>, x_security_token=<{len(self.x_security_token)} chars>)"
        )


@dataclass(frozen=True, kw_only=True)
class OAuthSession(_BaseSession):
    """Bearer session (API v3); pinned to the account it was issued for."""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    scope: str = ""
    expires_in: int = 600
    expiry_margin_s: int = 60
    api_version: int = 3

    scheme = AuthScheme.OAUTH

    def auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "IG-ACCOUNT-ID": self.account_id,
        }

    @property
    def token_expires_at(self) -> dt.datetime:
        return self.issued_at + dt.timedelta(seconds=self.expires_in)

    @property
    def expires_at(self) -> dt.datetime:
        return self.token_expires_at - dt.timedelta(seconds=self.expiry_margin_s)

    def needs_refresh(self, margin_seconds: float = 300) -> bool:
        now = _utcnow()
        if now >= self.token_expires_at - dt.timedelta(seconds=margin_seconds):
            return True
        return self.timer.is_expired_with_margin(margin_seconds)

    def is_expired(self) -> bool:
        return _utcnow() >= self.token_expires_at or self.timer.is_expired()

    def __repr__(self) -> str:
        return (
            f"OAuthSession(account_id={self.account_id!r}, expires_in={self.expires_in}, "
            f"access_token=<{len(self.access_token)} chars>)"
        )


Session = Union[TokenAuthSession, OAuthSession]
