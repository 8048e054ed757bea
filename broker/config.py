# broker/config.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from infra.rate_limiter import RateLimiter, RateLimitType
from infra.retry import RetryConfig
from utils.config import load_cfg
from utils.logger import logger

DEFAULT_BASE_URL = "https://demo-api.ig.com/gateway/deal"
SUPPORTED_API_VERSIONS = (2, 3)


@dataclass(frozen=True)
class Credentials:
    api_key: str
    username: str
    password: str
    account_id: str = ""

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, account_id={self.account_id!r})"


@dataclass(frozen=True)
class RateLimitSettings:
    limit_type: RateLimitType = RateLimitType.NON_TRADING
    max_requests: int = 29
    period_seconds: float = 60.0
    burst_size: int = 20
    safety_margin: float = 0.8

    def build(self, limit_type: Optional[RateLimitType] = None) -> RateLimiter:
        """Limiter for ``limit_type``; the configured type gets the configured quota."""
        limit_type = limit_type or self.limit_type
        if limit_type is self.limit_type:
            return RateLimiter(
                limit_type,
                self.max_requests,
                self.period_seconds,
                self.safety_margin,
                burst_size=self.burst_size,
            )
        return RateLimiter(limit_type, safety_margin=self.safety_margin)


@dataclass(frozen=True)
class IGSettings:
    """Client runtime configuration, loaded once at startup."""
    credentials: Credentials
    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = 30.0
    api_version: int = 3

    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    retry: RetryConfig = field(default_factory=RetryConfig)

    token_refresh_margin_s: int = 300        # getSession refreshes this long before expiry
    oauth_expiry_margin_s: int = 60          # subtracted from expires_in for Session.expires_at
    login_max_retries: int = 3
    login_initial_delay_s: float = 10.0
    login_max_jitter_s: float = 5.0

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "IGSettings":
        ig = dict(cfg.get("ig") or {})
        creds = dict(ig.get("credentials") or {})
        rl = dict(ig.get("rate_limit") or {})
        retries = dict(ig.get("retries") or {})
        sess = dict(ig.get("session") or {})

        credentials = Credentials(
            api_key=str(creds.get("api_key") or "").strip(),
            username=str(creds.get("username") or "").strip(),
            password=str(creds.get("password") or "").strip(),
            account_id=str(creds.get("account_id") or "").strip(),
        )
        for name in ("api_key", "username", "password"):
            if not getattr(credentials, name):
                logger.error(f"IG {name} not found in config, environment or .env file")

        try:
            api_version = int(ig.get("api_version") or 3)
        except (TypeError, ValueError):
            api_version = 0
        if api_version not in SUPPORTED_API_VERSIONS:
            logger.warning(f"Invalid API version {ig.get('api_version')!r}, falling back to 3")
            api_version = 3

        try:
            rate_limit = RateLimitSettings(
                limit_type=RateLimitType.parse(rl.get("type") or RateLimitType.NON_TRADING),
                max_requests=int(rl.get("max_requests") or 29),
                period_seconds=float(rl.get("period_seconds") or 60),
                burst_size=int(rl.get("burst_size") or 20),
                safety_margin=float(rl.get("safety_margin") or 0.8),
            )
            retry = RetryConfig(
                max_retries=int(retries.get("max_retries") or 0),
                delay_seconds=float(retries.get("delay_seconds") or 10),
            )
            return cls(
                credentials=credentials,
                base_url=str(ig.get("rest_base_url") or DEFAULT_BASE_URL).rstrip("/"),
                timeout_s=float(ig.get("timeout_s") or 30),
                api_version=api_version,
                rate_limit=rate_limit,
                retry=retry,
                token_refresh_margin_s=int(sess.get("token_refresh_margin_s") or 300),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid cfg value: {e}") from e

    @classmethod
    def from_env(cls, cfg_path: str | None = None) -> "IGSettings":
        return cls.from_cfg(load_cfg(cfg_path))
