# broker/app/ig_client.py
from __future__ import annotations

from typing import Any, List, Optional, Type

from broker.config import IGSettings
from broker.errors import OAuthTokenExpired
from broker.models import MarketNode
from broker.services.auth_service import AuthManager
from broker.services.endpoints import Endpoints, make_endpoints_from_cfg
from broker.services.market_service import MarketService
from broker.services.request_pipeline import RequestPipeline
from broker.session import Session
from infra import HttpPort
from infra.http_client import HttpClient
from infra.rate_limiter import RateLimitType
from utils.config import load_cfg
from utils.logger import logger as default_logger


class IGClient:
    """
    Application-facing client.
    Wires transport, auth and the request pipeline, and replays a call once
    after refreshing when the gateway reports an invalid OAuth token.
    """

    def __init__(self,
                 settings: IGSettings,
                 *,
                 http: Optional[HttpPort] = None,
                 endpoints: Optional[Endpoints] = None,
                 auth: Optional[AuthManager] = None,
                 logger=None,
                 ) -> None:
        self.settings = settings
        self.log = logger or default_logger
        self.endpoints = endpoints or Endpoints(rest_base=settings.base_url)
        self.http = http or HttpClient(self.endpoints.rest_base, timeout_s=settings.timeout_s, logger=self.log)
        self.auth = auth or AuthManager(self.http, settings, self.endpoints, logger=self.log)
        self.pipeline = RequestPipeline(self.http, self.auth, logger=self.log)
        self.markets = MarketService(self.pipeline, self.auth, self.endpoints, logger=self.log)

    @classmethod
    def from_env(cls, cfg_path: str | None = None, env_path: str | None = None, **kwargs) -> "IGClient":
        cfg = load_cfg(cfg_path, env_path)
        kwargs.setdefault("endpoints", make_endpoints_from_cfg(cfg))
        return cls(IGSettings.from_cfg(cfg), **kwargs)

    # ---- lifecycle ----------------------------------------------------------------
    async def __aenter__(self) -> "IGClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> Session:
        """Log in eagerly instead of on the first request."""
        return await self.auth.login()

    async def close(self) -> None:
        await self.http.close()

    # ---- session ------------------------------------------------------------------
    async def get_session(self) -> Session:
        return await self.auth.get_session()

    async def login(self) -> Session:
        return await self.auth.login()

    async def refresh_token(self) -> Session:
        return await self.auth.refresh_token()

    async def switch_account(self, account_id: str, default_account: Optional[bool] = None) -> Session:
        return await self.auth.switch_account(account_id, default_account)

    async def logout(self) -> None:
        await self.auth.logout()

    # ---- requests -----------------------------------------------------------------
    async def request(self,
                      method: str,
                      path: str,
                      body: Optional[Any] = None,
                      version: Optional[int | str] = None,
                      *,
                      model: Optional[Type] = None,
                      limit_type: Optional[RateLimitType] = None,
                      ) -> Any:
        try:
            return await self.pipeline.request(method, path, body, version, model=model, limit_type=limit_type)
        except OAuthTokenExpired:
            self.log.warning(f"{method.upper()} {path}: OAuth token expired, refreshing and retrying once")
            await self.auth.refresh_token()
        # a second expiry propagates
        return await self.pipeline.request(method, path, body, version, model=model, limit_type=limit_type)

    async def get(self, path: str, version: Optional[int | str] = None, **kwargs) -> Any:
        return await self.request("GET", path, None, version, **kwargs)

    async def post(self, path: str, body: Optional[Any] = None, version: Optional[int | str] = None, **kwargs) -> Any:
        return await self.request("POST", path, body, version, **kwargs)

    async def put(self, path: str, body: Optional[Any] = None, version: Optional[int | str] = None, **kwargs) -> Any:
        return await self.request("PUT", path, body, version, **kwargs)

    async def delete(self, path: str, body: Optional[Any] = None, version: Optional[int | str] = None, **kwargs) -> Any:
        return await self.request("DELETE", path, body, version, **kwargs)

    # ---- markets ------------------------------------------------------------------
    async def build_hierarchy(self, node_id: Optional[str] = None) -> List[MarketNode]:
        return await self.markets.build_hierarchy(node_id)
