# broker/models.py
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_EXPIRES_IN_S = 600


# ---- auth payloads ----------------------------------------------------------------

class OAuthToken(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    scope: str = ""
    token_type: str = "Bearer"
    expires_in: int = DEFAULT_EXPIRES_IN_S   # provider sends a string, e.g. "60"

    @field_validator("expires_in", mode="before")
    @classmethod
    def _parse_expires_in(cls, v: Any) -> int:
        try:
            return int(str(v).strip())
        except (TypeError, ValueError):
            return DEFAULT_EXPIRES_IN_S

    @field_validator("access_token", "refresh_token")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("token must not be empty")
        return v


class OAuthLoginResponse(BaseModel):
    """Body of ``POST /session`` with Version 3."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_id: str = Field(default="", alias="clientId")
    account_id: str = Field(alias="accountId")
    timezone_offset: Optional[int] = Field(default=None, alias="timezoneOffset")
    lightstreamer_endpoint: str = Field(default="", alias="lightstreamerEndpoint")
    oauth_token: OAuthToken = Field(alias="oauthToken")


class TokenLoginResponse(BaseModel):
    """Body of ``POST /session`` with Version 2; the tokens themselves travel in headers."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    account_id: str = Field(default="", validation_alias=AliasChoices("currentAccountId", "accountId"))
    client_id: str = Field(default="", alias="clientId")
    lightstreamer_endpoint: str = Field(default="", alias="lightstreamerEndpoint")
    currency_iso_code: Optional[str] = Field(default=None, alias="currencyIsoCode")


class SwitchAccountResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    trailing_stops_enabled: Optional[bool] = Field(default=None, alias="trailingStopsEnabled")
    dealing_enabled: Optional[bool] = Field(default=None, alias="dealingEnabled")
    has_active_demo_accounts: Optional[bool] = Field(default=None, alias="hasActiveDemoAccounts")
    has_active_live_accounts: Optional[bool] = Field(default=None, alias="hasActiveLiveAccounts")


# ---- market navigation ----------------------------------------------------------

class MarketData(BaseModel):
    model_config = ConfigDict(extra="allow")

    epic: str
    instrumentName: str = ""
    instrumentType: str = ""
    expiry: str = ""
    marketStatus: str = ""
    bid: Optional[float] = None
    offer: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    netChange: Optional[float] = None
    percentageChange: Optional[float] = None
    updateTime: Optional[str] = None
    streamingPricesAvailable: Optional[bool] = None


class MarketNavigationNode(BaseModel):
    id: str
    name: str = ""


class MarketNavigationResponse(BaseModel):
    """Body of ``GET /marketnavigation[/{id}]``. The provider sends ``null`` for empty levels."""
    model_config = ConfigDict(extra="ignore")

    nodes: List[MarketNavigationNode] = []
    markets: List[MarketData] = []

    @field_validator("nodes", "markets", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class MarketNode(BaseModel):
    """
    One level of a traversed hierarchy.

    ``degraded`` marks a subtree whose fetch failed; it is kept (labeled, empty)
    so its siblings and the rest of the tree stay usable.
    """
    id: str
    name: str = ""
    children: List["MarketNode"] = []
    markets: List[MarketData] = []
    degraded: bool = False
    error: Optional[str] = None

    @classmethod
    def for_market(cls, market: MarketData) -> "MarketNode":
        return cls(id=market.epic, name=market.instrumentName, markets=[market])


MarketNode.model_rebuild()
