# broker/services/endpoints.py
from dataclasses import dataclass
from typing import Any, Mapping

from broker.config import DEFAULT_BASE_URL


@dataclass
class Endpoints:
    # gateway base, e.g. https://demo-api.ig.com/gateway/deal
    rest_base: str = DEFAULT_BASE_URL

    # REST paths, relative to rest_base
    session: str = "session"
    session_refresh: str = "session/refresh-token"
    market_navigation: str = "marketnavigation"

    def market_navigation_node(self, node_id: str) -> str:
        return f"{self.market_navigation}/{node_id}"


def make_endpoints_from_cfg(cfg: Mapping[str, Any]) -> Endpoints:
    ig = cfg.get("ig") or {}
    rest_base = str(ig.get("rest_base_url") or DEFAULT_BASE_URL).rstrip("/")
    return Endpoints(rest_base=rest_base)
