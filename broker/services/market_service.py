# broker/services/market_service.py
from __future__ import annotations

from typing import Awaitable, Callable, Iterable, List, Optional

from broker.errors import OAuthTokenExpired, RateLimitExceeded, Unexpected
from broker.models import MarketData, MarketNavigationResponse, MarketNode
from broker.services.endpoints import Endpoints
from utils.logger import logger as default_logger

MAX_DEPTH = 7
NAVIGATION_VERSION = 1

NavigationFetch = Callable[[Optional[str]], Awaitable[MarketNavigationResponse]]


class HierarchyBuilder:
    """
    Depth-bounded walk of the market navigation tree.

    A child whose fetch fails with ``RateLimitExceeded`` or ``Unexpected`` is kept
    as a labeled, empty node with ``degraded=True`` and its siblings are still
    walked. Any other error (``OAuthTokenExpired`` included) aborts the walk.
    """

    def __init__(self, fetch: NavigationFetch, *, max_depth: int = MAX_DEPTH, logger=None) -> None:
        self._fetch = fetch
        self.max_depth = max_depth
        self.log = logger or default_logger

    async def build(self, node_id: Optional[str] = None, depth: int = 0) -> List[MarketNode]:
        if depth > self.max_depth:
            return []

        nav = await self._fetch(node_id)
        nodes: List[MarketNode] = []
        for child in nav.nodes:
            try:
                children = await self.build(child.id, depth + 1)
            except (RateLimitExceeded, Unexpected) as e:
                self.log.warning(f"Skipping node {child.id} ({child.name}) at depth {depth + 1}: {e}")
                nodes.append(MarketNode(id=child.id, name=child.name, degraded=True, error=str(e)))
                continue
            nodes.append(MarketNode(id=child.id, name=child.name, children=children))

        nodes.extend(MarketNode.for_market(m) for m in nav.markets)
        self.log.debug(f"Node {node_id or 'root'} depth={depth}: {len(nav.nodes)} nodes, {len(nav.markets)} markets")
        return nodes


class MarketService:
    """Market navigation calls and hierarchy assembly on top of the request pipeline."""

    def __init__(self, pipeline, auth, endpoints: Optional[Endpoints] = None, *, logger=None) -> None:
        self._pipeline = pipeline
        self._auth = auth
        self._ep = endpoints or Endpoints()
        self.log = logger or default_logger

    async def get_market_navigation(self) -> MarketNavigationResponse:
        return await self._pipeline.request(
            "GET", self._ep.market_navigation, version=NAVIGATION_VERSION, model=MarketNavigationResponse
        )

    async def get_market_navigation_node(self, node_id: str) -> MarketNavigationResponse:
        return await self._pipeline.request(
            "GET", self._ep.market_navigation_node(node_id), version=NAVIGATION_VERSION, model=MarketNavigationResponse
        )

    async def _fetch_level(self, node_id: Optional[str]) -> MarketNavigationResponse:
        if node_id is None:
            return await self.get_market_navigation()
        return await self.get_market_navigation_node(node_id)

    async def build_hierarchy(self, node_id: Optional[str] = None, *, max_depth: int = MAX_DEPTH) -> List[MarketNode]:
        """
        Walk the tree from ``node_id`` (root when None).

        On ``OAuthTokenExpired`` the session is refreshed and the whole walk restarts
        from the top once, so a tree never mixes results from two sessions. A second
        expiry propagates.
        """
        builder = HierarchyBuilder(self._fetch_level, max_depth=max_depth, logger=self.log)
        try:
            nodes = await builder.build(node_id, 0)
        except OAuthTokenExpired:
            self.log.warning("OAuth token expired during hierarchy walk, refreshing and restarting")
            await self._auth.refresh_token()
            nodes = await builder.build(node_id, 0)
        self.log.info(f"Hierarchy built: {len(nodes)} top-level nodes, {len(extract_markets(nodes))} markets")
        return nodes

    @staticmethod
    def extract_markets(nodes: Iterable[MarketNode]) -> List[MarketData]:
        return extract_markets(nodes)


def extract_markets(nodes: Iterable[MarketNode]) -> List[MarketData]:
    """Flatten a hierarchy into its markets, depth first."""
    out: List[MarketData] = []
    for node in nodes:
        out.extend(node.markets)
        out.extend(extract_markets(node.children))
    return out
