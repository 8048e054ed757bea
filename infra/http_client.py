# infra/http_client.py
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp
from multidict import CIMultiDict

from utils.logger import logger as default_logger

JSON_SEPARATORS = (",", ":")
USER_AGENT = "ig-rest-core/0.1.0"

# 403 bodies that mean "quota hit", as opposed to a permission failure
QUOTA_EXCEEDED_MARKERS = (
    "exceeded-api-key-allowance",
    "exceeded-account-allowance",
    "exceeded-account-trading-allowance",
    "exceeded-account-historical-data-allowance",
)
OAUTH_INVALID_MARKER = "oauth-token-invalid"


class HttpError(Exception):
    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.payload = payload or {}


def is_quota_exceeded(body: str) -> bool:
    return any(marker in (body or "") for marker in QUOTA_EXCEEDED_MARKERS)


def is_oauth_invalid(body: str) -> bool:
    return OAUTH_INVALID_MARKER in (body or "")


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=JSON_SEPARATORS, ensure_ascii=False)


def _mask(s: Optional[str]) -> str:
    if not s:
        return ""
    if len(s) <= 8:
        return "*" * len(s)
    return s[:4] + "*" * (len(s) - 8) + s[-4:]


@dataclass
class HttpResponse:
    """Fully-read response; the aiohttp connection is already released."""
    status: int
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name)
        return value.strip() if isinstance(value, str) and value.strip() else None

    def json(self) -> Any:
        """Parse the body; an empty body is ``{}``. Raises ``json.JSONDecodeError``."""
        return json.loads(self.text) if self.text.strip() else {}


class HttpClient:
    """
    Thin aiohttp transport for the broker REST gateway.

    Owns the ``ClientSession`` unless one is injected. It neither retries nor
    classifies: every response comes back as an :class:`HttpResponse`, and only
    transport failures raise (``HttpError`` with status 599).
    """

    def __init__(self,
                 base_url: str,
                 *,
                 timeout_s: float = 30.0,
                 user_agent: str = USER_AGENT,
                 logger=None,
                 session: Optional[aiohttp.ClientSession] = None,
                 ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.user_agent = user_agent
        self.log = logger or default_logger
        self.session = session
        self._owned_session = session is None

        self.log.debug(f"HttpClient init base_url={self.base_url} timeout={self.timeout_s}s")

    # ---- async context manager ----------------------------------------------------
    async def __aenter__(self) -> "HttpClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            self.session = aiohttp.ClientSession(timeout=timeout, raise_for_status=False, trust_env=True)
            self._owned_session = True
        return self.session

    async def close(self) -> None:
        if self._owned_session and self.session is not None and not self.session.closed:
            await self.session.close()

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(
            self,
            method: str,
            path: str,
            *,
            headers: Optional[Mapping[str, str]] = None,
            json_body: Optional[Any] = None,
            timeout_s: Optional[float] = None,
        ) -> HttpResponse:
        """
        Issue one physical request and read the whole body.
        - path: relative to ``base_url`` (absolute URLs pass through)
        - json_body: serialized compactly and sent with the caller's headers
        """
        method = method.upper()
        url = self.url(path)
        body_str = _json_dumps_compact(json_body) if json_body is not None else None
        req_headers = {"User-Agent": self.user_agent, "Accept": "application/json; charset=UTF-8"}
        if headers:
            req_headers.update(headers)

        extra: Dict[str, Any] = {}
        if timeout_s:
            extra["timeout"] = aiohttp.ClientTimeout(total=timeout_s)
        session = self._ensure_session()

        self.log.debug(f"{method} {url}")
        try:
            async with session.request(
                method,
                url,
                data=body_str,
                headers=req_headers,
                **extra,
            ) as resp:
                text = await resp.text()
                self.log.debug(f"{method} {url} -> {resp.status}")
                return HttpResponse(status=resp.status, headers=CIMultiDict(resp.headers), text=text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log.warning(f"Network error: {e!r} when requesting {url}")
            raise HttpError(599, f"Network error: {e!r}") from e
