# tests/conftest.py
import os
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("IG_LOG_FILE", "0")

import asyncio
import json
from dataclasses import replace

import pytest
from multidict import CIMultiDict

from broker.config import Credentials, IGSettings, RateLimitSettings
from infra.http_client import HttpResponse
from infra.retry import RetryConfig

BASE = "https://demo-api.ig.com/gateway/deal"
QUOTA_BODY = '{"errorCode":"error.public-api.exceeded-account-allowance"}'
OAUTH_INVALID_BODY = '{"errorCode":"error.security.oauth-token-invalid"}'


def make_resp(status=200, body=None, headers=None) -> HttpResponse:
    if body is None:
        text = ""
    elif isinstance(body, str):
        text = body
    else:
        text = json.dumps(body)
    return HttpResponse(status=status, headers=CIMultiDict(headers or {}), text=text)


def token_login_resp(cst="cst-1", token="xst-1", account_id="ACC1"):
    return make_resp(
        200,
        {"currentAccountId": account_id, "clientId": "CLIENT1", "lightstreamerEndpoint": "https://ls.example"},
        {"CST": cst, "X-SECURITY-TOKEN": token} if token else {"CST": cst},
    )


def oauth_login_resp(access="access-1", refresh="refresh-1", expires_in="3600", account_id="ACC1"):
    return make_resp(200, {
        "clientId": "CLIENT1",
        "accountId": account_id,
        "timezoneOffset": 1,
        "lightstreamerEndpoint": "https://ls.example",
        "oauthToken": {
            "access_token": access,
            "refresh_token": refresh,
            "scope": "profile",
            "token_type": "Bearer",
            "expires_in": expires_in,
        },
    })


class FakeHttp:
    """Scripted transport: each send consumes the next queued response (or raises a queued exception)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def queue(self, *responses):
        self.responses.extend(responses)

    async def send(self, method, path, *, headers=None, json_body=None, timeout_s=None):
        self.calls.append({"method": method, "path": path, "headers": dict(headers or {}), "body": json_body})
        await asyncio.sleep(0)
        if not self.responses:
            raise AssertionError(f"unexpected call: {method} {path}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


@pytest.fixture
def settings() -> IGSettings:
    return IGSettings(
        credentials=Credentials(api_key="test-api-key-123456", username="user", password="secret", account_id="ACC1"),
        base_url=BASE,
        api_version=2,
        rate_limit=RateLimitSettings(max_requests=1000, period_seconds=60, burst_size=1000, safety_margin=1.0),
        retry=RetryConfig.with_max_retries_and_delay(2, 0.0),
    )


@pytest.fixture
def oauth_settings(settings) -> IGSettings:
    return replace(settings, api_version=3)


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()
