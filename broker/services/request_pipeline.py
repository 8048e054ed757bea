# broker/services/request_pipeline.py
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from broker.errors import OAuthTokenExpired, RateLimitExceeded, Unauthorized, Unexpected
from broker.services.auth_service import AuthManager, api_headers
from infra import HttpPort
from infra.http_client import HttpError, is_oauth_invalid, is_quota_exceeded
from infra.rate_limiter import RateLimitType
from infra.retry import RetryConfig
from utils.logger import logger as default_logger

T = TypeVar("T", bound=BaseModel)


class RequestPipeline:
    """
    One authenticated gateway call: session -> limiter -> headers -> send -> classify.

    Quota-exceeded 403s are retried here according to ``retry``. An expired OAuth
    token is only reported (``OAuthTokenExpired``); refreshing and replaying the
    call is the caller's job.
    """

    def __init__(self,
                 http: HttpPort,
                 auth: AuthManager,
                 *,
                 retry: Optional[RetryConfig] = None,
                 limit_type: Optional[RateLimitType] = None,
                 logger=None,
                 ) -> None:
        self._http = http
        self._auth = auth
        self._retry = retry or auth.settings.retry
        self._limit_type = limit_type or auth.settings.rate_limit.limit_type
        self.log = logger or default_logger

    @property
    def retry(self) -> RetryConfig:
        return self._retry

    async def request(self,
                      method: str,
                      path: str,
                      body: Optional[Any] = None,
                      version: Optional[int | str] = None,
                      *,
                      model: Optional[Type[T]] = None,
                      limit_type: Optional[RateLimitType] = None,
                      ) -> Any:
        method = method.upper()
        sess = await self._auth.get_session()
        limiter = sess.limiter(limit_type or self._limit_type) or self._auth.app_limiter
        api_key = self._auth.settings.credentials.api_key

        retry_count = 0
        while True:
            await limiter.wait()

            headers = api_headers(api_key, version if version is not None else sess.api_version)
            headers.update(sess.auth_headers())
            try:
                resp = await self._http.send(method, path, headers=headers, json_body=body)
            except HttpError as e:
                raise Unexpected(e.status, str(e)) from e

            if resp.ok:
                sess.timer.refresh()
                return self._decode(resp, model)

            text = resp.text or ""
            if resp.status == 401:
                if is_oauth_invalid(text):
                    self.log.warning(f"{method} {path}: OAuth token invalid")
                    raise OAuthTokenExpired(f"{method} {path}: oauth token invalid")
                self.log.error(f"{method} {path}: unauthorized: {text[:200]}")
                raise Unauthorized(f"{method} {path}: {text[:200]}")

            if resp.status == 403 and is_quota_exceeded(text):
                retry_count += 1
                if self._retry.exhausted(retry_count):
                    self.log.error(f"{method} {path}: rate limit still exceeded after {self._retry.max_retries} retries")
                    raise RateLimitExceeded(f"{method} {path}: rate limit exceeded after {self._retry.max_retries} retries")
                self.log.warning(
                    f"{method} {path}: rate limit exceeded, retry {retry_count} in {self._retry.delay_seconds:g}s"
                )
                await self._sleep_retry(self._retry.delay_seconds)
                continue

            self.log.error(f"{method} {path} failed with status {resp.status}: {text[:200]}")
            raise Unexpected(resp.status, text[:200])

    def _decode(self, resp, model: Optional[Type[T]]) -> Any:
        try:
            payload = resp.json()
        except json.JSONDecodeError as e:
            raise Unexpected(resp.status, f"invalid json: {e}") from e
        if model is None:
            return payload
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise Unexpected(resp.status, f"unexpected response shape: {e}") from e

    async def _sleep_retry(self, delay: float) -> None:
        await asyncio.sleep(delay)

