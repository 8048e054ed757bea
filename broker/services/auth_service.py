# broker/services/auth_service.py
from __future__ import annotations

import asyncio
import json
import random
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from broker.config import IGSettings
from broker.errors import AuthError, BadCredentials, InvalidInput, RateLimitExceeded, Unexpected
from broker.models import OAuthLoginResponse, OAuthToken, SwitchAccountResponse, TokenLoginResponse
from broker.services.endpoints import Endpoints
from broker.session import OAuthSession, Session, TokenAuthSession, TokenTimer, _utcnow
from infra import HttpPort
from infra.http_client import HttpError, HttpResponse, _mask, is_quota_exceeded
from infra.rate_limiter import RateLimiter, RateLimitType
from utils.logger import logger as default_logger

RELOGIN_MARGIN_S = 30 * 60
JSON_CONTENT_TYPE = "application/json; charset=UTF-8"


def api_headers(api_key: str, version: int | str) -> Dict[str, str]:
    """Headers every gateway call carries, including the unauthenticated login."""
    return {
        "X-IG-API-KEY": api_key,
        "Content-Type": JSON_CONTENT_TYPE,
        "Version": str(version),
    }


class AuthManager:
    """
    Owns the authoritative session.

    Readers take ``_session`` without locking; login, refresh and switch run
    under ``_lock`` and replace the whole session object, so a reader sees
    either the old or the new session, never a mix. Rate limiters are built
    once here and handed to every session, so they survive re-logins.
    """

    def __init__(self,
                 http: HttpPort,
                 settings: IGSettings,
                 endpoints: Optional[Endpoints] = None,
                 *,
                 limiters: Optional[Mapping[RateLimitType, RateLimiter]] = None,
                 rng: Optional[random.Random] = None,
                 logger=None,
                 ) -> None:
        self._http = http
        self._s = settings
        self._ep = endpoints or Endpoints(rest_base=settings.base_url)
        self.log = logger or default_logger
        self._rng = rng or random.Random()

        if limiters is None:
            limiters = {t: settings.rate_limit.build(t) for t in RateLimitType}
        self._limiters: Dict[RateLimitType, RateLimiter] = dict(limiters)

        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()

    # ---- read side ----------------------------------------------------------------
    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def settings(self) -> IGSettings:
        return self._s

    @property
    def limiters(self) -> Mapping[RateLimitType, RateLimiter]:
        return self._limiters

    @property
    def app_limiter(self) -> RateLimiter:
        return self._limiters[RateLimitType.APP_NON_TRADING]

    async def get_session(self) -> Session:
        """Cached session, refreshed or re-created first when it is close to expiry."""
        margin = self._s.token_refresh_margin_s
        sess = self._session
        if sess is not None and not sess.needs_refresh(margin):
            return sess

        seen = sess
        async with self._lock:
            sess = self._session
            if sess is not None and sess is not seen:
                # replaced while we queued on the lock
                return sess
            if sess is None:
                self.log.info("No active session, logging in")
                return await self._login_locked()
            if sess.needs_refresh(margin):
                self.log.info(f"Session for {sess.account_id} needs refresh")
                return await self._refresh_locked(sess)
            return sess

    # ---- write side ---------------------------------------------------------------
    async def login(self) -> Session:
        async with self._lock:
            return await self._login_locked()

    async def refresh_token(self) -> Session:
        async with self._lock:
            sess = self._session
            if sess is None:
                self.log.warning("No session to refresh, performing login")
                return await self._login_locked()
            return await self._refresh_locked(sess)

    async def switch_account(self, account_id: str, default_account: Optional[bool] = None) -> Session:
        sess = await self.get_session()
        if sess.account_id == account_id:
            self.log.debug(f"Already on account {account_id}")
            return sess
        async with self._lock:
            return await self._switch_locked(self._session or sess, account_id, default_account)

    async def relogin(self) -> Session:
        """Log in again only if the session is within 30 minutes of expiring."""
        async with self._lock:
            return await self._relogin_locked()

    async def relogin_and_switch_account(self, account_id: str, default_account: Optional[bool] = None) -> Session:
        async with self._lock:
            sess = await self._relogin_locked()
            try:
                return await self._switch_locked(sess, account_id, default_account)
            except (AuthError, Unexpected) as e:
                self.log.warning(f"Could not switch to account {account_id}: {e}")
                raise

    async def login_and_switch_account(self, account_id: str, default_account: Optional[bool] = None) -> Session:
        async with self._lock:
            sess = await self._login_locked()
            return await self._switch_locked(sess, account_id, default_account)

    async def logout(self) -> None:
        async with self._lock:
            self._session = None
        self.log.info("Logged out, session cleared")

    # ---- locked implementations ---------------------------------------------------
    async def _relogin_locked(self) -> Session:
        sess = self._session
        if sess is None or sess.timer.is_expired_with_margin(RELOGIN_MARGIN_S):
            self.log.info("Tokens are expired or close to expiring, performing re-login")
            return await self._login_locked()
        self.log.debug("Tokens are still valid, reusing existing session")
        return sess

    async def _login_locked(self) -> Session:
        version = self._s.api_version
        creds = self._s.credentials
        body = {"identifier": creds.username, "password": creds.password}
        headers = api_headers(creds.api_key, version)

        self.log.info(f"Logging in with API v{version} (api_key={_mask(creds.api_key)})")
        retry_count = 0
        delay = self._s.login_initial_delay_s
        while True:
            await self.app_limiter.wait()
            resp = await self._send("POST", self._ep.session, headers=headers, json_body=body)
            if resp.ok:
                break

            if resp.status == 401:
                self.log.error(f"Login rejected (401): {resp.text[:200]}")
                raise BadCredentials(f"login rejected: {resp.text[:200]}")

            if resp.status == 403 and is_quota_exceeded(resp.text):
                if retry_count >= self._s.login_max_retries:
                    self.log.error(f"Login still rate limited after {retry_count} retries")
                    raise RateLimitExceeded(f"login rate limited after {retry_count} retries")
                retry_count += 1
                wait_s = delay + self._rng.uniform(0, self._s.login_max_jitter_s)
                self.log.warning(
                    f"Login rate limited, retrying in {wait_s:.1f}s "
                    f"(attempt {retry_count}/{self._s.login_max_retries})"
                )
                await self._sleep_backoff(wait_s)
                delay *= 2
                continue

            if resp.status == 403:
                self.log.error(f"Login forbidden (403): {resp.text[:200]}")
                raise BadCredentials(f"login forbidden: {resp.text[:200]}")

            self.log.error(f"Login failed with status {resp.status}: {resp.text[:200]}")
            raise Unexpected(resp.status, resp.text[:200])

        sess = self._oauth_session(resp) if version == 3 else self._token_session(resp)
        self._session = sess
        self.log.info(f"Login successful, account: {sess.account_id}")
        for limiter in self._limiters.values():
            self.log.debug(f"Rate limiter {limiter.stats()}")
        return sess

    async def _refresh_locked(self, sess: Session) -> Session:
        if not sess.is_oauth():
            if sess.is_expired():
                self.log.info("Session tokens expired, performing login")
                return await self._login_locked()
            return sess

        self.log.info("Refreshing OAuth token")
        await self.app_limiter.wait()
        resp = await self._send(
            "POST",
            self._ep.session_refresh,
            headers=api_headers(self._s.credentials.api_key, 1),
            json_body={"refresh_token": sess.refresh_token},
        )
        if not resp.ok:
            self.log.warning(
                f"Token refresh failed with status {resp.status}: {resp.text[:200]}; "
                f"refresh token may be expired, attempting full re-authentication"
            )
            return await self._login_locked()

        token = self._parse(OAuthToken, resp, "refresh")
        new_sess = replace(
            sess,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            scope=token.scope,
            expires_in=token.expires_in,
            issued_at=_utcnow(),
            timer=TokenTimer(),
        )
        self._session = new_sess
        self.log.info(f"Token refreshed, expires in {token.expires_in}s")
        return new_sess

    async def _switch_locked(self, sess: Session, account_id: str, default_account: Optional[bool]) -> Session:
        if sess.account_id == account_id:
            self.log.debug(f"Already on account {account_id}")
            return sess
        if sess.is_oauth():
            raise InvalidInput("account switching is not supported for OAuth sessions")

        self.log.info(f"Switching to account: {account_id}")
        limiter = sess.limiter(RateLimitType.NON_TRADING)
        if limiter is not None:
            await limiter.wait()

        headers = api_headers(self._s.credentials.api_key, 1)
        headers.update(sess.auth_headers())
        body: Dict[str, Any] = {"accountId": account_id}
        if default_account is not None:
            body["defaultAccount"] = default_account

        resp = await self._send("PUT", self._ep.session, headers=headers, json_body=body)
        if not resp.ok:
            self.log.error(f"Account switch failed with status {resp.status}: {resp.text[:200]}")
            raise Unexpected(resp.status, resp.text[:200])

        cst = resp.header("CST")
        token = resp.header("X-SECURITY-TOKEN")
        if not cst or not token:
            self.log.error(f"Account switch to {account_id} returned {resp.status} without new CST/X-SECURITY-TOKEN")
            raise AuthError("account switch response is missing CST or X-SECURITY-TOKEN")

        try:
            details = SwitchAccountResponse.model_validate(resp.json() or {})
            self.log.debug(f"Switch details: dealing_enabled={details.dealing_enabled}")
        except (json.JSONDecodeError, ValidationError) as e:
            self.log.debug(f"Ignoring unparseable switch body: {e}")

        new_sess = sess.with_tokens(account_id=account_id, cst=cst, x_security_token=token)
        self._session = new_sess
        self.log.info(f"Switched to account: {account_id}")
        return new_sess

    # ---- helpers ------------------------------------------------------------------
    def _token_session(self, resp: HttpResponse) -> TokenAuthSession:
        cst = resp.header("CST")
        token = resp.header("X-SECURITY-TOKEN")
        if not cst or not token:
            self.log.error("Login response is missing CST or X-SECURITY-TOKEN header")
            raise AuthError("login response is missing CST or X-SECURITY-TOKEN")

        info = self._parse(TokenLoginResponse, resp, "login")
        self.log.debug(f"CST={_mask(cst)} X-SECURITY-TOKEN={_mask(token)}")
        return TokenAuthSession(
            account_id=info.account_id or self._s.credentials.account_id,
            client_id=info.client_id,
            lightstreamer_endpoint=info.lightstreamer_endpoint,
            api_version=self._s.api_version,
            cst=cst,
            x_security_token=token,
            rate_limiters=self._limiters,
        )

    def _oauth_session(self, resp: HttpResponse) -> OAuthSession:
        info = self._parse(OAuthLoginResponse, resp, "login")
        tok = info.oauth_token
        self.log.debug(f"OAuth token expires in {tok.expires_in}s")
        return OAuthSession(
            account_id=info.account_id,
            client_id=info.client_id,
            lightstreamer_endpoint=info.lightstreamer_endpoint,
            access_token=tok.access_token,
            refresh_token=tok.refresh_token,
            token_type=tok.token_type,
            scope=tok.scope,
            expires_in=tok.expires_in,
            expiry_margin_s=self._s.oauth_expiry_margin_s,
            rate_limiters=self._limiters,
        )

    def _parse(self, model, resp: HttpResponse, what: str):
        try:
            return model.model_validate(resp.json())
        except (json.JSONDecodeError, ValidationError) as e:
            self.log.error(f"Malformed {what} response body: {e}")
            raise AuthError(f"malformed {what} response: {e}") from e

    async def _send(self, method: str, path: str, **kwargs) -> HttpResponse:
        try:
            return await self._http.send(method, path, **kwargs)
        except HttpError as e:
            raise Unexpected(e.status, str(e)) from e

    async def _sleep_backoff(self, delay: float) -> None:
        await asyncio.sleep(delay)
