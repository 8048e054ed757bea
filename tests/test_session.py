# tests/test_session.py
import dataclasses
import datetime as dt

import pytest

import broker.session as session_mod
from broker.session import OAuthSession, TokenAuthSession
from infra.rate_limiter import RateLimiter, RateLimitType

T0 = dt.datetime(2024, 1, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def now(monkeypatch):
    state = {"t": T0}

    def advance(**kw):
        state["t"] = state["t"] + dt.timedelta(**kw)

    monkeypatch.setattr(session_mod, "_utcnow", lambda: state["t"])
    return advance


def _token_session(**kw):
    return TokenAuthSession(account_id="ACC1", cst="cst-abc", x_security_token="xst-abc", **kw)


def _oauth_session(expires_in=3600, **kw):
    return OAuthSession(account_id="ACC1", access_token="acc-secret", refresh_token="ref-secret", expires_in=expires_in, **kw)


def test_schemes_are_mutually_exclusive(now):
    tok, oauth = _token_session(), _oauth_session()
    assert tok.is_token_auth() and not tok.is_oauth()
    assert oauth.is_oauth() and not oauth.is_token_auth()
    assert not hasattr(tok, "access_token")
    assert not hasattr(oauth, "cst")


def test_auth_headers(now):
    assert _token_session().auth_headers() == {"CST": "cst-abc", "X-SECURITY-TOKEN": "xst-abc"}
    assert _oauth_session().auth_headers() == {"Authorization": "Bearer acc-secret", "IG-ACCOUNT-ID": "ACC1"}


def test_sessions_are_immutable(now):
    sess = _token_session()
    with pytest.raises(dataclasses.FrozenInstanceError):
        sess.cst = "other"


def test_token_session_expiry_follows_timer(now):
    sess = _token_session()
    assert sess.expires_at == T0 + dt.timedelta(hours=6)
    assert sess.seconds_until_expiry() == 6 * 3600
    assert not sess.needs_refresh(300)
    now(hours=5, minutes=56)
    assert sess.needs_refresh(300)
    assert not sess.is_expired()


def test_oauth_expiry_subtracts_margin(now):
    sess = _oauth_session(expires_in=3600, expiry_margin_s=60)
    assert sess.expires_at == T0 + dt.timedelta(seconds=3540)
    assert not sess.needs_refresh(300)
    now(seconds=3300)
    assert sess.needs_refresh(300)
    assert not sess.is_expired()
    now(seconds=300)
    assert sess.is_expired()


def test_short_lived_oauth_token_needs_refresh_immediately(now):
    sess = _oauth_session(expires_in=60)
    assert sess.needs_refresh(300)
    assert not sess.is_expired()


def test_limiter_lookup(now):
    trading = RateLimiter(RateLimitType.TRADING)
    sess = _token_session(rate_limiters={RateLimitType.TRADING: trading})
    assert sess.limiter(RateLimitType.TRADING) is trading
    assert sess.limiter(RateLimitType.NON_TRADING) is None


def test_with_tokens_replaces_tokens_and_timer(now):
    sess = _token_session()
    now(hours=1)
    switched = sess.with_tokens(account_id="ACC2", cst="cst-new", x_security_token="xst-new")
    assert switched.account_id == "ACC2"
    assert (switched.cst, switched.x_security_token) == ("cst-new", "xst-new")
    assert switched.timer is not sess.timer
    assert switched.timer.max_age == T0 + dt.timedelta(hours=73)
    assert (sess.account_id, sess.cst) == ("ACC1", "cst-abc")


def test_repr_hides_tokens(now):
    assert "cst-abc" not in repr(_token_session())
    assert "acc-secret" not in repr(_oauth_session())


def test_session_variant_must_implement_expiry_rules():
    @dataclasses.dataclass(frozen=True, kw_only=True)
    class HeadersOnly(session_mod._BaseSession):
        def auth_headers(self):
            return {}

    with pytest.raises(TypeError):
        session_mod._BaseSession(account_id="ACC1")
    with pytest.raises(TypeError):
        HeadersOnly(account_id="ACC1")
