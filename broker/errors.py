# broker/errors.py
from typing import Optional


class IGError(Exception):
    """Base broker API error."""
    def __init__(self, msg: str = ""):
        super().__init__(msg)
        self.msg = msg

    def __str__(self):
        return self.msg or self.__class__.__name__


class AuthError(IGError):
    """Login/refresh/switch returned unusable auth material (missing headers, bad body)."""


class BadCredentials(AuthError):
    """Provider rejected the username/password/API key. Not retried."""


class Unauthorized(IGError):
    """401 on an authenticated call that is not an OAuth expiry."""


class OAuthTokenExpired(IGError):
    """401 carrying the oauth-token-invalid marker; refresh and retry once."""


class RateLimitExceeded(IGError):
    """Provider quota still exceeded after the configured retries."""


class Unexpected(IGError):
    """Any other non-2xx status, or a transport failure (status 599)."""
    def __init__(self, status: int, msg: str = "", payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {msg}" if msg else f"HTTP {status}")
        self.status = status
        self.payload = payload or {}


class InvalidInput(IGError):
    """Caller error, e.g. switching accounts on an OAuth session."""
