"""Authentication: bearer token validation and third-party OAuth tokens."""

from auth.oauth import (
    ExchangeError,
    MissingCodeError,
    OAuthTokenBroker,
    StateMismatchError,
    TokenSource,
)
from auth.storage import (
    FileTokenStorage,
    InMemoryTokenStorage,
    NoTokenAvailableError,
    TokenStorage,
)
from auth.validator import (
    AuthTokenValidator,
    ExpiredTokenError,
    InvalidTokenError,
    extract_bearer,
)

__all__ = [
    "ExchangeError",
    "MissingCodeError",
    "OAuthTokenBroker",
    "StateMismatchError",
    "TokenSource",
    "FileTokenStorage",
    "InMemoryTokenStorage",
    "NoTokenAvailableError",
    "TokenStorage",
    "AuthTokenValidator",
    "ExpiredTokenError",
    "InvalidTokenError",
    "extract_bearer",
]
