"""Third-party OAuth2 authorization-code flow.

begin() mints a random state that the HTTP layer stores in a cookie;
complete() checks the returned state against that cookie before the code
is exchanged. Stored tokens are served through a TokenSource that
refreshes itself when the access token expires.
"""

import asyncio
import hmac
import secrets
from datetime import timedelta
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx

from shared.config import GoogleOAuthSettings
from shared.errors import BadRequestError, UpstreamError
from shared.logging import get_logger
from shared.models import OAuthToken, OAuthTokenRecord, utc_now
from auth.storage import NoTokenAvailableError, TokenStorage

logger = get_logger(__name__)

STATE_BYTES = 32


class StateMismatchError(BadRequestError):
    """The callback state does not match the state cookie."""

    def __init__(self) -> None:
        super().__init__("invalid state", step="oauth callback")


class MissingCodeError(BadRequestError):
    """The callback carries no authorization code."""

    def __init__(self) -> None:
        super().__init__("authorization code is missing", step="oauth callback")


class ExchangeError(UpstreamError):
    """The provider rejected the code exchange or refresh."""

    def __init__(self, message: str) -> None:
        super().__init__(message, step="oauth exchange")

    @property
    def public_message(self) -> str:
        return "Failed to exchange token"


def _parse_token(payload: dict[str, Any], previous: Optional[OAuthToken] = None) -> OAuthToken:
    """Build a token from a token-endpoint response."""
    expiry = None
    if payload.get("expires_in"):
        expiry = utc_now() + timedelta(seconds=int(payload["expires_in"]))

    refresh_token = payload.get("refresh_token")
    if refresh_token is None and previous is not None:
        # Refresh responses usually omit the refresh token
        refresh_token = previous.refresh_token

    return OAuthToken(
        access_token=payload["access_token"],
        token_type=payload.get("token_type", "Bearer"),
        refresh_token=refresh_token,
        expiry=expiry,
    )


class TokenSource:
    """Live credential that refreshes the stored token on demand."""

    def __init__(self, broker: "OAuthTokenBroker") -> None:
        self._broker = broker

    async def token(self) -> OAuthToken:
        """Return a valid access token, refreshing it when expired."""
        return await self._broker.current_token()

    async def authorization_header(self) -> dict[str, str]:
        token = await self.token()
        return {"Authorization": f"{token.token_type} {token.access_token}"}


class OAuthTokenBroker:
    """Runs the redirect flow and owns the stored OAuth token."""

    def __init__(
        self,
        config: GoogleOAuthSettings,
        storage: TokenStorage,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        timeout: float = 30.0
    ) -> None:
        """
        Initialize the broker.

        Args:
            config: Client credentials, scopes and provider endpoints
            storage: Token backend
            http_client_factory: Creates the client for token endpoint calls
            timeout: Token endpoint timeout in seconds
        """
        self.config = config
        self.storage = storage
        self.timeout = timeout
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=self.timeout)
        )
        self._refresh_lock = asyncio.Lock()

    @property
    def cookie_name(self) -> str:
        return self.config.state_cookie

    def begin(self, flow_id: Optional[str] = None) -> tuple[str, str]:
        """
        Start a consent flow.

        Args:
            flow_id: Optional caller label, used for logging only

        Returns:
            (redirect_url, state); the caller stores state in the cookie
        """
        state = secrets.token_urlsafe(STATE_BYTES)
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_url,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        url = f"{self.config.auth_url}?{urlencode(params)}"
        logger.info("OAuth flow started", flow_id=flow_id)
        return url, state

    async def complete(
        self,
        state: Optional[str],
        cookie_state: Optional[str],
        code: Optional[str]
    ) -> OAuthToken:
        """
        Finish a consent flow and store the resulting token.

        Args:
            state: `state` query parameter
            cookie_state: Value of the state cookie
            code: `code` query parameter

        Returns:
            The stored token

        Raises:
            StateMismatchError: If state is absent or differs from the cookie
            MissingCodeError: If the code is absent
            ExchangeError: If the provider rejects the exchange
        """
        if not state or not cookie_state or not hmac.compare_digest(
            state.encode(), cookie_state.encode()
        ):
            logger.warning("OAuth state mismatch")
            raise StateMismatchError()

        if not code:
            raise MissingCodeError()

        payload = await self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_url,
        })
        token = _parse_token(payload)
        await self.storage.save(OAuthTokenRecord(token=token, config_json=self._config_snapshot()))

        logger.info("OAuth token exchanged", expires_at=str(token.expiry) if token.expiry else None)
        return token

    async def token_source(self) -> TokenSource:
        """
        Get a live token source.

        Raises:
            NoTokenAvailableError: If no flow has completed yet
        """
        await self.storage.load()
        return TokenSource(self)

    async def has_token(self) -> bool:
        try:
            await self.storage.load()
        except NoTokenAvailableError:
            return False
        return True

    async def revoke(self) -> None:
        """Forget the stored token."""
        await self.storage.delete()
        logger.info("OAuth token revoked")

    async def current_token(self) -> OAuthToken:
        record = await self.storage.load()
        if not record.token.is_expired():
            return record.token

        async with self._refresh_lock:
            # Another task may have refreshed while we waited
            record = await self.storage.load()
            if not record.token.is_expired():
                return record.token
            return await self._refresh(record)

    async def _refresh(self, record: OAuthTokenRecord) -> OAuthToken:
        if not record.token.refresh_token:
            raise ExchangeError("token expired and no refresh token is stored")

        payload = await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": record.token.refresh_token,
        })
        token = _parse_token(payload, previous=record.token)
        await self.storage.save(OAuthTokenRecord(token=token, config_json=record.config_json))
        logger.info("OAuth token refreshed")
        return token

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        form = {
            **data,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        try:
            async with self._http_client_factory() as client:
                response = await client.post(
                    self.config.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error("OAuth token request failed", error=str(e))
            raise ExchangeError(f"token request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                "OAuth token endpoint rejected request",
                status_code=response.status_code,
                grant_type=data.get("grant_type")
            )
            raise ExchangeError(f"token endpoint returned {response.status_code}")

        payload = response.json()
        if "access_token" not in payload:
            raise ExchangeError("token response has no access_token")
        return payload

    def _config_snapshot(self) -> str:
        return self.config.model_dump_json(include={
            "client_id", "redirect_url", "scopes", "auth_url", "token_url"
        })
