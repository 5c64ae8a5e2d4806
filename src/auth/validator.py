"""Bearer token validation against the identity provider's JWKS."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from shared.errors import UnauthorizedError
from shared.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "RS256"


class InvalidTokenError(UnauthorizedError):
    """The bearer token is missing, malformed or fails verification."""

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message, step="auth")


class ExpiredTokenError(InvalidTokenError):
    """The bearer token is past its expiry, beyond the allowed skew."""

    def __init__(self) -> None:
        super().__init__("token expired")


def extract_bearer(header: Optional[str]) -> str:
    """
    Pull the token out of an Authorization header.

    The header must be exactly two space-separated parts, the first being
    the bearer scheme.

    Raises:
        InvalidTokenError: If the header is missing or malformed
    """
    if not header:
        raise InvalidTokenError("missing authorization header")

    parts = header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise InvalidTokenError("malformed authorization header")
    return parts[1]


class AuthTokenValidator:
    """
    Verifies RS256 bearer tokens.

    Signing keys come from `https://{domain}/.well-known/jwks.json` and are
    cached. An unknown key id triggers a refetch, at most once per
    refetch interval.
    """

    def __init__(
        self,
        domain: str,
        audience: str,
        jwks_ttl_seconds: float = 300,
        refetch_interval_seconds: float = 30,
        leeway_seconds: int = 60,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.issuer = f"https://{domain}/"
        self.jwks_url = f"{self.issuer}.well-known/jwks.json"
        self.audience = audience
        self.jwks_ttl = timedelta(seconds=jwks_ttl_seconds)
        self.refetch_interval = timedelta(seconds=refetch_interval_seconds)
        self.leeway = leeway_seconds
        self.timeout = timeout
        self._http_client = http_client

        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _is_cache_valid(self) -> bool:
        if self._fetched_at is None:
            return False
        return datetime.now(timezone.utc) - self._fetched_at < self.jwks_ttl

    async def validate(self, token: str) -> dict[str, Any]:
        """
        Validate a bearer token.

        Args:
            token: Raw JWT

        Returns:
            Verified claims

        Raises:
            ExpiredTokenError: If the token has expired
            InvalidTokenError: For any other verification failure
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise InvalidTokenError(f"malformed token: {e}") from e

        if header.get("alg") != ALGORITHM:
            raise InvalidTokenError(f"unexpected signing algorithm: {header.get('alg')}")

        key = await self._signing_key(header.get("kid"))

        try:
            return jwt.decode(
                token,
                key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"leeway": self.leeway},
            )
        except ExpiredSignatureError as e:
            raise ExpiredTokenError() from e
        except JWTError as e:
            logger.warning("Token verification failed", error=str(e))
            raise InvalidTokenError(str(e)) from e

    async def _signing_key(self, kid: Optional[str]) -> dict[str, Any]:
        if not self._is_cache_valid() or kid not in self._keys:
            async with self._lock:
                if not self._is_cache_valid():
                    await self._fetch_keys()
                elif kid is not None and kid not in self._keys and self._may_refetch():
                    await self._fetch_keys()

        key = self._keys.get(kid)
        if key is None:
            raise InvalidTokenError("unknown signing key")
        return key

    def _may_refetch(self) -> bool:
        """An unknown key id refetches at most once per refetch interval."""
        return datetime.now(timezone.utc) - self._fetched_at >= self.refetch_interval

    async def _fetch_keys(self) -> None:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(self.jwks_url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.jwks_url)
            response.raise_for_status()
            jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("JWKS fetch failed", url=self.jwks_url, error=str(e))
            raise InvalidTokenError("unable to fetch signing keys") from e

        self._keys = {k["kid"]: k for k in jwks.get("keys", []) if "kid" in k}
        self._fetched_at = datetime.now(timezone.utc)
        logger.debug("JWKS refreshed", key_count=len(self._keys))
