"""Tests for bearer validation and the third-party OAuth flow."""

import json
import os
import time
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from shared.config import GoogleOAuthSettings
from shared.models import OAuthToken, OAuthTokenRecord, utc_now

DOMAIN = "tenant.example.com"
AUDIENCE = "https://api.example.com"


@pytest.fixture(scope="module")
def rsa_keys():
    """Private PEM and the matching public JWK."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from jose import jwk

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk["kid"] = "key-1"
    public_jwk["use"] = "sig"
    return private_pem, public_jwk


def sign(private_pem: str, kid: str = "key-1", **overrides) -> str:
    from jose import jwt

    now = int(time.time())
    claims = {
        "sub": "user-1",
        "iss": f"https://{DOMAIN}/",
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": kid})


def jwks_client(public_jwk: dict, calls: list) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"keys": [public_jwk]})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestExtractBearer:
    """Tests for Authorization header parsing."""

    def test_valid_header(self):
        from auth.validator import extract_bearer

        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer("bearer token") == "token"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer a b", "Basic abc", "Bearer "])
    def test_malformed_header(self, header):
        from auth.validator import InvalidTokenError, extract_bearer

        with pytest.raises(InvalidTokenError) as exc_info:
            extract_bearer(header)
        assert exc_info.value.status_code == 401


class TestAuthTokenValidator:
    """Tests for AuthTokenValidator."""

    @pytest.mark.asyncio
    async def test_valid_token(self, rsa_keys):
        from auth.validator import AuthTokenValidator

        private_pem, public_jwk = rsa_keys
        calls = []
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, calls))

        claims = await validator.validate(sign(private_pem))

        assert claims["sub"] == "user-1"
        assert calls == [f"https://{DOMAIN}/.well-known/jwks.json"]

    @pytest.mark.asyncio
    async def test_keys_are_cached(self, rsa_keys):
        from auth.validator import AuthTokenValidator

        private_pem, public_jwk = rsa_keys
        calls = []
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, calls))

        await validator.validate(sign(private_pem))
        await validator.validate(sign(private_pem, sub="user-2"))

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_expired_token(self, rsa_keys):
        from auth.validator import AuthTokenValidator, ExpiredTokenError

        private_pem, public_jwk = rsa_keys
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, []))
        token = sign(private_pem, exp=int(time.time()) - 600)

        with pytest.raises(ExpiredTokenError):
            await validator.validate(token)

    @pytest.mark.asyncio
    async def test_clock_skew_allowed(self, rsa_keys):
        from auth.validator import AuthTokenValidator

        private_pem, public_jwk = rsa_keys
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, []))
        token = sign(private_pem, exp=int(time.time()) - 20)

        claims = await validator.validate(token)
        assert claims["sub"] == "user-1"

    @pytest.mark.asyncio
    async def test_wrong_audience(self, rsa_keys):
        from auth.validator import AuthTokenValidator, InvalidTokenError

        private_pem, public_jwk = rsa_keys
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, []))

        with pytest.raises(InvalidTokenError):
            await validator.validate(sign(private_pem, aud="https://other.example.com"))

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, rsa_keys):
        from auth.validator import AuthTokenValidator, InvalidTokenError

        private_pem, public_jwk = rsa_keys
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, []))

        with pytest.raises(InvalidTokenError):
            await validator.validate(sign(private_pem, iss="https://evil.example.com/"))

    @pytest.mark.asyncio
    async def test_unknown_key_id(self, rsa_keys):
        from auth.validator import AuthTokenValidator, InvalidTokenError

        private_pem, public_jwk = rsa_keys
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, []))

        with pytest.raises(InvalidTokenError) as exc_info:
            await validator.validate(sign(private_pem, kid="rotated"))
        assert exc_info.value.message == "unknown signing key"

    @pytest.mark.asyncio
    async def test_unknown_key_ids_do_not_refetch_within_interval(self, rsa_keys):
        from auth.validator import AuthTokenValidator, InvalidTokenError

        private_pem, public_jwk = rsa_keys
        calls = []
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client(public_jwk, calls))

        await validator.validate(sign(private_pem))
        for i in range(5):
            with pytest.raises(InvalidTokenError):
                await validator.validate(sign(private_pem, kid=f"bogus-{i}"))

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_key_id_refetches_after_interval(self, rsa_keys):
        from auth.validator import AuthTokenValidator, InvalidTokenError

        private_pem, public_jwk = rsa_keys
        calls = []
        validator = AuthTokenValidator(
            DOMAIN, AUDIENCE, refetch_interval_seconds=0, http_client=jwks_client(public_jwk, calls)
        )

        await validator.validate(sign(private_pem))
        with pytest.raises(InvalidTokenError):
            await validator.validate(sign(private_pem, kid="rotated"))

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_garbage_token(self):
        from auth.validator import AuthTokenValidator, InvalidTokenError

        calls = []
        validator = AuthTokenValidator(DOMAIN, AUDIENCE, http_client=jwks_client({}, calls))

        with pytest.raises(InvalidTokenError):
            await validator.validate("not-a-jwt")
        assert calls == []


def oauth_settings() -> GoogleOAuthSettings:
    return GoogleOAuthSettings(
        enabled=True,
        client_id="client-123",
        client_secret="secret-456",
        redirect_url="http://localhost:8081/oauth/callback",
        scopes=["https://www.googleapis.com/auth/gmail.readonly"],
    )


def token_endpoint(requests: list, status_code: int = 200, payload: dict = None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(parse_qs(request.content.decode()))
        return httpx.Response(status_code, json=payload or {
            "access_token": "ya29.token",
            "token_type": "Bearer",
            "refresh_token": "1//refresh",
            "expires_in": 3600,
        })

    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestTokenStorage:
    """Tests for token storage backends."""

    @pytest.mark.asyncio
    async def test_in_memory_empty(self):
        from auth.storage import InMemoryTokenStorage, NoTokenAvailableError

        storage = InMemoryTokenStorage()

        with pytest.raises(NoTokenAvailableError):
            await storage.load()

    @pytest.mark.asyncio
    async def test_in_memory_roundtrip_and_delete(self):
        from auth.storage import InMemoryTokenStorage, NoTokenAvailableError

        storage = InMemoryTokenStorage()
        await storage.save(OAuthTokenRecord(token=OAuthToken(access_token="abc")))

        assert (await storage.load()).token.access_token == "abc"

        await storage.delete()
        with pytest.raises(NoTokenAvailableError):
            await storage.load()

    @pytest.mark.asyncio
    async def test_file_storage_is_owner_only(self, tmp_path):
        from auth.storage import FileTokenStorage

        path = tmp_path / "tokens" / "google.json"
        storage = FileTokenStorage(path)
        record = OAuthTokenRecord(
            token=OAuthToken(access_token="abc", refresh_token="r"),
            config_json='{"client_id": "client-123"}',
        )

        await storage.save(record)

        assert os.stat(path).st_mode & 0o777 == 0o600
        data = json.loads(path.read_text())
        assert set(data) == {"token", "config_json"}
        assert data["token"]["access_token"] == "abc"

        loaded = await storage.load()
        assert loaded.token.refresh_token == "r"
        assert loaded.config_json == record.config_json

    @pytest.mark.asyncio
    async def test_file_storage_missing_file(self, tmp_path):
        from auth.storage import FileTokenStorage, NoTokenAvailableError

        storage = FileTokenStorage(tmp_path / "absent.json")

        with pytest.raises(NoTokenAvailableError):
            await storage.load()

    @pytest.mark.asyncio
    async def test_file_storage_corrupt_file(self, tmp_path):
        from shared.errors import StorageError
        from auth.storage import FileTokenStorage

        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(StorageError):
            await FileTokenStorage(path).load()


class TestOAuthTokenBroker:
    """Tests for OAuthTokenBroker."""

    def test_begin_builds_consent_url(self):
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        broker = OAuthTokenBroker(oauth_settings(), InMemoryTokenStorage())

        url, state = broker.begin()

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://accounts.google.com/o/oauth2/auth?")
        assert query["state"] == [state]
        assert query["access_type"] == ["offline"]
        assert query["client_id"] == ["client-123"]
        assert len(state) >= 43

    def test_states_are_unique(self):
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        broker = OAuthTokenBroker(oauth_settings(), InMemoryTokenStorage())

        assert broker.begin()[1] != broker.begin()[1]

    @pytest.mark.asyncio
    async def test_state_mismatch_skips_exchange(self):
        from auth.oauth import OAuthTokenBroker, StateMismatchError
        from auth.storage import InMemoryTokenStorage

        requests = []
        storage = InMemoryTokenStorage()
        broker = OAuthTokenBroker(oauth_settings(), storage, http_client_factory=token_endpoint(requests))

        with pytest.raises(StateMismatchError) as exc_info:
            await broker.complete("abc", "def", "code-1")

        assert exc_info.value.message == "invalid state"
        assert requests == []
        assert not await broker.has_token()

    @pytest.mark.asyncio
    async def test_missing_code(self):
        from auth.oauth import MissingCodeError, OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        broker = OAuthTokenBroker(oauth_settings(), InMemoryTokenStorage())

        with pytest.raises(MissingCodeError):
            await broker.complete("abc", "abc", None)

    @pytest.mark.asyncio
    async def test_complete_stores_token(self):
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        requests = []
        storage = InMemoryTokenStorage()
        broker = OAuthTokenBroker(oauth_settings(), storage, http_client_factory=token_endpoint(requests))

        token = await broker.complete("abc", "abc", "code-1")

        assert token.access_token == "ya29.token"
        assert requests[0]["grant_type"] == ["authorization_code"]
        assert requests[0]["code"] == ["code-1"]
        record = await storage.load()
        assert record.token.refresh_token == "1//refresh"
        assert json.loads(record.config_json)["client_id"] == "client-123"
        assert "client_secret" not in record.config_json

    @pytest.mark.asyncio
    async def test_exchange_rejected(self):
        from auth.oauth import ExchangeError, OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        broker = OAuthTokenBroker(
            oauth_settings(),
            InMemoryTokenStorage(),
            http_client_factory=token_endpoint([], status_code=400, payload={"error": "invalid_grant"}),
        )

        with pytest.raises(ExchangeError) as exc_info:
            await broker.complete("abc", "abc", "bad-code")
        assert exc_info.value.public_message == "Failed to exchange token"

    @pytest.mark.asyncio
    async def test_token_source_without_token(self):
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage, NoTokenAvailableError

        broker = OAuthTokenBroker(oauth_settings(), InMemoryTokenStorage())

        with pytest.raises(NoTokenAvailableError):
            await broker.token_source()

    @pytest.mark.asyncio
    async def test_token_source_refreshes_expired_token(self):
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        requests = []
        storage = InMemoryTokenStorage()
        await storage.save(OAuthTokenRecord(token=OAuthToken(
            access_token="old",
            refresh_token="1//keep",
            expiry=utc_now() - timedelta(minutes=1),
        )))
        broker = OAuthTokenBroker(
            oauth_settings(),
            storage,
            http_client_factory=token_endpoint(requests, payload={
                "access_token": "new", "expires_in": 3600,
            }),
        )

        source = await broker.token_source()
        token = await source.token()

        assert token.access_token == "new"
        assert token.refresh_token == "1//keep"
        assert requests[0]["grant_type"] == ["refresh_token"]
        assert await source.authorization_header() == {"Authorization": "Bearer new"}
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_revoke(self):
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        storage = InMemoryTokenStorage()
        await storage.save(OAuthTokenRecord(token=OAuthToken(access_token="abc")))
        broker = OAuthTokenBroker(oauth_settings(), storage)

        await broker.revoke()

        assert not await broker.has_token()


def oauth_app(broker):
    from fastapi import FastAPI
    from auth.router import router

    app = FastAPI()
    app.include_router(router)
    app.state.oauth_broker = broker
    return app


class TestOAuthRoutes:
    """Tests for the /oauth endpoints."""

    def test_login_sets_state_cookie(self):
        from fastapi.testclient import TestClient
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        client = TestClient(oauth_app(OAuthTokenBroker(oauth_settings(), InMemoryTokenStorage())))

        response = client.get("/oauth/login", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"].startswith("https://accounts.google.com/")
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("google_oauth_state=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "Path=/" in cookie

        state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
        assert f"google_oauth_state={state}" in cookie

    def test_callback_rejects_state_mismatch(self):
        from fastapi.testclient import TestClient
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        broker = OAuthTokenBroker(oauth_settings(), InMemoryTokenStorage())
        client = TestClient(oauth_app(broker))

        response = client.get(
            "/oauth/callback?state=abc&code=xyz",
            headers={"Cookie": "google_oauth_state=def"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "invalid state"}
        assert "set-cookie" not in response.headers

    def test_callback_success_clears_cookie(self):
        from fastapi.testclient import TestClient
        from auth.oauth import OAuthTokenBroker
        from auth.storage import InMemoryTokenStorage

        storage = InMemoryTokenStorage()
        broker = OAuthTokenBroker(oauth_settings(), storage, http_client_factory=token_endpoint([]))
        client = TestClient(oauth_app(broker))

        response = client.get(
            "/oauth/callback?state=abc&code=xyz",
            headers={"Cookie": "google_oauth_state=abc"},
        )

        assert response.status_code == 200
        assert response.text == "Authentication successful"
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("google_oauth_state=")
        assert "Max-Age=0" in cookie

        status = client.get("/oauth/status")
        assert status.json() == {"authenticated": True}

    def test_routes_absent_when_not_configured(self):
        from fastapi.testclient import TestClient

        client = TestClient(oauth_app(None))

        assert client.get("/oauth/login", follow_redirects=False).status_code == 404
