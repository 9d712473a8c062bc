"""
OIDC Identity Provider Tests

Tests the authorization request, code exchange, JWKS signature verification
and federated logout against a mocked IdP.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from sso_gateway.app.auth.identity import (
    TRANSACTION_KEY,
    OIDCIdentityProvider,
    generate_code_challenge,
)
from sso_gateway.app.exceptions import StateError, UpstreamError

from conftest import query_param


# Test RSA key pair generation for mocking JWKS
def generate_test_key():
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )


TEST_PRIVATE_KEY = generate_test_key()
TEST_PRIVATE_PEM = TEST_PRIVATE_KEY.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption()
).decode()
TEST_KID = "test-key-id-2024"
ISSUER = "https://idp.example.com/"


def create_mock_jwks(kid: str = TEST_KID):
    jwk = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return {"keys": [jwk]}


def create_mock_id_token(nonce: str, kid: str = TEST_KID, **overrides):
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ISSUER,
        "sub": "auth0|user-123",
        "aud": "test-client-id",
        "exp": now + timedelta(minutes=60),
        "iat": now,
        "nonce": nonce,
        "email": "user@example.com",
        "name": "Test User",
        "picture": "https://cdn.example.com/avatar.png",
        "sid": "idp-session-abc",
        "https://sso-gateway.com/roles": ["admin"],
        "https://sso-gateway.com/permissions": ["read:all"],
    }
    payload.update(overrides)
    return jwt.encode(payload, TEST_PRIVATE_PEM, algorithm="RS256", headers={"kid": kid})


class MockIdP:
    """Token, JWKS and logout endpoints of a fake OIDC provider."""

    def __init__(self):
        self.requests = []
        self.token_status = 200
        self.id_token_factory = None
        self.jwks = create_mock_jwks()
        self.logout_status = 302

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            form = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "access_token": "idp-access-token",
                "id_token": self.id_token_factory(form),
            })
        if path == "/.well-known/jwks.json":
            return httpx.Response(200, json=self.jwks)
        if path == "/oidc/logout":
            return httpx.Response(self.logout_status, headers={"location": "https://idp.example.com/"})
        return httpx.Response(404)

    def calls_to(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def mock_idp():
    return MockIdP()


@pytest.fixture
def provider(settings, mock_idp):
    return OIDCIdentityProvider(settings, transport=httpx.MockTransport(mock_idp.handler))


def start(provider, session):
    url = provider.authorization_url(session, "http://testserver/auth/callback")
    return url, session[TRANSACTION_KEY]


class TestAuthorizationUrl:
    def test_contains_pkce_state_and_nonce(self, provider):
        session = {}
        url, transaction = start(provider, session)

        assert url.startswith("https://idp.example.com/authorize?")
        assert query_param(url, "client_id") == "test-client-id"
        assert query_param(url, "response_type") == "code"
        assert query_param(url, "state") == transaction["state"]
        assert query_param(url, "nonce") == transaction["nonce"]
        assert query_param(url, "code_challenge_method") == "S256"
        assert query_param(url, "code_challenge") == generate_code_challenge(transaction["code_verifier"])
        assert query_param(url, "redirect_uri") == "http://testserver/auth/callback"

    def test_restart_replaces_transaction(self, provider):
        session = {}
        _, first = start(provider, session)
        _, second = start(provider, session)

        assert first["state"] != second["state"]
        assert session[TRANSACTION_KEY] == second


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_successful_exchange(self, provider, mock_idp):
        session = {}
        _, transaction = start(provider, session)
        mock_idp.id_token_factory = lambda form: create_mock_id_token(transaction["nonce"])

        claims = await provider.exchange_code(session, "auth-code", transaction["state"])

        assert claims.sub == "auth0|user-123"
        assert claims.roles == ["admin"]
        assert claims.permissions == ["read:all"]
        assert claims.sid == "idp-session-abc"
        assert TRANSACTION_KEY not in session

        form = parse_qs(mock_idp.calls_to("/oauth/token")[0].content.decode())
        assert form["code"] == ["auth-code"]
        assert form["code_verifier"] == [transaction["code_verifier"]]
        assert form["client_secret"] == ["test-client-secret"]

    @pytest.mark.asyncio
    async def test_jwks_is_cached(self, provider, mock_idp):
        for _ in range(2):
            session = {}
            _, transaction = start(provider, session)
            mock_idp.id_token_factory = lambda form, n=transaction["nonce"]: create_mock_id_token(n)
            await provider.exchange_code(session, "auth-code", transaction["state"])

        assert len(mock_idp.calls_to("/.well-known/jwks.json")) == 1

    @pytest.mark.asyncio
    async def test_state_mismatch(self, provider):
        session = {}
        start(provider, session)

        with pytest.raises(StateError):
            await provider.exchange_code(session, "auth-code", "forged")

    @pytest.mark.asyncio
    async def test_missing_transaction(self, provider):
        with pytest.raises(StateError):
            await provider.exchange_code({}, "auth-code", "state")

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, provider, mock_idp):
        session = {}
        _, transaction = start(provider, session)
        mock_idp.id_token_factory = lambda form: create_mock_id_token("other-nonce")

        with pytest.raises(StateError):
            await provider.exchange_code(session, "auth-code", transaction["state"])

    @pytest.mark.asyncio
    async def test_token_endpoint_failure(self, provider, mock_idp):
        session = {}
        _, transaction = start(provider, session)
        mock_idp.token_status = 400

        with pytest.raises(UpstreamError) as exc_info:
            await provider.exchange_code(session, "auth-code", transaction["state"])
        assert exc_info.value.upstream == "idp"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_kid_refreshes_jwks_then_fails(self, provider, mock_idp):
        session = {}
        _, transaction = start(provider, session)
        mock_idp.id_token_factory = lambda form: create_mock_id_token(transaction["nonce"], kid="rotated")

        with pytest.raises(UpstreamError):
            await provider.exchange_code(session, "auth-code", transaction["state"])
        assert len(mock_idp.calls_to("/.well-known/jwks.json")) == 2

    @pytest.mark.asyncio
    async def test_wrong_audience(self, provider, mock_idp):
        session = {}
        _, transaction = start(provider, session)
        mock_idp.id_token_factory = lambda form: create_mock_id_token(
            transaction["nonce"], aud="someone-else"
        )

        with pytest.raises(UpstreamError):
            await provider.exchange_code(session, "auth-code", transaction["state"])

    @pytest.mark.asyncio
    async def test_unreachable_idp(self, settings):
        def refuse(request):
            raise httpx.ConnectError("refused")

        provider = OIDCIdentityProvider(settings, transport=httpx.MockTransport(refuse))
        session = {}
        _, transaction = start(provider, session)

        with pytest.raises(UpstreamError):
            await provider.exchange_code(session, "auth-code", transaction["state"])


class TestFederatedLogout:
    @pytest.mark.asyncio
    async def test_sends_client_id_and_session_hint(self, provider, mock_idp):
        await provider.federated_logout({"sub": "u", "sid": "idp-session-abc"})

        [call] = mock_idp.calls_to("/oidc/logout")
        assert call.url.params["client_id"] == "test-client-id"
        assert call.url.params["logout_hint"] == "idp-session-abc"

    @pytest.mark.asyncio
    async def test_rejection_raises(self, provider, mock_idp):
        mock_idp.logout_status = 500

        with pytest.raises(UpstreamError):
            await provider.federated_logout({"sub": "u", "sid": None})

    def test_is_authenticated(self, provider):
        assert provider.is_authenticated({}) is False
        assert provider.is_authenticated({"user": {"sub": "u"}}) is True
