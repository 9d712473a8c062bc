"""
Shared fixtures for gateway tests.

Scenario products:
- productA: direct cookie delivery on a.example (client cookie enabled)
- productB: back-channel handoff delivery on b.example
"""

from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from sso_gateway.app.auth.identity import IdentityProvider
from sso_gateway.app.config import Settings
from sso_gateway.app.exceptions import StateError
from sso_gateway.app.main import create_app
from sso_gateway.app.models import IdentityClaims
from sso_gateway.app.sessions import InMemorySessionStore

TEST_JWT_SECRET = "test-jwt-secret-that-is-at-least-32-characters"
PRODUCT_B_SECRET = "product-b-shared-secret-with-32-plus-chars"
TEST_STATE = "test-oauth-state"

TEST_CLAIMS = IdentityClaims(
    sub="auth0|user-123",
    email="user@example.com",
    name="Test User",
    picture="https://cdn.example.com/avatar.png",
    email_verified=True,
    roles=["admin"],
    permissions=["read:all", "write:all"],
    sid="idp-session-abc",
)


def make_settings(**overrides) -> Settings:
    """Build Settings explicitly so tests never depend on the environment."""
    values: Dict[str, Any] = {
        "BASE_URL": "http://testserver",
        "ENVIRONMENT": "development",
        "OIDC_ISSUER": "https://idp.example.com/",
        "OIDC_CLIENT_ID": "test-client-id",
        "OIDC_CLIENT_SECRET": "test-client-secret",
        "JWT_SECRET": TEST_JWT_SECRET,
        "COOKIE_ALIASES": "auth_token,id_token",
        "PRODUCTS": [
            {
                "id": "productA",
                "name": "Product A",
                "base_url": "https://a.example",
                "delivery": "cookie",
                "cookie_domain": "a.example",
                "client_cookie": True,
            },
            {
                "id": "productB",
                "name": "Product B",
                "base_url": "https://b.example",
                "delivery": "handoff",
                "handoff_secret": PRODUCT_B_SECRET,
                "logout_endpoint": "/auth/sso-logout",
                "cookie_aliases": ["b_session_token"],
            },
        ],
    }
    values.update(overrides)
    return Settings(**values)


class FakeIdentityProvider(IdentityProvider):
    """IdP stand-in with a fixed state and configurable claims."""

    def __init__(self, claims: IdentityClaims = TEST_CLAIMS):
        self.claims = claims
        self.exchange_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.logout_calls: List[Dict[str, Any]] = []

    def authorization_url(self, session, redirect_uri: str) -> str:
        session["oidc_transaction"] = {"state": TEST_STATE}
        return f"https://idp.example.com/authorize?state={TEST_STATE}&redirect_uri={redirect_uri}"

    async def exchange_code(self, session, code: str, state: Optional[str]) -> IdentityClaims:
        transaction = session.pop("oidc_transaction", None)
        if not transaction or transaction["state"] != state:
            raise StateError("Invalid state parameter")
        if self.exchange_error:
            raise self.exchange_error
        return self.claims

    async def federated_logout(self, linkage: Dict[str, Any]) -> None:
        self.logout_calls.append(linkage)
        if self.logout_error:
            raise self.logout_error


class ProductServer:
    """Records back-channel calls and answers with a configurable status."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.session_status = 200
        self.session_error: Optional[Exception] = None
        self.logout_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/auth/sso-session":
            if self.session_error:
                raise self.session_error
            return httpx.Response(self.session_status, json={"success": True})
        if request.url.path == "/auth/sso-logout":
            return httpx.Response(self.logout_status, json={"success": True})
        return httpx.Response(404)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def parse_set_cookies(response) -> List[Dict[str, Any]]:
    """
    Parse every Set-Cookie header into {name, value, <lowercased attrs>}.

    Accepts TestClient (httpx) responses and Starlette responses built
    directly by the flows.
    """
    if hasattr(response.headers, "get_list"):
        headers = response.headers.get_list("set-cookie")
    else:
        headers = response.headers.getlist("set-cookie")

    cookies = []
    for header in headers:
        parts = [p.strip() for p in header.split(";") if p.strip()]
        name, _, value = parts[0].partition("=")
        cookie: Dict[str, Any] = {"name": name, "value": value.strip('"')}
        for attr in parts[1:]:
            key, sep, attr_value = attr.partition("=")
            cookie[key.lower()] = attr_value if sep else True
        cookies.append(cookie)
    return cookies


def query_param(url: str, name: str) -> Optional[str]:
    values = parse_qs(urlsplit(url).query).get(name)
    return values[0] if values else None


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def idp():
    return FakeIdentityProvider()


@pytest.fixture
def product_server():
    return ProductServer()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def app(settings, idp, product_server, session_store):
    return create_app(
        settings=settings,
        identity_provider=idp,
        session_store=session_store,
        transport=httpx.MockTransport(product_server.handler),
    )


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def state(app):
    return app.state.app_state


def login(client: TestClient, **params) -> httpx.Response:
    """Run /auth/login then /auth/callback and return the callback response."""
    response = client.get("/auth/login", params=params)
    assert response.status_code == 302
    return client.get("/auth/callback", params={"code": "auth-code", "state": TEST_STATE})
