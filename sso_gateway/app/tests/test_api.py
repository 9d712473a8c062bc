"""
API Endpoint Tests

Token validation, user info, product catalogue and the JSON global-logout.
"""

import time

import pytest

from sso_gateway.app.auth.tokens import CredentialMinter

from conftest import TEST_CLAIMS, make_settings, parse_set_cookies, query_param


@pytest.fixture
def token(state):
    return state.minter.mint(TEST_CLAIMS.project("productA"))


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


class TestValidateToken:
    def test_valid_bearer_token(self, client, auth_headers):
        response = client.get("/api/validate-token", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["user"]["id"] == TEST_CLAIMS.sub
        assert data["user"]["roles"] == ["admin"]
        assert data["user"]["productId"] == "productA"
        assert data["tokenInfo"]["issuer"] == "sso-gateway"

    def test_token_from_query(self, client, token):
        response = client.get("/api/validate-token", params={"token": token})
        assert response.status_code == 200

    def test_missing_token_is_401_with_kind(self, client):
        response = client.get("/api/validate-token")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["kind"] == "missing"
        assert response.json()["error"] == "invalid_token"

    def test_expired_token(self, client, settings):
        old_minter = CredentialMinter(settings, clock=lambda: time.time() - 2 * 24 * 60 * 60)
        expired = old_minter.mint(TEST_CLAIMS.project())

        response = client.get("/api/validate-token", headers={"Authorization": f"Bearer {expired}"})

        assert response.status_code == 401
        assert response.json()["kind"] == "expired"

    def test_bad_signature(self, client):
        other = CredentialMinter(make_settings(JWT_SECRET="x" * 40))
        forged = other.mint(TEST_CLAIMS.project())

        response = client.get("/api/validate-token", headers={"Authorization": f"Bearer {forged}"})

        assert response.status_code == 401
        assert response.json()["kind"] == "signature_invalid"

    def test_malformed_authorization_header(self, client):
        response = client.get("/api/validate-token", headers={"Authorization": "Token abc"})

        assert response.status_code == 401
        assert response.json()["kind"] == "malformed"

    def test_post_with_token(self, client, token):
        response = client.post("/api/validate-token", json={"token": token})

        assert response.status_code == 200
        assert response.json()["user"]["email"] == TEST_CLAIMS.email

    def test_post_without_token(self, client):
        response = client.post("/api/validate-token", json={})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Token is required"}

    def test_user_info(self, client, auth_headers):
        response = client.get("/api/user-info", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["user"]["name"] == TEST_CLAIMS.name


class TestProducts:
    def test_catalogue(self, client):
        products = client.get("/api/products").json()["products"]

        assert [p["id"] for p in products] == ["productA", "productB"]
        assert products[1]["delivery"] == "handoff"
        assert "handoff_secret" not in products[1]

    def test_access_placeholder(self, client, auth_headers):
        response = client.get("/api/products/productB/access", headers=auth_headers)

        assert response.json() == {
            "success": True,
            "productId": "productB",
            "hasAccess": True,
            "permissions": ["productB:read", "productB:write"],
        }

    def test_access_requires_token(self, client):
        assert client.get("/api/products/productB/access").status_code == 401

    def test_access_unknown_product(self, client, auth_headers):
        assert client.get("/api/products/nope/access", headers=auth_headers).status_code == 404

    def test_login_url(self, client):
        response = client.post(
            "/api/products/productA/login", json={"returnTo": "https://a.example/dash"}
        )

        login_url = response.json()["loginUrl"]
        assert login_url.startswith("http://testserver/auth/login?")
        assert query_param(login_url, "productId") == "productA"
        assert query_param(login_url, "returnTo") == "https://a.example/dash"

    def test_login_url_rejects_unknown_return_host(self, client):
        response = client.post(
            "/api/products/productA/login", json={"returnTo": "https://evil.example/"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "returnTo host is not allowed"

    def test_login_url_defaults_to_product_base(self, client):
        login_url = client.post("/api/products/productB/login").json()["loginUrl"]
        assert query_param(login_url, "returnTo") == "https://b.example"

    def test_login_url_invalid_product(self, client):
        response = client.post("/api/products/nope/login", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid product ID"


class TestApiGlobalLogout:
    def test_returns_logout_url_and_clears_cookies(self, client, state):
        response = client.post("/api/global-logout", json={"returnTo": "https://a.example/"})

        data = response.json()
        assert query_param(data["logoutUrl"], "global") == "true"
        assert query_param(data["logoutUrl"], "returnTo") == "https://a.example/"
        assert data["connectedProducts"] == ["productA", "productB"]

        names = {c["name"] for c in parse_set_cookies(response)}
        assert set(state.distributor.cookie_names()) <= names

    def test_unknown_return_host_falls_back_to_default(self, client):
        response = client.post("/api/global-logout", json={"returnTo": "https://evil.example/"})

        assert query_param(response.json()["logoutUrl"], "returnTo") == "http://testserver/"


class TestUserRoutes:
    def test_profile(self, client, auth_headers):
        user = client.get("/user/profile", headers=auth_headers).json()["user"]
        assert user["id"] == TEST_CLAIMS.sub

    def test_permissions(self, client, auth_headers):
        data = client.get("/user/permissions", headers=auth_headers).json()
        assert data["permissions"] == ["read:all", "write:all"]
        assert data["roles"] == ["admin"]

    def test_products(self, client, auth_headers):
        products = client.get("/user/products", headers=auth_headers).json()["products"]
        assert {p["id"] for p in products} == {"productA", "productB"}


class TestSystem:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["service"] == "sso-gateway"

    def test_root(self, client):
        assert client.get("/").json()["endpoints"]["login"] == "/auth/login"
