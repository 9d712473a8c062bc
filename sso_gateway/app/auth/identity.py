"""
Identity provider integration.

The gateway talks to the IdP through the ``IdentityProvider`` capability
instead of letting an auth middleware decorate every request. The OIDC
implementation handles:
- Building the authorization URL (state, nonce, PKCE S256)
- Exchanging the authorization code for tokens
- Fetching and caching the IdP JWKS and verifying the ID token
- Back-channel federated logout
"""

import base64
import hashlib
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, MutableMapping, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwk, jwt

from ..config import Settings
from ..exceptions import StateError, UpstreamError
from ..models import IdentityClaims

logger = logging.getLogger(__name__)

TRANSACTION_KEY = "oidc_transaction"
USER_KEY = "user"


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """Base64-URL-encoded SHA256 of the verifier (S256 method)."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# Capability Interface
# =============================================================================

class IdentityProvider(ABC):
    """What the login, callback and logout flows need from an IdP."""

    @abstractmethod
    def authorization_url(self, session: MutableMapping[str, Any], redirect_uri: str) -> str:
        """Start an authorization request and remember its transaction in the session."""

    @abstractmethod
    async def exchange_code(
        self,
        session: MutableMapping[str, Any],
        code: str,
        state: Optional[str],
    ) -> IdentityClaims:
        """Complete the authorization-code exchange and return verified claims."""

    def is_authenticated(self, session: MutableMapping[str, Any]) -> bool:
        return bool(session.get(USER_KEY))

    @abstractmethod
    async def federated_logout(self, linkage: Dict[str, Any]) -> None:
        """End the user's session at the IdP."""


# =============================================================================
# OIDC Implementation
# =============================================================================

class OIDCIdentityProvider(IdentityProvider):
    """
    Authorization-code flow against a standard OIDC provider.

    Args:
        settings: Gateway settings
        transport: Optional httpx transport (tests inject a MockTransport)
        clock: Time source for the JWKS cache
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=time.time,
    ):
        self._settings = settings
        self._transport = transport
        self._clock = clock
        self._timeout = settings.OIDC_TIMEOUT_SECONDS
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0

    def _endpoint(self, path: str) -> str:
        return f"{self._settings.oidc_base_url}/{path.lstrip('/')}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    def authorization_url(self, session: MutableMapping[str, Any], redirect_uri: str) -> str:
        settings = self._settings

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        code_verifier = generate_code_verifier()

        # Overwrites any earlier unfinished transaction in this session
        session[TRANSACTION_KEY] = {
            "state": state,
            "nonce": nonce,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
        }

        params = {
            "client_id": settings.OIDC_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": settings.OIDC_SCOPES,
            "state": state,
            "nonce": nonce,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        if settings.OIDC_AUDIENCE:
            params["audience"] = settings.OIDC_AUDIENCE

        return f"{self._endpoint(settings.OIDC_AUTHORIZE_PATH)}?{urlencode(params)}"

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        session: MutableMapping[str, Any],
        code: str,
        state: Optional[str],
    ) -> IdentityClaims:
        transaction = session.pop(TRANSACTION_KEY, None)
        if not transaction:
            raise StateError("No authorization request in progress for this session")
        if not state or state != transaction.get("state"):
            raise StateError("Invalid state parameter")

        token_response = await self._exchange_code_for_tokens(
            code=code,
            redirect_uri=transaction["redirect_uri"],
            code_verifier=transaction["code_verifier"],
        )

        id_token = token_response.get("id_token")
        if not id_token:
            raise UpstreamError("Token response missing id_token", upstream="idp")

        claims = await self.verify_id_token(id_token)

        if claims.get("nonce") != transaction["nonce"]:
            raise StateError("Nonce mismatch")

        return IdentityClaims.from_oidc(
            claims,
            roles_claim=self._settings.ROLES_CLAIM,
            permissions_claim=self._settings.PERMISSIONS_CLAIM,
        )

    async def _exchange_code_for_tokens(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> Dict[str, Any]:
        settings = self._settings

        payload = {
            "client_id": settings.OIDC_CLIENT_ID,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        if settings.OIDC_CLIENT_SECRET:
            payload["client_secret"] = settings.OIDC_CLIENT_SECRET

        try:
            async with self._client() as client:
                response = await client.post(
                    self._endpoint(settings.OIDC_TOKEN_PATH),
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Token exchange request failed: {e}", extra={"upstream": "idp"})
            raise UpstreamError(f"Token exchange failed: {e}", upstream="idp")

        if not response.is_success:
            error_msg = "Token exchange failed"
            if response.headers.get("content-type", "").startswith("application/json"):
                error_data = response.json()
                error_msg = error_data.get("error_description") or error_data.get("error") or error_msg
            logger.error(
                f"Token exchange rejected: {error_msg}",
                extra={"upstream": "idp", "status_code": response.status_code},
            )
            raise UpstreamError(error_msg, upstream="idp", status_code=response.status_code)

        return response.json()

    # ------------------------------------------------------------------
    # ID token verification
    # ------------------------------------------------------------------

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the IdP JWKS, cached for JWKS_CACHE_SECONDS.

        Raises:
            UpstreamError: If the JWKS endpoint is unreachable or invalid
        """
        now = self._clock()
        if (
            not force_refresh
            and self._jwks
            and (now - self._jwks_fetched_at) < self._settings.JWKS_CACHE_SECONDS
        ):
            return self._jwks

        try:
            async with self._client() as client:
                response = await client.get(self._endpoint(self._settings.OIDC_JWKS_PATH))
                response.raise_for_status()
                jwks_data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"JWKS fetch failed: {e}", extra={"upstream": "idp"})
            raise UpstreamError(f"Unable to fetch JWKS: {e}", upstream="idp")

        if "keys" not in jwks_data:
            raise UpstreamError("Invalid JWKS response: missing 'keys' field", upstream="idp")

        self._jwks = jwks_data
        self._jwks_fetched_at = now
        return jwks_data

    @staticmethod
    def _signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        kid = jwt.get_unverified_header(token).get("kid")
        if not kid:
            raise JWTError("Token header missing 'kid' (Key ID)")
        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        return None

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        """
        Verify an ID token signature and standard claims.

        Raises:
            UpstreamError: If the token cannot be verified
        """
        settings = self._settings

        try:
            jwks = await self.fetch_jwks()
            signing_key = self._signing_key(id_token, jwks)
            if not signing_key:
                # Keys may have rotated
                jwks = await self.fetch_jwks(force_refresh=True)
                signing_key = self._signing_key(id_token, jwks)
                if not signing_key:
                    raise JWTError("Unable to find matching signing key in JWKS")

            public_key = jwk.construct(signing_key)
            return jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=["RS256"],
                audience=settings.OIDC_CLIENT_ID,
                issuer=settings.OIDC_ISSUER,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_jti": False,
                    "verify_at_hash": False,
                    "leeway": 10,
                },
            )
        except JWTError as e:
            logger.warning(f"ID token verification failed: {e}", extra={"upstream": "idp"})
            raise UpstreamError(f"ID token verification failed: {e}", upstream="idp")

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def federated_logout(self, linkage: Dict[str, Any]) -> None:
        """
        Ask the IdP to end its own session.

        ``linkage`` carries the IdP session id (``sid``) and subject captured
        at login.
        """
        settings = self._settings
        params = {"client_id": settings.OIDC_CLIENT_ID}
        if linkage.get("sid"):
            params["logout_hint"] = linkage["sid"]

        try:
            async with self._client() as client:
                response = await client.get(
                    self._endpoint(settings.OIDC_LOGOUT_PATH), params=params
                )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Federated logout failed: {e}", upstream="idp")

        # IdP logout endpoints usually answer with a redirect
        if response.status_code >= 400:
            raise UpstreamError(
                "Federated logout rejected",
                upstream="idp",
                status_code=response.status_code,
            )

        logger.info("Federated logout completed", extra={"user_id": linkage.get("sub")})
