"""
Internal Token Minting and Validation
=====================================

The CredentialMinter turns projected identity claims into a signed,
time-bounded internal token. The TokenValidator is the single place that
decides whether a token is acceptable; every protected endpoint and every
product-side check goes through it.

Tokens are stateless: validity is decided by signature, issuer, audience
(when requested) and ``exp``. There is no revocation list.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import jwt
from jwt.exceptions import (
    DecodeError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
    MissingRequiredClaimError,
)
from starlette.requests import Request

from ..config import Settings
from ..exceptions import ConfigurationError, TokenError, TokenErrorKind

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["exp", "iat", "sub", "iss"]


# =============================================================================
# Token Creation
# =============================================================================

class CredentialMinter:
    """
    Signs internal tokens.

    Every call is a fresh issuance: ``iat`` comes from the clock and each token
    carries a unique ``jti``, so identical input never yields the same token.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        if not settings.JWT_SECRET:
            raise ConfigurationError("JWT_SECRET not configured")
        self._secret = settings.JWT_SECRET
        self._algorithm = settings.JWT_ALGORITHM
        self._issuer = settings.JWT_ISSUER
        self._ttl_seconds = settings.token_ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def mint(
        self,
        claims: Mapping[str, Any],
        audience: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        """
        Create a signed token.

        Args:
            claims: Projected user claims; must include 'sub'
            audience: Product id for product-scoped tokens
            ttl_seconds: Override the configured lifetime

        Returns:
            Encoded JWT string
        """
        if not claims.get("sub"):
            raise ValueError("Missing required claim: 'sub' (subject/user ID)")

        payload = dict(claims)
        now = int(self._clock())
        payload.update({
            "iss": self._issuer,
            "iat": now,
            "exp": now + (ttl_seconds or self._ttl_seconds),
            "jti": uuid.uuid4().hex,
        })
        if audience:
            payload["aud"] = audience

        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)

        logger.debug(
            "Minted internal token",
            extra={"user_id": payload["sub"], "audience": audience},
        )
        return token


# =============================================================================
# Token Verification
# =============================================================================

class TokenValidator:
    """
    Verifies internal tokens and recovers their claims.

    Expiry is checked against the injected clock: a token is accepted while
    ``now < exp`` and rejected from ``exp`` onwards.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ):
        if not settings.JWT_SECRET:
            raise ConfigurationError("JWT_SECRET not configured")
        self._secret = settings.JWT_SECRET
        self._algorithm = settings.JWT_ALGORITHM
        self._issuer = settings.JWT_ISSUER
        self._clock = clock
        self._leeway = leeway_seconds

    def validate(self, token: Optional[str], audience: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify a token.

        Args:
            token: Encoded JWT
            audience: Expected audience; when None the aud claim is not checked

        Returns:
            Decoded claims

        Raises:
            TokenError: With the failure kind
        """
        if not token:
            raise TokenError(TokenErrorKind.MISSING, "No authentication token provided")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=audience,
                options={
                    "verify_signature": True,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "verify_aud": audience is not None,
                    "verify_iss": True,
                    "require": REQUIRED_CLAIMS,
                },
            )
        except InvalidSignatureError:
            raise TokenError(TokenErrorKind.SIGNATURE_INVALID, "Token signature is invalid")
        except DecodeError:
            raise TokenError(TokenErrorKind.MALFORMED, "Token is malformed")
        except (InvalidIssuerError, InvalidAudienceError, MissingRequiredClaimError) as e:
            raise TokenError(TokenErrorKind.CLAIMS_INVALID, f"Invalid token claims: {e}")
        except InvalidTokenError as e:
            raise TokenError(TokenErrorKind.MALFORMED, f"Invalid token: {e}")

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenError(TokenErrorKind.CLAIMS_INVALID, "Token 'exp' must be numeric")

        if self._clock() >= exp + self._leeway:
            raise TokenError(TokenErrorKind.EXPIRED, "Token has expired")

        return claims


# =============================================================================
# Helper Functions
# =============================================================================

def extract_token_from_header(authorization: Optional[str]) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Raises:
        TokenError: If a header is present but not in 'Bearer <token>' form
    """
    if not authorization:
        return None

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise TokenError(
            TokenErrorKind.MALFORMED,
            "Invalid Authorization header format. Expected: 'Bearer <token>'",
        )

    return parts[1]


def extract_token(request: Request, cookie_names: Iterable[str]) -> Optional[str]:
    """
    Find the caller's token: Authorization header, then cookies, then ?token=.
    """
    token = extract_token_from_header(request.headers.get("Authorization"))
    if token:
        return token

    for name in cookie_names:
        value = request.cookies.get(name)
        if value:
            return value

    return request.query_params.get("token") or None


__all__ = [
    "CredentialMinter",
    "TokenValidator",
    "extract_token",
    "extract_token_from_header",
]
