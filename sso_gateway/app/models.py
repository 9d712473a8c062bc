"""
Data Models Module

This module defines Pydantic models for request/response validation
and the data the gateway keeps between requests.

Models are organized by functional area:
- Identity models (claims received from the IdP)
- Broker state (pending logins, handoff tickets)
- Request/response models for the HTTP surface
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Identity Models
# ============================================================================

class IdentityClaims(BaseModel):
    """
    IdP-issued facts about the user.

    Immutable once received; the gateway only projects a subset of it into
    the internal token.
    """

    model_config = ConfigDict(frozen=True)

    sub: str = Field(..., description="Subject identifier at the IdP")
    email: Optional[str] = Field(None)
    name: Optional[str] = Field(None)
    picture: Optional[str] = Field(None)
    email_verified: Optional[bool] = Field(None)
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    sid: Optional[str] = Field(None, description="IdP session id, used for federated logout")

    @classmethod
    def from_oidc(
        cls,
        claims: Dict[str, Any],
        roles_claim: str,
        permissions_claim: str,
    ) -> "IdentityClaims":
        """Build from verified ID token claims, reading namespaced role claims."""
        return cls(
            sub=claims.get("sub") or claims.get("oid"),
            email=claims.get("email"),
            name=claims.get("name") or claims.get("nickname"),
            picture=claims.get("picture"),
            email_verified=claims.get("email_verified"),
            roles=list(claims.get(roles_claim) or claims.get("roles") or []),
            permissions=list(claims.get(permissions_claim) or claims.get("permissions") or []),
            sid=claims.get("sid"),
        )

    def project(self, product_id: Optional[str] = None) -> Dict[str, Any]:
        """Project into the internal token payload."""
        payload: Dict[str, Any] = {
            "sub": self.sub,
            "email": self.email,
            "name": self.name,
            "picture": self.picture,
            "roles": list(self.roles),
            "permissions": list(self.permissions),
        }
        if product_id:
            payload["productId"] = product_id
        return payload


# ============================================================================
# Broker State
# ============================================================================

class PendingLogin(BaseModel):
    """Where the caller wanted to go when login started."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(None, alias="productId")
    return_to: str = Field(..., alias="returnTo")


class HandoffTicket(BaseModel):
    """Single-use code bound to a product-scoped token."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    product_id: str = Field(..., alias="productId")
    product_token: str = Field(..., alias="productToken")
    claims: Dict[str, Any] = Field(default_factory=dict)
    expires_at: float = Field(..., alias="expiresAt")


# ============================================================================
# Request/Response Models
# ============================================================================

class TokenRequest(BaseModel):
    """Request model for exchanging the gateway session for a token."""
    productId: Optional[str] = Field(None, description="Product the token is requested for")


class ValidateTokenRequest(BaseModel):
    token: Optional[str] = Field(None, description="Token to validate")


class ProductLoginRequest(BaseModel):
    returnTo: Optional[str] = Field(None, description="Destination after login")


class GlobalLogoutRequest(BaseModel):
    returnTo: Optional[str] = Field(None, description="Destination after logout")


class RedeemRequest(BaseModel):
    """Product-side request to redeem a one-time handoff code."""
    productId: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    success: bool = True
    accessToken: str
    tokenType: str = "Bearer"
    expiresIn: int = Field(..., description="Token lifetime in seconds")
    user: Dict[str, Any]


class UserProfile(BaseModel):
    """User profile extracted from a validated internal token."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    productId: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserProfile":
        return cls(
            id=claims["sub"],
            email=claims.get("email"),
            name=claims.get("name"),
            picture=claims.get("picture"),
            roles=claims.get("roles") or [],
            permissions=claims.get("permissions") or [],
            productId=claims.get("productId"),
        )


class TokenInfo(BaseModel):
    issuer: Optional[str] = None
    audience: Optional[str] = None
    issuedAt: datetime
    expiresAt: datetime

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "TokenInfo":
        return cls(
            issuer=claims.get("iss"),
            audience=claims.get("aud"),
            issuedAt=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expiresAt=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    success: bool = False
    error: str = Field(..., description="Error type or code")
    message: Optional[str] = Field(None, description="Human-readable error message")
    kind: Optional[str] = Field(None, description="Machine-readable token failure kind")
