"""
Configuration module for the SSO Gateway.

This module uses Pydantic Settings to load and validate environment variables
for the OIDC identity provider, internal token signing, cookie distribution,
server-side sessions and the product catalogue.

Environment variables are loaded from .env file or system environment.
"""

import json
from functools import lru_cache
from typing import List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class ProductConfig(BaseModel):
    """
    A product application the broker can deliver credentials to.

    ``delivery`` selects between direct-cookie delivery (token in a cookie and
    on the product's SSO-callback URL) and back-channel handoff (token sent
    server-to-server, browser only sees a one-time code).
    """

    id: str = Field(..., min_length=1, description="Product identifier used in ?productId=")
    name: Optional[str] = Field(None, description="Display name")
    base_url: HttpUrl = Field(..., description="Public base URL of the product")
    delivery: Literal["cookie", "handoff"] = Field(default="cookie")
    cookie_domain: Optional[str] = Field(
        None,
        description="Cookie domain for direct delivery (e.g. 'a.example.com')",
    )
    client_cookie: bool = Field(
        default=False,
        description="Also set a client-visible (non http-only) token cookie",
    )
    sso_callback_path: str = Field(default="/auth/sso-callback")
    handoff_callback_path: str = Field(default="/auth/callback")
    session_endpoint: str = Field(
        default="/auth/sso-session",
        description="Product endpoint that accepts the back-channel assertion",
    )
    logout_endpoint: Optional[str] = Field(
        None,
        description="Optional product endpoint notified on global logout",
    )
    handoff_secret: Optional[str] = Field(
        None,
        description="Pre-shared broker-to-product secret for handoff delivery",
    )
    cookie_aliases: List[str] = Field(default_factory=list)

    @field_validator("cookie_domain")
    @classmethod
    def strip_leading_dot(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lstrip(".").lower()
        return v or None

    @model_validator(mode="after")
    def check_handoff_secret(self) -> "ProductConfig":
        if self.delivery == "handoff":
            if not self.handoff_secret or len(self.handoff_secret) < 32:
                raise ValueError(
                    f"Product '{self.id}' uses handoff delivery and needs a "
                    "handoff_secret of at least 32 characters"
                )
        return self

    @property
    def base_url_str(self) -> str:
        return str(self.base_url).rstrip("/")

    def url_for(self, path: str) -> str:
        """Resolve an endpoint that may be given as a path or an absolute URL."""
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url_str}/{path.lstrip('/')}"

    @property
    def host(self) -> str:
        return urlsplit(self.base_url_str).hostname or ""


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the identity provider, token minting, cookie
    scopes, sessions and products is defined here.
    """

    # =========================================================================
    # Broker
    # =========================================================================

    BASE_URL: HttpUrl = Field(
        ...,
        description="Public URL of the gateway (e.g., https://sso.example.com)",
    )

    ENVIRONMENT: str = Field(
        default="development",
        description="Deployment environment: development or production",
    )

    DEFAULT_RETURN_TO: Optional[str] = Field(
        None,
        description="Fallback destination when no returnTo is pending",
    )

    RETURN_TO_HOSTS: Optional[str] = Field(
        None,
        description=(
            "Comma-separated extra hosts accepted in returnTo, besides the gateway, "
            "product hosts and COOKIE_ROOT_DOMAIN subdomains"
        ),
    )

    # =========================================================================
    # OIDC Identity Provider
    # =========================================================================

    OIDC_ISSUER: str = Field(
        default="",
        description="Issuer URL of the identity provider (e.g., https://tenant.auth0.com/)",
    )

    OIDC_CLIENT_ID: str = Field(default="")

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (optional for public clients)",
    )

    OIDC_AUDIENCE: Optional[str] = Field(None, description="API audience requested at login")

    OIDC_SCOPES: str = Field(default="openid profile email")

    OIDC_AUTHORIZE_PATH: str = Field(default="/authorize")
    OIDC_TOKEN_PATH: str = Field(default="/oauth/token")
    OIDC_JWKS_PATH: str = Field(default="/.well-known/jwks.json")
    OIDC_LOGOUT_PATH: str = Field(default="/oidc/logout")

    OIDC_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0, le=60)

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache IdP JWKS keys in seconds",
        ge=300,
        le=86400,
    )

    ROLES_CLAIM: str = Field(default="https://sso-gateway.com/roles")
    PERMISSIONS_CLAIM: str = Field(default="https://sso-gateway.com/permissions")

    # =========================================================================
    # Internal Token
    # =========================================================================

    # Length checked by validate_configuration
    JWT_SECRET: str = Field(
        default="",
        description="Secret key for signing internal tokens (at least 32 characters)",
    )

    JWT_ALGORITHM: str = Field(default="HS256")

    JWT_ISSUER: str = Field(default="sso-gateway")

    JWT_TTL_MINUTES: int = Field(
        default=1440,
        description="Internal token lifetime in minutes",
        ge=5,
        le=10080,
    )

    # =========================================================================
    # Sessions
    # =========================================================================

    SESSION_COOKIE_NAME: str = Field(default="sso_session")

    SESSION_TTL_SECONDS: int = Field(default=86400, ge=60)

    SESSION_BACKEND: str = Field(default="memory")

    REDIS_URL: Optional[str] = Field(None)

    # =========================================================================
    # Cookies
    # =========================================================================

    COOKIE_NAME: str = Field(default="access_token")

    CLIENT_COOKIE_NAME: str = Field(default="sso_token")

    COOKIE_ALIASES: str = Field(
        default="auth_token,id_token",
        description="Comma-separated legacy cookie names cleared on logout",
    )

    COOKIE_ROOT_DOMAIN: Optional[str] = Field(
        None,
        description="Shared parent domain for product subdomains (e.g., example.com)",
    )

    # =========================================================================
    # Products and Handoff
    # =========================================================================

    PRODUCTS: List[ProductConfig] = Field(default_factory=list)

    HANDOFF_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0, le=30)

    HANDOFF_ASSERTION_TTL_SECONDS: int = Field(default=300, ge=30, le=900)

    HANDOFF_TICKET_TTL_SECONDS: int = Field(default=300, ge=30, le=900)

    # =========================================================================
    # Server
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(None)

    LOG_LEVEL: str = Field(default="INFO")

    HOST: str = Field(default="0.0.0.0")

    PORT: int = Field(default=3000, ge=1, le=65535)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def base_url_str(self) -> str:
        return str(self.BASE_URL).rstrip("/")

    @property
    def callback_url(self) -> str:
        """Deterministic, pre-registered redirect URI for the IdP."""
        return f"{self.base_url_str}/auth/callback"

    @property
    def default_return_to(self) -> str:
        return self.DEFAULT_RETURN_TO or f"{self.base_url_str}/"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def broker_host(self) -> str:
        return urlsplit(self.base_url_str).hostname or ""

    @property
    def oidc_base_url(self) -> str:
        return self.OIDC_ISSUER.rstrip("/")

    @property
    def token_ttl_seconds(self) -> int:
        return self.JWT_TTL_MINUTES * 60

    @property
    def root_cookie_domain(self) -> Optional[str]:
        if not self.COOKIE_ROOT_DOMAIN:
            return None
        return self.COOKIE_ROOT_DOMAIN.strip().lstrip(".").lower() or None

    @property
    def cookie_aliases_list(self) -> List[str]:
        return [name.strip() for name in self.COOKIE_ALIASES.split(",") if name.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        if not self.ALLOWED_ORIGINS:
            return []
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def return_to_hosts(self) -> List[str]:
        hosts = [self.broker_host]
        hosts.extend(product.host for product in self.PRODUCTS)
        if self.RETURN_TO_HOSTS:
            hosts.extend(h.strip().lower() for h in self.RETURN_TO_HOSTS.split(",") if h.strip())
        return [h for h in dict.fromkeys(hosts) if h]

    def is_allowed_return_host(self, host: str) -> bool:
        """Redirect targets: known hosts, plus anything under COOKIE_ROOT_DOMAIN."""
        host = host.lower()
        if host in self.return_to_hosts:
            return True
        root = self.root_cookie_domain
        return bool(root) and (host == root or host.endswith("." + root))

    def get_product(self, product_id: Optional[str]) -> Optional[ProductConfig]:
        if not product_id:
            return None
        for product in self.PRODUCTS:
            if product.id == product_id:
                return product
        return None

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("development", "production"):
            raise ValueError(f"ENVIRONMENT must be development or production, got: {v}")
        return v

    @field_validator("SESSION_BACKEND")
    @classmethod
    def validate_session_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError(f"SESSION_BACKEND must be memory or redis, got: {v}")
        return v

    @field_validator("PRODUCTS")
    @classmethod
    def validate_unique_products(cls, v: List[ProductConfig]) -> List[ProductConfig]:
        seen = set()
        for product in v:
            if product.id in seen:
                raise ValueError(f"Duplicate product id: '{product.id}'")
            seen.add(product.id)
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> List[str]:
    """
    Validate critical configuration settings.

    Called by the application factory so that a broken deployment fails
    at startup instead of on the first login.

    Returns:
        List of non-fatal warnings.

    Raises:
        ConfigurationError: If a setting required by the broker protocol
                            is missing.
    """
    errors = []
    warnings = []

    if len(settings.JWT_SECRET) < 32:
        errors.append("JWT_SECRET is missing or too short (minimum 32 characters)")

    if not settings.OIDC_ISSUER or not settings.OIDC_CLIENT_ID:
        errors.append("OIDC_ISSUER and OIDC_CLIENT_ID are required")

    if settings.SESSION_BACKEND == "redis" and not settings.REDIS_URL:
        errors.append("SESSION_BACKEND=redis requires REDIS_URL")

    if errors:
        raise ConfigurationError("; ".join(errors))

    if not settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is not set (required for confidential clients)")

    if settings.SESSION_BACKEND == "memory" and settings.is_production:
        warnings.append(
            "In-memory session store in production: pending logins and handoff "
            "tickets are lost on restart and not shared between instances"
        )

    if settings.is_production and not settings.base_url_str.startswith("https://"):
        warnings.append("BASE_URL is not HTTPS in production; secure cookies will not be sent")

    return warnings


def describe_configuration(settings: Settings) -> dict:
    """Non-secret configuration summary for operators."""
    return {
        "base_url": settings.base_url_str,
        "environment": settings.ENVIRONMENT,
        "callback_url": settings.callback_url,
        "oidc_issuer": settings.OIDC_ISSUER,
        "jwt_issuer": settings.JWT_ISSUER,
        "jwt_ttl_minutes": settings.JWT_TTL_MINUTES,
        "session_backend": settings.SESSION_BACKEND,
        "cookie_root_domain": settings.root_cookie_domain,
        "products": [
            {"id": p.id, "delivery": p.delivery, "base_url": p.base_url_str}
            for p in settings.PRODUCTS
        ],
    }


if __name__ == "__main__":
    """
    Validate your .env configuration:
        python -m sso_gateway.app.config
    """
    try:
        config = get_settings()
        warnings = validate_configuration(config)
    except Exception as e:
        print(f"Configuration error: {e}")
        raise SystemExit(1)

    print(json.dumps(describe_configuration(config), indent=2))
    for warning in warnings:
        print(f"warning: {warning}")
