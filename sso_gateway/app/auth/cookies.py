"""
Cookie Distribution
===================

Decides, per logical domain, which cookie names and attributes are used to
set or clear the internal token.

Scope policy:
    - "host": no Domain attribute (host-only cookie on the gateway itself)
    - "root": COOKIE_ROOT_DOMAIN, shared with product subdomains
    - "product:<id>": a product's own cookie_domain

Each domain has an http-only scope and a paired client-readable scope.
Domains are written without a leading dot. A domain outside the gateway's
registrable domain always gets SameSite=None; Secure. Same-site scopes use
SameSite=Lax, with Secure in production or when BASE_URL is https.

Clearing replays exactly the attributes used when setting; browsers ignore
a clear whose Domain/Path/SameSite/Secure differ from the live cookie.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from starlette.responses import Response

from ..config import ProductConfig, Settings

logger = logging.getLogger(__name__)

HOST_SCOPE = "host"
ROOT_SCOPE = "root"


@dataclass(frozen=True)
class CookieScope:
    """The (domain, path, flags) tuple a cookie is attached to."""

    domain: Optional[str]
    path: str
    http_only: bool
    secure: bool
    same_site: str
    max_age: int

    def attributes(self) -> Dict[str, Any]:
        """Attributes shared by set and clear."""
        return {
            "domain": self.domain,
            "path": self.path,
            "httponly": self.http_only,
            "secure": self.secure,
            "samesite": self.same_site,
        }


def _within(domain: str, parent: str) -> bool:
    return domain == parent or domain.endswith("." + parent)


def product_scope_key(product: ProductConfig) -> str:
    return f"product:{product.id}"


class CookieDistributor:
    """Sets and clears token cookies using a static scope table."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._token_name = settings.COOKIE_NAME
        self._client_name = settings.CLIENT_COOKIE_NAME
        self._max_age = settings.token_ttl_seconds
        self._same_site_secure = settings.is_production or settings.base_url_str.startswith("https://")
        self._site_domain = settings.root_cookie_domain or settings.broker_host
        self._domains = self._build_domains(settings)

    # ------------------------------------------------------------------
    # Scope table
    # ------------------------------------------------------------------

    def _build_domains(self, settings: Settings) -> Dict[str, Optional[str]]:
        domains: Dict[str, Optional[str]] = {HOST_SCOPE: None}
        if settings.root_cookie_domain:
            domains[ROOT_SCOPE] = settings.root_cookie_domain
        for product in settings.PRODUCTS:
            if product.cookie_domain:
                domains[product_scope_key(product)] = product.cookie_domain
        return domains

    def _flags_for(self, domain: Optional[str]) -> Tuple[str, bool]:
        if domain is None or _within(domain, self._site_domain):
            return "lax", self._same_site_secure
        return "none", True

    def scopes_for(self, domain_key: str) -> Tuple[CookieScope, CookieScope]:
        """Return (http-only scope, client-visible scope) for a logical domain."""
        if domain_key not in self._domains:
            raise KeyError(f"Unknown cookie domain: {domain_key}")
        domain = self._domains[domain_key]
        same_site, secure = self._flags_for(domain)
        http_only = CookieScope(domain, "/", True, secure, same_site, self._max_age)
        client = CookieScope(domain, "/", False, secure, same_site, self._max_age)
        return http_only, client

    @property
    def domain_keys(self) -> List[str]:
        return list(self._domains)

    def all_scopes(self) -> List[CookieScope]:
        scopes: List[CookieScope] = []
        for key in self._domains:
            scopes.extend(self.scopes_for(key))
        return scopes

    def cookie_names(self) -> List[str]:
        """Every token cookie name the gateway has ever issued."""
        names = [self._token_name, self._client_name]
        names.extend(self._settings.cookie_aliases_list)
        for product in self._settings.PRODUCTS:
            names.extend(product.cookie_aliases)
        return list(dict.fromkeys(names))

    def domain_key_for(self, product: Optional[ProductConfig]) -> str:
        """Pick the scope used for direct delivery to a product."""
        if product is not None and product.cookie_domain:
            return product_scope_key(product)
        if ROOT_SCOPE in self._domains:
            return ROOT_SCOPE
        return HOST_SCOPE

    # ------------------------------------------------------------------
    # Set / clear
    # ------------------------------------------------------------------

    def set_cookie(self, response: Response, name: str, value: str, scope: CookieScope) -> None:
        response.set_cookie(name, value, max_age=scope.max_age, **scope.attributes())

    def clear_cookie(self, response: Response, name: str, scope: CookieScope) -> None:
        response.set_cookie(name, "", max_age=0, expires=0, **scope.attributes())

    def set_token(
        self,
        response: Response,
        token: str,
        domain_key: str,
        client_visible: bool = False,
    ) -> None:
        """
        Set the token cookie on a domain, plus the client-readable pair when
        the product needs to read the token from script.
        """
        http_only, client = self.scopes_for(domain_key)
        self.set_cookie(response, self._token_name, token, http_only)
        if client_visible:
            self.set_cookie(response, self._client_name, token, client)

        logger.debug(
            "Token cookie set",
            extra={"domain": http_only.domain, "client_visible": client_visible},
        )

    def clear_all(self, response: Response) -> int:
        """
        Clear every known cookie name under every known scope.

        Over-inclusive on purpose: the gateway cannot know which products the
        browser holds cookies for.

        Returns:
            Number of clear instructions written
        """
        count = 0
        for scope in self.all_scopes():
            for name in self.cookie_names():
                self.clear_cookie(response, name, scope)
                count += 1
        return count
