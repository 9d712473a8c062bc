"""
Login, callback and logout flows.

These three classes are the gateway's state machine. Routes stay thin: they
parse the request, hand the session to a flow and return whatever response
the flow decides on.

Session keys written here:
- pending_login: PendingLogin, consumed once by the callback
- user: IdentityClaims of the authenticated user
- idp_sid: IdP session id used for federated logout
"""

import asyncio
import logging
from typing import Any, Dict, MutableMapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import HTTPException, status
from fastapi.responses import RedirectResponse

from ..config import ProductConfig, Settings
from ..exceptions import StateError, UpstreamError
from ..models import IdentityClaims, PendingLogin
from ..sessions import ServerSession
from .cookies import CookieDistributor
from .identity import USER_KEY, IdentityProvider
from .tokens import CredentialMinter

logger = logging.getLogger(__name__)

PENDING_LOGIN_KEY = "pending_login"
IDP_SID_KEY = "idp_sid"


# =============================================================================
# URL Helpers
# =============================================================================

def validate_return_to(return_to: Optional[str], settings: Settings) -> Optional[str]:
    """
    Accept only absolute http(s) URLs on a known host as redirect targets.

    Known hosts are the gateway, configured products, RETURN_TO_HOSTS and
    anything under COOKIE_ROOT_DOMAIN.

    Returns:
        The URL, or None when not supplied

    Raises:
        HTTPException: 400 if the URL is relative, uses another scheme or
                       points at an unknown host
    """
    if not return_to:
        return None

    parts = urlsplit(return_to)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="returnTo must be an absolute http(s) URL",
        )
    if not settings.is_allowed_return_host(parts.hostname):
        logger.warning(f"Rejected returnTo host: {parts.hostname}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="returnTo host is not allowed",
        )
    return return_to


def safe_return_to(return_to: Optional[str], settings: Settings) -> str:
    """Like validate_return_to, but falls back to the default instead of failing."""
    try:
        return validate_return_to(return_to, settings) or settings.default_return_to
    except HTTPException:
        logger.warning("Ignoring invalid returnTo")
        return settings.default_return_to


def append_query(url: str, params: Dict[str, str]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Login Initiator
# =============================================================================

class LoginInitiator:
    def __init__(self, settings: Settings, idp: IdentityProvider):
        self._settings = settings
        self._idp = idp

    def resolve_product(self, product_id: Optional[str]) -> Optional[ProductConfig]:
        if not product_id:
            return None
        product = self._settings.get_product(product_id)
        if product is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown product: {product_id}",
            )
        return product

    def start(
        self,
        session: MutableMapping[str, Any],
        product_id: Optional[str] = None,
        return_to: Optional[str] = None,
    ) -> str:
        """
        Remember where the caller wants to go and build the IdP redirect.

        Repeated calls before the callback overwrite the pending login.

        Returns:
            IdP authorization URL
        """
        product = self.resolve_product(product_id)
        target = validate_return_to(return_to, self._settings)
        if target is None:
            target = product.base_url_str if product else self._settings.default_return_to

        pending = PendingLogin(product_id=product.id if product else None, return_to=target)
        session[PENDING_LOGIN_KEY] = pending.model_dump(by_alias=True)

        logger.info("Login initiated", extra={"product_id": pending.product_id})

        return self._idp.authorization_url(session, self._settings.callback_url)


# =============================================================================
# Callback Processor
# =============================================================================

class CallbackProcessor:
    """
    Turns an IdP authorization result into a delivered credential.

    ``broker`` is the HandoffBroker used for back-channel products.
    """

    def __init__(
        self,
        settings: Settings,
        idp: IdentityProvider,
        minter: CredentialMinter,
        distributor: CookieDistributor,
        broker,
    ):
        self._settings = settings
        self._idp = idp
        self._minter = minter
        self._distributor = distributor
        self._broker = broker

    def take_pending(self, session: MutableMapping[str, Any]) -> PendingLogin:
        """Consume the pending login; a missing one falls back to the default destination."""
        data = session.pop(PENDING_LOGIN_KEY, None)
        if not data:
            logger.info("Callback without pending login, using default destination")
            return PendingLogin(return_to=self._settings.default_return_to)
        return PendingLogin.model_validate(data)

    async def complete(
        self,
        session: ServerSession,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> RedirectResponse:
        """
        Handle /auth/callback.

        StateError and UpstreamError become a redirect to the pending
        destination with ``?error=``; anything else propagates.
        """
        pending = self.take_pending(session)

        if error:
            logger.warning(f"IdP returned an error: {error}", extra={"upstream": "idp"})
            return redirect(append_query(pending.return_to, {"error": error}))

        if not code:
            return redirect(append_query(pending.return_to, {"error": "missing_code"}))

        try:
            claims = await self._idp.exchange_code(session, code, state)
        except StateError as e:
            logger.warning(f"Callback state rejected: {e}")
            return redirect(append_query(pending.return_to, {"error": "invalid_state"}))
        except UpstreamError as e:
            logger.error(f"Callback failed upstream: {e}", extra={"upstream": e.upstream})
            return redirect(append_query(pending.return_to, {"error": "login_failed"}))

        return await self.deliver(session, claims, pending)

    async def deliver(
        self,
        session: ServerSession,
        claims: IdentityClaims,
        pending: PendingLogin,
    ) -> RedirectResponse:
        product = self._settings.get_product(pending.product_id)
        payload = claims.project(product.id if product else None)

        # Pre-login session id must not survive authentication
        session.regenerate()
        session[USER_KEY] = claims.model_dump()
        session[IDP_SID_KEY] = claims.sid

        if product is not None and product.delivery == "handoff":
            try:
                location = await self._broker.deliver(product, payload)
            except UpstreamError:
                return redirect(append_query(pending.return_to, {"error": "handoff_failed"}))
            return redirect(location)

        token = self._minter.mint(payload)

        if product is not None:
            location = append_query(product.url_for(product.sso_callback_path), {"token": token})
        else:
            location = pending.return_to

        response = redirect(location)
        self._distributor.set_token(
            response,
            token,
            self._distributor.domain_key_for(product),
            client_visible=bool(product and product.client_cookie),
        )

        logger.info(
            "Login completed",
            extra={"user_id": claims.sub, "product_id": pending.product_id},
        )
        return response


# =============================================================================
# Global Logout Coordinator
# =============================================================================

class GlobalLogoutCoordinator:
    """
    Ends the broker session and clears every cookie the gateway may have set.

    Federated logout and product notifications are best effort; the browser
    is redirected to ``returnTo`` whatever they return. Handoff products
    without a logout endpoint keep their own session until it expires.
    """

    def __init__(
        self,
        settings: Settings,
        idp: IdentityProvider,
        distributor: CookieDistributor,
        broker,
    ):
        self._settings = settings
        self._idp = idp
        self._distributor = distributor
        self._broker = broker

    @staticmethod
    def linkage(session: MutableMapping[str, Any]) -> Dict[str, Any]:
        user = session.get(USER_KEY) or {}
        return {"sub": user.get("sub"), "sid": session.get(IDP_SID_KEY)}

    def connected_products(self):
        return [product.id for product in self._settings.PRODUCTS]

    async def logout(
        self,
        session,
        return_to: Optional[str] = None,
        global_logout: bool = False,
    ) -> RedirectResponse:
        target = safe_return_to(return_to, self._settings)
        response = redirect(target)
        await self.end_session(session, response, global_logout)
        return response

    async def end_session(self, session, response, global_logout: bool) -> Dict[str, Any]:
        """
        Destroy the session and write cookie clears onto ``response``.

        Returns:
            Summary of what was done
        """
        linkage = self.linkage(session)
        session.destroy()
        cleared = self._distributor.clear_all(response)

        summary: Dict[str, Any] = {"cookiesCleared": cleared, "federated": False, "notified": []}
        if global_logout:
            summary["federated"] = await self._federated_logout(linkage)
            summary["notified"] = await self._notify_products(linkage)

        logger.info(
            "Logout completed",
            extra={"user_id": linkage.get("sub"), "global": global_logout},
        )
        return summary

    async def _federated_logout(self, linkage: Dict[str, Any]) -> bool:
        try:
            await self._idp.federated_logout(linkage)
        except Exception as e:
            logger.warning(f"Federated logout failed: {e}", extra={"upstream": "idp"})
            return False
        return True

    async def _notify_products(self, linkage: Dict[str, Any]):
        products = [
            p for p in self._settings.PRODUCTS
            if p.delivery == "handoff" and p.logout_endpoint
        ]
        if not products:
            return []

        results = await asyncio.gather(
            *(self._broker.notify_logout(p, linkage) for p in products),
            return_exceptions=True,
        )
        notified = []
        for product, result in zip(products, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Logout notification error: {result}",
                    extra={"upstream": f"product:{product.id}"},
                )
            elif result:
                notified.append(product.id)
        return notified
