"""
Back-Channel Handoff Broker
===========================

For products that must never receive the bearer token through the browser.

Protocol:
    1. Mint a token with ``aud`` set to the product id
    2. Generate a random one-time code (32 bytes, hex)
    3. Sign a short-lived assertion binding product token, claims, code,
       issuer and audience with the product's shared secret
    4. Record the HandoffTicket, then POST {assertion, claims, code} to the
       product's session endpoint with the shared secret header
    5. Return the product callback URL carrying only ``?code=``

Any failure of the product call raises UpstreamError. No retry; the user
recovers by logging in again.
"""

import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt

from ..config import ProductConfig, Settings
from ..exceptions import UpstreamError
from ..models import HandoffTicket
from ..auth.tokens import CredentialMinter
from .store import HandoffTicketStore

logger = logging.getLogger(__name__)

INTERNAL_SECRET_HEADER = "X-Internal-Secret"
ASSERTION_ALGORITHM = "HS256"


def new_handoff_code() -> str:
    return secrets.token_hex(32)


class HandoffBroker:
    def __init__(
        self,
        settings: Settings,
        minter: CredentialMinter,
        tickets: HandoffTicketStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._issuer = settings.JWT_ISSUER
        self._timeout = settings.HANDOFF_TIMEOUT_SECONDS
        self._assertion_ttl = settings.HANDOFF_ASSERTION_TTL_SECONDS
        self._minter = minter
        self._tickets = tickets
        self._transport = transport
        self._clock = clock

    def build_assertion(
        self,
        product: ProductConfig,
        product_token: str,
        claims: Dict[str, Any],
        code: str,
    ) -> str:
        """Sign the server-to-server assertion with the product's shared secret."""
        now = int(self._clock())
        payload = {
            "iss": self._issuer,
            "aud": product.id,
            "iat": now,
            "exp": now + self._assertion_ttl,
            "code": code,
            "product_token": product_token,
            "claims": claims,
        }
        return jwt.encode(payload, product.handoff_secret, algorithm=ASSERTION_ALGORITHM)

    async def deliver(self, product: ProductConfig, claims: Dict[str, Any]) -> str:
        """
        Establish the user's session at the product over the back channel.

        Args:
            product: Handoff-mode product
            claims: Projected user claims

        Returns:
            Product callback URL carrying the one-time code

        Raises:
            UpstreamError: If the product does not acknowledge the session
        """
        upstream = f"product:{product.id}"

        product_token = self._minter.mint(claims, audience=product.id)
        code = new_handoff_code()
        assertion = self.build_assertion(product, product_token, claims, code)

        ticket = HandoffTicket(
            code=code,
            product_id=product.id,
            product_token=product_token,
            claims=claims,
            expires_at=self._tickets.expiry(),
        )
        # Stored first so the product may redeem from inside its own handler
        await self._tickets.put(ticket)

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    product.url_for(product.session_endpoint),
                    json={"assertion": assertion, "claims": claims, "code": code},
                    headers={INTERNAL_SECRET_HEADER: product.handoff_secret},
                )
        except httpx.TimeoutException:
            await self._tickets.discard(code)
            logger.error("Handoff timed out", extra={"upstream": upstream})
            raise UpstreamError("Product session endpoint timed out", upstream=upstream)
        except httpx.HTTPError as e:
            await self._tickets.discard(code)
            logger.error(f"Handoff request failed: {e}", extra={"upstream": upstream})
            raise UpstreamError(f"Product session endpoint unreachable: {e}", upstream=upstream)

        if not response.is_success:
            await self._tickets.discard(code)
            logger.error(
                "Handoff rejected by product",
                extra={"upstream": upstream, "status_code": response.status_code},
            )
            raise UpstreamError(
                "Product rejected the session handoff",
                upstream=upstream,
                status_code=response.status_code,
            )

        logger.info(
            "Handoff session established",
            extra={"upstream": upstream, "user_id": claims.get("sub")},
        )

        callback = product.url_for(product.handoff_callback_path)
        return f"{callback}?{urlencode({'code': code})}"

    async def notify_logout(self, product: ProductConfig, linkage: Dict[str, Any]) -> bool:
        """
        Tell a handoff product that the user logged out globally.

        Best effort: returns False instead of raising.
        """
        if not product.logout_endpoint:
            return False

        upstream = f"product:{product.id}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    product.url_for(product.logout_endpoint),
                    json={"sub": linkage.get("sub"), "sid": linkage.get("sid")},
                    headers={INTERNAL_SECRET_HEADER: product.handoff_secret},
                )
        except httpx.HTTPError as e:
            logger.warning(f"Logout notification failed: {e}", extra={"upstream": upstream})
            return False

        if not response.is_success:
            logger.warning(
                "Logout notification rejected",
                extra={"upstream": upstream, "status_code": response.status_code},
            )
            return False
        return True
