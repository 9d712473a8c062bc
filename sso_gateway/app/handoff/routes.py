"""
Product-facing handoff endpoint.

A product's callback receives ``?code=`` from the browser. If it has not
already consumed the assertion sent over the back channel, its server calls
POST /handoff/redeem with the code and its shared secret to collect the
product token. A code is honored exactly once.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..dependencies import AppState, get_app_state, verify_product_secret
from ..models import RedeemRequest

logger = logging.getLogger(__name__)

handoff_router = APIRouter(prefix="/handoff", tags=["handoff"])


@handoff_router.post("/redeem")
async def redeem(
    body: RedeemRequest,
    x_internal_secret: Optional[str] = Header(None),
    state: AppState = Depends(get_app_state),
):
    product = state.settings.get_product(body.productId)
    if product is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown product: {body.productId}",
        )

    verify_product_secret(product, x_internal_secret)

    # StateError for reused/expired codes is rendered as 400 by the app
    ticket = await state.tickets.redeem(body.code, product.id)

    logger.info(
        "Handoff code redeemed",
        extra={"product_id": product.id, "user_id": ticket.claims.get("sub")},
    )

    return {
        "success": True,
        "productToken": ticket.product_token,
        "claims": ticket.claims,
        "expiresAt": datetime.fromtimestamp(ticket.expires_at, tz=timezone.utc).isoformat(),
    }
