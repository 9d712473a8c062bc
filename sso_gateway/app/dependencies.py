"""
Shared application state and FastAPI dependencies.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status

from .config import ProductConfig, Settings
from .auth.tokens import extract_token

logger = logging.getLogger(__name__)


class AppState:
    """
    Application state container.

    Built once by the app factory and stored on ``app.state.app_state``.
    """

    def __init__(self):
        self.settings: Settings = None
        self.session_store: Any = None
        self.identity_provider: Any = None
        self.minter: Any = None
        self.validator: Any = None
        self.distributor: Any = None
        self.tickets: Any = None
        self.handoff_broker: Any = None
        self.login_initiator: Any = None
        self.callback_processor: Any = None
        self.logout_coordinator: Any = None


def get_app_state(request: Request) -> AppState:
    return request.app.state.app_state


async def get_current_user(
    request: Request,
    state: AppState = Depends(get_app_state),
) -> Dict[str, Any]:
    """
    Validate the caller's internal token and return its claims.

    Token sources in order: Authorization header, token cookies, ?token=.

    Usage:
        @router.get("/protected")
        async def protected_route(user: dict = Depends(get_current_user)):
            return {"user_id": user["sub"]}

    Raises:
        TokenError: Rendered as 401 by the application's exception handler
    """
    settings = state.settings
    token = extract_token(request, [settings.COOKIE_NAME, settings.CLIENT_COOKIE_NAME])
    return state.validator.validate(token)


def verify_product_secret(product: ProductConfig, x_internal_secret: Optional[str]) -> None:
    """
    Check the broker-to-product shared secret sent by a product server.

    Raises:
        HTTPException: 403 for non-handoff products, 401 on mismatch
    """
    expected = product.handoff_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Product '{product.id}' is not configured for handoff",
        )
    if not x_internal_secret or not hmac.compare_digest(x_internal_secret, expected):
        logger.warning("Invalid internal secret", extra={"product_id": product.id})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal secret",
        )
