"""
Authentication routes for login, IdP callback and logout.

Browser-facing endpoints answer with redirects; the session-backed helper
endpoints (/status, /profile, /token) answer with JSON.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from ..dependencies import AppState, get_app_state
from ..models import IdentityClaims, TokenRequest, TokenResponse
from .flows import redirect
from .identity import USER_KEY

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


# =============================================================================
# Login / Callback
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    productId: Optional[str] = Query(None, description="Product the user is logging into"),
    returnTo: Optional[str] = Query(None, description="Absolute URL to return to after login"),
    state: AppState = Depends(get_app_state),
):
    """
    Start the OIDC authorization-code flow.

    Stores the pending login in the session and redirects to the IdP.
    """
    url = state.login_initiator.start(request.session, product_id=productId, return_to=returnTo)
    return redirect(url)


@auth_router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the IdP"),
    oauth_state: Optional[str] = Query(None, alias="state", description="CSRF state"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None),
    state: AppState = Depends(get_app_state),
):
    """
    Handle the redirect back from the IdP.

    Known failures redirect to the pending destination with ``?error=``.
    Anything unexpected is a 500; the browser is never sent on without a
    credential.
    """
    if error_description:
        logger.warning(f"IdP error description: {error_description}")

    try:
        return await state.callback_processor.complete(
            request.session, code=code, state=oauth_state, error=error
        )
    except Exception as e:
        logger.error(f"Unexpected error in callback: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Authentication callback failed"},
        )


# =============================================================================
# Logout
# =============================================================================

@auth_router.get("/logout", response_class=RedirectResponse)
async def logout(
    request: Request,
    returnTo: Optional[str] = Query(None),
    global_logout: bool = Query(False, alias="global", description="Also end the IdP session"),
    state: AppState = Depends(get_app_state),
):
    return await state.logout_coordinator.logout(
        request.session, return_to=returnTo, global_logout=global_logout
    )


@auth_router.get("/global-logout", response_class=RedirectResponse)
async def global_logout(
    request: Request,
    returnTo: Optional[str] = Query(None),
    state: AppState = Depends(get_app_state),
):
    """Same as /auth/logout?global=true."""
    return await state.logout_coordinator.logout(
        request.session, return_to=returnTo, global_logout=True
    )


# =============================================================================
# Session Helpers
# =============================================================================

def _session_user(request: Request) -> IdentityClaims:
    user = request.session.get(USER_KEY)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return IdentityClaims.model_validate(user)


@auth_router.get("/status")
async def auth_status(request: Request, state: AppState = Depends(get_app_state)):
    authenticated = state.identity_provider.is_authenticated(request.session)
    body = {"authenticated": authenticated}
    if authenticated:
        claims = IdentityClaims.model_validate(request.session[USER_KEY])
        body["user"] = {"id": claims.sub, "email": claims.email, "name": claims.name}
    return body


@auth_router.get("/profile")
async def profile(request: Request):
    claims = _session_user(request)
    return {
        "success": True,
        "user": claims.model_dump(exclude={"sid"}),
    }


@auth_router.post("/token", response_model=TokenResponse)
async def issue_token(
    request: Request,
    body: Optional[TokenRequest] = None,
    state: AppState = Depends(get_app_state),
):
    """
    Mint an internal token for the current broker session.

    With ``productId`` the token is scoped to that product's audience.
    """
    claims = _session_user(request)

    product_id = body.productId if body else None
    product = None
    if product_id:
        product = state.settings.get_product(product_id)
        if product is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown product: {product_id}",
            )

    payload = claims.project(product.id if product else None)
    token = state.minter.mint(payload, audience=product.id if product else None)

    return TokenResponse(
        accessToken=token,
        expiresIn=state.minter.ttl_seconds,
        user=payload,
    )
