"""
API Routes - Token Validation and Product Catalogue
===================================================

JSON endpoints used by products and front-ends. Every protected endpoint
goes through ``get_current_user`` and therefore through the one
TokenValidator.

Endpoints:
----------
- GET  /api/validate-token            : validate the caller's token
- POST /api/validate-token            : validate a token from the body
- GET  /api/user-info                 : claims of the caller's token
- GET  /api/products                  : configured product catalogue
- GET  /api/products/{id}/access      : placeholder access check
- POST /api/products/{id}/login       : build a product login URL
- POST /api/global-logout             : clear cookies, return logout URL
- GET  /user/profile, /user/permissions, /user/products
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ..config import ProductConfig
from ..dependencies import AppState, get_app_state, get_current_user
from ..models import (
    GlobalLogoutRequest,
    ProductLoginRequest,
    TokenInfo,
    UserProfile,
    ValidateTokenRequest,
)
from ..auth.flows import safe_return_to, validate_return_to

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api", tags=["api"])
user_router = APIRouter(prefix="/user", tags=["user"])


def _product_or_404(state: AppState, product_id: str) -> ProductConfig:
    product = state.settings.get_product(product_id)
    if product is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown product: {product_id}",
        )
    return product


def _validation_body(claims: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "success": True,
        "valid": True,
        "user": UserProfile.from_claims(claims).model_dump(),
        "tokenInfo": TokenInfo.from_claims(claims).model_dump(mode="json"),
    }


def _describe_product(product: ProductConfig) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name or product.id,
        "url": product.base_url_str,
        "delivery": product.delivery,
    }


# ============================================================================
# Token Validation
# ============================================================================

@api_router.get("/validate-token")
async def validate_token(user: Dict[str, Any] = Depends(get_current_user)):
    return _validation_body(user)


@api_router.post("/validate-token")
async def validate_token_body(
    body: ValidateTokenRequest,
    state: AppState = Depends(get_app_state),
):
    if not body.token:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Token is required"},
        )
    claims = state.validator.validate(body.token)
    return _validation_body(claims)


@api_router.get("/user-info")
async def user_info(user: Dict[str, Any] = Depends(get_current_user)):
    profile = UserProfile.from_claims(user).model_dump()
    profile["emailVerified"] = user.get("email_verified")
    return {"success": True, "user": profile}


# ============================================================================
# Products
# ============================================================================

@api_router.get("/products")
async def list_products(state: AppState = Depends(get_app_state)):
    return {
        "success": True,
        "products": [_describe_product(p) for p in state.settings.PRODUCTS],
    }


@api_router.get("/products/{product_id}/access")
async def product_access(
    product_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    """
    Placeholder access check.

    Every authenticated user may use every configured product with read and
    write permission; there is no per-product policy.
    """
    _product_or_404(state, product_id)
    return {
        "success": True,
        "productId": product_id,
        "hasAccess": True,
        "permissions": [f"{product_id}:read", f"{product_id}:write"],
    }


@api_router.post("/products/{product_id}/login")
async def product_login_url(
    product_id: str,
    body: Optional[ProductLoginRequest] = None,
    state: AppState = Depends(get_app_state),
):
    product = state.settings.get_product(product_id)
    if product is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid product ID"},
        )

    return_to = validate_return_to(body.returnTo if body else None, state.settings) or product.base_url_str
    query = urlencode({"productId": product.id, "returnTo": return_to})

    return {
        "success": True,
        "loginUrl": f"{state.settings.base_url_str}/auth/login?{query}",
        "productId": product.id,
    }


# ============================================================================
# Logout
# ============================================================================

@api_router.post("/global-logout")
async def api_global_logout(
    body: Optional[GlobalLogoutRequest] = None,
    state: AppState = Depends(get_app_state),
):
    """
    Clear the gateway's cookies and hand back the URL that finishes a global
    logout in the browser (IdP logout needs the browser's session cookie).
    """
    settings = state.settings
    return_to = safe_return_to(body.returnTo if body else None, settings)
    query = urlencode({"global": "true", "returnTo": return_to})

    response = JSONResponse(
        content={
            "success": True,
            "message": "Global logout initiated",
            "logoutUrl": f"{settings.base_url_str}/auth/logout?{query}",
            "connectedProducts": state.logout_coordinator.connected_products(),
        }
    )
    state.distributor.clear_all(response)
    return response


# ============================================================================
# User
# ============================================================================

@user_router.get("/profile")
async def user_profile(user: Dict[str, Any] = Depends(get_current_user)):
    return {"success": True, "user": UserProfile.from_claims(user).model_dump()}


@user_router.get("/permissions")
async def user_permissions(user: Dict[str, Any] = Depends(get_current_user)):
    return {
        "success": True,
        "permissions": user.get("permissions") or [],
        "roles": user.get("roles") or [],
    }


@user_router.get("/products")
async def user_products(
    user: Dict[str, Any] = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    products = []
    for product in state.settings.PRODUCTS:
        entry = _describe_product(product)
        entry["description"] = f"Access {entry['name']} with your current credentials."
        products.append(entry)
    return {"success": True, "products": products}
