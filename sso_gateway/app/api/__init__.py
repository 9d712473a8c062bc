"""
API Package

JSON endpoints for token validation, user info and the product catalogue.

Usage:
    from sso_gateway.app.api.routes import api_router, user_router
    app.include_router(api_router)
"""
