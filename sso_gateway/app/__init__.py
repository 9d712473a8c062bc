"""
SSO Gateway Application Package

A FastAPI service that brokers single sign-on between an OpenID Connect
identity provider and a set of independently deployed product applications.

Sub-packages:
- auth: login initiation, IdP callback, token minting/validation, cookies, logout
- handoff: back-channel session establishment and one-time code redemption
- api: token validation and product catalogue endpoints

Run with:
    uvicorn sso_gateway.app.main:create_app --factory --port 3000
"""
