"""
Authentication Package

Key responsibilities:
- OIDC login flow initiation and callback handling
- Internal token minting and validation
- Multi-domain cookie distribution
- Local and global logout

Modules:
- identity: IdentityProvider capability and the OIDC implementation
- tokens: CredentialMinter and TokenValidator
- cookies: CookieDistributor and its scope table
- flows: LoginInitiator, CallbackProcessor, GlobalLogoutCoordinator
- routes: /auth/* endpoints (auth_router)
"""
