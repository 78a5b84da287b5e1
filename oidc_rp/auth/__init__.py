"""
Authentication Package

This package implements the relying-party side of OpenID Connect for a
server-side web application.

Key responsibilities:
- Building the authorization request (state, nonce, response_type/mode)
- Validating the IdP callback and acquiring/validating tokens
- Recording the tokens needed for RP-initiated logout
- Building the end-session redirect

Modules:
- issuer: Issuer metadata discovery with a single-flight cache
- client: JWKS retrieval, ID token validation, authorization code exchange
- service: The login/callback/logout state machine
- stores: Durable session token store interface and in-memory store
- session: Session JWT for the authenticated user
- routes: FastAPI routes and error handlers

The authentication flow:
1. Browser hits /login; state and nonce go into a short-lived signed cookie
2. User authenticates at the identity provider
3. The IdP returns to /callback (query string or form post)
4. State, tokens and nonce are validated; a session JWT cookie is issued
5. /logout redirects to the IdP end_session_endpoint when a token record exists
"""

from .routes import create_auth_router, register_exception_handlers
from .service import AuthService

__all__ = [
    "AuthService",
    "create_auth_router",
    "register_exception_handlers",
]
