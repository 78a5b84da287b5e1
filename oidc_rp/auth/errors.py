"""
Authentication error taxonomy.

Every failure the login/callback/logout flow can raise derives from
``OIDCError`` so the application can map them onto HTTP responses in one
exception handler. Storage-layer errors are intentionally not part of this
hierarchy; they propagate unmodified.
"""

from typing import Optional


class OIDCError(Exception):
    """Base exception for relying-party authentication errors"""

    status_code: int = 400
    error: str = "oidc_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DiscoveryError(OIDCError):
    """Issuer metadata could not be fetched or was malformed"""

    status_code = 502
    error = "discovery_error"


class MissingStateError(OIDCError):
    """Callback arrived without a transient auth session (lost or expired cookie)"""

    error = "missing_state"


class StateMismatchError(OIDCError):
    """Returned state does not match the one issued at login"""

    error = "state_mismatch"


class AuthorizationError(OIDCError):
    """The identity provider reported an error on the callback"""

    error = "authorization_error"

    def __init__(self, error: str, error_description: Optional[str] = None):
        super().__init__(error_description or error)
        self.error = error
        self.error_description = error_description


class InvalidTokenError(OIDCError):
    """ID token failed signature or claims validation"""

    error = "invalid_token"


class TokenExchangeError(OIDCError):
    """Network or protocol failure while redeeming the authorization code"""

    status_code = 502
    error = "token_exchange_error"


__all__ = [
    "OIDCError",
    "DiscoveryError",
    "MissingStateError",
    "StateMismatchError",
    "AuthorizationError",
    "InvalidTokenError",
    "TokenExchangeError",
]
