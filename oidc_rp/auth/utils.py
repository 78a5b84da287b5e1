"""
Authentication utilities shared by the login, callback and logout flows.

This module handles:
- Generating state and nonce values
- Selecting the JWKS key that signed a token
- Sanitizing post-login and post-logout return paths
"""

import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from jose import jwt, JWTError


# =============================================================================
# State / Nonce
# =============================================================================

def generate_random_token(nbytes: int = 32) -> str:
    """
    Generate a URL- and cookie-safe random string.

    Args:
        nbytes: Bytes of entropy (32 bytes = 256 bits)

    Returns:
        Base64-URL-encoded random string without padding
    """
    return secrets.token_urlsafe(nbytes)


def generate_state() -> str:
    return generate_random_token()


def generate_nonce() -> str:
    return generate_random_token()


def validate_state(received_state: Optional[str], expected_state: str) -> bool:
    """Constant-time comparison of the callback state against the stored one."""
    if not received_state:
        return False
    return secrets.compare_digest(received_state, expected_state)


def validate_nonce(claims: Dict[str, Any], expected_nonce: str) -> bool:
    """
    Validate the nonce claim of an ID token.

    A nonce is always sent on the authorization request, so the claim
    must be present and equal.
    """
    token_nonce = claims.get("nonce")
    if not isinstance(token_nonce, str):
        return False
    return secrets.compare_digest(token_nonce, expected_nonce)


# =============================================================================
# JWKS
# =============================================================================

def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the public key from JWKS that matches the token's kid.

    Tokens without a kid match the JWKS only when it holds a single key.

    Args:
        token: JWT token string
        jwks: JWKS document containing keys

    Returns:
        Matching key from JWKS, or None if not found

    Raises:
        JWTError: If token header is malformed
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    keys = jwks.get("keys", [])
    kid = unverified_header.get("kid")
    if not kid:
        return keys[0] if len(keys) == 1 else None

    for key in keys:
        if key.get("kid") == kid:
            return key

    return None


# =============================================================================
# Return Paths
# =============================================================================

def safe_return_to(value: Optional[str], default: str = "/") -> str:
    """
    Accept only same-origin relative paths as a return target.

    Anything absolute, protocol-relative ("//evil.example") or containing a
    backslash falls back to ``default``.

    Examples:
        >>> safe_return_to("/dashboard?tab=1")
        '/dashboard?tab=1'
        >>> safe_return_to("https://evil.example/")
        '/'
    """
    if not value or not value.startswith("/") or value.startswith("//"):
        return default
    if "\\" in value:
        return default
    parts = urlsplit(value)
    if parts.scheme or parts.netloc:
        return default
    return value


__all__ = [
    "generate_random_token",
    "generate_state",
    "generate_nonce",
    "validate_state",
    "validate_nonce",
    "get_signing_key",
    "safe_return_to",
]
