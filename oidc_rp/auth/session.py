"""
User Session Management Module
==============================

Handles the long-lived authenticated user session. After a successful
callback the validated identity is written into an HS256-signed session JWT
and stored in an HttpOnly cookie. The transient login state (state/nonce)
lives in a separate cookie session and never enters this token; neither do
IdP access or refresh tokens, which stay in the durable token store.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from fastapi import HTTPException, Request, Response, status

from oidc_rp.config import Settings
from oidc_rp.models import AuthenticatedUser

logger = logging.getLogger(__name__)

SESSION_JWT_ALGORITHM = "HS256"


# =============================================================================
# Exceptions
# =============================================================================

class SessionTokenError(Exception):
    """Session JWT is missing, expired or invalid"""
    pass


# =============================================================================
# Token Creation
# =============================================================================

def create_session_jwt(user: AuthenticatedUser, settings: Settings) -> str:
    """
    Create a session JWT for an authenticated user.

    Args:
        user: Identity established by the callback
        settings: Application settings (secret, expiry, issuer)

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": user.subject,
        "idp": user.issuer,
        "claims": user.claims,
        "iat": now,
        "exp": now + timedelta(minutes=settings.SESSION_EXPIRY_MINUTES),
        "iss": settings.SESSION_JWT_ISSUER,
    }
    if user.sid:
        payload["sid"] = user.sid

    token = jwt.encode(payload, settings.SESSION_SECRET, algorithm=SESSION_JWT_ALGORITHM)

    logger.debug(
        "Created session JWT",
        extra={"user_id": user.subject, "expires_in_minutes": settings.SESSION_EXPIRY_MINUTES},
    )
    return token


# =============================================================================
# Token Verification
# =============================================================================

def verify_session_jwt(token: str, settings: Settings) -> AuthenticatedUser:
    """
    Verify a session JWT and rebuild the user identity from it.

    Raises:
        SessionTokenError: If the token is empty, expired or invalid
    """
    if not token:
        raise SessionTokenError("No session token provided")

    try:
        decoded = jwt.decode(
            token,
            settings.SESSION_SECRET,
            algorithms=[SESSION_JWT_ALGORITHM],
            issuer=settings.SESSION_JWT_ISSUER,
            options={
                "verify_signature": True,
                "verify_exp": True,
                "verify_iat": True,
                "require": ["exp", "iat", "sub", "iss"],
            },
        )
    except ExpiredSignatureError as e:
        raise SessionTokenError("Session has expired") from e
    except InvalidTokenError as e:
        raise SessionTokenError(f"Invalid session token: {e}") from e

    return AuthenticatedUser(
        subject=decoded["sub"],
        issuer=decoded.get("idp", ""),
        sid=decoded.get("sid"),
        claims=decoded.get("claims") or {},
    )


def read_user_session(request: Request, settings: Settings) -> Optional[AuthenticatedUser]:
    """
    Return the user from the session cookie, or None when absent or invalid.
    """
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        return None

    try:
        return verify_session_jwt(token, settings)
    except SessionTokenError as e:
        logger.info(f"Ignoring session cookie: {e}")
        return None


# =============================================================================
# Cookies
# =============================================================================

def set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=settings.SESSION_EXPIRY_MINUTES * 60,
        httponly=True,
        secure=settings.uses_https,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.uses_https,
        samesite="lax",
    )


# =============================================================================
# FastAPI Dependencies
# =============================================================================

def current_user_dependency(
    settings: Settings,
) -> Callable[[Request], Coroutine[Any, Any, AuthenticatedUser]]:
    """
    Build a FastAPI dependency that requires an authenticated user.

    Usage in routes:
        require_user = current_user_dependency(settings)

        @app.get("/protected")
        async def protected_route(user: AuthenticatedUser = Depends(require_user)):
            return {"sub": user.subject}
    """

    async def get_current_user(request: Request) -> AuthenticatedUser:
        user = read_user_session(request, settings)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
            )
        return user

    return get_current_user


__all__ = [
    "SESSION_JWT_ALGORITHM",
    "SessionTokenError",
    "create_session_jwt",
    "verify_session_jwt",
    "read_user_session",
    "set_session_cookie",
    "clear_session_cookie",
    "current_user_dependency",
]
