"""
Authentication routes for OIDC login, callback and logout handling.

The callback routes that get mounted depend on the configured
response_type/response_mode (see ``oidc_rp.flows``):
- GET /callback runs the callback handler for query-string responses
- GET /callback serves the fragment repost page when tokens arrive in a
  fragment or via form_post
- POST /callback runs the callback handler for form-encoded responses
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from oidc_rp.auth.errors import (
    AuthorizationError,
    DiscoveryError,
    InvalidTokenError,
    MissingStateError,
    OIDCError,
    StateMismatchError,
    TokenExchangeError,
)
from oidc_rp.auth.service import AuthService
from oidc_rp.auth.session import (
    clear_session_cookie,
    create_session_jwt,
    current_user_dependency,
    read_user_session,
    set_session_cookie,
)
from oidc_rp.auth.templates import REPOST_HTML, render_error_page
from oidc_rp.config import Settings
from oidc_rp.models import AuthenticatedUser, CallbackParams

logger = logging.getLogger(__name__)

ERROR_TITLES = {
    MissingStateError: "Login Expired",
    StateMismatchError: "Security Error",
    AuthorizationError: "Authentication Failed",
    InvalidTokenError: "Token Verification Failed",
    TokenExchangeError: "Network Error",
    DiscoveryError: "Identity Provider Unavailable",
}


# =============================================================================
# Router Setup
# =============================================================================

def create_auth_router(service: AuthService) -> APIRouter:
    """
    Build the auth router for one client registration.

    Args:
        service: AuthService bound to the settings, stores and IdP client

    Returns:
        APIRouter with /login, /callback, /logout, /me and optionally /session
    """
    settings = service.settings
    flow = settings.response_flow
    require_user = current_user_dependency(settings)

    router = APIRouter(prefix=settings.ROUTES_PREFIX, tags=["authentication"])

    # =========================================================================
    # Login
    # =========================================================================

    @router.get("/login", response_class=RedirectResponse)
    async def login(request: Request, returnTo: Optional[str] = Query(None)):
        """
        Initiate the OIDC login flow.

        Stores state, nonce and the return path in the transient session and
        redirects to the authorization endpoint.
        """
        auth_request = await service.login(request.session, return_to=returnTo)
        return RedirectResponse(url=auth_request.url, status_code=302)

    # =========================================================================
    # Callback
    # =========================================================================

    async def complete_callback(request: Request, params: CallbackParams) -> Response:
        # Error handlers expire the transient cookie too if anything below fails
        request.state.transient_consumed = True
        result = await service.handle_callback(params, request.session)

        response = RedirectResponse(url=result.return_to, status_code=302)
        if result.user is not None:
            set_session_cookie(response, create_session_jwt(result.user, settings), settings)
        return response

    if "GET" in flow.callback_methods:

        @router.get("/callback")
        async def callback_query(request: Request):
            """Handle a callback delivered in the query string."""
            params = CallbackParams.model_validate(dict(request.query_params))
            return await complete_callback(request, params)

    elif flow.repost_page:

        @router.get("/callback", response_class=HTMLResponse)
        async def callback_repost():
            """Serve the page that reposts fragment parameters as a form."""
            return HTMLResponse(content=REPOST_HTML, status_code=200)

    if flow.accepts_post:

        @router.post("/callback")
        async def callback_form(request: Request):
            """Handle a callback delivered as a form post."""
            form = await request.form()
            params = CallbackParams.model_validate(
                {key: value for key, value in form.items() if isinstance(value, str)}
            )
            return await complete_callback(request, params)

    # =========================================================================
    # Logout
    # =========================================================================

    @router.get("/logout", response_class=RedirectResponse)
    async def logout(request: Request, returnTo: Optional[str] = Query(None)):
        """
        End the session.

        Redirects to the IdP end_session_endpoint when a logout token record
        exists, otherwise only the local session is terminated.
        """
        user = read_user_session(request, settings)
        request.session.clear()
        # Error handlers clear the session cookie too if anything below fails
        request.state.end_local_session = True

        result = await service.logout(user, return_to=returnTo)

        response = RedirectResponse(url=result.redirect_url, status_code=302)
        clear_session_cookie(response, settings)
        return response

    # =========================================================================
    # Introspection
    # =========================================================================

    @router.get("/me")
    async def me(user: AuthenticatedUser = Depends(require_user)) -> Dict[str, Any]:
        return {
            "sub": user.subject,
            "iss": user.issuer,
            "sid": user.sid,
            "name": user.name,
            "email": user.email,
        }

    if settings.ENABLE_SESSION_ROUTE:

        @router.get("/session")
        async def session(request: Request) -> Dict[str, Any]:
            """Diagnostic view of the transient session and the current user."""
            content: Dict[str, Any] = dict(request.session)
            user = read_user_session(request, settings)
            if user is not None:
                content["user"] = user.model_dump()
            return content

    return router


# =============================================================================
# Error Handling
# =============================================================================

def finalize_error_response(request: Request, response: Response, settings: Settings) -> Response:
    """
    Expire cookies whose state was already spent when the request failed.

    Responses built by the 500 handler bypass SessionMiddleware, so a
    callback that consumed the transient state must expire that cookie here.
    Logout clears the user session cookie whatever the outcome.
    """
    if getattr(request.state, "transient_consumed", False):
        response.delete_cookie(
            key=settings.TRANSIENT_COOKIE_NAME,
            path="/",
            httponly=True,
            secure=settings.uses_https,
        )
    if getattr(request.state, "end_local_session", False):
        clear_session_cookie(response, settings)
    return response


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """
    Render authentication failures as HTML error pages.

    Status codes come from the exception class: 400 for rejected callbacks,
    502 when the identity provider could not be reached.
    """

    @app.exception_handler(OIDCError)
    async def oidc_error_handler(request: Request, exc: OIDCError) -> Response:
        logger.warning(
            f"Authentication error: {exc.message}",
            extra={"path": request.url.path, "error": exc.error, "status_code": exc.status_code},
        )

        title = next(
            (title for cls, title in ERROR_TITLES.items() if isinstance(exc, cls)),
            "Authentication Error",
        )
        response = HTMLResponse(
            content=render_error_page(
                title=title,
                message=exc.message,
                retry_url=f"{settings.ROUTES_PREFIX}/login",
            ),
            status_code=exc.status_code,
        )
        return finalize_error_response(request, response, settings)


__all__ = [
    "create_auth_router",
    "finalize_error_response",
    "register_exception_handlers",
]
