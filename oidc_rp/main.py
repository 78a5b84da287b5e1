"""
FastAPI Application Factory
===========================

Entry point for a web application protected by the OIDC relying-party
middleware.

Routes:
    - /login, /callback, /logout : Authentication flow (under ROUTES_PREFIX)
    - /me, /session              : Current user and session introspection
    - /health                    : Health check endpoint

Environment Variables Required:
    - CLIENT_ID: Client ID registered at the identity provider
    - BASE_URL: Public base URL of this application
    - ISSUER_BASE_URL: Identity provider issuer URL
    - SESSION_SECRET: Secret for signing session cookies (32+ characters)

Running the Service:
    Development:
        uvicorn oidc_rp.main:create_application --factory --reload --port 8080

    Production:
        uvicorn oidc_rp.main:create_application --factory --host 0.0.0.0 --port 8080 --workers 4

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn oidc_rp.main:create_application --factory --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware
import uvicorn

from oidc_rp import __version__
from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.issuer import IssuerCache
from oidc_rp.auth.routes import (
    create_auth_router,
    finalize_error_response,
    register_exception_handlers,
)
from oidc_rp.auth.service import AuthService
from oidc_rp.auth.stores import MemorySessionStore, SessionStore
from oidc_rp.config import Settings, get_settings, validate_configuration


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def create_application(
    settings: Optional[Settings] = None,
    *,
    issuer_cache: Optional[IssuerCache] = None,
    token_store: Optional[SessionStore] = None,
    oidc_client: Optional[OIDCClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - Signed transient-session cookie middleware
        - Auth routes
        - Exception handlers

    Collaborators default to in-process implementations and can be injected
    (e.g. a shared IssuerCache, a persistent SessionStore).

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    issuer_cache = issuer_cache or IssuerCache(timeout=settings.HTTP_TIMEOUT_SECONDS)
    token_store = token_store or MemorySessionStore(ttl_seconds=settings.TOKEN_RECORD_TTL_SECONDS)
    oidc_client = oidc_client or OIDCClient(settings)

    service = AuthService(
        settings=settings,
        issuer_cache=issuer_cache,
        token_store=token_store,
        oidc_client=oidc_client,
    )
    flow = settings.response_flow

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL)
        logger = logging.getLogger("oidc_rp.main")

        status = validate_configuration(settings)
        for warning in status["warnings"]:
            logger.warning(warning)
        for error in status["errors"]:
            logger.error(error)

        logger.info(
            "Starting OIDC relying party",
            extra={
                "issuer": settings.ISSUER_BASE_URL,
                "response_type": status["response_type"],
                "response_mode": status["response_mode"],
            },
        )

        yield

        logger.info("Shutting down OIDC relying party")
        issuer_cache.clear()
        oidc_client.clear_cache()

    app = FastAPI(
        title="OIDC Relying Party",
        description="OpenID Connect login, callback and logout for server-side web apps",
        version=__version__,
        lifespan=lifespan,
    )

    # Transient login state (state/nonce/return_to). A cross-site form_post
    # callback only carries the cookie when SameSite=None.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.TRANSIENT_COOKIE_NAME,
        max_age=settings.TRANSIENT_MAX_AGE_SECONDS,
        same_site="none" if flow.accepts_post else "lax",
        https_only=settings.uses_https,
    )

    app.include_router(create_auth_router(service))
    register_exception_handlers(app, settings)

    app.state.auth_service = service

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "oidc-rp",
            "version": __version__,
        }

    @app.get("/", tags=["System"])
    async def root() -> Dict[str, str]:
        return {
            "service": "oidc-rp",
            "login": f"{settings.ROUTES_PREFIX}/login",
            "logout": f"{settings.ROUTES_PREFIX}/logout",
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors (including session
        store failures, which are not wrapped).
        """
        logger = logging.getLogger("oidc_rp.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        response = JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL.upper() == "DEBUG" else None
            }
        )
        return finalize_error_response(request, response, settings)

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "oidc_rp.main:create_application",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
