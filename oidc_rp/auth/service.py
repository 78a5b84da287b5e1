"""
Authentication state machine.

``AuthService`` implements the three operations the routes expose:

1. Build the authorization request and stash state/nonce/return_to in the
   transient session
2. Validate the IdP callback, acquire tokens, and record what logout needs
3. Build the end-session (logout) redirect

The transient session is passed in as a plain mutable mapping (Starlette's
``request.session``), so the service has no dependency on the web framework.
"""

import logging
from enum import Enum
from typing import Any, Dict, MutableMapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.errors import (
    AuthorizationError,
    DiscoveryError,
    InvalidTokenError,
    MissingStateError,
    OIDCError,
    StateMismatchError,
)
from oidc_rp.auth.issuer import IssuerCache
from oidc_rp.auth.stores import SessionStore, token_record_key
from oidc_rp.auth.utils import (
    generate_nonce,
    generate_state,
    safe_return_to,
    validate_state,
)
from oidc_rp.config import Settings
from oidc_rp.flows import ResponseType
from oidc_rp.models import (
    AuthenticatedUser,
    AuthorizationRequest,
    CallbackParams,
    CallbackResult,
    LogoutResult,
    TokenSet,
    TransientAuthState,
)

logger = logging.getLogger(__name__)

# Parameters this service computes itself; configured extras may not override them
PROTECTED_AUTHORIZATION_PARAMS = frozenset({
    "client_id",
    "redirect_uri",
    "scope",
    "response_type",
    "response_mode",
    "state",
    "nonce",
})

TRANSIENT_KEYS = ("state", "nonce", "return_to")


class CallbackState(str, Enum):
    AWAITING_RESPONSE = "awaiting_response"
    VALIDATING = "validating"
    ESTABLISHED = "established"
    REJECTED = "rejected"


def append_query(url: str, params: Dict[str, str]) -> str:
    """Append params to a URL, keeping any query it already carries."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthService:
    """
    Login, callback and logout for one client registration.

    Args:
        settings: Application settings
        issuer_cache: Shared issuer metadata cache
        token_store: Durable store for logout token records
        oidc_client: Token exchange and ID token validation
    """

    def __init__(
        self,
        settings: Settings,
        issuer_cache: IssuerCache,
        token_store: SessionStore,
        oidc_client: OIDCClient,
    ):
        self.settings = settings
        self.issuer_cache = issuer_cache
        self.token_store = token_store
        self.oidc_client = oidc_client

    # =========================================================================
    # Login
    # =========================================================================

    def authorization_params(self, state: str, nonce: str) -> Dict[str, str]:
        """
        Compose the authorization request parameters.

        Configured extra parameters come first; the protocol parameters are
        always the ones computed here. response_mode is left out entirely
        when it resolves to None.
        """
        settings = self.settings
        params: Dict[str, str] = {}

        for name, value in settings.AUTHORIZATION_PARAMS.items():
            if name in PROTECTED_AUTHORIZATION_PARAMS:
                logger.warning(f"Ignoring configured authorization param '{name}'")
                continue
            params[name] = value

        params.update({
            "client_id": settings.CLIENT_ID,
            "redirect_uri": settings.redirect_uri,
            "scope": settings.SCOPE,
            "response_type": settings.response_type.value,
            "state": state,
            "nonce": nonce,
        })

        response_mode = settings.resolved_response_mode
        if response_mode is not None:
            params["response_mode"] = response_mode.value

        return params

    async def login(
        self,
        transient: MutableMapping[str, Any],
        return_to: Optional[str] = None,
    ) -> AuthorizationRequest:
        """
        Build the redirect to the authorization endpoint.

        Args:
            transient: Per-browser transient session; receives state, nonce
                and return_to (replacing any earlier login attempt)
            return_to: Relative path to land on after the callback

        Returns:
            AuthorizationRequest with the full redirect URL

        Raises:
            DiscoveryError: If the issuer metadata cannot be resolved
        """
        metadata = await self.issuer_cache.resolve(self.settings.ISSUER_BASE_URL)

        auth_state = TransientAuthState(
            state=generate_state(),
            nonce=generate_nonce(),
            return_to=safe_return_to(return_to),
        )
        params = self.authorization_params(auth_state.state, auth_state.nonce)

        transient.update(auth_state.model_dump())

        logger.info(
            "Redirecting to authorization endpoint",
            extra={
                "state": CallbackState.AWAITING_RESPONSE.value,
                "issuer": metadata.issuer,
                "response_type": params["response_type"],
                "response_mode": params.get("response_mode"),
            },
        )

        return AuthorizationRequest(
            url=append_query(metadata.authorization_endpoint, params),
            transient=auth_state,
            params=params,
        )

    # =========================================================================
    # Callback
    # =========================================================================

    @staticmethod
    def consume_transient(transient: MutableMapping[str, Any]) -> Optional[TransientAuthState]:
        """Read and discard the transient login state (single use)."""
        values = {key: transient.pop(key, None) for key in TRANSIENT_KEYS}
        if not values["state"] or not values["nonce"]:
            return None
        return TransientAuthState(
            state=values["state"],
            nonce=values["nonce"],
            return_to=safe_return_to(values["return_to"]),
        )

    async def handle_callback(
        self,
        params: CallbackParams,
        transient: MutableMapping[str, Any],
    ) -> CallbackResult:
        """
        Validate an IdP callback and establish the user identity.

        The transient state is consumed before any check runs, so it is gone
        whatever the outcome. No durable record is written unless every
        validation step succeeded.

        Raises:
            MissingStateError: No transient login state for this browser
            AuthorizationError: The IdP returned an error
            StateMismatchError: Returned state differs from the stored one
            InvalidTokenError: ID token failed validation, or none was obtained
            TokenExchangeError: The code could not be redeemed
            DiscoveryError: Issuer metadata or keys could not be fetched
        """
        stored = self.consume_transient(transient)
        logger.debug("Validating callback", extra={"state": CallbackState.VALIDATING.value})

        try:
            result = await self._validate_callback(params, stored)
        except OIDCError as e:
            logger.warning(
                f"Callback rejected: {e.message}",
                extra={"state": CallbackState.REJECTED.value, "error": e.error},
            )
            raise

        logger.info(
            "Callback completed",
            extra={
                "state": CallbackState.ESTABLISHED.value,
                "user_id": result.user.subject if result.user else None,
                "token_record": result.token_record_key is not None,
            },
        )
        return result

    async def _validate_callback(
        self,
        params: CallbackParams,
        stored: Optional[TransientAuthState],
    ) -> CallbackResult:
        if stored is None:
            raise MissingStateError("No login in progress for this browser (missing or expired state cookie)")

        if params.error:
            raise AuthorizationError(params.error, params.error_description)

        if not validate_state(params.state, stored.state):
            raise StateMismatchError("State parameter does not match the login request")

        metadata = await self.issuer_cache.resolve(self.settings.ISSUER_BASE_URL)
        response_type = self.settings.response_type

        claims: Optional[Dict[str, Any]] = None
        tokens = TokenSet(id_token=params.id_token, access_token=params.access_token)

        if params.id_token:
            claims = await self.oidc_client.validate_id_token(
                params.id_token, metadata, stored.nonce, access_token=params.access_token
            )

        if params.code and (claims is None or response_type.includes_code):
            exchanged = await self.oidc_client.exchange_code(params.code, metadata)
            exchanged_claims = await self.oidc_client.validate_id_token(
                exchanged.id_token, metadata, stored.nonce, access_token=exchanged.access_token
            )
            if claims is not None and exchanged_claims["sub"] != claims["sub"]:
                raise InvalidTokenError("ID tokens from the callback and the token endpoint disagree on 'sub'")
            claims = exchanged_claims
            tokens = exchanged

        if claims is None:
            if response_type is ResponseType.NONE:
                return CallbackResult(return_to=stored.return_to)
            raise InvalidTokenError("Callback carried neither an authorization code nor an id_token")

        user = AuthenticatedUser(
            subject=claims["sub"],
            issuer=claims["iss"],
            sid=claims.get("sid"),
            claims=claims,
        )

        record_key = None
        if user.sid and user.issuer:
            record_key = token_record_key(user.issuer, user.sid)
            await self.token_store.set(record_key, tokens.logout_record())
            logger.debug("Stored session token record", extra={"issuer": user.issuer})

        return CallbackResult(return_to=stored.return_to, user=user, token_record_key=record_key)

    # =========================================================================
    # Logout
    # =========================================================================

    def post_logout_target(self, return_to: Optional[str] = None) -> str:
        path = safe_return_to(return_to, default="")
        if path:
            return f"{self.settings.BASE_URL}{path}"
        return self.settings.post_logout_redirect_uri

    async def logout(
        self,
        user: Optional[AuthenticatedUser],
        return_to: Optional[str] = None,
    ) -> LogoutResult:
        """
        Build the logout redirect.

        Falls back to a local-only logout when there is no user, no sid, no
        stored token record, or no end_session_endpoint. Terminating the
        local session cookie is the caller's unconditional final step.
        """
        target = self.post_logout_target(return_to)
        local = LogoutResult(redirect_url=target, remote=False)

        if user is None or not user.sid:
            return local

        key = token_record_key(user.issuer, user.sid)
        record = await self.token_store.get(key)
        if not record:
            logger.info("No session token record; local logout only", extra={"user_id": user.subject})
            return local

        try:
            metadata = await self.issuer_cache.resolve(self.settings.ISSUER_BASE_URL)
        except DiscoveryError as e:
            logger.warning(f"Issuer unavailable during logout; local logout only: {e.message}")
            return local

        if not metadata.end_session_endpoint:
            logger.info("Issuer has no end_session_endpoint; local logout only")
            return local

        params = {"post_logout_redirect_uri": target}
        id_token = record.get("id_token") if isinstance(record, dict) else record
        if id_token:
            params["id_token_hint"] = id_token
        else:
            params["client_id"] = self.settings.CLIENT_ID

        await self.token_store.destroy(key)

        logger.info("Redirecting to end_session_endpoint", extra={"user_id": user.subject})
        return LogoutResult(
            redirect_url=append_query(metadata.end_session_endpoint, params),
            remote=True,
        )


__all__ = [
    "AuthService",
    "CallbackState",
    "PROTECTED_AUTHORIZATION_PARAMS",
    "append_query",
]
