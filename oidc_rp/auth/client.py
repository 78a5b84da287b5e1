"""
Identity provider client: JWKS retrieval, ID token validation and the
authorization code exchange.

The client talks to the endpoints advertised in the issuer metadata and
translates transport and JOSE failures into the relying-party error taxonomy.
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx
from jose import jwt, JWTError

from oidc_rp.auth.errors import DiscoveryError, InvalidTokenError, TokenExchangeError
from oidc_rp.auth.utils import get_signing_key, validate_nonce
from oidc_rp.config import Settings
from oidc_rp.models import IssuerMetadata, TokenSet

logger = logging.getLogger(__name__)


class OIDCClient:
    """
    Token acquisition and validation against one client registration.

    Args:
        settings: Application settings (client credentials, algorithms, timeouts)
        http_client: Optional shared httpx client; a short-lived client is
            opened per call when omitted
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client
        self._jwks_cache: Dict[str, Tuple[Dict[str, Any], float]] = {}

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _get(self, url: str) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.get(url, timeout=self.settings.HTTP_TIMEOUT_SECONDS)
        async with httpx.AsyncClient() as client:
            return await client.get(url, timeout=self.settings.HTTP_TIMEOUT_SECONDS)

    async def _post_form(self, url: str, data: Dict[str, str]) -> httpx.Response:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        if self._http_client is not None:
            return await self._http_client.post(
                url, data=data, headers=headers, timeout=self.settings.HTTP_TIMEOUT_SECONDS
            )
        async with httpx.AsyncClient() as client:
            return await client.post(
                url, data=data, headers=headers, timeout=self.settings.HTTP_TIMEOUT_SECONDS
            )

    # =========================================================================
    # JWKS
    # =========================================================================

    async def fetch_jwks(self, jwks_uri: str, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the issuer's JWKS with caching.

        Args:
            jwks_uri: JWKS URL from the issuer metadata
            force_refresh: If True, bypass cache and fetch fresh JWKS

        Returns:
            JWKS document containing keys

        Raises:
            DiscoveryError: If the JWKS endpoint is unreachable or invalid
        """
        now = time.time()
        cached = self._jwks_cache.get(jwks_uri)
        if not force_refresh and cached and (now - cached[1]) < self.settings.JWKS_CACHE_SECONDS:
            return cached[0]

        try:
            response = await self._get(jwks_uri)
            response.raise_for_status()
            jwks_data = response.json()
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Unable to fetch JWKS from {jwks_uri}: {e}") from e
        except ValueError as e:
            raise DiscoveryError(f"JWKS at {jwks_uri} is not valid JSON") from e

        if not isinstance(jwks_data, dict) or "keys" not in jwks_data:
            raise DiscoveryError("Invalid JWKS response: missing 'keys' field")

        self._jwks_cache[jwks_uri] = (jwks_data, now)
        return jwks_data

    def clear_cache(self) -> None:
        self._jwks_cache.clear()

    # =========================================================================
    # ID Token Validation
    # =========================================================================

    async def validate_id_token(
        self,
        id_token: str,
        metadata: IssuerMetadata,
        nonce: str,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Checks signature, issuer, audience, expiry (with clock tolerance),
        at_hash when an access token accompanies the ID token, and nonce.

        Args:
            id_token: Compact JWS ID token
            metadata: Metadata of the issuer that is expected to have signed it
            nonce: Nonce sent on the authorization request
            access_token: Access token delivered alongside, if any

        Returns:
            Dictionary of verified token claims

        Raises:
            InvalidTokenError: If the signature or any claim check fails
            DiscoveryError: If the issuer's keys cannot be fetched
        """
        if not metadata.jwks_uri:
            raise InvalidTokenError("Issuer does not publish a jwks_uri; cannot verify ID token")

        allowed_algs = self.settings.id_token_signing_algs_list

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise InvalidTokenError(f"Malformed ID token: {e}") from e

        if header.get("alg") not in allowed_algs:
            raise InvalidTokenError(
                f"Unexpected ID token signing algorithm: {header.get('alg')}"
            )

        jwks = await self.fetch_jwks(metadata.jwks_uri)
        signing_key = get_signing_key(id_token, jwks)
        if not signing_key:
            # Try refreshing JWKS in case keys were rotated
            jwks = await self.fetch_jwks(metadata.jwks_uri, force_refresh=True)
            signing_key = get_signing_key(id_token, jwks)

            if not signing_key:
                raise InvalidTokenError("Unable to find matching signing key in JWKS")

        try:
            claims = jwt.decode(
                id_token,
                signing_key,
                algorithms=allowed_algs,
                audience=self.settings.CLIENT_ID,
                issuer=metadata.issuer,
                access_token=access_token,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_jti": False,
                    "verify_at_hash": access_token is not None,
                    "leeway": self.settings.CLOCK_TOLERANCE_SECONDS,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("ID token has expired") from e
        except jwt.JWTClaimsError as e:
            raise InvalidTokenError(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise InvalidTokenError(f"Token verification failed: {e}") from e

        if not claims.get("sub"):
            raise InvalidTokenError("ID token is missing the 'sub' claim")

        if not validate_nonce(claims, nonce):
            raise InvalidTokenError("Nonce mismatch")

        return claims

    # =========================================================================
    # Code Exchange
    # =========================================================================

    async def exchange_code(self, code: str, metadata: IssuerMetadata) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            metadata: Issuer metadata holding the token endpoint

        Returns:
            TokenSet containing at least an id_token

        Raises:
            TokenExchangeError: On network failure, an error response, or a
                response without an id_token
        """
        if not metadata.token_endpoint:
            raise TokenExchangeError("Issuer does not publish a token_endpoint")

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
            "client_id": self.settings.CLIENT_ID,
        }

        # Confidential client: client_secret_post
        if self.settings.CLIENT_SECRET:
            payload["client_secret"] = self.settings.CLIENT_SECRET

        try:
            response = await self._post_form(metadata.token_endpoint, payload)
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Unable to reach token endpoint: {e}") from e

        if not response.is_success:
            error_data = {}
            if response.headers.get("content-type", "").startswith("application/json"):
                try:
                    error_data = response.json()
                except ValueError:
                    error_data = {}
            error_msg = (
                error_data.get("error_description")
                or error_data.get("error")
                or f"HTTP {response.status_code}"
            )
            logger.warning(
                "Token endpoint rejected the code exchange",
                extra={"status_code": response.status_code, "error": error_data.get("error")},
            )
            raise TokenExchangeError(f"Token exchange failed: {error_msg}")

        try:
            token_data = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token response is not valid JSON") from e

        if not isinstance(token_data, dict) or not token_data.get("id_token"):
            raise TokenExchangeError("Token response missing id_token")

        return TokenSet.model_validate(token_data)


__all__ = ["OIDCClient"]
