"""
Configuration module for the OIDC relying-party middleware.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider client registration, authorization request shape,
session cookies, and the durable token store.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oidc_rp.flows import (
    ResponseFlow,
    ResponseMode,
    ResponseType,
    default_response_mode,
    resolve_response_flow,
)


DEFAULT_SCOPE = "openid profile email"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Client registration, authorization parameters, cookie sessions and the
    token store policy are all defined here.
    """

    # =========================================================================
    # Client Registration
    # =========================================================================

    CLIENT_ID: str = Field(
        ...,
        description="Client ID registered at the identity provider",
        min_length=1,
    )

    CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (required for the code flow with confidential clients)",
    )

    BASE_URL: str = Field(
        ...,
        description="Public base URL of this application (e.g., https://myapp.com)",
    )

    ISSUER_BASE_URL: str = Field(
        ...,
        description="Issuer URL; metadata is read from <issuer>/.well-known/openid-configuration",
    )

    # =========================================================================
    # Authorization Request
    # =========================================================================

    SCOPE: str = Field(
        default=DEFAULT_SCOPE,
        description="Space-separated scopes; replaces the default entirely",
        min_length=1,
    )

    RESPONSE_TYPE: str = Field(
        default=ResponseType.ID_TOKEN.value,
        description="One of: code, id_token, 'code id_token', none",
    )

    RESPONSE_MODE: Optional[str] = Field(
        default=None,
        description=(
            "query, fragment or form_post. Leave unset for the response_type "
            "default; set to an empty value to omit the parameter entirely"
        ),
    )

    AUTHORIZATION_PARAMS: Dict[str, str] = Field(
        default_factory=dict,
        description="Extra authorization parameters as a JSON object (e.g., {\"prompt\": \"login\"})",
    )

    ROUTES_PREFIX: str = Field(
        default="",
        description="Path prefix the auth routes are mounted under (e.g., /auth)",
    )

    POST_LOGOUT_REDIRECT_URI: Optional[str] = Field(
        None,
        description="Where the IdP sends the browser after logout (defaults to BASE_URL)",
    )

    # =========================================================================
    # Sessions
    # =========================================================================

    SESSION_SECRET: str = Field(
        ...,
        description="Secret used to sign the session JWT and the transient cookie",
        min_length=32,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="appSession",
        description="Cookie holding the authenticated user session JWT",
    )

    SESSION_EXPIRY_MINUTES: int = Field(
        default=1440,
        description="Lifetime of the authenticated user session in minutes",
        ge=5,
        le=43200,
    )

    SESSION_JWT_ISSUER: str = Field(
        default="oidc-rp",
        description="'iss' claim of session JWTs issued by this application",
    )

    TRANSIENT_COOKIE_NAME: str = Field(
        default="auth_verification",
        description="Cookie holding state/nonce between /login and /callback",
    )

    TRANSIENT_MAX_AGE_SECONDS: int = Field(
        default=600,
        description="Lifetime of the transient login cookie in seconds",
        ge=60,
        le=3600,
    )

    TOKEN_RECORD_TTL_SECONDS: int = Field(
        default=7 * 24 * 3600,
        description="Retention of logout token records in the in-memory store (0 = never expire)",
        ge=0,
    )

    ENABLE_SESSION_ROUTE: bool = Field(
        default=True,
        description="Expose GET /session for introspection",
    )

    # =========================================================================
    # Token Validation
    # =========================================================================

    ID_TOKEN_SIGNING_ALGS: str = Field(
        default="RS256",
        description="Comma-separated list of accepted ID token signing algorithms",
    )

    CLOCK_TOLERANCE_SECONDS: int = Field(
        default=60,
        description="Clock skew tolerance when validating exp/iat/nbf",
        ge=0,
        le=600,
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the issuer JWKS in seconds",
        ge=60,
        le=86400,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for discovery, JWKS and token endpoint calls",
        gt=0,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def redirect_uri(self) -> str:
        """Callback URL registered at the IdP."""
        return f"{self.BASE_URL}{self.ROUTES_PREFIX}/callback"

    @property
    def uses_https(self) -> bool:
        return self.BASE_URL.startswith("https://")

    @property
    def response_type(self) -> ResponseType:
        return ResponseType.parse(self.RESPONSE_TYPE)

    @property
    def resolved_response_mode(self) -> Optional[ResponseMode]:
        """
        Response mode that will be sent to the IdP.

        An explicitly provided empty value disables the parameter; an unset
        field falls back to the response_type default.
        """
        if "RESPONSE_MODE" in self.model_fields_set:
            return ResponseMode(self.RESPONSE_MODE) if self.RESPONSE_MODE else None
        return default_response_mode(self.response_type)

    @property
    def response_flow(self) -> ResponseFlow:
        return resolve_response_flow(self.response_type, self.resolved_response_mode)

    @property
    def id_token_signing_algs_list(self) -> List[str]:
        return [
            alg.strip()
            for alg in self.ID_TOKEN_SIGNING_ALGS.split(",")
            if alg.strip()
        ]

    @property
    def post_logout_redirect_uri(self) -> str:
        return self.POST_LOGOUT_REDIRECT_URI or self.BASE_URL

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("BASE_URL", "ISSUER_BASE_URL")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """
        Require an absolute http(s) URL and strip trailing slashes.

        Raises:
            ValueError: If the value is not an http or https URL
        """
        v = v.strip()
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError(
                f"Invalid URL: '{v}'. Expected an absolute http(s) URL"
            )
        return v.rstrip("/")

    @field_validator("RESPONSE_TYPE")
    @classmethod
    def validate_response_type(cls, v: str) -> str:
        return ResponseType.parse(v).value

    @field_validator("RESPONSE_MODE")
    @classmethod
    def validate_response_mode(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return ResponseMode(v.strip()).value

    @field_validator("ROUTES_PREFIX")
    @classmethod
    def validate_routes_prefix(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            raise ValueError("ROUTES_PREFIX must start with '/'")
        return v

    @field_validator("SCOPE")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        scopes = v.split()
        if "openid" not in scopes:
            raise ValueError("SCOPE must include 'openid'")
        return " ".join(scopes)


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Check for configuration that loads but is unlikely to work.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors = []
    warnings = []

    flow = settings.response_flow

    if flow.response_type.includes_code and not settings.CLIENT_SECRET:
        warnings.append(
            "RESPONSE_TYPE includes 'code' but CLIENT_SECRET is not set; "
            "the token endpoint will likely reject the exchange"
        )

    if flow.accepts_post and not settings.uses_https:
        warnings.append(
            "POST callbacks need a SameSite=None cookie, which browsers only "
            "accept over https"
        )

    if settings.POST_LOGOUT_REDIRECT_URI and not settings.POST_LOGOUT_REDIRECT_URI.startswith(
        ("https://", "http://")
    ):
        errors.append("POST_LOGOUT_REDIRECT_URI must be an absolute URL")

    if not settings.id_token_signing_algs_list:
        errors.append("ID_TOKEN_SIGNING_ALGS must list at least one algorithm")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "response_type": flow.response_type.value,
        "response_mode": flow.response_mode.value if flow.response_mode else None,
    }
