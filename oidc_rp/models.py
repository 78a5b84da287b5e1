"""
Data Models Module

Pydantic models shared by the authentication flow:
- Issuer metadata resolved through discovery
- The transient login state and the normalized callback parameters
- Token sets returned by the identity provider
- The authenticated user identity kept in the long-lived session
- Results of the login, callback and logout operations
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Issuer Models
# ============================================================================

class IssuerMetadata(BaseModel):
    """Subset of the OpenID Provider metadata document used by the RP."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="Issuer identifier")
    authorization_endpoint: str = Field(..., description="Authorization endpoint URL")
    token_endpoint: Optional[str] = Field(None, description="Token endpoint URL")
    end_session_endpoint: Optional[str] = Field(None, description="RP-initiated logout endpoint")
    jwks_uri: Optional[str] = Field(None, description="JSON Web Key Set URL")
    id_token_signing_alg_values_supported: Optional[List[str]] = Field(
        None, description="Signing algorithms the issuer may use for ID tokens"
    )


# ============================================================================
# Authentication Flow Models
# ============================================================================

class TransientAuthState(BaseModel):
    """State kept in the short-lived cookie between /login and /callback."""

    state: str
    nonce: str
    return_to: str = "/"


class CallbackParams(BaseModel):
    """Callback parameters normalized from either the query string or a form body."""

    model_config = ConfigDict(extra="ignore")

    state: Optional[str] = None
    code: Optional[str] = None
    id_token: Optional[str] = None
    access_token: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class TokenSet(BaseModel):
    """Tokens returned by the token endpoint or directly on the callback."""

    model_config = ConfigDict(extra="ignore")

    id_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    def logout_record(self) -> Dict[str, str]:
        """Tokens worth persisting for a later end-session request."""
        return {
            name: value
            for name, value in (
                ("id_token", self.id_token),
                ("refresh_token", self.refresh_token),
                ("access_token", self.access_token),
            )
            if value
        }


class AuthenticatedUser(BaseModel):
    """User identity established by a successful callback."""

    subject: str = Field(..., description="'sub' claim of the ID token")
    issuer: str = Field(..., description="'iss' claim of the ID token")
    sid: Optional[str] = Field(None, description="IdP session identifier, when provided")
    claims: Dict[str, Any] = Field(default_factory=dict, description="Validated ID token claims")

    @property
    def email(self) -> Optional[str]:
        return self.claims.get("email")

    @property
    def name(self) -> Optional[str]:
        return self.claims.get("name")


# ============================================================================
# Operation Results
# ============================================================================

class AuthorizationRequest(BaseModel):
    """Outcome of building a login redirect."""

    url: str
    transient: TransientAuthState
    params: Dict[str, str]


class CallbackResult(BaseModel):
    """Outcome of a successful callback."""

    return_to: str
    user: Optional[AuthenticatedUser] = None
    token_record_key: Optional[str] = None


class LogoutResult(BaseModel):
    """Outcome of building a logout redirect."""

    redirect_url: str
    remote: bool = Field(False, description="True when redirecting to the IdP end-session endpoint")
