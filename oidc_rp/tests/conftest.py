"""
Shared fixtures: a fake identity provider served through httpx.MockTransport,
RSA signing keys, and settings/app builders.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.issuer import IssuerCache
from oidc_rp.auth.stores import MemorySessionStore
from oidc_rp.config import Settings
from oidc_rp.main import create_application


ISSUER = "https://idp.example"
CLIENT_ID = "123"
BASE_URL = "https://myapp.com"
TEST_KID = "test-key-id-2024"
SESSION_SECRET = "test-session-secret-0123456789abcdef"

# Generate test key once for reuse
TEST_PRIVATE_KEY = rsa.generate_private_key(
    public_exponent=65537,
    key_size=2048,
    backend=default_backend(),
)


class FakeIdentityProvider:
    """
    Minimal OIDC provider: discovery, JWKS and token endpoints.

    Requests are recorded in ``calls`` as (method, path) tuples.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.jwks_kid = TEST_KID
        self.token_status = 200
        self.token_response: Dict[str, Any] = {}
        self.token_requests: List[Dict[str, List[str]]] = []
        self.metadata: Dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/oauth/token",
            "end_session_endpoint": f"{ISSUER}/v2/logout",
            "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
            "id_token_signing_alg_values_supported": ["RS256"],
        }

    def jwks(self) -> Dict[str, Any]:
        jwk = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY.public_key(), as_dict=True)
        jwk["kid"] = self.jwks_kid
        jwk["use"] = "sig"
        jwk["alg"] = "RS256"
        return {"keys": [jwk]}

    def mint_id_token(
        self,
        nonce: Optional[str],
        sid: Optional[str] = "idp-session-1",
        sub: str = "user-sub-123",
        aud: str = CLIENT_ID,
        iss: str = ISSUER,
        kid: str = TEST_KID,
        exp_delta_minutes: int = 60,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "iss": iss,
            "sub": sub,
            "aud": aud,
            "exp": now + timedelta(minutes=exp_delta_minutes),
            "iat": now,
            "email": "user@example.com",
            "name": "Test User",
        }
        if nonce is not None:
            payload["nonce"] = nonce
        if sid is not None:
            payload["sid"] = sid

        return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.metadata)
        if path == "/.well-known/jwks.json":
            return httpx.Response(200, json=self.jwks())
        if path == "/oauth/token" and request.method == "POST":
            self.token_requests.append(parse_qs(request.content.decode()))
            return httpx.Response(self.token_status, json=self.token_response)
        return httpx.Response(404)

    def count(self, path: str) -> int:
        return sum(1 for _, called in self.calls if called == path)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "CLIENT_ID": CLIENT_ID,
        "BASE_URL": BASE_URL,
        "ISSUER_BASE_URL": ISSUER,
        "SESSION_SECRET": SESSION_SECRET,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def http_client(idp: FakeIdentityProvider) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))


@pytest.fixture
def token_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def build_client(http_client, token_store):
    """Return a factory creating a TestClient for the given setting overrides."""

    def _build(raise_server_exceptions: bool = True, store=None, **overrides: Any) -> TestClient:
        settings = make_settings(**overrides)
        app = create_application(
            settings,
            issuer_cache=IssuerCache(http_client=http_client),
            token_store=store if store is not None else token_store,
            oidc_client=OIDCClient(settings, http_client=http_client),
        )
        return TestClient(
            app,
            base_url="https://testserver",
            raise_server_exceptions=raise_server_exceptions,
        )

    return _build
