"""
Authentication Flow Tests

Exercises /login, /callback, /logout and /session through the FastAPI app
against a fake identity provider.
"""

import asyncio
from typing import Dict, Optional
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.routing import APIRoute

from oidc_rp.auth.stores import SessionStore
from oidc_rp.auth.templates import REPOST_HTML


ISSUER = "https://idp.example"


def redirect_query(response) -> Dict[str, str]:
    location = response.headers["location"]
    return {key: values[0] for key, values in parse_qs(urlsplit(location).query).items()}


def cookie_header(response, name: str) -> Optional[str]:
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header
    return None


def route_methods(app, path: str) -> set:
    methods = set()
    for route in app.routes:
        if isinstance(route, APIRoute) and route.path == path:
            methods |= route.methods
    return methods


def sign_in(client, idp, sid: Optional[str] = "idp-session-1", return_to: str = "/"):
    """Run login + form_post callback and return the callback response."""
    login = client.get("/login", params={"returnTo": return_to}, follow_redirects=False)
    query = redirect_query(login)
    id_token = idp.mint_id_token(nonce=query["nonce"], sid=sid)
    return client.post(
        "/callback",
        data={"id_token": id_token, "state": query["state"]},
        follow_redirects=False,
    ), id_token


class TestRoutes:
    """Mounted routes per response_type/response_mode"""

    def test_default_routes(self, build_client):
        client = build_client()

        assert "GET" in route_methods(client.app, "/login")
        assert "GET" in route_methods(client.app, "/logout")
        assert route_methods(client.app, "/callback") == {"GET", "POST"}

    @pytest.mark.parametrize("response_type", ["code", "none"])
    def test_query_callback_for_code_and_none(self, build_client, response_type):
        client = build_client(RESPONSE_TYPE=response_type, RESPONSE_MODE=None)

        assert route_methods(client.app, "/callback") == {"GET"}

    def test_id_token_without_response_mode_mounts_both_callbacks(self, build_client):
        client = build_client(RESPONSE_TYPE="id_token", RESPONSE_MODE=None)

        assert route_methods(client.app, "/callback") == {"GET", "POST"}

    def test_session_route_can_be_disabled(self, build_client):
        client = build_client(ENABLE_SESSION_ROUTE=False)

        assert client.get("/session").status_code == 404

    def test_routes_prefix(self, build_client):
        client = build_client(ROUTES_PREFIX="/auth")

        res = client.get("/auth/login", follow_redirects=False)

        assert res.status_code == 302
        assert redirect_query(res)["redirect_uri"] == "https://myapp.com/auth/callback"


class TestLogin:
    """GET /login"""

    def test_redirects_to_authorize_url(self, build_client):
        client = build_client()

        res = client.get("/login", follow_redirects=False)

        assert res.status_code == 302
        parsed = urlsplit(res.headers["location"])
        query = redirect_query(res)
        assert parsed.hostname == "idp.example"
        assert parsed.path == "/authorize"
        assert query["client_id"] == "123"
        assert query["scope"] == "openid profile email"
        assert query["response_type"] == "id_token"
        assert query["response_mode"] == "form_post"
        assert query["redirect_uri"] == "https://myapp.com/callback"
        assert "nonce" in query
        assert "state" in query

        session = client.get("/session").json()
        assert session["nonce"] == query["nonce"]
        assert session["state"] == query["state"]
        assert session["return_to"] == "/"

    @pytest.mark.parametrize("response_type", ["code", "id_token", "none", "code id_token"])
    def test_response_type_passed_through(self, build_client, response_type):
        client = build_client(RESPONSE_TYPE=response_type, CLIENT_SECRET="456")

        res = client.get("/login", follow_redirects=False)

        assert redirect_query(res)["response_type"] == response_type

    @pytest.mark.parametrize("response_type", ["code", "id_token", "none"])
    def test_disabled_response_mode_is_omitted(self, build_client, response_type):
        client = build_client(RESPONSE_TYPE=response_type, RESPONSE_MODE=None)

        res = client.get("/login", follow_redirects=False)

        query = redirect_query(res)
        assert "response_mode" not in query
        assert "response_mode" not in res.headers["location"]
        assert query["response_type"] == response_type
        assert query["redirect_uri"] == "https://myapp.com/callback"
        assert query["scope"] == "openid profile email"
        assert "nonce" in query
        assert "state" in query

    def test_code_flow_leaves_response_mode_unset(self, build_client):
        client = build_client(RESPONSE_TYPE="code", CLIENT_SECRET="456")

        query = redirect_query(client.get("/login", follow_redirects=False))

        assert "response_mode" not in query
        assert query["client_id"] == "123"

    def test_custom_scope_replaces_default(self, build_client):
        client = build_client(SCOPE="openid offline_access")

        query = redirect_query(client.get("/login", follow_redirects=False))

        assert query["scope"] == "openid offline_access"

    def test_extra_params_cannot_override_protocol_params(self, build_client):
        client = build_client(AUTHORIZATION_PARAMS={"prompt": "login", "client_id": "evil", "state": "x"})

        query = redirect_query(client.get("/login", follow_redirects=False))

        assert query["prompt"] == "login"
        assert query["client_id"] == "123"
        assert query["state"] != "x"

    def test_each_login_gets_fresh_state_and_nonce(self, build_client):
        client = build_client()

        first = redirect_query(client.get("/login", follow_redirects=False))
        second = redirect_query(client.get("/login", follow_redirects=False))

        assert first["state"] != second["state"]
        assert first["nonce"] != second["nonce"]
        # Last write wins in one browser
        assert client.get("/session").json()["state"] == second["state"]

    def test_absolute_return_to_is_ignored(self, build_client):
        client = build_client()

        client.get("/login", params={"returnTo": "https://evil.example/"}, follow_redirects=False)

        assert client.get("/session").json()["return_to"] == "/"

    def test_discovery_failure_returns_502(self, build_client, idp):
        idp.metadata = {"issuer": ISSUER}
        client = build_client()

        res = client.get("/login", follow_redirects=False)

        assert res.status_code == 502
        assert "Identity Provider Unavailable" in res.text


class TestCallback:
    """GET/POST /callback"""

    def test_get_callback_serves_repost_page(self, build_client):
        client = build_client(RESPONSE_TYPE="id_token", RESPONSE_MODE="form_post")

        res = client.get("/callback", follow_redirects=False)

        assert res.status_code == 200
        assert res.headers["content-type"] == "text/html; charset=utf-8"
        assert res.text == REPOST_HTML

    def test_form_post_establishes_session_and_token_record(self, build_client, idp, token_store):
        client = build_client()

        res, id_token = sign_in(client, idp, sid="sid-abc", return_to="/dashboard")

        assert res.status_code == 302
        assert res.headers["location"] == "/dashboard"
        assert cookie_header(res, "appSession") is not None

        record = asyncio.run(token_store.get(f"{ISSUER}|sid-abc"))
        assert record == {"id_token": id_token}

        me = client.get("/me").json()
        assert me["sub"] == "user-sub-123"
        assert me["sid"] == "sid-abc"
        assert me["iss"] == ISSUER

        session = client.get("/session").json()
        assert "state" not in session
        assert session["user"]["subject"] == "user-sub-123"

    def test_state_mismatch_rejects_without_session(self, build_client, idp, token_store):
        client = build_client()
        query = redirect_query(client.get("/login", follow_redirects=False))

        res = client.post(
            "/callback",
            data={"id_token": idp.mint_id_token(nonce=query["nonce"]), "state": "not-the-state"},
            follow_redirects=False,
        )

        assert res.status_code == 400
        assert "Security Error" in res.text
        assert cookie_header(res, "appSession") is None
        assert len(token_store) == 0
        assert client.get("/me").status_code == 401
        # Transient state is single use even on failure
        assert "state" not in client.get("/session").json()

    def test_missing_transient_session(self, build_client, idp):
        client = build_client()

        res = client.post(
            "/callback",
            data={"id_token": idp.mint_id_token(nonce="n"), "state": "s"},
            follow_redirects=False,
        )

        assert res.status_code == 400
        assert "Login Expired" in res.text

    def test_idp_error_is_passed_through(self, build_client, idp):
        client = build_client()
        query = redirect_query(client.get("/login", follow_redirects=False))

        res = client.post(
            "/callback",
            data={
                "error": "access_denied",
                "error_description": "User cancelled the login",
                "state": query["state"],
            },
            follow_redirects=False,
        )

        assert res.status_code == 400
        assert "User cancelled the login" in res.text
        assert idp.count("/.well-known/jwks.json") == 0

    def test_nonce_mismatch_rejected(self, build_client, idp):
        client = build_client()
        query = redirect_query(client.get("/login", follow_redirects=False))

        res = client.post(
            "/callback",
            data={"id_token": idp.mint_id_token(nonce="replayed"), "state": query["state"]},
            follow_redirects=False,
        )

        assert res.status_code == 400
        assert "Token Verification Failed" in res.text
        assert cookie_header(res, "appSession") is None

    def test_expired_id_token_rejected(self, build_client, idp):
        client = build_client()
        query = redirect_query(client.get("/login", follow_redirects=False))

        res = client.post(
            "/callback",
            data={
                "id_token": idp.mint_id_token(nonce=query["nonce"], exp_delta_minutes=-10),
                "state": query["state"],
            },
            follow_redirects=False,
        )

        assert res.status_code == 400
        assert "expired" in res.text.lower()

    def test_code_flow_stores_record_when_sid_present(self, build_client, idp, token_store):
        client = build_client(RESPONSE_TYPE="code", CLIENT_SECRET="456")
        query = redirect_query(client.get("/login", follow_redirects=False))
        id_token = idp.mint_id_token(nonce=query["nonce"], sid="sid-code")
        idp.token_response = {
            "id_token": id_token,
            "access_token": "access-123",
            "refresh_token": "refresh-123",
            "token_type": "Bearer",
            "expires_in": 3600,
        }

        res = client.get(
            "/callback",
            params={"code": "auth-code", "state": query["state"]},
            follow_redirects=False,
        )

        assert res.status_code == 302
        assert cookie_header(res, "appSession") is not None
        record = asyncio.run(token_store.get(f"{ISSUER}|sid-code"))
        assert record == {
            "id_token": id_token,
            "refresh_token": "refresh-123",
            "access_token": "access-123",
        }

        token_request = idp.token_requests[0]
        assert token_request["grant_type"] == ["authorization_code"]
        assert token_request["code"] == ["auth-code"]
        assert token_request["client_secret"] == ["456"]
        assert token_request["redirect_uri"] == ["https://myapp.com/callback"]

    def test_code_flow_without_sid_stores_no_record(self, build_client, idp, token_store):
        client = build_client(RESPONSE_TYPE="code", CLIENT_SECRET="456")
        query = redirect_query(client.get("/login", follow_redirects=False))
        idp.token_response = {"id_token": idp.mint_id_token(nonce=query["nonce"], sid=None)}

        res = client.get(
            "/callback",
            params={"code": "auth-code", "state": query["state"]},
            follow_redirects=False,
        )

        assert res.status_code == 302
        assert cookie_header(res, "appSession") is not None
        assert len(token_store) == 0

    def test_token_exchange_failure(self, build_client, idp):
        client = build_client(RESPONSE_TYPE="code", CLIENT_SECRET="456")
        query = redirect_query(client.get("/login", follow_redirects=False))
        idp.token_status = 400
        idp.token_response = {"error": "invalid_grant", "error_description": "Authorization code expired"}

        res = client.get(
            "/callback",
            params={"code": "stale-code", "state": query["state"]},
            follow_redirects=False,
        )

        assert res.status_code == 502
        assert "Authorization code expired" in res.text
        assert cookie_header(res, "appSession") is None

    def test_response_type_none_redirects_without_identity(self, build_client):
        client = build_client(RESPONSE_TYPE="none", RESPONSE_MODE=None)
        client.get("/login", params={"returnTo": "/home"}, follow_redirects=False)
        state = client.get("/session").json()["state"]

        res = client.get("/callback", params={"state": state}, follow_redirects=False)

        assert res.status_code == 302
        assert res.headers["location"] == "/home"
        assert cookie_header(res, "appSession") is None

    def test_storage_failure_propagates(self, build_client, idp):
        failing_store = AsyncMock(spec=SessionStore)
        failing_store.set.side_effect = RuntimeError("store unavailable")
        client = build_client(store=failing_store, raise_server_exceptions=False)

        res, _ = sign_in(client, idp, sid="sid-abc")

        assert res.status_code == 500
        assert cookie_header(res, "appSession") is None

    def test_storage_failure_still_consumes_state(self, build_client, idp):
        flaky_store = AsyncMock(spec=SessionStore)
        flaky_store.set.side_effect = [RuntimeError("store unavailable"), None]
        client = build_client(store=flaky_store, raise_server_exceptions=False)
        query = redirect_query(client.get("/login", follow_redirects=False))
        form = {
            "id_token": idp.mint_id_token(nonce=query["nonce"], sid="sid-abc"),
            "state": query["state"],
        }

        first = client.post("/callback", data=form, follow_redirects=False)

        assert first.status_code == 500
        assert "Max-Age=0" in cookie_header(first, "auth_verification")
        assert "state" not in client.get("/session").json()

        replay = client.post("/callback", data=form, follow_redirects=False)

        assert replay.status_code == 400
        assert "Login Expired" in replay.text
        assert cookie_header(replay, "appSession") is None
        assert flaky_store.set.await_count == 1

    def test_hybrid_flow_stores_exchanged_tokens(self, build_client, idp, token_store):
        client = build_client(RESPONSE_TYPE="code id_token", CLIENT_SECRET="456")
        query = redirect_query(client.get("/login", follow_redirects=False))
        assert query["response_mode"] == "form_post"
        exchanged_id_token = idp.mint_id_token(nonce=query["nonce"], sid="sid-hybrid")
        idp.token_response = {
            "id_token": exchanged_id_token,
            "access_token": "access-123",
            "refresh_token": "refresh-123",
            "token_type": "Bearer",
        }

        res = client.post(
            "/callback",
            data={
                "code": "auth-code",
                "id_token": idp.mint_id_token(nonce=query["nonce"], sid="sid-hybrid"),
                "state": query["state"],
            },
            follow_redirects=False,
        )

        assert res.status_code == 302
        assert cookie_header(res, "appSession") is not None
        record = asyncio.run(token_store.get(f"{ISSUER}|sid-hybrid"))
        assert record == {
            "id_token": exchanged_id_token,
            "refresh_token": "refresh-123",
            "access_token": "access-123",
        }

    def test_hybrid_flow_rejects_subject_mismatch(self, build_client, idp, token_store):
        client = build_client(RESPONSE_TYPE="code id_token", CLIENT_SECRET="456")
        query = redirect_query(client.get("/login", follow_redirects=False))
        idp.token_response = {
            "id_token": idp.mint_id_token(nonce=query["nonce"], sub="someone-else"),
            "access_token": "access-123",
        }

        res = client.post(
            "/callback",
            data={
                "code": "auth-code",
                "id_token": idp.mint_id_token(nonce=query["nonce"]),
                "state": query["state"],
            },
            follow_redirects=False,
        )

        assert res.status_code == 400
        assert "Token Verification Failed" in res.text
        assert cookie_header(res, "appSession") is None
        assert len(token_store) == 0


class TestLogout:
    """GET /logout"""

    def test_redirects_to_end_session_with_stored_token(self, build_client, idp, token_store):
        client = build_client()
        _, id_token = sign_in(client, idp, sid="sid-abc")

        res = client.get("/logout", follow_redirects=False)

        assert res.status_code == 302
        assert res.headers["location"].startswith(f"{ISSUER}/v2/logout?")
        query = redirect_query(res)
        assert query["id_token_hint"] == id_token
        assert query["post_logout_redirect_uri"] == "https://myapp.com"
        assert "Max-Age=0" in cookie_header(res, "appSession")
        assert asyncio.run(token_store.get(f"{ISSUER}|sid-abc")) is None
        assert client.get("/me").status_code == 401

    def test_without_record_logs_out_locally(self, build_client, idp, token_store):
        client = build_client()
        sign_in(client, idp, sid="sid-abc")
        asyncio.run(token_store.destroy(f"{ISSUER}|sid-abc"))

        res = client.get("/logout", follow_redirects=False)

        assert res.status_code == 302
        assert res.headers["location"] == "https://myapp.com"
        assert "Max-Age=0" in cookie_header(res, "appSession")
        assert client.get("/me").status_code == 401

    def test_without_sid_logs_out_locally(self, build_client, idp):
        client = build_client()
        sign_in(client, idp, sid=None)

        res = client.get("/logout", follow_redirects=False)

        assert res.headers["location"] == "https://myapp.com"

    def test_anonymous_logout_is_idempotent(self, build_client):
        client = build_client()

        first = client.get("/logout", follow_redirects=False)
        second = client.get("/logout", follow_redirects=False)

        assert first.status_code == second.status_code == 302
        assert second.headers["location"] == "https://myapp.com"

    def test_return_to_sets_post_logout_target(self, build_client, idp):
        client = build_client()
        sign_in(client, idp, sid="sid-abc")

        res = client.get("/logout", params={"returnTo": "/goodbye"}, follow_redirects=False)

        assert redirect_query(res)["post_logout_redirect_uri"] == "https://myapp.com/goodbye"

    def test_storage_failure_still_clears_local_session(self, build_client, idp):
        failing_store = AsyncMock(spec=SessionStore)
        failing_store.get.side_effect = RuntimeError("store unavailable")
        client = build_client(store=failing_store, raise_server_exceptions=False)
        sign_in(client, idp, sid="sid-abc")

        res = client.get("/logout", follow_redirects=False)

        assert res.status_code == 500
        assert "Max-Age=0" in cookie_header(res, "appSession")
