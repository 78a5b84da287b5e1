"""Application factory tests."""

from oidc_rp import __version__


def test_health_check(build_client):
    response = build_client().get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "oidc-rp", "version": __version__}


def test_root_lists_auth_routes(build_client):
    response = build_client(ROUTES_PREFIX="/auth").get("/")

    assert response.status_code == 200
    assert response.json()["login"] == "/auth/login"


def test_transient_cookie_is_cross_site_for_form_post(build_client):
    client = build_client()

    response = client.get("/login", follow_redirects=False)

    cookie = response.headers["set-cookie"].lower()
    assert cookie.startswith("auth_verification=")
    assert "samesite=none" in cookie
    assert "secure" in cookie


def test_transient_cookie_is_lax_for_query_callbacks(build_client):
    client = build_client(RESPONSE_TYPE="code")

    response = client.get("/login", follow_redirects=False)

    assert "samesite=lax" in response.headers["set-cookie"].lower()
