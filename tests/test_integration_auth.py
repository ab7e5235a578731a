from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from tenantidp.app import app
from tenantidp.service import runtime as runtime_module
from tenantidp.service.runtime import get_runtime

PASSWORD = "correct-horse-battery"


def _client() -> TestClient:
    return TestClient(app, base_url="https://testserver", follow_redirects=False)


def _signup(client, email="alice@acme.example.com", tenant_id="acme", **extra):
    return client.post(
        "/v1/auth/signup",
        json={"email": email, "password": PASSWORD, **extra},
        headers={"X-Tenant-ID": tenant_id},
    )


def _assert_envelope_error(resp, status_code, code):
    assert resp.status_code == status_code, resp.text
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["request_id"]
    return body["error"]


def test_signup_sets_secure_session_cookies():
    client = _client()
    resp = _signup(client, handle="alice", first_name="Alice", last_name="Liddell")

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["tenant_id"] == "acme"
    assert body["data"]["session_id"]
    set_cookie = ", ".join(resp.headers.get_list("set-cookie"))
    assert "session_id=" in set_cookie
    assert "tenant_id=acme" in set_cookie
    assert "HttpOnly" in set_cookie
    assert "Secure" in set_cookie
    assert "SameSite=lax" in set_cookie
    assert resp.headers["cache-control"] == "no-store"


def test_signup_normalizes_email():
    client = _client()
    assert _signup(client, email="  Alice@ACME.example.com").status_code == 201

    session = client.get("/v1/auth/session", headers={"X-Tenant-ID": "acme"})
    assert session.json()["data"]["email"] == "alice@acme.example.com"


def test_duplicate_signup_conflicts():
    _signup(_client())
    resp = _signup(_client())

    _assert_envelope_error(resp, 409, "conflict")


def test_same_email_in_two_tenants():
    assert _signup(_client(), tenant_id="acme").status_code == 201
    assert _signup(_client(), tenant_id="globex").status_code == 201


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "not-an-email", "password": PASSWORD},
        {"email": "alice@acme.example.com", "password": "short"},
        {"email": "alice@acme.example.com", "password": PASSWORD, "handle": "bad handle"},
        {"password": PASSWORD},
    ],
)
def test_signup_validation(payload):
    resp = _client().post("/v1/auth/signup", json=payload, headers={"X-Tenant-ID": "acme"})

    error = _assert_envelope_error(resp, 400, "validation_error")
    assert error["details"]


def test_signup_requires_tenant():
    resp = _client().post(
        "/v1/auth/signup", json={"email": "alice@acme.example.com", "password": PASSWORD}
    )
    error = _assert_envelope_error(resp, 400, "validation_error")
    assert error["message"] == "X-Tenant-ID header is required"


def test_signup_unknown_tenant():
    resp = _signup(_client(), tenant_id="initech")
    error = _assert_envelope_error(resp, 400, "validation_error")
    assert error["message"] == "Unknown tenant"


def test_signup_disabled(monkeypatch):
    monkeypatch.setattr(get_runtime().settings, "allow_signup", False)

    resp = _signup(_client())

    _assert_envelope_error(resp, 403, "forbidden")


def test_login_and_session():
    _signup(_client())
    client = _client()

    resp = client.post(
        "/v1/auth/login",
        json={"email": "alice@acme.example.com", "password": PASSWORD},
        headers={"X-Tenant-ID": "acme"},
    )

    assert resp.status_code == 200
    assert resp.headers["x-ratelimit-limit"] == "10"
    session_id = resp.json()["data"]["session_id"]

    by_cookie = client.get("/v1/auth/session")
    assert by_cookie.status_code == 200
    assert by_cookie.json()["data"]["tenant_id"] == "acme"

    by_header = _client().get(
        "/v1/auth/session", headers={"X-Tenant-ID": "acme", "session_id": session_id}
    )
    assert by_header.status_code == 200


def test_login_with_wrong_password():
    _signup(_client())

    resp = _client().post(
        "/v1/auth/login",
        json={"email": "alice@acme.example.com", "password": "wrong-password"},
        headers={"X-Tenant-ID": "acme"},
    )

    error = _assert_envelope_error(resp, 401, "unauthorized")
    assert error["message"] == "invalid credentials"
    assert "www-authenticate" not in resp.headers


def test_login_in_wrong_tenant():
    _signup(_client())

    resp = _client().post(
        "/v1/auth/login",
        json={"email": "alice@acme.example.com", "password": PASSWORD},
        headers={"X-Tenant-ID": "globex"},
    )

    _assert_envelope_error(resp, 401, "unauthorized")


def test_login_rate_limited(monkeypatch):
    monkeypatch.setattr(runtime_module, "time", SimpleNamespace(time=lambda: 30000.0))
    _signup(_client())
    client = _client()
    payload = {"email": "alice@acme.example.com", "password": "wrong-password"}

    statuses = [
        client.post("/v1/auth/login", json=payload, headers={"X-Tenant-ID": "acme"}).status_code
        for _ in range(11)
    ]

    assert statuses[-1] == 429
    assert statuses.count(401) == 10


def test_logout_revokes_session():
    client = _client()
    session_id = _signup(client).json()["data"]["session_id"]

    resp = client.post("/v1/auth/logout")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"message": "session revoked"}

    after = _client().get(
        "/v1/auth/session", headers={"X-Tenant-ID": "acme", "session_id": session_id}
    )
    _assert_envelope_error(after, 401, "unauthorized")


def test_session_is_tenant_scoped():
    session_id = _signup(_client()).json()["data"]["session_id"]

    resp = _client().get(
        "/v1/auth/session", headers={"X-Tenant-ID": "globex", "session_id": session_id}
    )

    _assert_envelope_error(resp, 401, "unauthorized")


def test_conflicting_tenant_header_and_cookie():
    client = _client()
    _signup(client)

    resp = client.get("/v1/auth/session", headers={"X-Tenant-ID": "globex"})

    error = _assert_envelope_error(resp, 400, "invalid_request")
    assert "Conflicting" in error["message"]


def test_bootstrap_token_requires_session():
    resp = _client().post("/v1/auth/bootstrap-token", headers={"X-Tenant-ID": "acme"})
    _assert_envelope_error(resp, 401, "unauthorized")


def test_bootstrap_token_issued():
    client = _client()
    _signup(client)

    resp = client.post("/v1/auth/bootstrap-token")

    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["tenant_id"] == "acme"
    assert data["expires_in"] == 60
    assert len(data["bootstrap_token"]) >= 43


def test_response_headers():
    resp = _client().get("/healthz", headers={"X-Request-ID": "req-123"})

    assert resp.headers["x-request-id"] == "req-123"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert "frame-ancestors 'none'" in resp.headers["content-security-policy"]
    assert resp.headers["api-version"] == "0.1.0"


def test_protocol_errors_use_oauth_shape():
    resp = _client().post("/token", data={"grant_type": "password"})

    assert resp.status_code == 400
    assert resp.json() == {
        "error": "unsupported_grant_type",
        "error_description": "Unsupported grant_type",
    }
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["pragma"] == "no-cache"


def test_unknown_route_under_v1_uses_envelope():
    resp = _client().get("/v1/nope")
    _assert_envelope_error(resp, 404, "not_found")


def test_unknown_protocol_route_uses_oauth_shape():
    resp = _client().get("/nope")

    assert resp.status_code == 404
    assert resp.json()["error"] == "invalid_request"
