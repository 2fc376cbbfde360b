"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth endpoints.

Covers:
  - login / refresh / me / logout / logout-all round trip
  - error envelope: code, generic message, WWW-Authenticate, no-store
  - lockout surfaces as account_locked with the generic message
  - replayed refresh token returns reuse_detected and kills the chain
  - request validation never echoes submitted values
  - per-IP rate limit on login returns 429 with Retry-After
"""

from __future__ import annotations

import types

import pytest

import api.limiter
from api.limiter import limiter
from api.main import app

PASSWORD = "Secret1!"


def _make_user(email, password=PASSWORD, role="user"):
    service = app.state.auth_service
    password_hash, salt = service.crypto.hash_password(password)
    user = service.store.create_user(email, password_hash, salt)
    service.store.assign_role(user.id, role)
    return user


def _login(client, email, password=PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_login_returns_token_pair(api_client):
    client, _, _ = api_client
    _make_user("login@x.com")
    resp = _login(client, "Login@X.com")
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] > 0
    assert data["access_token"].count(".") == 2
    assert data["refresh_token"]


def test_me_reflects_token_snapshot(api_client):
    client, _, _ = api_client
    user = _make_user("me@x.com")
    token = _login(client, "me@x.com").json()["access_token"]
    resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["user_id"] == user.id
    assert data["email"] == "me@x.com"
    assert data["roles"] == ["user"]
    assert data["permissions"] == ["data:read", "data:write"]


def test_refresh_rotates_and_logout_revokes(api_client):
    client, _, _ = api_client
    _make_user("rot@x.com")
    pair = _login(client, "rot@x.com").json()

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    fresh = resp.json()
    assert fresh["refresh_token"] != pair["refresh_token"]

    headers = {"Authorization": f"Bearer {fresh['access_token']}"}
    for _ in range(2):
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": fresh["refresh_token"]}, headers=headers)
        assert resp.status_code == 200

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": fresh["refresh_token"]})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_token"


def test_logout_all(api_client):
    client, _, _ = api_client
    _make_user("all@x.com")
    first = _login(client, "all@x.com").json()
    _login(client, "all@x.com")
    resp = client.post(
        "/api/v1/auth/logout-all", headers={"Authorization": f"Bearer {first['access_token']}"}
    )
    assert resp.status_code == 200
    assert resp.json()["revoked"] == 2


def test_change_password(api_client):
    client, _, _ = api_client
    _make_user("pw@x.com")
    pair = _login(client, "pw@x.com").json()
    headers = {"Authorization": f"Bearer {pair['access_token']}"}

    resp = client.post(
        "/api/v1/auth/change-password",
        json={"current_password": PASSWORD, "new_password": "short"},
        headers=headers,
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "weak_password"

    resp = client.post(
        "/api/v1/auth/change-password",
        json={"current_password": PASSWORD, "new_password": "N3w!Secret"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["revoked"] == 1
    assert _login(client, "pw@x.com", "N3w!Secret").status_code == 200


def test_register_disabled(api_client):
    client, _, _ = api_client
    resp = client.post("/api/v1/auth/register", json={"email": "new@x.com", "password": PASSWORD})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "registration_disabled"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_bad_credentials_envelope(api_client):
    client, _, _ = api_client
    _make_user("bad@x.com")
    unknown = _login(client, "nobody@x.com")
    wrong = _login(client, "bad@x.com", "wrong")

    for resp in (unknown, wrong):
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.json() == {
            "error": {"code": "invalid_credentials", "message": "Authentication failed.", "detail": None}
        }


def test_lockout_returns_account_locked(api_client):
    client, _, _ = api_client
    _make_user("lock@x.com")
    for _ in range(5):
        assert _login(client, "lock@x.com", "wrong").status_code == 401

    resp = _login(client, "lock@x.com")
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["code"] == "account_locked"
    assert error["message"] == "Authentication failed."


def test_replayed_refresh_token(api_client):
    client, _, _ = api_client
    _make_user("replay@x.com")
    t0 = _login(client, "replay@x.com").json()["refresh_token"]
    t1 = client.post("/api/v1/auth/refresh", json={"refresh_token": t0}).json()["refresh_token"]

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": t0})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "reuse_detected"

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": t1})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_token"


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Bearer"},
        {"Authorization": "Basic dXNlcjpwYXNz"},
        {"Authorization": "Bearer not-a-jwt"},
    ],
)
def test_me_rejects_missing_or_bad_token(api_client, headers):
    client, _, _ = api_client
    resp = client.get("/api/v1/auth/me", headers=headers)
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
    assert resp.json()["error"]["code"] == "invalid_token"


def test_validation_error_does_not_echo_values(api_client):
    client, _, _ = api_client
    resp = client.post("/api/v1/auth/login", json={"email": "ab", "password": "hunter2-secret"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert "email" in body["error"]["detail"]
    assert "hunter2-secret" not in resp.text


def test_login_rate_limit(api_client, monkeypatch):
    client, _, _ = api_client
    monkeypatch.setattr(api.limiter, "get_settings", lambda: types.SimpleNamespace(login_rate_limit="3/minute"))
    limiter.reset()
    try:
        statuses = [_login(client, "nobody@x.com").status_code for _ in range(4)]
        assert statuses == [401, 401, 401, 429]
        resp = _login(client, "nobody@x.com")
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0
    finally:
        limiter.reset()
