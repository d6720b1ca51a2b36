"""
tests/test_auth_routes.py -- First-party /api/v1 endpoints over HTTP.

Covers the ErrorResponse envelope, the JWT cookie, Cache-Control: no-store
on token-bearing responses, and the self-service MFA, device and session
routes. Each class logs in as its own user so module-scoped state does not
leak between them.
"""

from __future__ import annotations

import time

import pyotp

from conftest import TEST_PASSWORD, create_user, login


def _bearer(ctx, username: str) -> dict:
    """Log in as username and return Authorization headers; drop the cookie."""
    resp = login(ctx.client, username)
    assert resp.status_code == 200, resp.text
    ctx.client.cookies.clear()
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def _ensure_user(ctx, username: str):
    return ctx.users.get_by_login(username) or create_user(ctx.users, username)


class TestLogin:
    def test_success_sets_cookie_and_no_store(self, api_client) -> None:
        resp = login(api_client.client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["token_type"] == "Bearer"
        assert body["refresh_token"]
        assert body["user"]["username"] == "alice"
        assert "access_token" in resp.cookies
        assert resp.headers["cache-control"] == "no-store"
        api_client.client.cookies.clear()

    def test_wrong_password_envelope(self, api_client) -> None:
        resp = login(api_client.client, password="wrong-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert resp.headers["cache-control"] == "no-store"

    def test_unknown_user_same_answer(self, api_client) -> None:
        unknown = login(api_client.client, username="nobody")
        wrong = login(api_client.client, password="wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_validation_error_envelope(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"username": "alice"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestMe:
    def test_requires_auth(self, api_client) -> None:
        api_client.client.cookies.clear()
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_with_bearer(self, api_client) -> None:
        headers = _bearer(api_client, "alice")
        resp = api_client.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["email"] == "alice@example.com"

    def test_with_cookie(self, api_client) -> None:
        assert login(api_client.client).status_code == 200
        assert api_client.client.get("/api/v1/auth/me").json()["username"] == "alice"
        api_client.client.cookies.clear()

    def test_disabled_user_is_rejected_with_valid_token(self, api_client) -> None:
        user = _ensure_user(api_client, "frank")
        headers = _bearer(api_client, "frank")
        api_client.users.update_user(user.id, status="disabled")
        assert api_client.client.get("/api/v1/auth/me", headers=headers).status_code == 401


class TestRefreshAndLogout:
    def test_refresh(self, api_client) -> None:
        first = login(api_client.client).json()
        api_client.client.cookies.clear()
        resp = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["access_token"]
        assert resp.headers["cache-control"] == "no-store"
        api_client.client.cookies.clear()

    def test_refresh_unknown_token(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": "nope"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_artifact"

    def test_logout_revokes_everything(self, api_client) -> None:
        user = _ensure_user(api_client, "grace")
        first = login(api_client.client, "grace").json()
        api_client.client.cookies.clear()
        headers = {"Authorization": f"Bearer {first['access_token']}"}

        resp = api_client.client.post(
            "/api/v1/auth/logout", json={"refresh_token": first["refresh_token"]}, headers=headers
        )
        assert resp.status_code == 200
        assert api_client.users.list_sessions(user.id) == []
        again = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert again.status_code == 400

    def test_logout_requires_auth(self, api_client) -> None:
        api_client.client.cookies.clear()
        assert api_client.client.post("/api/v1/auth/logout").status_code == 401


class TestAccount:
    def test_register_then_duplicate(self, api_client) -> None:
        body = {"username": "henry", "email": "henry@example.com", "password": "long-enough-pw"}
        resp = api_client.client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 201
        assert resp.json()["roles"] == ["user"]

        dup = api_client.client.post("/api/v1/auth/register", json=body)
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "conflict"

    def test_register_weak_password(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register", json={"username": "ivan", "email": "ivan@example.com", "password": "short"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"

    def test_register_bad_email(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register", json={"username": "judy", "email": "not-an-email", "password": TEST_PASSWORD}
        )
        assert resp.status_code == 422

    def test_forgot_password_always_202(self, api_client) -> None:
        for email in ("alice@example.com", "nobody@example.com"):
            resp = api_client.client.post("/api/v1/auth/forgot-password", json={"email": email})
            assert resp.status_code == 202

    def test_reset_with_unknown_token(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/reset-password", json={"token": "nope", "new_password": "another-long-pw"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_artifact"


class TestMFARoutes:
    def test_totp_enrolment_and_challenge(self, api_client) -> None:
        _ensure_user(api_client, "mallory")
        headers = _bearer(api_client, "mallory")
        client = api_client.client

        started = client.post("/api/v1/mfa/devices/totp", headers=headers)
        assert started.status_code == 201
        totp = pyotp.TOTP(started.json()["secret"])
        assert started.json()["provisioning_uri"].startswith("otpauth://totp/")

        verified = client.post("/api/v1/mfa/devices/totp/verify", json={"code": totp.now()}, headers=headers)
        assert verified.status_code == 200
        assert verified.json()["verified"] is True
        device_pk = verified.json()["id"]

        listed = client.get("/api/v1/mfa/devices", headers=headers).json()
        assert [d["method"] for d in listed] == ["totp"]

        challenged = login(client, "mallory")
        assert challenged.status_code == 401
        assert challenged.json()["error"]["code"] == "mfa_required"

        passed = login(client, "mallory", mfa_code=totp.at(int(time.time()) + 30))
        assert passed.status_code == 200
        assert passed.json()["mfa_required"] is True
        client.cookies.clear()

        assert client.delete(f"/api/v1/mfa/devices/{device_pk}", headers=headers).status_code == 200
        assert client.delete(f"/api/v1/mfa/devices/{device_pk}", headers=headers).status_code == 404

    def test_verify_without_enrolment(self, api_client) -> None:
        _ensure_user(api_client, "niaj")
        headers = _bearer(api_client, "niaj")
        resp = api_client.client.post("/api/v1/mfa/devices/sms/verify", json={"code": "123456"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_artifact"

    def test_requires_auth(self, api_client) -> None:
        api_client.client.cookies.clear()
        assert api_client.client.get("/api/v1/mfa/devices").status_code == 401


class TestDeviceAndSessionRoutes:
    def test_devices_trust_and_delete(self, api_client) -> None:
        _ensure_user(api_client, "oscar")
        headers = _bearer(api_client, "oscar")
        client = api_client.client

        devices = client.get("/api/v1/devices", headers=headers).json()
        assert len(devices) == 1
        assert devices[0]["login_count"] == 1
        device_id = devices[0]["device_id"]

        assert client.post(f"/api/v1/devices/{device_id}/trust", headers=headers).status_code == 200
        assert client.get("/api/v1/devices", headers=headers).json()[0]["trusted"] is True
        assert client.post("/api/v1/devices/unknown/trust", headers=headers).status_code == 404
        assert client.delete(f"/api/v1/devices/{device_id}", headers=headers).status_code == 200
        assert client.get("/api/v1/devices", headers=headers).json() == []

    def test_sessions_list_and_revoke(self, api_client) -> None:
        _ensure_user(api_client, "peggy")
        headers = _bearer(api_client, "peggy")
        _bearer(api_client, "peggy")
        client = api_client.client

        sessions = client.get("/api/v1/sessions", headers=headers).json()
        assert len(sessions) == 2
        assert client.delete(f"/api/v1/sessions/{sessions[0]['id']}", headers=headers).status_code == 200
        assert len(client.get("/api/v1/sessions", headers=headers).json()) == 1

        resp = client.delete("/api/v1/sessions", headers=headers)
        assert resp.json()["message"] == "Revoked 1 session(s)."
        assert client.get("/api/v1/sessions", headers=headers).json() == []

    def test_cannot_revoke_someone_elses_session(self, api_client) -> None:
        victim = _ensure_user(api_client, "victor")
        _bearer(api_client, "victor")
        victim_session = api_client.users.list_sessions(victim.id)[0]

        _ensure_user(api_client, "trudy")
        headers = _bearer(api_client, "trudy")
        resp = api_client.client.delete(f"/api/v1/sessions/{victim_session.id}", headers=headers)
        assert resp.status_code == 404
        assert len(api_client.users.list_sessions(victim.id)) == 1
