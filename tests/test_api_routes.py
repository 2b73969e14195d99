"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> dependency injection
-> CredentialService -> SQLAlchemy stores -> response model serialization ->
the AuthError exception handler. Unit tests cover the core; these check the
HTTP contract on top of it.

Coverage:
  - register 201 / 409 / 400 / 422 and the error envelope
  - verify, resend (429 + Retry-After), forgot (always 200), reset
  - login: tokens, refresh cookie, no-store, 401 / 403
  - refresh via cookie and via body, reuse rejected
  - logout always 200 and clears the cookie
  - GET /me: 401 without token, claims with token
  - admin revoke: 200 for admin, 403 for other roles, 404 for unknown id

Fixtures used (from conftest.py):
  - api_client: (client, notifier) -- module-scoped TestClient. The client
    keeps cookies between requests, so tests that depend on them clear first.
  - admin_credentials: (email, password) of the seeded admin account.
"""

from __future__ import annotations

import itertools

from fastapi.testclient import TestClient

PASSWORD = "Secret123!"
_counter = itertools.count(1)


def _unique_email() -> str:
    return f"user{next(_counter)}@example.com"


def _register_and_verify(client: TestClient, notifier) -> str:
    email = _unique_email()
    resp = client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/v1/auth/verify", json={"email": email, "otp": notifier.last_code(email)})
    assert resp.status_code == 200, resp.text
    return email


def _login(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestRegister:
    def test_register_returns_201_and_sends_code(self, api_client) -> None:
        client, notifier = api_client
        email = _unique_email()
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": PASSWORD, "full_name": "Ada"},
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["status"] == "success"
        assert len(notifier.last_code(email)) == 6

    def test_duplicate_email_returns_409(self, api_client) -> None:
        client, _notifier = api_client
        email = _unique_email()
        client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        resp = client.post("/api/v1/auth/register", json={"email": email.upper(), "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_password_policy_returns_400_envelope(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.post("/api/v1/auth/register", json={"email": _unique_email(), "password": "bad pass word"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"]

    def test_missing_field_returns_422(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.post("/api/v1/auth/register", json={"email": _unique_email()})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_malformed_email_returns_422(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "a..b@example.com", "password": PASSWORD})
        assert resp.status_code == 422

    def test_email_is_trimmed(self, api_client) -> None:
        client, notifier = api_client
        email = _unique_email()
        resp = client.post("/api/v1/auth/register", json={"email": f"  {email} ", "password": PASSWORD})
        assert resp.status_code == 201, resp.text
        assert len(notifier.last_code(email)) == 6


class TestVerifyAndResend:
    def test_verify_with_wrong_code_returns_400(self, api_client) -> None:
        client, notifier = api_client
        email = _unique_email()
        client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        wrong = "000000" if notifier.last_code(email) != "000000" else "111111"
        resp = client.post("/api/v1/auth/verify", json={"email": email, "otp": wrong})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "mismatch"

    def test_verify_unknown_email_returns_404(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.post("/api/v1/auth/verify", json={"email": "ghost@example.com", "otp": "123456"})
        assert resp.status_code == 404

    def test_verify_success(self, api_client) -> None:
        client, notifier = api_client
        email = _unique_email()
        client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        resp = client.post("/api/v1/auth/verify", json={"email": email, "otp": notifier.last_code(email)})
        assert resp.status_code == 200
        assert resp.json()["purpose"] == "verify-email"

    def test_resend_inside_interval_returns_429_with_retry_after(self, api_client) -> None:
        client, _notifier = api_client
        email = _unique_email()
        client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        resp = client.post("/api/v1/auth/resend", json={"email": email, "purpose": "verify-email"})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0

    def test_resend_rejects_unknown_purpose(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.post("/api/v1/auth/resend", json={"email": _unique_email(), "purpose": "login"})
        assert resp.status_code == 422


class TestPasswordReset:
    def test_forgot_is_200_for_unknown_email(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.post("/api/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert resp.status_code == 200

    def test_forgot_and_reset(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        unknown = client.post("/api/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        resp = client.post("/api/v1/auth/password/forgot", json={"email": email})
        assert resp.status_code == 200
        assert resp.json() == unknown.json()

        code = notifier.last_code(email)
        resp = client.post(
            "/api/v1/auth/password/reset",
            json={"email": email, "otp": code, "new_password": "NewSecret123!"},
        )
        assert resp.status_code == 200, resp.text
        _login(client, email, "NewSecret123!")
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 401

    def test_reset_password_is_stored_as_typed(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        client.post("/api/v1/auth/password/forgot", json={"email": email})
        padded = "  New Secret 123  "
        resp = client.post(
            "/api/v1/auth/password/reset",
            json={"email": email, "otp": notifier.last_code(email), "new_password": padded},
        )
        assert resp.status_code == 200, resp.text
        _login(client, email, padded)
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": padded.strip()})
        assert resp.status_code == 401

    def test_reset_to_same_password_returns_409(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        client.post("/api/v1/auth/password/forgot", json={"email": email})
        resp = client.post(
            "/api/v1/auth/password/reset",
            json={"email": email, "otp": notifier.last_code(email), "new_password": PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "same_password"


class TestLogin:
    def test_login_returns_tokens_and_sets_cookie(self, api_client) -> None:
        client, notifier = api_client
        client.cookies.clear()
        email = _register_and_verify(client, notifier)
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["account"]["email"] == email
        assert resp.headers["Cache-Control"] == "no-store"
        set_cookie = resp.headers["set-cookie"].lower()
        assert "refresh_token=" in set_cookie
        assert "httponly" in set_cookie
        assert "path=/api/v1/auth" in set_cookie

    def test_unknown_email_and_wrong_password_look_the_same(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        unknown = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        wrong = client.post("/api/v1/auth/login", json={"email": email, "password": "Wrong123!"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_unverified_account_returns_403(self, api_client) -> None:
        client, _notifier = api_client
        email = _unique_email()
        client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 403


class TestRefreshAndLogout:
    def test_refresh_via_body_rotates(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        first = _login(client, email)["refresh_token"]
        client.cookies.clear()

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first})
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        second = resp.json()["refresh_token"]
        assert second != first

        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first})
        assert resp.status_code == 401
        # Reuse revoked the session, so the newest credential is dead too.
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": second})
        assert resp.status_code == 401

    def test_refresh_via_cookie(self, api_client) -> None:
        client, notifier = api_client
        client.cookies.clear()
        email = _register_and_verify(client, notifier)
        _login(client, email)
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200, resp.text
        assert "refresh_token=" in resp.headers["set-cookie"]

    def test_refresh_without_credential_returns_401(self, api_client) -> None:
        client, _notifier = api_client
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credential"

    def test_logout_revokes_session(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        refresh_token = _login(client, email)["refresh_token"]
        client.cookies.clear()

        resp = client.post("/api/v1/auth/logout", json={"refresh_token": refresh_token})
        assert resp.status_code == 200
        assert "refresh_token=" in resp.headers["set-cookie"]

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert resp.status_code == 401

    def test_logout_with_garbage_still_200(self, api_client) -> None:
        client, _notifier = api_client
        client.cookies.clear()
        assert client.post("/api/v1/auth/logout", json={"refresh_token": "garbage"}).status_code == 200
        assert client.post("/api/v1/auth/logout").status_code == 200


class TestMe:
    def test_me_without_token_returns_401(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401

    def test_me_with_invalid_token_returns_401(self, api_client) -> None:
        client, _notifier = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_returns_claims(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        token = _login(client, email)["access_token"]
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["email"] == email
        assert data["role"] == "occupant"


class TestAdminRevoke:
    def test_admin_can_revoke_another_account(self, api_client, admin_credentials) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        user = _login(client, email)
        admin_token = _login(client, *admin_credentials)["access_token"]
        client.cookies.clear()

        resp = client.post(
            f"/api/v1/auth/accounts/{user['account']['id']}/revoke",
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        assert resp.status_code == 200, resp.text

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert resp.status_code == 401

    def test_non_admin_gets_403(self, api_client) -> None:
        client, notifier = api_client
        email = _register_and_verify(client, notifier)
        user = _login(client, email)
        resp = client.post(
            f"/api/v1/auth/accounts/{user['account']['id']}/revoke",
            headers={"Authorization": f"Bearer {user['access_token']}"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_unknown_account_returns_404(self, api_client, admin_credentials) -> None:
        client, _notifier = api_client
        admin_token = _login(client, *admin_credentials)["access_token"]
        resp = client.post(
            "/api/v1/auth/accounts/999999/revoke",
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        assert resp.status_code == 404
