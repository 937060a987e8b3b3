"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* through the real ASGI stack.

Each test gets a fresh database and a cookie-less TestClient (api fixture).
The client's cookie jar carries the auth_session cookie between requests the
way a browser would. Other users are created through api.auth_service so the
client's own cookie is not replaced.

Coverage:
  - Sign-up / sign-in set the session cookie with Cache-Control: no-store
  - One generic 401 for wrong password and unknown email
  - Per-email lockout after repeated failures (429 + Retry-After)
  - Bearer-token authentication for non-browser clients
  - Session list / revoke, password reset, email verification
  - Profile, password, avatar and account endpoints
  - OAuth endpoints with no providers configured
  - Per-IP API quota on authenticated routes
"""

from __future__ import annotations

import pytest

EMAIL = "alice@example.com"
PASSWORD = "correct-horse-1"
NEW_PASSWORD = "battery-staple-2"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"0" * 64


def _signup(client, email: str = EMAIL, password: str = PASSWORD, name: str | None = "Alice"):
    return client.post("/api/v1/auth/signup", json={"email": email, "password": password, "name": name})


def _error(resp) -> dict:
    return resp.json()["error"]


@pytest.fixture
def alice(api) -> dict:
    """Sign up through the API; the client now holds Alice's session cookie."""
    resp = _signup(api.client)
    assert resp.status_code == 201
    return resp.json()["user"]


class TestSignUp:
    def test_sets_session_cookie(self, api):
        resp = _signup(api.client)
        assert resp.status_code == 201
        assert resp.json()["user"]["email"] == EMAIL
        assert resp.json()["expires_at"]
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("auth_session=")
        assert "HttpOnly" in cookie
        assert "SameSite=Lax" in cookie
        assert resp.headers["cache-control"] == "no-store"
        assert api.client.cookies.get("auth_session")

    def test_password_hash_never_returned(self, api):
        body = _signup(api.client).json()
        assert "password" not in str(body).lower()

    def test_duplicate_email_conflicts(self, api, alice):
        api.client.cookies.clear()
        resp = _signup(api.client, email="ALICE@example.com")
        assert resp.status_code == 409
        assert _error(resp)["code"] == "conflict"

    def test_weak_password_rejected(self, api):
        resp = _signup(api.client, password="short")
        assert resp.status_code == 400
        assert _error(resp)["message"] == "Password must be at least 8 characters"

    def test_malformed_body_is_422(self, api):
        resp = api.client.post("/api/v1/auth/signup", json={"password": PASSWORD})
        assert resp.status_code == 422
        assert _error(resp)["code"] == "validation_error"

    def test_signup_attempts_are_limited_per_email(self, api, alice):
        api.client.cookies.clear()
        codes = [_signup(api.client).status_code for _ in range(3)]
        assert codes == [409, 409, 429]


class TestSignIn:
    def test_success(self, api, alice):
        api.client.cookies.clear()
        resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == alice["id"]
        assert resp.headers["cache-control"] == "no-store"
        assert api.client.get("/api/v1/auth/me").status_code == 200

    def test_generic_401(self, api, alice):
        api.client.cookies.clear()
        wrong = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": "not-it-at-all"})
        unknown = api.client.post("/api/v1/auth/signin", json={"email": "nobody@example.com", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert _error(wrong)["code"] == "invalid_credentials"
        assert wrong.headers["cache-control"] == "no-store"

    def test_missing_password_is_400(self, api):
        resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": ""})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "validation_error"

    def test_lockout_after_five_failures(self, api, alice):
        api.client.cookies.clear()
        for _ in range(5):
            resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": "not-it-at-all"})
            assert resp.status_code == 401

        # Locked: even the right password is refused.
        resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 429
        assert _error(resp)["code"] == "locked"
        assert resp.headers["retry-after"] == "900"

        # Other accounts are unaffected.
        api.auth_service.sign_up("bob@example.com", PASSWORD)
        resp = api.client.post("/api/v1/auth/signin", json={"email": "bob@example.com", "password": PASSWORD})
        assert resp.status_code == 200

    def test_correct_sign_ins_are_never_locked_out(self, api, alice):
        api.client.cookies.clear()
        for _ in range(6):
            resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": PASSWORD})
            assert resp.status_code == 200

        # Only failures count, so one typo afterwards is still a plain 401.
        resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": "not-it-at-all"})
        assert resp.status_code == 401

    def test_lockout_expires(self, api, alice):
        api.client.cookies.clear()
        for _ in range(6):
            api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": "not-it-at-all"})
        api.clock.advance(minutes=15)
        resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 200


class TestSessionAuth:
    def test_me_requires_session(self, api):
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"

    def test_me_with_cookie(self, api, alice):
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["email"] == EMAIL
        assert resp.json()["email_verified"] is None

    def test_bearer_token(self, api, alice):
        token = api.client.cookies.get("auth_session")
        api.client.cookies.clear()
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["id"] == alice["id"]

    def test_garbage_token(self, api):
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer " + "0" * 64})
        assert resp.status_code == 401

    def test_idle_session_rejected(self, api, alice):
        api.clock.advance(hours=1, seconds=1)
        assert api.client.get("/api/v1/auth/me").status_code == 401

    def test_signout_clears_cookie(self, api, alice):
        token = api.client.cookies.get("auth_session")
        resp = api.client.post("/api/v1/auth/signout")
        assert resp.status_code == 200
        assert "Max-Age=0" in resp.headers["set-cookie"]
        assert api.client.cookies.get("auth_session") is None
        assert api.auth_service.get_current_user(token).valid is False

    def test_signout_without_session(self, api):
        assert api.client.post("/api/v1/auth/signout").status_code == 200

    def test_docs_require_session(self, api):
        assert api.client.get("/docs").status_code == 401


class TestSessions:
    def test_list_marks_current(self, api, alice):
        api.auth_service.sign_in(EMAIL, PASSWORD, "198.51.100.7", "other-device")
        sessions = api.client.get("/api/v1/auth/sessions").json()
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1
        assert {s["ip_address"] for s in sessions} == {"testclient", "198.51.100.7"}

    def test_revoke_others(self, api, alice):
        other = api.auth_service.sign_in(EMAIL, PASSWORD).session.session_token
        resp = api.client.delete("/api/v1/auth/sessions")
        assert resp.json() == {"revoked": 1}
        assert api.auth_service.get_current_user(other).valid is False
        assert api.client.get("/api/v1/auth/me").status_code == 200


class TestPasswordReset:
    def test_request_answers_same_for_unknown_email(self, api, alice):
        known = api.client.post("/api/v1/auth/password-reset/request", json={"email": EMAIL})
        unknown = api.client.post("/api/v1/auth/password-reset/request", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert [m.to for m in api.emails.sent if m.kind == "password_reset"] == [EMAIL]

    def test_complete_flow(self, api, alice):
        api.client.post("/api/v1/auth/password-reset/request", json={"email": EMAIL})
        token = api.emails.last("password_reset").data["token"]

        resp = api.client.post(
            "/api/v1/auth/password-reset/complete",
            json={"email": EMAIL, "token": token, "new_password": NEW_PASSWORD},
        )
        assert resp.status_code == 200
        assert api.client.get("/api/v1/auth/me").status_code == 401

        resp = api.client.post("/api/v1/auth/signin", json={"email": EMAIL, "password": NEW_PASSWORD})
        assert resp.status_code == 200

    def test_bad_token(self, api, alice):
        resp = api.client.post(
            "/api/v1/auth/password-reset/complete",
            json={"email": EMAIL, "token": "0" * 64, "new_password": NEW_PASSWORD},
        )
        assert resp.status_code == 400
        assert _error(resp)["code"] == "invalid_token"

    def test_request_rate_limited_per_email(self, api, alice):
        codes = [
            api.client.post("/api/v1/auth/password-reset/request", json={"email": EMAIL}).status_code
            for _ in range(4)
        ]
        assert codes == [200, 200, 200, 429]


class TestEmailVerification:
    def test_request_requires_session(self, api):
        assert api.client.post("/api/v1/auth/verify-email/request").status_code == 401

    def test_flow(self, api, alice):
        assert api.client.post("/api/v1/auth/verify-email/request").status_code == 200
        token = api.emails.last("verification").data["token"]

        resp = api.client.post("/api/v1/auth/verify-email/complete", json={"email": EMAIL, "token": token})
        assert resp.status_code == 200
        assert resp.json()["email_verified"] is not None

        again = api.client.post("/api/v1/auth/verify-email/request")
        assert again.status_code == 409
        assert _error(again)["code"] == "already_verified"

    def test_bad_token(self, api, alice):
        resp = api.client.post("/api/v1/auth/verify-email/complete", json={"email": EMAIL, "token": "nope"})
        assert resp.status_code == 400

    def test_send_failure_is_502(self, api, alice):
        api.emails.fail_with = "SMTP unavailable"
        resp = api.client.post("/api/v1/auth/verify-email/request")
        assert resp.status_code == 502
        assert _error(resp)["code"] == "email_failed"


class TestProfileAndPassword:
    def test_update_name(self, api, alice):
        resp = api.client.patch("/api/v1/auth/profile", json={"name": "Alice Liddell"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Alice Liddell"

    def test_email_conflict(self, api, alice):
        api.auth_service.sign_up("bob@example.com", PASSWORD)
        resp = api.client.patch("/api/v1/auth/profile", json={"email": "bob@example.com"})
        assert resp.status_code == 409

    def test_empty_patch(self, api, alice):
        resp = api.client.patch("/api/v1/auth/profile", json={})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "no_changes"

    def test_change_password_keeps_this_session_only(self, api, alice):
        other = api.auth_service.sign_in(EMAIL, PASSWORD).session.session_token
        resp = api.client.post(
            "/api/v1/auth/password", json={"current_password": PASSWORD, "new_password": NEW_PASSWORD}
        )
        assert resp.status_code == 200
        assert api.client.get("/api/v1/auth/me").status_code == 200
        assert api.auth_service.get_current_user(other).valid is False

    def test_change_password_wrong_current(self, api, alice):
        resp = api.client.post(
            "/api/v1/auth/password", json={"current_password": "not-it-at-all", "new_password": NEW_PASSWORD}
        )
        assert resp.status_code == 400
        assert _error(resp)["code"] == "invalid_password"


class TestAvatarAndAccount:
    def test_upload_and_delete_avatar(self, api, alice):
        resp = api.client.post("/api/v1/auth/avatar", files={"file": ("me.png", PNG_BYTES, "image/png")})
        assert resp.status_code == 200
        image = resp.json()["image"]
        assert image.startswith("/uploads/avatars/")
        assert api.uploads.files[image] == PNG_BYTES

        resp = api.client.delete("/api/v1/auth/avatar")
        assert resp.status_code == 200
        assert resp.json()["image"] is None
        assert api.uploads.files == {}

    def test_rejects_non_image(self, api, alice):
        resp = api.client.post("/api/v1/auth/avatar", files={"file": ("notes.txt", b"hello", "text/plain")})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "invalid_file"

    def test_rejects_oversize_file(self, api, alice):
        api.settings.avatar_max_bytes = 1024 * 1024
        big = b"0" * (1024 * 1024 + 1)
        resp = api.client.post("/api/v1/auth/avatar", files={"file": ("big.png", big, "image/png")})
        assert resp.status_code == 413
        assert _error(resp)["message"] == "File too large. Maximum size is 1MB"

    def test_delete_account(self, api, alice):
        token = api.client.cookies.get("auth_session")
        resp = api.client.delete("/api/v1/auth/account")
        assert resp.status_code == 200
        assert api.client.cookies.get("auth_session") is None
        assert api.auth_service.get_current_user(token).valid is False
        assert api.auth_service.get_user_profile(alice["id"]).user is None


class TestOAuth:
    def test_no_providers_configured(self, api):
        assert api.client.get("/api/v1/auth/providers").json() == []

    def test_redirect_for_unconfigured_provider(self, api):
        resp = api.client.get("/api/v1/auth/oauth/github", follow_redirects=False)
        assert resp.status_code == 404
        assert _error(resp)["code"] == "oauth_not_configured"

    def test_callback_for_unconfigured_provider(self, api):
        resp = api.client.get("/api/v1/auth/oauth/github/callback", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == f"{api.settings.app_url}/login?error=oauth_failed"


def test_api_quota_on_authenticated_routes(api, alice):
    """The "api" token bucket admits a burst of 20 per IP, then refills."""
    for _ in range(20):
        assert api.client.get("/api/v1/auth/me").status_code == 200

    resp = api.client.get("/api/v1/auth/me")
    assert resp.status_code == 429
    assert _error(resp)["code"] == "rate_limited"
    assert resp.headers["retry-after"] == "1"

    api.clock.advance(seconds=1)
    assert api.client.get("/api/v1/auth/me").status_code == 200
