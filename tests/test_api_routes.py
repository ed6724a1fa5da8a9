"""
tests/test_api_routes.py -- Integration tests for the /api/v1 routes.

These tests exercise the full stack: FastAPI routing -> session dependency ->
auth services -> result-to-HTTP mapping -> response model serialization.
Unit tests for each service live in their own modules; here the point is the
HTTP contract: status codes, the error envelope, the session cookie and the
bearer header.

Coverage:
  - Auth failures: 401 on /auth/me, /auth/sessions and /docs without a session
  - Register / login / logout / me, cookie and bearer credentials
  - Passwords over 72 UTF-8 bytes are a 400; surrounding whitespace is kept
  - Session listing and owner-scoped revocation
  - Password reset and magic link round trips through the outbox
  - Two-factor enrollment and the challenged login
  - RBAC: 403 for a plain user, role CRUD and assignment for an admin
  - Audit query and prune
  - Social authorize and callback (JSON body and browser redirect)
  - Passkey options, validation envelope, rate limiting

Fixtures used (from conftest.py):
  - api_client: (client, services) -- TestClient over the real app, real clock
  - admin_client: (client, services, admin_id) -- signed in as a super-admin
  - outbox: captured emails, shared with the services behind the client
  - gateway: the FakeGateway behind social login
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from auth import totp
from auth.tokens import SESSION_COOKIE
from conftest import PASSWORD, make_settings

API = "/api/v1"


def _register(client: TestClient, email: str = "alice@example.com", password: str = PASSWORD):
    resp = client.post(f"{API}/auth/register", json={"email": email, "password": password, "name": "Alice"})
    assert resp.status_code == 201, resp.text
    return resp


def _login(client: TestClient, email: str = "alice@example.com", password: str = PASSWORD):
    return client.post(f"{API}/auth/login", json={"email": email, "password": password})


class TestApiAuthFailure:
    """Unauthenticated requests to protected routes must return 401 with the envelope."""

    def test_get_me_unauthenticated(self, api_client) -> None:
        client, _svc = api_client
        resp = client.get(f"{API}/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_sessions_unauthenticated(self, api_client) -> None:
        client, _svc = api_client
        assert client.get(f"{API}/auth/sessions").status_code == 401

    def test_docs_require_auth(self, api_client) -> None:
        client, _svc = api_client
        assert client.get("/docs").status_code == 401
        _register(client)
        assert client.get("/docs").status_code == 200

    def test_garbage_bearer_token(self, api_client) -> None:
        client, _svc = api_client
        resp = client.get(f"{API}/auth/me", headers={"Authorization": "Bearer not-a-session"})
        assert resp.status_code == 401


class TestApiCredentials:
    """Register, login, logout and /auth/me."""

    def test_register_sets_cookie(self, api_client) -> None:
        client, _svc = api_client
        resp = _register(client)
        data = resp.json()
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["has_password"] is True
        assert "hashed_password" not in data["user"]
        assert data["token_type"] == "bearer"
        assert resp.cookies.get(SESSION_COOKIE) == data["session_token"]
        assert resp.headers["cache-control"] == "no-store"

    def test_duplicate_register(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        resp = client.post(f"{API}/auth/register", json={"email": "ALICE@example.com", "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_user"

    def test_register_invalid_input(self, api_client) -> None:
        client, _svc = api_client
        resp = client.post(f"{API}/auth/register", json={"email": "not-an-email", "password": PASSWORD})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_input"

    def test_register_overlong_password(self, api_client) -> None:
        client, svc = api_client
        # 100 ASCII bytes, then 25 three-byte characters (75 bytes).
        for password in ("p" * 100, "\u20ac" * 25):
            resp = client.post(f"{API}/auth/register", json={"email": "long@example.com", "password": password})
            assert resp.status_code == 400, password
            assert resp.json()["error"]["code"] == "invalid_input"
        assert svc.store.count_users() == 0

    def test_password_whitespace_is_significant(self, api_client) -> None:
        client, svc = api_client
        padded = "  padded-secret  "
        svc.auth.register("pad@example.com", padded)
        assert _login(client, email="pad@example.com", password=padded).status_code == 200
        assert _login(client, email="pad@example.com", password=padded.strip()).status_code == 401

        client.cookies.clear()
        _register(client, email="  api@example.com ", password=padded)
        assert svc.auth.login("api@example.com", padded).success

    def test_login_success_and_failure_share_message(self, api_client) -> None:
        client, svc = api_client
        svc.auth.register("alice@example.com", PASSWORD)
        assert _login(client).status_code == 200

        wrong = _login(client, password="wrong-password")
        unknown = _login(client, email="ghost@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_me_includes_roles(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        data = client.get(f"{API}/auth/me").json()
        assert data["user"]["email"] == "alice@example.com"
        assert data["session"]["current"] is True
        assert data["roles"] == ["user"]
        assert data["permissions"] == ["profile:read", "profile:update"]

    def test_bearer_header(self, api_client) -> None:
        client, _svc = api_client
        token = _register(client).json()["session_token"]
        client.cookies.clear()
        resp = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "alice@example.com"

    def test_logout_clears_cookie(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        resp = client.post(f"{API}/auth/logout")
        assert resp.status_code == 200
        assert client.cookies.get(SESSION_COOKIE) is None
        assert client.get(f"{API}/auth/me").status_code == 401
        # Logging out twice is not an error.
        assert client.post(f"{API}/auth/logout").status_code == 200

    def test_register_pending_verification(self, api_client, outbox) -> None:
        client, svc = api_client
        svc.settings.verification.require_verification = True
        resp = client.post(f"{API}/auth/register", json={"email": "new@example.com", "password": PASSWORD})
        assert resp.status_code == 201
        assert resp.json()["session_token"] is None
        assert SESSION_COOKIE not in resp.cookies
        assert outbox[-1][0] == "new@example.com"


class TestApiSessions:
    def test_list_and_revoke_own_session(self, api_client) -> None:
        client, svc = api_client
        _register(client)
        other = svc.auth.login("alice@example.com", PASSWORD).session

        sessions = client.get(f"{API}/auth/sessions").json()
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1

        assert client.delete(f"{API}/auth/sessions/{other.id}").status_code == 204
        assert len(client.get(f"{API}/auth/sessions").json()) == 1

    def test_cannot_revoke_foreign_session(self, api_client) -> None:
        client, svc = api_client
        _register(client)
        svc.auth.register("bob@example.com", PASSWORD)
        bob_session = svc.auth.login("bob@example.com", PASSWORD).session

        resp = client.delete(f"{API}/auth/sessions/{bob_session.id}")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert svc.auth.resolve_session(bob_session.token) is not None

    def test_revoke_all(self, api_client) -> None:
        client, svc = api_client
        _register(client)
        svc.auth.login("alice@example.com", PASSWORD)
        resp = client.post(f"{API}/auth/sessions/revoke-all")
        assert resp.status_code == 200
        assert resp.json()["message"].startswith("2 session")
        assert client.get(f"{API}/auth/me").status_code == 401


class TestApiTokenFlows:
    def test_password_reset_round_trip(self, api_client, outbox) -> None:
        client, _svc = api_client
        _register(client)
        resp = client.post(f"{API}/auth/password-reset/request", json={"email": "alice@example.com"})
        assert resp.json() == {"success": True, "email_sent": True, "message": resp.json()["message"]}
        link = outbox.last_link()

        check = client.post(f"{API}/auth/password-reset/verify", json={"token": link["token"], "email": link["email"]})
        assert check.json() == {"valid": True}

        body = {"token": link["token"], "email": link["email"], "new_password": "brand-new-password-42"}
        assert client.post(f"{API}/auth/password-reset/complete", json=body).status_code == 200
        # Completing a reset signs out every session, including this one.
        assert client.get(f"{API}/auth/me").status_code == 401
        assert _login(client, password="brand-new-password-42").status_code == 200

        reused = client.post(f"{API}/auth/password-reset/complete", json=body)
        assert reused.status_code == 409
        assert reused.json()["error"]["code"] == "already_used"

    def test_password_reset_rejects_overlong_password(self, api_client, outbox) -> None:
        client, _svc = api_client
        _register(client)
        client.post(f"{API}/auth/password-reset/request", json={"email": "alice@example.com"})
        link = outbox.last_link()

        body = {"token": link["token"], "email": link["email"], "new_password": "\u00fc" * 40}
        resp = client.post(f"{API}/auth/password-reset/complete", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_input"

        # The token survives; a padded password is stored as typed.
        body["new_password"] = " spaced-out-password "
        assert client.post(f"{API}/auth/password-reset/complete", json=body).status_code == 200
        assert _login(client, password=" spaced-out-password ").status_code == 200

    def test_password_reset_unknown_email_looks_the_same(self, api_client, outbox) -> None:
        client, _svc = api_client
        resp = client.post(f"{API}/auth/password-reset/request", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        assert resp.json()["email_sent"] is True
        assert outbox == []

    def test_magic_link_signs_in(self, api_client, outbox) -> None:
        client, _svc = api_client
        client.post(f"{API}/auth/magic-link/request", json={"email": "new@example.com"})
        link = outbox.last_link()
        resp = client.post(f"{API}/auth/magic-link/complete", json={"token": link["token"], "email": link["email"]})
        assert resp.status_code == 200
        assert resp.json()["is_new_user"] is True
        assert SESSION_COOKIE in resp.cookies
        status = client.get(f"{API}/auth/verification/status").json()
        assert status["verified"] is True
        assert status["method"] == "magic_link"

    def test_bad_token_is_not_found(self, api_client) -> None:
        client, _svc = api_client
        resp = client.post(f"{API}/auth/verification/verify", json={"token": "nope", "email": "a@example.com"})
        assert resp.status_code == 404

    def test_email_verification(self, api_client, outbox) -> None:
        client, _svc = api_client
        _register(client)
        assert client.get(f"{API}/auth/verification/status").json()["verified"] is False
        client.post(f"{API}/auth/verification/request", json={"email": "alice@example.com"})
        link = outbox.last_link()
        resp = client.post(f"{API}/auth/verification/complete", json={"token": link["token"], "email": link["email"]})
        assert resp.status_code == 200
        assert client.get(f"{API}/auth/verification/status").json()["method"] == "email"


class TestApiTwoFactor:
    def _now_code(self, secret: str) -> str:
        return totp.generate_code(secret, datetime.now(timezone.utc))

    def test_enroll_and_challenged_login(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        setup = client.post(f"{API}/auth/2fa/setup")
        assert setup.status_code == 200
        assert setup.headers["cache-control"] == "no-store"
        secret = setup.json()["secret"]
        assert client.get(f"{API}/auth/2fa/status").json()["pending"] is True

        assert client.post(f"{API}/auth/2fa/enable", json={"code": self._now_code(secret)}).status_code == 200
        assert client.get(f"{API}/auth/2fa/status").json()["enabled"] is True

        client.post(f"{API}/auth/logout")
        challenge = _login(client)
        assert challenge.status_code == 200
        data = challenge.json()
        assert data["challenge_required"] is True
        assert data["session_token"] is None
        assert SESSION_COOKIE not in challenge.cookies

        body = {"user_id": data["user_id"], "challenge_token": data["challenge_token"], "code": self._now_code(secret)}
        done = client.post(f"{API}/auth/2fa/verify", json=body)
        assert done.status_code == 200
        assert done.json()["session_token"]
        assert client.get(f"{API}/auth/me").status_code == 200

        replay = client.post(f"{API}/auth/2fa/verify", json=body)
        assert replay.status_code == 409

    def test_disable_requires_code(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        secret = client.post(f"{API}/auth/2fa/setup").json()["secret"]
        client.post(f"{API}/auth/2fa/enable", json={"code": self._now_code(secret)})

        bad = client.post(f"{API}/auth/2fa/disable", json={"code": "not-a-code"})
        assert bad.status_code == 401
        assert client.post(f"{API}/auth/2fa/disable", json={"code": self._now_code(secret)}).status_code == 200
        assert client.get(f"{API}/auth/2fa/status").json()["enabled"] is False


class TestApiRbac:
    def test_plain_user_forbidden(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        resp = client.get(f"{API}/roles")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_my_permissions(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        data = client.get(f"{API}/auth/permissions").json()
        assert data["permissions"] == ["profile:read", "profile:update"]

    def test_role_crud_and_assignment(self, admin_client) -> None:
        client, svc, _admin_id = admin_client
        target = svc.auth.register("bob@example.com", PASSWORD).user

        assert [r["name"] for r in client.get(f"{API}/roles").json()] == ["admin", "user"]
        created = client.post(f"{API}/roles", json={"name": "editor", "permissions": ["posts:write"]})
        assert created.status_code == 201
        role_id = created.json()["id"]

        patched = client.patch(f"{API}/roles/{role_id}", json={"description": "Edits posts"})
        assert patched.json()["description"] == "Edits posts"
        assert patched.json()["permissions"] == ["posts:write"]

        assert client.post(f"{API}/users/{target.id}/roles", json={"role": "editor"}).status_code == 200
        perms = client.get(f"{API}/users/{target.id}/permissions").json()["permissions"]
        assert "posts:write" in perms

        assert client.delete(f"{API}/users/{target.id}/roles/editor").status_code == 204
        assert client.delete(f"{API}/roles/{role_id}").status_code == 204
        assert client.get(f"{API}/roles/{role_id}").status_code == 404

    def test_builtin_role_protected(self, admin_client) -> None:
        client, svc, _admin_id = admin_client
        admin_role = svc.rbac.get_role(name="admin")
        resp = client.delete(f"{API}/roles/{admin_role.id}")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_input"

    def test_mark_user_verified(self, admin_client) -> None:
        client, svc, _admin_id = admin_client
        target = svc.auth.register("bob@example.com", PASSWORD).user
        assert client.post(f"{API}/users/{target.id}/verify").status_code == 200
        assert svc.verification.get_verification_status(target.id).method == "manual"
        assert client.post(f"{API}/users/9999/verify").status_code == 404


class TestApiAudit:
    def test_query_and_get(self, admin_client) -> None:
        client, _svc, admin_id = admin_client
        page = client.get(f"{API}/audit", params={"action": "login.success", "user_id": admin_id}).json()
        assert page["total"] == 1
        entry = page["entries"][0]
        assert entry["ip_address"] == "testclient"
        assert client.get(f"{API}/audit/{entry['id']}").json()["action"] == "login.success"
        assert client.get(f"{API}/audit/999999").status_code == 404

    def test_prune(self, admin_client) -> None:
        client, _svc, _admin_id = admin_client
        assert client.post(f"{API}/audit/prune", params={"days": 30}).json() == {"deleted": 0}
        assert client.post(f"{API}/audit/prune", params={"days": 0}).status_code == 422

    def test_plain_user_forbidden(self, api_client) -> None:
        client, _svc = api_client
        _register(client)
        assert client.get(f"{API}/audit").status_code == 403


class TestApiSocial:
    def test_providers_public(self, api_client) -> None:
        client, _svc = api_client
        assert client.get(f"{API}/auth/social/providers").json() == [
            {"name": "github", "label": "GitHub"},
            {"name": "google", "label": "Google"},
        ]

    def test_authorize_redirects(self, api_client) -> None:
        client, _svc = api_client
        resp = client.get(f"{API}/auth/social/github/authorize", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://provider.test/github/authorize")

    def test_unknown_provider(self, api_client) -> None:
        client, _svc = api_client
        resp = client.get(f"{API}/auth/social/myspace/authorize")
        assert resp.status_code == 404

    def test_callback_json(self, api_client) -> None:
        client, _svc = api_client
        state = client.get(f"{API}/auth/social/github/authorize", params={"redirect": "false"}).json()["state"]
        resp = client.get(f"{API}/auth/social/github/callback", params={"code": "abc", "state": state})
        assert resp.status_code == 200
        assert resp.json()["is_new_user"] is True
        assert client.get(f"{API}/auth/social/accounts").json()[0]["provider"] == "github"

    def test_callback_redirects_to_callback_url(self, api_client) -> None:
        client, _svc = api_client
        params = {"redirect": "false", "callback_url": "http://localhost:8000/done"}
        state = client.get(f"{API}/auth/social/github/authorize", params=params).json()["state"]
        resp = client.get(
            f"{API}/auth/social/github/callback", params={"code": "abc", "state": state}, follow_redirects=False
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "http://localhost:8000/done"
        assert SESSION_COOKIE in resp.cookies

    def test_form_post_callback(self, api_client) -> None:
        client, _svc = api_client
        state = client.get(f"{API}/auth/social/github/authorize", params={"redirect": "false"}).json()["state"]
        resp = client.post(f"{API}/auth/social/github/callback", data={"code": "abc", "state": state})
        assert resp.status_code == 200

    def test_forged_state(self, api_client, gateway) -> None:
        client, _svc = api_client
        resp = client.get(f"{API}/auth/social/github/callback", params={"code": "abc", "state": "forged"})
        assert resp.status_code == 401
        assert gateway.exchanged == []

    def test_provider_error(self, api_client) -> None:
        client, _svc = api_client
        resp = client.get(f"{API}/auth/social/github/callback", params={"error": "access_denied"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "access_denied"


class TestApiPasskeys:
    def test_login_options_anonymous(self, api_client) -> None:
        client, _svc = api_client
        resp = client.post(f"{API}/auth/passkeys/login/options", json={})
        assert resp.status_code == 200
        assert resp.json()["challenge"]
        assert resp.headers["cache-control"] == "no-store"

    def test_register_options_require_auth(self, api_client) -> None:
        client, _svc = api_client
        assert client.post(f"{API}/auth/passkeys/register/options").status_code == 401
        _register(client)
        resp = client.post(f"{API}/auth/passkeys/register/options")
        assert resp.json()["user"]["name"] == "alice@example.com"
        assert client.get(f"{API}/auth/passkeys").json() == []


class TestApiErrors:
    def test_validation_envelope(self, api_client) -> None:
        client, _svc = api_client
        resp = client.post(f"{API}/auth/login", json={"email": "alice@example.com", "password": 424242424242})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "424242424242" not in resp.text

    def test_login_rate_limited(self, api_client, tmp_path, monkeypatch) -> None:
        client, _svc = api_client
        tight = make_settings(tmp_path / "limits.db", login_rate_limit="2/minute")
        monkeypatch.setattr("api.limiter.get_settings", lambda: tight)

        for _ in range(2):
            assert _login(client, email="ghost@example.com").status_code == 401
        resp = _login(client, email="ghost@example.com")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry-after" in resp.headers
