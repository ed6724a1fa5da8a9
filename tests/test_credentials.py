"""Unit tests for auth/service.py and auth/store.py -- registration, login, logout.

Covers:
- register() normalizes the email, hashes the password, and returns a session
- duplicate, malformed, and short-password registrations fail with the right code
- the default role is assigned on registration when RBAC is on
- require_verification withholds the session at registration and blocks login
- login() uses one generic error for unknown email and wrong password
- password-less (social / magic-link) accounts cannot log in with a password
- logout() revokes the session; a second logout is harmless
- passwords over 72 UTF-8 bytes are INVALID_INPUT at registration
- user timestamps come from the injected clock
- every failure is a result, never an exception
"""

from sqlalchemy import select

from auth.errors import ErrorCode
from auth.schema import users
from auth.store import from_iso, to_iso
from auth.tokens import hash_password, verify_password
from conftest import PASSWORD


class TestRegister:
    def test_register_returns_user_and_session(self, services):
        result = services.auth.register("  Alice@Example.COM ", PASSWORD, name="Alice")
        assert result.success
        assert result.user.id is not None
        assert result.user.email == "alice@example.com"
        assert result.user.name == "Alice"
        assert result.session is not None
        assert result.session.token

    def test_password_stored_as_bcrypt_hash(self, services):
        result = services.auth.register("alice@example.com", PASSWORD)
        with services.store.connection() as conn:
            stored = conn.execute(select(users.c.hashed_password).where(users.c.id == result.user.id)).scalar()
        assert stored != PASSWORD
        assert stored.startswith("$2")
        assert verify_password(PASSWORD, stored)

    def test_duplicate_email_is_rejected(self, services, user):
        result = services.auth.register("ALICE@example.com", "another-password")
        assert not result.success
        assert result.error == ErrorCode.DUPLICATE_USER
        assert services.store.count_users() == 1

    def test_malformed_email(self, services):
        for email in ("", "no-at-sign", "a@b"):
            result = services.auth.register(email, PASSWORD)
            assert result.error == ErrorCode.INVALID_INPUT, email

    def test_short_password(self, services):
        result = services.auth.register("bob@example.com", "short")
        assert result.error == ErrorCode.INVALID_INPUT
        assert services.store.count_users() == 0

    def test_password_over_72_bytes_is_invalid_input(self, services):
        result = services.auth.register("long@example.com", "p" * 73)
        assert result.error == ErrorCode.INVALID_INPUT
        assert services.store.count_users() == 0

    def test_password_limit_counts_utf8_bytes(self, services):
        # Two bytes per character: 37 characters is 74 bytes.
        assert services.auth.register("long@example.com", "\u00e9" * 37).error == ErrorCode.INVALID_INPUT
        assert services.auth.register("long@example.com", "\u00e9" * 36).success
        assert services.auth.login("long@example.com", "\u00e9" * 36).success

    def test_default_role_assigned(self, services, user):
        roles = [r.name for r in services.rbac.get_user_roles(user.id)]
        assert roles == [services.settings.rbac.default_role]

    def test_no_role_when_rbac_disabled(self, make_services):
        svc = make_services(rbac={"enabled": False})
        result = svc.auth.register("bob@example.com", PASSWORD)
        assert result.success
        assert svc.rbac.get_user_roles(result.user.id) == []

    def test_require_verification_withholds_session(self, make_services):
        svc = make_services(verification={"enabled": True, "require_verification": True})
        result = svc.auth.register("bob@example.com", PASSWORD)
        assert result.success
        assert result.session is None
        assert "verify" in result.message.lower()


class TestLogin:
    def test_login_success(self, services, user):
        result = services.auth.login("ALICE@example.com", PASSWORD, ip_address="10.0.0.1", user_agent="pytest")
        assert result.success
        assert result.user.id == user.id
        assert result.session.ip_address == "10.0.0.1"
        assert result.session.user_agent == "pytest"
        assert not result.challenge_required

    def test_wrong_password_and_unknown_email_look_the_same(self, services, user):
        wrong = services.auth.login("alice@example.com", "wrong-password")
        unknown = services.auth.login("nobody@example.com", PASSWORD)
        assert wrong.error == unknown.error == ErrorCode.INVALID_CREDENTIALS
        assert wrong.message == unknown.message
        assert wrong.user is None and unknown.user is None

    def test_missing_fields(self, services):
        assert services.auth.login("", PASSWORD).error == ErrorCode.INVALID_INPUT
        assert services.auth.login("alice@example.com", "").error == ErrorCode.INVALID_INPUT

    def test_passwordless_account_cannot_password_login(self, services):
        services.store.create_user("social@example.com", None)
        result = services.auth.login("social@example.com", PASSWORD)
        assert result.error == ErrorCode.INVALID_CREDENTIALS

    def test_unverified_login_blocked_when_required(self, make_services):
        svc = make_services(verification={"enabled": True, "require_verification": True})
        svc.auth.register("bob@example.com", PASSWORD)
        result = svc.auth.login("bob@example.com", PASSWORD)
        assert result.error == ErrorCode.UNVERIFIED

    def test_verified_login_allowed_when_required(self, make_services, clock):
        svc = make_services(verification={"enabled": True, "require_verification": True})
        created = svc.auth.register("bob@example.com", PASSWORD)
        svc.store.mark_verified(created.user.id, "email", clock())
        assert svc.auth.login("bob@example.com", PASSWORD).success

    def test_overlong_password_is_a_failed_login(self, services, user):
        assert services.auth.login("alice@example.com", "p" * 100).error == ErrorCode.INVALID_CREDENTIALS

    def test_each_login_creates_a_new_session(self, services, user):
        a = services.auth.login("alice@example.com", PASSWORD).session
        b = services.auth.login("alice@example.com", PASSWORD).session
        assert a.token != b.token
        assert len(services.sessions.list_for_user(user.id)) == 3  # register + 2 logins


class TestLogout:
    def test_logout_revokes_session(self, services, user):
        session = services.auth.login("alice@example.com", PASSWORD).session
        assert services.auth.resolve_session(session.token) is not None
        assert services.auth.logout(session.token).success
        assert services.auth.resolve_session(session.token) is None

    def test_logout_unknown_or_missing_token_succeeds(self, services):
        assert services.auth.logout("not-a-session").success
        assert services.auth.logout(None).success


class TestUpdatePassword:
    def test_update_password_overwrites_hash(self, services, user):
        assert services.auth.update_password(user.id, hash_password("new-password-123", 4))
        assert services.auth.login("alice@example.com", "new-password-123").success
        assert not services.auth.login("alice@example.com", PASSWORD).success

    def test_update_password_unknown_user(self, services):
        assert services.auth.update_password(9999, "x") is False


class TestTimestamps:
    def test_iso_is_fixed_width_and_round_trips(self, clock):
        whole_second = clock.now.replace(microsecond=0)
        text = to_iso(whole_second)
        assert text.endswith(".000000+00:00")
        assert from_iso(text) == whole_second
        assert len(to_iso(clock.now)) == len(text)

    def test_iso_lexical_order_is_time_order(self, clock):
        earlier = to_iso(clock.now)
        later = to_iso(clock.now.replace(microsecond=1))
        assert earlier < later

    def test_user_timestamps_follow_service_clock(self, services, clock):
        user = services.auth.register("alice@example.com", PASSWORD).user
        assert user.created_at == clock.now
        assert user.updated_at == clock.now

        clock.advance(days=3)
        services.auth.update_password(user.id, hash_password("new-password-123", 4))
        stored = services.store.get_user_by_id(user.id)
        assert stored.created_at == user.created_at
        assert stored.updated_at == clock.now
