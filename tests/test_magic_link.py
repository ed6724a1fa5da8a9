"""Unit tests for auth/magic_link.py.

Covers:
- a link for an unknown email creates a verified, password-less user
- a link for an existing user logs them in and marks the email verified
- create_users=False sends nothing for unknown emails
- the link is single-use and expires
- a user with two-factor enabled gets a challenge instead of a session
"""

from auth import totp
from auth.errors import ErrorCode
from conftest import PASSWORD


def _request_and_click(services, outbox, email):
    services.magic_link.request_magic_link(email)
    link = outbox.last_link()
    return link, services.magic_link.complete_magic_link(link["token"], link["email"])


class TestMagicLink:
    def test_new_user_is_created_verified(self, services, outbox):
        link, result = _request_and_click(services, outbox, "new@example.com")
        assert link["_url"].startswith("http://localhost:8000/auth/magic-link?")
        assert result.success, result.message
        assert result.is_new_user
        assert result.session is not None
        assert result.user.hashed_password is None
        assert result.user.is_verified
        assert result.user.verification_method == "magic_link"
        roles = [r.name for r in services.rbac.get_user_roles(result.user.id)]
        assert roles == ["user"]

    def test_existing_user_logs_in_and_becomes_verified(self, services, user, outbox):
        assert not user.is_verified
        _, result = _request_and_click(services, outbox, "alice@example.com")
        assert result.success
        assert not result.is_new_user
        assert result.user.id == user.id
        assert services.store.get_user_by_id(user.id).is_verified

    def test_create_users_off_sends_nothing_for_unknown(self, make_services, outbox):
        svc = make_services(magic_link={"enabled": True, "create_users": False})
        result = svc.magic_link.request_magic_link("ghost@example.com")
        assert result.success and result.email_sent
        assert outbox == []

    def test_verify_then_complete(self, services, outbox):
        services.magic_link.request_magic_link("new@example.com")
        link = outbox.last_link()
        assert services.magic_link.verify_magic_link_token(link["token"], link["email"]).valid
        assert services.magic_link.complete_magic_link(link["token"], link["email"]).success

    def test_single_use(self, services, outbox):
        link, first = _request_and_click(services, outbox, "new@example.com")
        assert first.success
        second = services.magic_link.complete_magic_link(link["token"], link["email"])
        assert second.error == ErrorCode.ALREADY_USED

    def test_expired(self, services, outbox, clock):
        services.magic_link.request_magic_link("new@example.com")
        link = outbox.last_link()
        clock.advance(minutes=services.settings.magic_link.token_expiry_minutes, seconds=1)
        result = services.magic_link.complete_magic_link(link["token"], link["email"])
        assert result.error == ErrorCode.EXPIRED
        assert services.store.get_user_by_email("new@example.com") is None

    def test_token_for_other_email_is_not_found(self, services, outbox):
        services.magic_link.request_magic_link("new@example.com")
        link = outbox.last_link()
        result = services.magic_link.complete_magic_link(link["token"], "other@example.com")
        assert result.error == ErrorCode.NOT_FOUND

    def test_two_factor_user_gets_challenge(self, services, user, outbox, clock):
        setup = services.two_factor.setup(user.id)
        services.two_factor.verify_and_enable(user.id, totp.generate_code(setup.secret, clock.now))
        _, result = _request_and_click(services, outbox, "alice@example.com")
        assert result.success
        assert result.challenge_required
        assert result.challenge_token
        assert result.session is None

    def test_disabled(self, make_services):
        svc = make_services(magic_link={"enabled": False})
        assert svc.magic_link.request_magic_link("a@example.com").error == ErrorCode.FEATURE_DISABLED
        assert svc.magic_link.complete_magic_link("t", "a@example.com").error == ErrorCode.FEATURE_DISABLED

    def test_password_user_keeps_password(self, services, user, outbox):
        _request_and_click(services, outbox, "alice@example.com")
        assert services.auth.login("alice@example.com", PASSWORD).success
