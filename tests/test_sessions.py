"""Unit tests for auth/sessions.py -- opaque session tokens.

Covers:
- create() stores only the HMAC of the token
- resolve() returns session + user; expired sessions are deleted on read
- revoke() is idempotent and reports the owner
- revoke_by_id() refuses sessions the caller does not own
- list_for_user() hides expired sessions
- purge_expired() removes every expired row
"""

from sqlalchemy import select

from auth.schema import sessions as sessions_table


def _rows(services):
    with services.store.connection() as conn:
        return conn.execute(select(sessions_table)).fetchall()


class TestCreate:
    def test_token_stored_as_hash(self, services, user):
        session = services.sessions.create(user.id)
        stored = [r.token_hash for r in _rows(services)]
        assert session.token not in stored
        assert all(len(h) == 64 for h in stored)

    def test_expiry_uses_configured_days(self, services, user, clock):
        session = services.sessions.create(user.id)
        days = services.settings.security.session_expiry_days
        assert (session.expires_at - clock.now).days == days


class TestResolve:
    def test_resolve_returns_user(self, services, user):
        session = services.sessions.create(user.id, ip_address="1.2.3.4")
        info = services.sessions.resolve(session.token)
        assert info.user.id == user.id
        assert info.session.id == session.id
        assert info.session.ip_address == "1.2.3.4"

    def test_unknown_and_empty_tokens(self, services, user):
        assert services.sessions.resolve("nope") is None
        assert services.sessions.resolve("") is None
        assert services.sessions.resolve(None) is None

    def test_expired_session_is_deleted_on_read(self, services, user, clock):
        session = services.sessions.create(user.id)
        before = len(_rows(services))
        clock.advance(days=services.settings.security.session_expiry_days)
        assert services.sessions.resolve(session.token) is None
        assert len(_rows(services)) == before - 1


class TestRevoke:
    def test_revoke_reports_owner_once(self, services, user):
        session = services.sessions.create(user.id)
        assert services.sessions.revoke(session.token) == user.id
        assert services.sessions.revoke(session.token) is None

    def test_revoke_by_id_requires_ownership(self, services, user):
        other = services.auth.register("bob@example.com", "bob-password-1").user
        bobs = services.sessions.create(other.id)
        assert services.sessions.revoke_by_id(user.id, bobs.id) is False
        assert services.sessions.resolve(bobs.token) is not None
        assert services.sessions.revoke_by_id(other.id, bobs.id) is True
        assert services.sessions.resolve(bobs.token) is None

    def test_revoke_all(self, services, user):
        for _ in range(3):
            services.sessions.create(user.id)
        # user fixture's registration session + 3
        assert services.sessions.revoke_all(user.id) == 4
        assert services.sessions.list_for_user(user.id) == []


class TestExpiry:
    def test_list_hides_expired(self, services, user, clock):
        clock.advance(days=services.settings.security.session_expiry_days - 1)
        fresh = services.sessions.create(user.id)
        clock.advance(days=1)
        listed = services.sessions.list_for_user(user.id)
        assert [s.id for s in listed] == [fresh.id]

    def test_purge_expired(self, services, user, clock):
        services.sessions.create(user.id)
        clock.advance(days=services.settings.security.session_expiry_days, seconds=1)
        services.sessions.create(user.id)
        assert services.sessions.purge_expired() == 2
        assert len(_rows(services)) == 1
