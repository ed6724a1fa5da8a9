"""Unit tests for auth/audit.py.

Covers:
- register / login / logout write entries with status and context
- category flags suppress whole action families
- query() filters, paginates newest-first and reports the total
- prune() deletes by age only
- a disabled sink records nothing
"""

from datetime import timedelta

import pytest

from auth.audit import FAILURE, SUCCESS
from auth.models import AuditQuery
from conftest import PASSWORD


def _actions(services, **filters):
    return [e.action for e in services.audit.query(AuditQuery(**filters)).entries]


class TestRecording:
    def test_credential_flows_are_recorded(self, services, user):
        services.auth.login("alice@example.com", "wrong-password", ip_address="10.1.1.1")
        session = services.auth.login("alice@example.com", PASSWORD, user_agent="pytest").session
        services.auth.logout(session.token)

        assert _actions(services, user_id=user.id) == [
            "session.logout",
            "login.success",
            "login.failure",
            "register.success",
        ]
        failure = services.audit.query(AuditQuery(action="login.failure")).entries[0]
        assert failure.status == FAILURE
        assert failure.ip_address == "10.1.1.1"
        assert failure.details == {"reason": "invalid_credentials"}

    def test_unknown_email_failure_has_no_user(self, services):
        services.auth.login("ghost@example.com", PASSWORD)
        entry = services.audit.query(AuditQuery(action="login.failure")).entries[0]
        assert entry.user_id is None

    def test_category_flag_suppresses(self, make_services):
        svc = make_services(audit={"enabled": True, "log_login": False})
        svc.auth.register("bob@example.com", PASSWORD)
        svc.auth.login("bob@example.com", PASSWORD)
        assert _actions(svc) == ["register.success"]

    def test_disabled_sink(self, make_services):
        svc = make_services(audit={"enabled": False})
        svc.auth.register("bob@example.com", PASSWORD)
        assert svc.audit.record("custom.event") is None
        assert svc.audit.query(AuditQuery()).total == 0

    def test_uncategorized_actions_are_recorded(self, services):
        entry = services.audit.record("custom.event", details={"k": "v"})
        assert entry.id is not None
        assert services.audit.get(entry.id).details == {"k": "v"}


class TestQuery:
    def test_pagination_and_total(self, services, clock):
        for i in range(5):
            services.audit.record("custom.event", resource_id=str(i))
            clock.advance(seconds=1)
        page = services.audit.query(AuditQuery(action="custom.event", limit=2, offset=1))
        assert page.total == 5
        assert [e.resource_id for e in page.entries] == ["3", "2"]

    def test_filters(self, services, clock):
        services.audit.record("custom.event", status=SUCCESS, resource="doc")
        clock.advance(hours=1)
        services.audit.record("custom.event", status=FAILURE, resource="doc")
        assert services.audit.query(AuditQuery(status=FAILURE)).total == 1
        assert services.audit.query(AuditQuery(resource="doc")).total == 2
        assert services.audit.query(AuditQuery(start=clock.now - timedelta(minutes=1))).total == 1
        assert services.audit.query(AuditQuery(end=clock.now - timedelta(minutes=1))).total == 1

    def test_limit_is_clamped(self, services):
        services.audit.record("custom.event")
        assert len(services.audit.query(AuditQuery(limit=0)).entries) == 1


class TestPrune:
    def test_prune_by_age(self, services, clock):
        services.audit.record("custom.old")
        clock.advance(days=services.settings.audit.retention_days + 1)
        services.audit.record("custom.new")
        assert services.audit.prune() == 1
        assert _actions(services) == ["custom.new"]

    def test_explicit_retention(self, services, clock):
        services.audit.record("custom.old")
        clock.advance(days=3)
        assert services.audit.prune(5) == 0
        assert services.audit.prune(2) == 1

    def test_non_positive_retention(self, services):
        with pytest.raises(ValueError):
            services.audit.prune(0)
