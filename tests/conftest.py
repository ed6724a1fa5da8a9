"""
tests/conftest.py -- Shared test fixtures for SimpleAuth.

This module provides:
  - FrozenClock / clock: a controllable UTC clock injected into every service
  - outbox / mailer: a capturing mail collaborator plus link_params() to pull
    the token out of a sent email
  - FakeGateway: an in-process OAuth provider gateway (no network)
  - settings / services: every feature enabled against a file-backed SQLite
    database under tmp_path
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: each test gets its own database file under tmp_path. File-backed
SQLite (not :memory:) is required because TestClient runs route handlers in
a thread pool, and every pooled connection must see the same schema.

The DEBUG env var must be set before any project import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError. Rate
limits are raised so that route tests never trip them by accident.
"""

from __future__ import annotations

import html
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("EMAIL_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.container import AuthServices, build_services
from auth.oauth import PROVIDERS, OAuthProfile, OAuthProviderError
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------------------------
# Mail capture
# ---------------------------------------------------------------------------


class Outbox(list):
    """Messages captured as (to, subject, html) tuples."""

    def last_link(self) -> dict[str, str]:
        assert self, "no email was sent"
        return link_params(self[-1][2])


def link_params(body: str) -> dict[str, str]:
    """Return the query parameters of the first link in an email body, plus its URL."""
    match = re.search(r'href="([^"]+)"', body)
    assert match, "email has no link"
    url = html.unescape(match.group(1))
    params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
    params["_url"] = url
    return params


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def mailer(outbox: Outbox):
    def send(to: str, subject: str, body: str) -> bool:
        outbox.append((to, subject, body))
        return True

    return send


# ---------------------------------------------------------------------------
# OAuth gateway double
# ---------------------------------------------------------------------------


class FakeGateway:
    """Stands in for auth.oauth.OAuthGateway.

    profile: what fetch_profile() returns for the next callback.
    fail: when True, exchange_code() raises OAuthProviderError.
    """

    def __init__(self) -> None:
        self.profile = OAuthProfile(
            provider="github",
            provider_account_id="gh-1001",
            email="octo@example.com",
            email_verified=True,
            name="Octo Cat",
            raw={"id": 1001, "login": "octocat"},
        )
        self.token = {"access_token": "gho_access", "refresh_token": "gho_refresh", "expires_in": 3600}
        self.fail = False
        self.exchanged: list[tuple[str, str, str]] = []

    def enabled_providers(self):
        return [PROVIDERS["github"], PROVIDERS["google"]]

    def get_authorization_url(self, provider: str, state: str, redirect_uri: str) -> str:
        return f"https://provider.test/{provider}/authorize?state={state}&redirect_uri={redirect_uri}"

    def exchange_code(self, provider: str, code: str, redirect_uri: str) -> dict:
        if self.fail:
            raise OAuthProviderError(f"{provider}: code exchange failed")
        self.exchanged.append((provider, code, redirect_uri))
        return dict(self.token)

    def fetch_profile(self, provider: str, token: dict) -> OAuthProfile:
        return self.profile


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ---------------------------------------------------------------------------
# Settings and services
# ---------------------------------------------------------------------------


def make_settings(db_path, **overrides) -> Settings:
    """Settings with every feature on, cheap bcrypt, and a throwaway database."""
    values = dict(
        debug=True,
        secret_key=TEST_SECRET,
        database_url=f"sqlite:///{db_path}",
        base_url="http://localhost:8000",
        security={"bcrypt_work_factor": 4},
        password_reset={"enabled": True},
        magic_link={"enabled": True},
        verification={"enabled": True},
        two_factor={"enabled": True, "issuer": "SimpleAuth Tests", "recovery_code_work_factor": 4},
        rbac={"enabled": True},
        audit={"enabled": True},
        social={"enabled": True, "github": {"client_id": "gh-id", "client_secret": "gh-secret"}},
        passkeys={"enabled": True, "rp_id": "localhost", "rp_name": "SimpleAuth", "origin": "http://localhost:8000"},
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path / "auth.db")


@pytest.fixture
def services(settings, clock, mailer, gateway) -> Generator[AuthServices, None, None]:
    svc = build_services(settings, mailer=mailer, clock=clock, gateway=gateway)
    yield svc
    svc.close()


@pytest.fixture
def make_services(tmp_path, clock, mailer, gateway):
    """Factory for tests that need non-default settings: make_services(rbac={"enabled": False})."""
    built: list[AuthServices] = []

    def factory(**overrides) -> AuthServices:
        settings = make_settings(tmp_path / f"auth-{len(built)}.db", **overrides)
        svc = build_services(settings, mailer=mailer, clock=clock, gateway=gateway)
        built.append(svc)
        return svc

    yield factory
    for svc in built:
        svc.close()


@pytest.fixture
def user(services):
    """A registered, password-holding user. Returns the AuthResult."""
    result = services.auth.register("alice@example.com", PASSWORD, name="Alice")
    assert result.success, result.message
    return result.user


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(services: AuthServices):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so TestClient routes see
    the isolated test database and the fake mailer/gateway. No purge task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        yield

    return test_lifespan


@pytest.fixture
def api_client(tmp_path, mailer, gateway) -> Generator[tuple[TestClient, AuthServices], None, None]:
    """Yield (client, services) for API integration tests.

    Services use the real clock (TOTP codes in route tests are computed
    against wall time). The limiter's counters are cleared per test.
    """
    svc = build_services(make_settings(tmp_path / "api.db"), mailer=mailer, gateway=gateway)
    app.router.lifespan_context = _patch_lifespan(svc)
    limiter.reset()
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc
    svc.close()


@pytest.fixture
def admin_client(api_client) -> tuple[TestClient, AuthServices, int]:
    """api_client signed in (cookie) as a user holding the super-admin role."""
    client, svc = api_client
    result = svc.auth.register("admin@example.com", PASSWORD)
    svc.rbac.assign_role(result.user.id, svc.settings.rbac.super_admin_role)
    resp = client.post("/api/v1/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return client, svc, result.user.id
