"""
tests/test_config.py -- Tests for core/config.py.

Covers:
  - SECRET_KEY policy: too short is rejected, missing is fatal outside DEBUG,
    DEBUG auto-generates one
  - feature validation: social without a provider, passkeys without RP
    fields, 2FA without an issuer
  - nested environment variables (TWO_FACTOR__ISSUER)
  - get_settings() is a cached singleton
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings
from conftest import TEST_SECRET


@pytest.fixture
def fresh_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSecretKey:
    def test_short_key_rejected(self):
        with pytest.raises(ValidationError, match="at least 32 characters"):
            Settings(debug=True, secret_key="too-short")

    def test_missing_key_fatal_in_production(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_debug_generates_key(self):
        first = Settings(debug=True, secret_key="")
        second = Settings(debug=True, secret_key="")
        assert len(first.secret_key) == 64
        assert first.secret_key != second.secret_key

    def test_explicit_key_kept(self):
        assert Settings(debug=False, secret_key=TEST_SECRET).secret_key == TEST_SECRET


class TestFeatureValidation:
    def test_features_off_by_default(self):
        settings = Settings(secret_key=TEST_SECRET)
        assert not settings.password_reset.enabled
        assert not settings.social.enabled
        assert not settings.passkeys.enabled
        assert settings.security.bcrypt_work_factor == 12

    def test_social_needs_a_provider(self):
        with pytest.raises(ValidationError, match="no provider"):
            Settings(secret_key=TEST_SECRET, social={"enabled": True, "github": {"client_id": "only-id"}})

    def test_social_with_provider(self):
        settings = Settings(
            secret_key=TEST_SECRET, social={"enabled": True, "google": {"client_id": "id", "client_secret": "s"}}
        )
        assert settings.social.provider("google").configured
        assert not settings.social.provider("github").configured
        assert settings.social.provider("myspace") is None

    def test_passkeys_need_relying_party(self):
        with pytest.raises(ValidationError, match="passkeys.rp_name, passkeys.origin"):
            Settings(secret_key=TEST_SECRET, passkeys={"enabled": True, "rp_id": "example.com"})

    def test_two_factor_needs_issuer(self):
        with pytest.raises(ValidationError, match="issuer"):
            Settings(secret_key=TEST_SECRET, two_factor={"enabled": True, "issuer": ""})

    def test_bcrypt_bounds(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=TEST_SECRET, security={"bcrypt_work_factor": 3})


class TestEnvironment:
    def test_nested_env_vars(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", TEST_SECRET)
        monkeypatch.setenv("TWO_FACTOR__ENABLED", "true")
        monkeypatch.setenv("TWO_FACTOR__ISSUER", "Acme Corp")
        monkeypatch.setenv("AUDIT__RETENTION_DAYS", "7")
        settings = Settings()
        assert settings.two_factor.enabled
        assert settings.two_factor.issuer == "Acme Corp"
        assert settings.audit.retention_days == 7

    def test_get_settings_is_cached(self, monkeypatch, fresh_settings_cache):
        monkeypatch.setenv("BASE_URL", "https://auth.example.com")
        first = get_settings()
        assert first.base_url == "https://auth.example.com"
        monkeypatch.setenv("BASE_URL", "https://elsewhere.example.com")
        assert get_settings() is first
