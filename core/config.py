"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for simpleauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance from the caller (services do the latter so tests
can build their own).

Design:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance afterwards.

  One typed sub-model per optional feature (password_reset, magic_link, ...),
      composed into the top-level Settings. Nested env vars use a double
      underscore: PASSWORD_RESET__ENABLED=true, TWO_FACTOR__ISSUER=Acme.

  @model_validator(mode="after"): cross-field validation runs once at startup,
      so feature code never re-checks its own configuration per call.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected. Token hashes (HMAC-SHA256)
       and OAuth state signing both rely on key entropy.

  [M7] Outside debug mode a missing SECRET_KEY is a hard startup failure. A
       random per-process key would silently invalidate every stored session
       and token hash on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("simpleauth.config")


# ---------------------------------------------------------------------------
# Feature sub-models
# ---------------------------------------------------------------------------


class SecuritySettings(BaseModel):
    # bcrypt accepts 4..31; 12 is the library default cost.
    bcrypt_work_factor: int = Field(12, ge=4, le=31)
    session_expiry_days: int = Field(30, gt=0)
    min_password_length: int = Field(8, ge=1)


class PasswordResetSettings(BaseModel):
    enabled: bool = False
    token_expiry_minutes: int = Field(15, gt=0)
    email_subject: str = "Reset your password"
    redirect_url: str = ""
    # Kill every live session once the password changes.
    revoke_sessions: bool = True


class MagicLinkSettings(BaseModel):
    enabled: bool = False
    token_expiry_minutes: int = Field(10, gt=0)
    email_subject: str = "Your login link"
    # First login by link creates the account when True.
    create_users: bool = True


class VerificationSettings(BaseModel):
    enabled: bool = False
    token_expiry_minutes: int = Field(60, gt=0)
    email_subject: str = "Verify your account"
    redirect_url: str = ""
    require_verification: bool = False


class TwoFactorSettings(BaseModel):
    enabled: bool = False
    issuer: str = "simpleauth"
    code_validity_seconds: int = Field(30, gt=0)
    window_size: int = Field(1, ge=0)
    recovery_codes_count: int = Field(8, gt=0, le=20)
    # Recovery codes are long random strings, so a cheaper bcrypt cost is enough.
    recovery_code_work_factor: int = Field(8, ge=4, le=31)
    challenge_expiry_minutes: int = Field(5, gt=0)


class RbacSettings(BaseModel):
    enabled: bool = False
    default_role: str = "user"
    super_admin_role: str = "admin"
    assign_default_on_register: bool = True
    cache_permissions: bool = True
    cache_ttl_seconds: int = Field(300, gt=0)
    cache_max_entries: int = Field(10_000, gt=0)


class AuditSettings(BaseModel):
    enabled: bool = False
    log_login: bool = True
    log_registration: bool = True
    log_password_reset: bool = True
    log_account_verification: bool = True
    log_role_changes: bool = True
    log_credential_changes: bool = True
    log_session_operations: bool = True
    retention_days: int = Field(90, gt=0)


class OAuthProviderSettings(BaseModel):
    """Client registration for one OAuth provider. Empty client_id = disabled."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    scope: str = ""
    # Endpoint overrides; empty means the provider's well-known endpoint.
    authorize_url: str = ""
    token_url: str = ""
    profile_url: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class SocialSettings(BaseModel):
    enabled: bool = False
    state_ttl_seconds: int = Field(600, gt=0)
    github: OAuthProviderSettings = OAuthProviderSettings()
    google: OAuthProviderSettings = OAuthProviderSettings()
    apple: OAuthProviderSettings = OAuthProviderSettings()

    def provider(self, name: str) -> OAuthProviderSettings | None:
        return getattr(self, name, None) if name in ("github", "google", "apple") else None


class PasskeySettings(BaseModel):
    enabled: bool = False
    rp_id: str = ""
    rp_name: str = ""
    origin: str = ""
    challenge_timeout_seconds: int = Field(60, gt=0)
    require_user_verification: bool = False


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be built in tests without a
    real .env file. Environment variable names are the uppercased field
    names (secret_key -> SECRET_KEY, database_url -> DATABASE_URL).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    debug: bool = False
    # Empty string is the sentinel for "not configured"; the validator below
    # either generates a dev key or raises.
    secret_key: str = ""

    database_url: str = "sqlite:///simpleauth.db"
    # Prefix for links in outgoing email.
    base_url: str = "http://localhost:8000"
    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    email_rate_limit: str = "5/minute"
    # JSON list in the environment, e.g. CORS_ORIGINS='["https://app.example.com"]'
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    allowed_hosts: list[str] = ["*"]

    security: SecuritySettings = SecuritySettings()
    password_reset: PasswordResetSettings = PasswordResetSettings()
    magic_link: MagicLinkSettings = MagicLinkSettings()
    verification: VerificationSettings = VerificationSettings()
    two_factor: TwoFactorSettings = TwoFactorSettings()
    rbac: RbacSettings = RbacSettings()
    audit: AuditSettings = AuditSettings()
    social: SocialSettings = SocialSettings()
    passkeys: PasskeySettings = PasskeySettings()

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start without one.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_features(self) -> "Settings":
        """Reject feature combinations that cannot work at runtime."""
        if self.two_factor.enabled and not self.two_factor.issuer:
            raise ValueError("two_factor.issuer is required when two-factor authentication is enabled.")
        if self.social.enabled and not any(
            p.configured for p in (self.social.github, self.social.google, self.social.apple)
        ):
            raise ValueError("social login is enabled but no provider has a client_id and client_secret.")
        if self.passkeys.enabled:
            missing = [f for f in ("rp_id", "rp_name", "origin") if not getattr(self.passkeys, f)]
            if missing:
                raise ValueError(f"passkeys are enabled but passkeys.{', passkeys.'.join(missing)} is not set.")
        if self.rbac.enabled and self.rbac.default_role == "":
            raise ValueError("rbac.default_role must not be empty.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between cases that inject
    different environment variables.
    """
    return Settings()
