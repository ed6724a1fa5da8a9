"""
auth/schema.py -- SQLAlchemy Core table definitions for every auth entity.

One MetaData for the whole package; AuthStore calls metadata.create_all() at
startup. Feature tables exist whether or not the feature is enabled, so
toggling a feature on later needs no migration step.

Uniqueness is enforced here, not in code [M1]: a read-then-insert existence
check races under concurrent requests, so the UNIQUE constraint is the
authoritative guard and its IntegrityError is mapped to DUPLICATE_USER /
DUPLICATE_ACCOUNT by the callers.

Timestamps are TEXT in a fixed-width UTC ISO-8601 format (see
auth.store.to_iso), so string comparison in WHERE clauses is time order.

Owned rows carry ON DELETE CASCADE to users.id. SQLite only honours that with
PRAGMA foreign_keys=ON, which AuthStore sets per connection.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

_TS = String(32)


def _user_fk() -> ForeignKey:
    return ForeignKey("users.id", ondelete="CASCADE")


users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized
    Column("hashed_password", Text),  # NULL for magic-link / social-only users
    Column("name", String(255)),
    Column("email_verified_at", _TS),
    Column("verification_method", String(30)),
    Column("created_at", _TS, nullable=False),
    Column("updated_at", _TS, nullable=False),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, _user_fk(), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", _TS, nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", _TS, nullable=False),
)

# All single-use token flows share this table, distinguished by purpose.
single_use_tokens = Table(
    "single_use_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("purpose", String(40), nullable=False),
    Column("subject", String(255), nullable=False),  # user id or normalized email
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", _TS, nullable=False),
    Column("created_at", _TS, nullable=False),
    Column("consumed_at", _TS),
    Column("payload", JSON),
    Index("ix_single_use_tokens_purpose_subject", "purpose", "subject"),
)

two_factor_enrollments = Table(
    "two_factor_enrollments",
    metadata,
    Column("user_id", Integer, _user_fk(), primary_key=True),
    Column("secret", String(64), nullable=False),
    Column("enabled", Integer, nullable=False, server_default="0"),
    Column("verified_at", _TS),
    Column("created_at", _TS, nullable=False),
)

two_factor_recovery_codes = Table(
    "two_factor_recovery_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, _user_fk(), nullable=False, index=True),
    Column("code_hash", Text, nullable=False),  # bcrypt
    Column("used_at", _TS),
    Column("created_at", _TS, nullable=False),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("permissions", JSON, nullable=False),
    Column("created_at", _TS, nullable=False),
    Column("updated_at", _TS, nullable=False),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, _user_fk(), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", _TS, nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
)

# Append-only. user_id is deliberately not a foreign key: entries outlive users.
audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),
    Column("action", String(100), nullable=False, index=True),
    Column("resource", String(100)),
    Column("resource_id", String(255)),
    Column("status", String(20), nullable=False),
    Column("details", JSON),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", _TS, nullable=False, index=True),
)

social_accounts = Table(
    "social_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, _user_fk(), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("expires_at", _TS),
    Column("profile", JSON),
    Column("created_at", _TS, nullable=False),
    Column("updated_at", _TS, nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_social_accounts_provider_account"),
)

passkey_credentials = Table(
    "passkey_credentials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, _user_fk(), nullable=False, index=True),
    Column("credential_id", String(512), nullable=False, unique=True),  # base64url
    Column("public_key", LargeBinary, nullable=False),  # COSE-encoded
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("name", String(100)),
    Column("transports", JSON),
    Column("device_type", String(30)),
    Column("backed_up", Integer, nullable=False, server_default="0"),
    Column("created_at", _TS, nullable=False),
    Column("last_used_at", _TS),
)
