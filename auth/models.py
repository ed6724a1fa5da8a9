"""
auth/models.py -- Domain dataclasses for authentication entities and results.

Pattern: Data class (pure data container, zero logic). Stores map rows into
these; services and routes pass them around. Secrets never appear here in
plaintext except Session.token, which is only populated on the instance
returned at issue time and never read back from storage.

Result types are the structured return values of public service operations
(success flag + optional error). See auth/errors.py for how failures are
produced.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from auth.errors import ErrorCode

# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A credential-store identity.

    email is always stored normalized (stripped, lowercased), so equality on
    the column is case-insensitive equality on the address.

    hashed_password is None for users created by magic link or social login;
    they have no local password and password login always fails for them.
    """

    email: str
    id: int | None = None
    hashed_password: str | None = None
    name: str | None = None
    email_verified_at: datetime | None = None
    verification_method: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class Session:
    user_id: int
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    # Raw bearer token. Set only on the object returned by SessionManager.create().
    token: str | None = field(default=None, repr=False)


@dataclass
class SessionInfo:
    """Result of resolving a session token: the session and its owner."""

    session: Session
    user: User


@dataclass
class LedgerToken:
    """A stored single-use token (the raw value is never persisted)."""

    id: int
    purpose: str
    subject: str
    expires_at: datetime
    created_at: datetime
    consumed_at: datetime | None = None
    payload: dict | None = None


@dataclass
class TwoFactorStatus:
    enabled: bool = False
    pending: bool = False
    verified_at: datetime | None = None
    recovery_codes_remaining: int = 0


@dataclass
class VerificationStatus:
    verified: bool = False
    verified_at: datetime | None = None
    method: str | None = None


@dataclass
class Role:
    name: str
    permissions: list[str] = field(default_factory=list)
    id: int | None = None
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class UserRole:
    user_id: int
    role_id: int
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class AuditEntry:
    action: str
    status: str
    id: int | None = None
    user_id: int | None = None
    resource: str | None = None
    resource_id: str | None = None
    details: dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass
class AuditQuery:
    user_id: int | None = None
    action: str | None = None
    resource: str | None = None
    resource_id: str | None = None
    status: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 50
    offset: int = 0


@dataclass
class AuditPage:
    entries: list[AuditEntry]
    total: int


@dataclass
class SocialAccount:
    user_id: int
    provider: str
    provider_account_id: str
    id: int | None = None
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None
    profile: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PasskeyCredential:
    user_id: int
    credential_id: str  # base64url
    public_key: bytes = field(repr=False)
    sign_count: int = 0
    id: int | None = None
    name: str | None = None
    transports: list[str] = field(default_factory=list)
    device_type: str | None = None
    backed_up: bool = False
    created_at: datetime | None = None
    last_used_at: datetime | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class Result:
    success: bool = True
    error: ErrorCode | None = None
    message: str = ""


@dataclass
class AuthResult(Result):
    """Outcome of any operation that can log a user in.

    Exactly one of session / challenge_token is set on success: when the user
    has two-factor enabled, challenge_required is True and the caller must
    complete the login with the challenge token and a code.
    """

    user: User | None = None
    session: Session | None = None
    challenge_required: bool = False
    challenge_token: str | None = field(default=None, repr=False)
    is_new_user: bool = False


@dataclass
class EmailResult(Result):
    email_sent: bool = False


@dataclass
class TokenCheckResult(Result):
    valid: bool = False


@dataclass
class TwoFactorSetupResult(Result):
    secret: str | None = field(default=None, repr=False)
    otpauth_uri: str | None = field(default=None, repr=False)
    recovery_codes: list[str] = field(default_factory=list, repr=False)


@dataclass
class RoleResult(Result):
    role: Role | None = None


@dataclass
class AssignmentResult(Result):
    assignment: UserRole | None = None


@dataclass
class AuthorizationUrlResult(Result):
    url: str | None = None
    state: str | None = None


@dataclass
class PasskeyOptionsResult(Result):
    # JSON-ready WebAuthn options (webauthn.options_to_json output, parsed).
    options: dict[str, Any] | None = None


@dataclass
class PasskeyResult(Result):
    credential: PasskeyCredential | None = None
