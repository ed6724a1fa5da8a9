"""
API request and response models for SimpleAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Secrets (password hashes, token hashes, TOTP secrets) never appear in a
response model. Raw tokens appear only in the response that mints them.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import AuditEntry, PasskeyCredential, Role, Session, SocialAccount, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_MAX = 320
_PASSWORD_MAX = 1024
_TOKEN_MAX = 512
_URL_MAX = 2048

# Models that carry a password strip per field: secrets are compared byte for byte.
StrippedStr = Annotated[str, StringConstraints(strip_whitespace=True)]


# ---------------------------------------------------------------------------
# Request models -- credentials and sessions
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Format checks (contains '@', minimum length) are done by the service so
    the API and programmatic callers get the same INVALID_INPUT result.
    """

    email: StrippedStr = Field(max_length=_EMAIL_MAX)
    password: str = Field(max_length=_PASSWORD_MAX)
    name: Optional[StrippedStr] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: StrippedStr = Field(max_length=_EMAIL_MAX)
    password: str = Field(max_length=_PASSWORD_MAX)


class TwoFactorLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/2fa/verify (second login step)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int
    challenge_token: str = Field(min_length=1, max_length=_TOKEN_MAX)
    code: str = Field(min_length=1, max_length=32)


# ---------------------------------------------------------------------------
# Request models -- token flows
# ---------------------------------------------------------------------------


class PasswordResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=_EMAIL_MAX)
    redirect_url: Optional[str] = Field(default=None, max_length=_URL_MAX)


class MagicLinkRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=_EMAIL_MAX)
    callback_url: Optional[str] = Field(default=None, max_length=_URL_MAX)


class VerificationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=_EMAIL_MAX)
    redirect_url: Optional[str] = Field(default=None, max_length=_URL_MAX)


class TokenRequest(BaseModel):
    """Token + email pair, shared by every verify/complete endpoint.

    The email is part of the redemption key: a token presented with a
    different email is reported as not found.
    """

    token: StrippedStr = Field(min_length=1, max_length=_TOKEN_MAX)
    email: StrippedStr = Field(max_length=_EMAIL_MAX)


class PasswordResetComplete(TokenRequest):
    new_password: str = Field(max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Request models -- two-factor, RBAC, passkeys
# ---------------------------------------------------------------------------


class TwoFactorCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=32)


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=64)
    permissions: list[str] = Field(default_factory=list, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)


class RolePatch(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    permissions: Optional[list[str]] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)


class RoleAssign(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(min_length=1, max_length=64)


class PasskeyRegisterVerify(BaseModel):
    """The PublicKeyCredential JSON produced by navigator.credentials.create()."""

    credential: dict[str, Any]
    name: Optional[str] = Field(default=None, max_length=100)


class PasskeyLoginOptionsRequest(BaseModel):
    """Omit email for a username-less (discoverable credential) login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=_EMAIL_MAX)


class PasskeyLoginVerify(BaseModel):
    credential: dict[str, Any]
    email: Optional[str] = Field(default=None, max_length=_EMAIL_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public projection of a user -- no password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    email_verified: bool = False
    has_password: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            email_verified=user.is_verified,
            has_password=user.hashed_password is not None,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    """Response for every route that can sign a user in.

    Exactly one of session_token / challenge_token is set. When
    challenge_required is true the client must POST the code to
    /api/v1/auth/2fa/verify with user_id and challenge_token.
    """

    model_config = ConfigDict(frozen=True)

    user: Optional[UserResponse] = None
    session_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    challenge_required: bool = False
    challenge_token: Optional[str] = None
    user_id: Optional[int] = None
    is_new_user: bool = False
    message: str = ""


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = ""


class EmailSentResponse(BaseModel):
    """Request operations always answer email_sent=true for a well-formed email."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    email_sent: bool = True
    message: str = ""


class TokenValidResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: Optional[datetime] = None
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[int] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.id == current_id,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    session: SessionResponse
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)


class VerificationStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    required: bool
    verified: bool
    verified_at: Optional[datetime] = None
    method: Optional[str] = None


class TwoFactorSetupResponse(BaseModel):
    """Shown once, at setup or regeneration. The client renders the QR code from otpauth_uri."""

    model_config = ConfigDict(frozen=True)

    secret: Optional[str] = None
    otpauth_uri: Optional[str] = None
    recovery_codes: list[str] = Field(default_factory=list)


class TwoFactorStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    pending: bool
    verified_at: Optional[datetime] = None
    recovery_codes_remaining: int = 0


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    permissions: list[str]
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            permissions=list(role.permissions),
            description=role.description,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    permissions: list[str]


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    status: str
    user_id: Optional[int] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            status=entry.status,
            user_id=entry.user_id,
            resource=entry.resource,
            resource_id=entry.resource_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )


class AuditPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    entries: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int


class PruneResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deleted: int


class OAuthProviderInfo(BaseModel):
    """One configured social login provider, for rendering sign-in buttons."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class AuthorizationUrlResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    state: str


class SocialAccountResponse(BaseModel):
    """Linked provider account -- provider tokens are never returned."""

    model_config = ConfigDict(frozen=True)

    provider: str
    provider_account_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: SocialAccount) -> "SocialAccountResponse":
        return cls(
            provider=account.provider,
            provider_account_id=account.provider_account_id,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class PasskeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    credential_id: str
    name: Optional[str] = None
    transports: list[str] = Field(default_factory=list)
    device_type: Optional[str] = None
    backed_up: bool = False
    sign_count: int = 0
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_credential(cls, cred: PasskeyCredential) -> "PasskeyResponse":
        return cls(
            credential_id=cred.credential_id,
            name=cred.name,
            transports=list(cred.transports),
            device_type=cred.device_type,
            backed_up=cred.backed_up,
            sign_count=cred.sign_count,
            created_at=cred.created_at,
            last_used_at=cred.last_used_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
