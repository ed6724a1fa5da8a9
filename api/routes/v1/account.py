"""
api/routes/v1/account.py -- Token-flow and two-factor management endpoints.

Routes (public, token-authorized):
  POST /api/v1/auth/password-reset/request    -- email a reset link
  POST /api/v1/auth/password-reset/verify     -- peek at a reset token
  POST /api/v1/auth/password-reset/complete   -- set a new password with the token
  POST /api/v1/auth/magic-link/request        -- email a sign-in link
  POST /api/v1/auth/magic-link/verify         -- peek at a magic-link token
  POST /api/v1/auth/magic-link/complete       -- sign in with the token; sets session cookie
  POST /api/v1/auth/verification/request      -- email a verification link
  POST /api/v1/auth/verification/verify       -- peek at a verification token
  POST /api/v1/auth/verification/complete     -- mark the email verified

Routes (requires auth):
  GET  /api/v1/auth/verification/status
  GET  /api/v1/auth/2fa/status
  POST /api/v1/auth/2fa/setup                 -- new secret + recovery codes (shown once)
  POST /api/v1/auth/2fa/enable                -- confirm setup with a TOTP code
  POST /api/v1/auth/2fa/disable               -- requires a current TOTP or recovery code
  POST /api/v1/auth/2fa/recovery-codes        -- regenerate recovery codes (requires a TOTP code)

Security:
  Every */request route answers email_sent=true for any well-formed email so
  the response does not reveal whether an account exists. They are
  rate-limited per IP (EMAIL_RATE_LIMIT).
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import email_limit, limiter, login_limit
from api.models import (
    EmailSentResponse,
    MagicLinkRequest,
    MessageResponse,
    PasswordResetComplete,
    PasswordResetRequest,
    TokenRequest,
    TokenValidResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    VerificationRequest,
    VerificationStatusResponse,
)
from api.responses import auth_response, client_info, raise_for_result
from auth.dependencies import get_current_user, get_services
from auth.models import EmailResult, Result, TokenCheckResult, TwoFactorSetupResult, User

router = APIRouter()


def _email_sent(result: EmailResult) -> EmailSentResponse:
    raise_for_result(result)
    return EmailSentResponse(email_sent=result.email_sent, message=result.message)


def _valid(result: TokenCheckResult) -> TokenValidResponse:
    raise_for_result(result)
    return TokenValidResponse(valid=result.valid)


def _message(result: Result) -> MessageResponse:
    raise_for_result(result)
    return MessageResponse(message=result.message)


def _setup(result: TwoFactorSetupResult) -> JSONResponse:
    raise_for_result(result)
    body = TwoFactorSetupResponse(
        secret=result.secret, otpauth_uri=result.otpauth_uri, recovery_codes=result.recovery_codes
    )
    resp = JSONResponse(content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=EmailSentResponse)
@limiter.limit(email_limit)
def request_password_reset(request: Request, body: PasswordResetRequest) -> EmailSentResponse:
    result = get_services(request).password_reset.request_password_reset(
        body.email, body.redirect_url, ip_address=client_info(request)["ip_address"]
    )
    return _email_sent(result)


@router.post("/auth/password-reset/verify", response_model=TokenValidResponse)
def verify_password_reset(request: Request, body: TokenRequest) -> TokenValidResponse:
    return _valid(get_services(request).password_reset.verify_password_reset_token(body.token, body.email))


@router.post("/auth/password-reset/complete", response_model=MessageResponse)
@limiter.limit(login_limit)
def complete_password_reset(request: Request, body: PasswordResetComplete) -> MessageResponse:
    result = get_services(request).password_reset.complete_password_reset(
        body.token, body.email, body.new_password, ip_address=client_info(request)["ip_address"]
    )
    return _message(result)


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


@router.post("/auth/magic-link/request", response_model=EmailSentResponse)
@limiter.limit(email_limit)
def request_magic_link(request: Request, body: MagicLinkRequest) -> EmailSentResponse:
    result = get_services(request).magic_link.request_magic_link(
        body.email, body.callback_url, ip_address=client_info(request)["ip_address"]
    )
    return _email_sent(result)


@router.post("/auth/magic-link/verify", response_model=TokenValidResponse)
def verify_magic_link(request: Request, body: TokenRequest) -> TokenValidResponse:
    return _valid(get_services(request).magic_link.verify_magic_link_token(body.token, body.email))


@router.post("/auth/magic-link/complete")
@limiter.limit(login_limit)
def complete_magic_link(request: Request, body: TokenRequest) -> JSONResponse:
    """Redeem a magic link. Creates the account on first use when MAGIC_LINK__CREATE_USERS is on."""
    services = get_services(request)
    result = services.magic_link.complete_magic_link(body.token, body.email, **client_info(request))
    return auth_response(result, services.settings.secure_cookies)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/verification/request", response_model=EmailSentResponse)
@limiter.limit(email_limit)
def request_verification(request: Request, body: VerificationRequest) -> EmailSentResponse:
    result = get_services(request).verification.request_verification(
        body.email, body.redirect_url, ip_address=client_info(request)["ip_address"]
    )
    return _email_sent(result)


@router.post("/auth/verification/verify", response_model=TokenValidResponse)
def verify_verification(request: Request, body: TokenRequest) -> TokenValidResponse:
    return _valid(get_services(request).verification.verify_verification_token(body.token, body.email))


@router.post("/auth/verification/complete", response_model=MessageResponse)
def complete_verification(request: Request, body: TokenRequest) -> MessageResponse:
    result = get_services(request).verification.complete_verification(
        body.token, body.email, ip_address=client_info(request)["ip_address"]
    )
    return _message(result)


@router.get("/auth/verification/status", response_model=VerificationStatusResponse)
def verification_status(request: Request, user: User = Depends(get_current_user)) -> VerificationStatusResponse:
    verification = get_services(request).verification
    status = verification.get_verification_status(user.id)
    return VerificationStatusResponse(
        required=verification.is_verification_required(),
        verified=status.verified,
        verified_at=status.verified_at,
        method=status.method,
    )


# ---------------------------------------------------------------------------
# Two-factor management
# ---------------------------------------------------------------------------


@router.get("/auth/2fa/status", response_model=TwoFactorStatusResponse)
def two_factor_status(request: Request, user: User = Depends(get_current_user)) -> TwoFactorStatusResponse:
    status = get_services(request).two_factor.get_status(user.id)
    return TwoFactorStatusResponse(
        enabled=status.enabled,
        pending=status.pending,
        verified_at=status.verified_at,
        recovery_codes_remaining=status.recovery_codes_remaining,
    )


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def two_factor_setup(request: Request, user: User = Depends(get_current_user)) -> JSONResponse:
    """Start (or restart) enrollment. 2FA stays off until /2fa/enable confirms a code."""
    return _setup(get_services(request).two_factor.setup(user.id))


@router.post("/auth/2fa/enable", response_model=MessageResponse)
@limiter.limit(login_limit)
def two_factor_enable(
    request: Request, body: TwoFactorCodeRequest, user: User = Depends(get_current_user)
) -> MessageResponse:
    services = get_services(request)
    result = services.two_factor.verify_and_enable(user.id, body.code)
    if result.success:
        services.audit.record("credential.two_factor.enable", user_id=user.id, **client_info(request))
    return _message(result)


@router.post("/auth/2fa/disable", response_model=MessageResponse)
@limiter.limit(login_limit)
def two_factor_disable(
    request: Request, body: TwoFactorCodeRequest, user: User = Depends(get_current_user)
) -> MessageResponse:
    """Turn 2FA off, or abandon a pending setup.

    Once enabled, a stolen session alone is not enough: a current code is required.
    """
    services = get_services(request)
    if services.two_factor.is_enabled(user.id):
        raise_for_result(services.two_factor.verify_code(user.id, body.code))
    result = services.two_factor.disable(user.id)
    if result.success:
        services.audit.record("credential.two_factor.disable", user_id=user.id, **client_info(request))
    return _message(result)


@router.post("/auth/2fa/recovery-codes", response_model=TwoFactorSetupResponse)
@limiter.limit(login_limit)
def two_factor_recovery_codes(
    request: Request, body: TwoFactorCodeRequest, user: User = Depends(get_current_user)
) -> JSONResponse:
    services = get_services(request)
    result = services.two_factor.regenerate_recovery_codes(user.id, body.code)
    if result.success:
        services.audit.record("credential.two_factor.recovery_codes", user_id=user.id, **client_info(request))
    return _setup(result)
