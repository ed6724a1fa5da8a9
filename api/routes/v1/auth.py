"""
api/routes/v1/auth.py -- Registration, login, and session REST endpoints.

Routes:
  POST   /api/v1/auth/register             -- create account; sets session cookie unless verification is required
  POST   /api/v1/auth/login                -- password login; sets cookie or returns a 2FA challenge
  POST   /api/v1/auth/2fa/verify           -- second login step; exchanges challenge + code for a session
  POST   /api/v1/auth/logout               -- revokes the session and clears the cookie
  GET    /api/v1/auth/me                   -- current user, session, roles and permissions (requires auth)
  GET    /api/v1/auth/sessions             -- the caller's active sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}        -- revoke one of the caller's sessions (requires auth)
  POST   /api/v1/auth/sessions/revoke-all  -- sign out everywhere (requires auth)

Security:
  [H2] register, login and 2fa/verify are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() equalizes timing for unknown emails -- never inline the lookup.
  [M5] Cache-Control: no-store on every response that carries a token.
  IDOR guard: DELETE /sessions/{id} passes the caller's user_id; a foreign id is a 404.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    SessionResponse,
    TwoFactorLoginRequest,
    UserResponse,
)
from api.responses import auth_response, client_info
from auth.container import AuthServices
from auth.dependencies import get_current_session, get_services, session_token_from_request
from auth.models import SessionInfo
from auth.tokens import clear_session_cookie

router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
@limiter.limit(login_limit)  # [H2] below @router so FastAPI registers the rate-limited wrapper
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account with email and password.

    When email verification is required the account is created without a
    session and a verification email is sent instead.
    """
    services: AuthServices = get_services(request)
    result = services.auth.register(body.email, body.password, name=body.name, **client_info(request))
    if result.success and result.session is None and services.verification.is_verification_required():
        services.verification.request_verification(result.user.email, ip_address=client_info(request)["ip_address"])
    return auth_response(result, services.settings.secure_cookies, status_code=201)


@router.post("/auth/login")
@limiter.limit(login_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Returns the same generic error for an unknown email and a wrong password.
    When the user has 2FA enabled no cookie is set; the body carries
    challenge_token and user_id for POST /auth/2fa/verify.
    """
    services = get_services(request)
    result = services.auth.login(body.email, body.password, **client_info(request))
    return auth_response(result, services.settings.secure_cookies)


@router.post("/auth/2fa/verify")
@limiter.limit(login_limit)
def verify_two_factor_login(request: Request, body: TwoFactorLoginRequest) -> JSONResponse:
    """Complete a challenged login with a TOTP code or a recovery code."""
    services = get_services(request)
    result = services.auth.complete_two_factor_login(
        body.user_id, body.challenge_token, body.code, **client_info(request)
    )
    return auth_response(result, services.settings.secure_cookies)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Revoke the presented session (cookie or bearer) and clear the cookie.

    Always 200: logging out with no session or an already-revoked one is not an error.
    """
    services = get_services(request)
    services.auth.logout(session_token_from_request(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookie(resp, secure=services.settings.secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, info: SessionInfo = Depends(get_current_session)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    services = get_services(request)
    roles: list[str] = []
    permissions: list[str] = []
    if services.rbac.enabled:
        roles = [r.name for r in services.rbac.get_user_roles(info.user.id)]
        permissions = sorted(services.rbac.get_permissions(info.user.id))
    return MeResponse(
        user=UserResponse.from_user(info.user),
        session=SessionResponse.from_session(info.session, info.session.id),
        roles=roles,
        permissions=permissions,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, info: SessionInfo = Depends(get_current_session)) -> list[SessionResponse]:
    sessions = get_services(request).sessions.list_for_user(info.user.id)
    return [SessionResponse.from_session(s, info.session.id) for s in sessions]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(request: Request, session_id: int, info: SessionInfo = Depends(get_current_session)) -> None:
    """Revoke one session. Ownership is enforced by the session manager."""
    services = get_services(request)
    if not services.sessions.revoke_by_id(info.user.id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    services.audit.record(
        "session.revoke", user_id=info.user.id, resource="session", resource_id=str(session_id), **client_info(request)
    )


@router.post("/auth/sessions/revoke-all", response_model=MessageResponse)
def revoke_all_sessions(request: Request, info: SessionInfo = Depends(get_current_session)) -> JSONResponse:
    """Sign out of every device, including this one."""
    services = get_services(request)
    count = services.sessions.revoke_all(info.user.id)
    services.audit.record("session.revoke_all", user_id=info.user.id, details={"count": count}, **client_info(request))
    resp = JSONResponse(content=MessageResponse(message=f"{count} session(s) revoked.").model_dump())
    clear_session_cookie(resp, secure=services.settings.secure_cookies)
    return resp
