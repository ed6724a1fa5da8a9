"""
api/routes/v1/social.py -- Social (OAuth 2.0) login endpoints.

Routes:
  GET    /api/v1/auth/social/providers               -- configured providers (public)
  GET    /api/v1/auth/social/{provider}/authorize    -- 302 to the provider (or JSON with ?redirect=false)
  GET    /api/v1/auth/social/{provider}/callback     -- provider redirect target
  POST   /api/v1/auth/social/{provider}/callback     -- same, for Apple's response_mode=form_post
  GET    /api/v1/auth/social/accounts                -- the caller's linked providers (requires auth)
  DELETE /api/v1/auth/social/accounts/{provider}     -- unlink a provider (requires auth)

Callback outcome:
  With a callback_url in the state (browser flow) the response is a 303 to
  that URL -- with the session cookie on success, or with ?error=<code> on
  failure. Without one, the response is the usual JSON sign-in body or error.

Security:
  [H1] state is a signed, expiring JWT bound to the provider (auth/tokens.py);
       a missing, forged, expired, or cross-provider state is a 401.
  callback_url is same-origin only (auth/social.py), so this route cannot be
  used as an open redirect.
"""

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from api.limiter import limiter, login_limit
from api.models import AuthorizationUrlResponse, MessageResponse, OAuthProviderInfo, SocialAccountResponse
from api.responses import auth_response, client_info, raise_for_result
from auth.dependencies import get_current_user, get_services
from auth.models import User
from auth.tokens import set_session_cookie

router = APIRouter()


def _with_params(url: str, **params) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


def _finish_callback(
    request: Request,
    provider: str,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
):
    services = get_services(request)
    claims = services.social.read_state(state) if state else None
    callback_url = claims.get("callback_url") if claims else None

    if error:
        # The user declined at the provider, or the provider refused the client.
        if callback_url:
            return RedirectResponse(_with_params(callback_url, error="access_denied"), status_code=303)
        raise HTTPException(
            status_code=400,
            detail={"code": "access_denied", "message": f"Sign-in with {provider} was cancelled."},
        )

    result = services.social.handle_callback(provider, code or "", state or "", **client_info(request))
    secure = services.settings.secure_cookies

    if not callback_url:
        return auth_response(result, secure)

    if not result.success:
        return RedirectResponse(_with_params(callback_url, error=result.error.value), status_code=303)
    if result.challenge_required:
        target = _with_params(
            callback_url, challenge_required="1", user_id=result.user.id, challenge_token=result.challenge_token
        )
        resp = RedirectResponse(target, status_code=303)
    else:
        resp = RedirectResponse(callback_url, status_code=303)
        set_session_cookie(resp, result.session.token, result.session.expires_at, secure=secure)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/social/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured providers; empty when social login is off."""
    return [OAuthProviderInfo(**p) for p in get_services(request).social.list_providers()]


@router.get("/auth/social/{provider}/authorize")
def authorize(
    request: Request,
    provider: str,
    callback_url: Optional[str] = Query(default=None, max_length=2048),
    redirect: bool = Query(default=True),
):
    result = get_services(request).social.get_authorization_url(provider, callback_url)
    raise_for_result(result)
    if redirect:
        return RedirectResponse(result.url, status_code=302)
    return AuthorizationUrlResponse(url=result.url, state=result.state)


@router.get("/auth/social/{provider}/callback")
@limiter.limit(login_limit)
def callback(
    request: Request,
    provider: str,
    code: Optional[str] = Query(default=None, max_length=2048),
    state: Optional[str] = Query(default=None, max_length=4096),
    error: Optional[str] = Query(default=None, max_length=200),
):
    return _finish_callback(request, provider, code, state, error)


@router.post("/auth/social/{provider}/callback")
@limiter.limit(login_limit)
def callback_form_post(
    request: Request,
    provider: str,
    code: Optional[str] = Form(default=None),
    state: Optional[str] = Form(default=None),
    error: Optional[str] = Form(default=None),
):
    return _finish_callback(request, provider, code, state, error)


# ---------------------------------------------------------------------------
# Linked accounts (authenticated)
# ---------------------------------------------------------------------------


@router.get("/auth/social/accounts", response_model=list[SocialAccountResponse])
def list_accounts(request: Request, user: User = Depends(get_current_user)) -> list[SocialAccountResponse]:
    return [SocialAccountResponse.from_account(a) for a in get_services(request).social.list_accounts(user.id)]


@router.delete("/auth/social/accounts/{provider}", response_model=MessageResponse)
def unlink_account(request: Request, provider: str, user: User = Depends(get_current_user)) -> MessageResponse:
    """Refused when the provider is the account's only way to sign in."""
    result = get_services(request).social.unlink(user.id, provider)
    raise_for_result(result)
    return MessageResponse(message=result.message)
