"""
api/routes/v1/passkeys.py -- WebAuthn passkey endpoints.

Routes:
  POST   /api/v1/auth/passkeys/register/options   -- creation options for navigator.credentials.create() (requires auth)
  POST   /api/v1/auth/passkeys/register/verify    -- store the attested credential (requires auth)
  POST   /api/v1/auth/passkeys/login/options      -- request options for navigator.credentials.get()
  POST   /api/v1/auth/passkeys/login/verify       -- verify the assertion; sets session cookie
  GET    /api/v1/auth/passkeys                    -- the caller's passkeys (requires auth)
  DELETE /api/v1/auth/passkeys/{credential_id}    -- delete one (requires auth, ownership checked)

Login accepts an optional email. A known email scopes the challenge and
allowCredentials to that user; an unknown or omitted email gets the same
anonymous (discoverable credential) options, so the response does not reveal
whether the account exists. login/verify must repeat the email sent to
login/options -- the challenge is bound to the same subject.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    MessageResponse,
    PasskeyLoginOptionsRequest,
    PasskeyLoginVerify,
    PasskeyRegisterVerify,
    PasskeyResponse,
)
from api.responses import auth_response, client_info, raise_for_result
from auth.container import AuthServices
from auth.dependencies import get_current_user, get_services
from auth.models import PasskeyOptionsResult, User
from auth.store import normalize_email

router = APIRouter()


def _login_subject(services: AuthServices, email: Optional[str]) -> Optional[int]:
    if not email:
        return None
    user = services.store.get_user_by_email(normalize_email(email))
    return user.id if user is not None else None


def _options(result: PasskeyOptionsResult) -> JSONResponse:
    raise_for_result(result)
    resp = JSONResponse(content=result.options)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/passkeys/register/options")
def registration_options(request: Request, user: User = Depends(get_current_user)) -> JSONResponse:
    return _options(get_services(request).passkeys.registration_options(user.id))


@router.post("/auth/passkeys/register/verify", response_model=PasskeyResponse, status_code=201)
def verify_registration(
    request: Request, body: PasskeyRegisterVerify, user: User = Depends(get_current_user)
) -> PasskeyResponse:
    result = get_services(request).passkeys.verify_registration(user.id, body.credential, body.name)
    raise_for_result(result)
    return PasskeyResponse.from_credential(result.credential)


@router.post("/auth/passkeys/login/options")
@limiter.limit(login_limit)
def authentication_options(request: Request, body: PasskeyLoginOptionsRequest) -> JSONResponse:
    services = get_services(request)
    return _options(services.passkeys.authentication_options(_login_subject(services, body.email)))


@router.post("/auth/passkeys/login/verify")
@limiter.limit(login_limit)
def verify_authentication(request: Request, body: PasskeyLoginVerify) -> JSONResponse:
    services = get_services(request)
    result = services.passkeys.verify_authentication(
        body.credential, _login_subject(services, body.email), **client_info(request)
    )
    return auth_response(result, services.settings.secure_cookies)


@router.get("/auth/passkeys", response_model=list[PasskeyResponse])
def list_passkeys(request: Request, user: User = Depends(get_current_user)) -> list[PasskeyResponse]:
    return [PasskeyResponse.from_credential(c) for c in get_services(request).passkeys.list_credentials(user.id)]


@router.delete("/auth/passkeys/{credential_id}", response_model=MessageResponse)
def delete_passkey(request: Request, credential_id: str, user: User = Depends(get_current_user)) -> MessageResponse:
    result = get_services(request).passkeys.delete_credential(user.id, credential_id)
    raise_for_result(result)
    return MessageResponse(message=result.message)
