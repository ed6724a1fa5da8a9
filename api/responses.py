"""
api/responses.py -- Mapping from auth results to HTTP responses.

Service operations return result dataclasses and never raise for expected
failures. Route handlers call raise_for_result() to turn a failed result into
an HTTPException carrying the shared error envelope, and auth_response() to
turn a successful sign-in into a JSON body plus the session cookie.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import AuthResponse, ErrorDetail, UserResponse
from auth.errors import ErrorCode
from auth.models import AuthResult, Result
from auth.tokens import set_session_cookie

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.UNVERIFIED: 403,
    ErrorCode.NOT_FOUND: 404,
    # A disabled feature is indistinguishable from a route that does not exist.
    ErrorCode.FEATURE_DISABLED: 404,
    ErrorCode.DUPLICATE_USER: 409,
    ErrorCode.DUPLICATE_ACCOUNT: 409,
    ErrorCode.ALREADY_USED: 409,
    ErrorCode.EXPIRED: 410,
    ErrorCode.INTERNAL: 500,
}


def error_status(code: ErrorCode | None) -> int:
    return STATUS_BY_CODE.get(code, 400) if code is not None else 400


def raise_for_result(result: Result) -> None:
    """Raise HTTPException with the error envelope if result failed; no-op otherwise."""
    if result.success:
        return
    code = result.error or ErrorCode.INTERNAL
    raise HTTPException(
        status_code=error_status(code),
        detail=ErrorDetail(code=code.value, message=result.message).model_dump(),
    )


def client_info(request: Request) -> dict:
    """ip_address / user_agent kwargs for session and audit records."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def auth_response(result: AuthResult, secure: bool, status_code: int = 200) -> JSONResponse:
    """Build the sign-in response for a successful AuthResult.

    With a session: body carries the token, and the cookie is set.
    With a 2FA challenge: body carries the challenge; no cookie.
    Without either (registration pending verification): user + message only.
    """
    raise_for_result(result)
    user = result.user
    body = AuthResponse(
        user=UserResponse.from_user(user) if user is not None else None,
        challenge_required=result.challenge_required,
        challenge_token=result.challenge_token,
        user_id=user.id if (user is not None and result.challenge_required) else None,
        is_new_user=result.is_new_user,
        message=result.message,
        session_token=result.session.token if result.session else None,
        token_type="bearer" if result.session else None,  # noqa: S106 # nosec B106 -- token type, not a password
        expires_at=result.session.expires_at if result.session else None,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    if result.session is not None:
        set_session_cookie(resp, result.session.token, result.session.expires_at, secure=secure)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
