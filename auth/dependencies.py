"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Session cookie ("simpleauth_session") -- set by the login routes.
  2. Authorization: Bearer <token> header -- API clients holding the same
     opaque session token.

Both resolve through AuthService.resolve_session(), which also performs the
lazy deletion of expired sessions.

try_get_current_session() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_permission(p) builds a dependency that raises HTTP 403 unless the
user holds permission p through RBAC.

Layer rule: auth/dependencies.py may import from fastapi (for
Request/HTTPException) because it is part of the FastAPI dependency
injection system. It does not import from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.container import AuthServices
from auth.models import SessionInfo, User
from auth.tokens import SESSION_COOKIE


def get_services(request: Request) -> AuthServices:
    return request.app.state.services


def session_token_from_request(request: Request) -> str | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_current_session(request: Request) -> SessionInfo | None:
    """Return the caller's session and user, or None. Never raises."""
    token = session_token_from_request(request)
    if not token:
        return None
    return get_services(request).auth.resolve_session(token)


def get_current_session(request: Request) -> SessionInfo:
    info = try_get_current_session(request)
    if info is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return info


def get_current_user(info: SessionInfo = Depends(get_current_session)) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    return info.user


def require_permission(permission: str):
    """Build a dependency requiring `permission`. 401 if unauthenticated, 403 if not permitted.

    Use as a FastAPI dependency:
        @router.post("/roles")
        def route(user: User = Depends(require_permission("roles:write"))): ...
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        rbac = get_services(request).rbac
        if not rbac.enabled:
            raise HTTPException(
                status_code=404,
                detail={"code": "feature_disabled", "message": "Role-based access control is not enabled."},
            )
        if not rbac.check_permission(user.id, permission):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission '{permission}' required."},
            )
        return user

    return dependency
