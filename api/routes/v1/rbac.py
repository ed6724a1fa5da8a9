"""
api/routes/v1/rbac.py -- Role and permission administration endpoints.

Routes:
  GET    /api/v1/auth/permissions              -- the caller's effective permissions (requires auth)
  GET    /api/v1/roles                         -- list roles            (roles:read)
  POST   /api/v1/roles                         -- create a role         (roles:write)
  GET    /api/v1/roles/{id}                    -- one role              (roles:read)
  PATCH  /api/v1/roles/{id}                    -- update a role         (roles:write)
  DELETE /api/v1/roles/{id}                    -- delete a role         (roles:write)
  GET    /api/v1/users/{id}/roles              -- a user's roles        (roles:read)
  POST   /api/v1/users/{id}/roles              -- assign a role         (users:roles)
  DELETE /api/v1/users/{id}/roles/{role_name}  -- remove a role         (users:roles)
  GET    /api/v1/users/{id}/permissions        -- a user's permissions  (roles:read)
  POST   /api/v1/users/{id}/verify             -- mark email verified   (users:verify)

The super-admin role holds "*" and passes every check. Every admin route
returns 404 feature_disabled when RBAC is off.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import MessageResponse, PermissionsResponse, RoleAssign, RoleCreate, RolePatch, RoleResponse
from api.responses import raise_for_result
from auth.dependencies import get_current_user, get_services, require_permission
from auth.models import User

router = APIRouter()


def _role_or_404(request: Request, role_id: int):
    role = get_services(request).rbac.get_role(role_id=role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Role not found."})
    return role


@router.get("/auth/permissions", response_model=PermissionsResponse)
def my_permissions(request: Request, user: User = Depends(get_current_user)) -> PermissionsResponse:
    """Empty when RBAC is disabled."""
    permissions = get_services(request).rbac.get_permissions(user.id)
    return PermissionsResponse(user_id=user.id, permissions=sorted(permissions))


# ---------------------------------------------------------------------------
# Role definitions
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, user: User = Depends(require_permission("roles:read"))) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in get_services(request).rbac.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request, body: RoleCreate, user: User = Depends(require_permission("roles:write"))
) -> RoleResponse:
    result = get_services(request).rbac.create_role(body.name, body.permissions, body.description, actor_id=user.id)
    raise_for_result(result)
    return RoleResponse.from_role(result.role)


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int, user: User = Depends(require_permission("roles:read"))) -> RoleResponse:
    return RoleResponse.from_role(_role_or_404(request, role_id))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request, role_id: int, body: RolePatch, user: User = Depends(require_permission("roles:write"))
) -> RoleResponse:
    result = get_services(request).rbac.update_role(
        role_id,
        name=body.name,
        permissions=body.permissions,
        description=body.description,
        actor_id=user.id,
    )
    raise_for_result(result)
    return RoleResponse.from_role(result.role)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int, user: User = Depends(require_permission("roles:write"))) -> None:
    """The super-admin and default roles cannot be deleted."""
    raise_for_result(get_services(request).rbac.delete_role(role_id, actor_id=user.id))


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/roles", response_model=list[RoleResponse])
def get_user_roles(
    request: Request, user_id: int, user: User = Depends(require_permission("roles:read"))
) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in get_services(request).rbac.get_user_roles(user_id)]


@router.post("/users/{user_id}/roles", response_model=MessageResponse)
def assign_role(
    request: Request, user_id: int, body: RoleAssign, user: User = Depends(require_permission("users:roles"))
) -> MessageResponse:
    """Idempotent: assigning a role the user already holds is a 200."""
    result = get_services(request).rbac.assign_role(user_id, body.role, actor_id=user.id)
    raise_for_result(result)
    return MessageResponse(message=result.message or "Role assigned.")


@router.delete("/users/{user_id}/roles/{role_name}", status_code=204)
def remove_role(
    request: Request, user_id: int, role_name: str, user: User = Depends(require_permission("users:roles"))
) -> None:
    raise_for_result(get_services(request).rbac.remove_role(user_id, role_name, actor_id=user.id))


@router.get("/users/{user_id}/permissions", response_model=PermissionsResponse)
def get_user_permissions(
    request: Request, user_id: int, user: User = Depends(require_permission("roles:read"))
) -> PermissionsResponse:
    permissions = get_services(request).rbac.get_permissions(user_id)
    return PermissionsResponse(user_id=user_id, permissions=sorted(permissions))


@router.post("/users/{user_id}/verify", response_model=MessageResponse)
def mark_user_verified(
    request: Request, user_id: int, user: User = Depends(require_permission("users:verify"))
) -> MessageResponse:
    """Administrative override: mark a user's email verified without a token."""
    result = get_services(request).verification.mark_user_verified(user_id, "manual", actor_id=user.id)
    raise_for_result(result)
    return MessageResponse(message=result.message)
