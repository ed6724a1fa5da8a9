"""
auth/rbac.py -- Roles, assignments, and cached permission resolution.

A user's permissions are the union of the permission lists of every role
assigned to them. "*" in that union, or holding the configured super-admin
role, grants every permission.

Cache:
  PermissionCache is owned by the RbacService instance (not module state),
  so tests and multiple apps in one process never share entries. Entries
  expire after cache_ttl_seconds and the map is bounded by cache_max_entries
  with least-recently-used eviction.

  Invalidation:
    assign_role / remove_role      -> that user's entry only
    update_role / delete_role      -> everything (no reverse index from role
                                      to users is kept in memory)

Guardrails: the configured default role and super-admin role cannot be
deleted; renaming either is refused for the same reason.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.audit import AuditSink
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.models import AssignmentResult, Result, Role, RoleResult, UserRole
from auth.schema import roles, user_roles
from auth.store import AuthStore, from_iso, to_iso, utcnow
from core.config import RbacSettings

logger = logging.getLogger("simpleauth.rbac")

WILDCARD = "*"

DEFAULT_ROLE_PERMISSIONS = {
    "admin": [WILDCARD],
    "user": ["profile:read", "profile:update"],
}


class PermissionCache:
    """Thread-safe TTL + LRU map of user_id -> frozenset of permissions.

    Every invalidation bumps a generation counter. A reader takes
    generation() before querying and hands it to set(); a set() whose
    generation is stale is dropped, so a concurrent invalidation always wins.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        max_entries: int = 10_000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max = max_entries
        self._clock = clock
        self._entries: OrderedDict[int, tuple[frozenset[str], datetime]] = OrderedDict()
        self._generation = 0
        self._lock = threading.Lock()

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, user_id: int) -> frozenset[str] | None:
        with self._lock:
            item = self._entries.get(user_id)
            if item is None:
                return None
            permissions, expires_at = item
            if self._clock() >= expires_at:
                del self._entries[user_id]
                return None
            self._entries.move_to_end(user_id)
            return permissions

    def set(self, user_id: int, permissions: frozenset[str], generation: int | None = None) -> None:
        with self._lock:
            if generation is not None and generation != self._generation:
                return
            self._entries[user_id] = (permissions, self._clock() + self._ttl)
            self._entries.move_to_end(user_id)
            while len(self._entries) > self._max:
                self._entries.popitem(last=False)

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._generation += 1
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RbacService:
    def __init__(
        self,
        store: AuthStore,
        settings: RbacSettings,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._audit = audit_sink
        self._clock = clock
        self.cache: PermissionCache | None = (
            PermissionCache(settings.cache_ttl_seconds, settings.cache_max_entries, clock)
            if settings.cache_permissions
            else None
        )

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def _require_enabled(self) -> None:
        if not self._settings.enabled:
            raise feature_disabled("Role-based access control")

    def _protected(self) -> set[str]:
        return {self._settings.default_role, self._settings.super_admin_role}

    # ------------------------------------------------------------------
    # Role definitions
    # ------------------------------------------------------------------

    @returns_result(RoleResult)
    def create_role(
        self,
        name: str,
        permissions: list[str],
        description: str | None = None,
        *,
        actor_id: int | None = None,
    ) -> RoleResult:
        self._require_enabled()
        name = (name or "").strip()
        if not name:
            raise AuthError(ErrorCode.INVALID_INPUT, "Role name is required.")
        now = to_iso(self._clock())
        try:
            with self._store.transaction() as conn:
                result = conn.execute(
                    roles.insert().values(
                        name=name,
                        description=description,
                        permissions=_clean(permissions),
                        created_at=now,
                        updated_at=now,
                    )
                )
                role = self._get_role(conn, role_id=result.inserted_primary_key[0])
        except IntegrityError as exc:
            raise AuthError(ErrorCode.INVALID_INPUT, f"Role '{name}' already exists.") from exc
        self._audit.record("role.create", user_id=actor_id, resource="role", resource_id=str(role.id), details={"name": name})
        logger.info("Role %s created", name)
        return RoleResult(role=role)

    @returns_result(RoleResult)
    def update_role(
        self,
        role_id: int,
        *,
        name: str | None = None,
        permissions: list[str] | None = None,
        description: str | None = None,
        actor_id: int | None = None,
    ) -> RoleResult:
        self._require_enabled()
        values: dict = {}
        if name is not None:
            values["name"] = name.strip()
            if not values["name"]:
                raise AuthError(ErrorCode.INVALID_INPUT, "Role name is required.")
        if permissions is not None:
            values["permissions"] = _clean(permissions)
        if description is not None:
            values["description"] = description
        if not values:
            raise AuthError(ErrorCode.INVALID_INPUT, "No fields to update.")
        values["updated_at"] = to_iso(self._clock())
        try:
            with self._store.transaction() as conn:
                current = self._get_role(conn, role_id=role_id)
                if current is None:
                    raise AuthError(ErrorCode.NOT_FOUND, "Role not found.")
                if "name" in values and values["name"] != current.name and current.name in self._protected():
                    raise AuthError(ErrorCode.INVALID_INPUT, f"Role '{current.name}' cannot be renamed.")
                conn.execute(roles.update().where(roles.c.id == role_id).values(**values))
                role = self._get_role(conn, role_id=role_id)
        except IntegrityError as exc:
            raise AuthError(ErrorCode.INVALID_INPUT, f"Role '{values.get('name')}' already exists.") from exc
        self._clear_cache()
        self._audit.record("role.update", user_id=actor_id, resource="role", resource_id=str(role_id), details={"name": role.name})
        return RoleResult(role=role)

    @returns_result(Result)
    def delete_role(self, role_id: int, *, actor_id: int | None = None) -> Result:
        self._require_enabled()
        with self._store.transaction() as conn:
            role = self._get_role(conn, role_id=role_id)
            if role is None:
                raise AuthError(ErrorCode.NOT_FOUND, "Role not found.")
            if role.name in self._protected():
                raise AuthError(ErrorCode.INVALID_INPUT, f"Role '{role.name}' cannot be deleted.")
            conn.execute(user_roles.delete().where(user_roles.c.role_id == role_id))
            conn.execute(roles.delete().where(roles.c.id == role_id))
        self._clear_cache()
        self._audit.record("role.delete", user_id=actor_id, resource="role", resource_id=str(role_id), details={"name": role.name})
        logger.info("Role %s deleted", role.name)
        return Result(message="Role deleted.")

    def get_role(self, role_id: int | None = None, name: str | None = None) -> Role | None:
        with self._store.connection() as conn:
            return self._get_role(conn, role_id=role_id, name=name)

    def list_roles(self) -> list[Role]:
        with self._store.connection() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    @returns_result(AssignmentResult)
    def assign_role(
        self,
        user_id: int,
        role_name: str,
        *,
        actor_id: int | None = None,
        conn: Connection | None = None,
    ) -> AssignmentResult:
        """Assign a role by name. Assigning an already-held role succeeds and returns the existing pair."""
        self._require_enabled()
        with self._store.connection(conn) as c:
            if self._store.get_user_by_id(user_id, conn=c) is None:
                raise AuthError(ErrorCode.NOT_FOUND, "User not found.")
            role = self._get_role(c, name=role_name)
            if role is None:
                raise AuthError(ErrorCode.NOT_FOUND, f"Role '{role_name}' not found.")
            existing = self._get_assignment(c, user_id, role.id)
            if existing is not None:
                return AssignmentResult(assignment=existing, message="Role already assigned.")
            c.execute(user_roles.insert().values(user_id=user_id, role_id=role.id, created_at=to_iso(self._clock())))
            assignment = self._get_assignment(c, user_id, role.id)
        self._invalidate(user_id)
        if conn is None:
            self._audit.record(
                "role.assign", user_id=actor_id, resource="user", resource_id=str(user_id), details={"role": role_name}
            )
        logger.info("Role %s assigned to user %s", role_name, user_id)
        return AssignmentResult(assignment=assignment)

    @returns_result(Result)
    def remove_role(self, user_id: int, role_name: str, *, actor_id: int | None = None) -> Result:
        self._require_enabled()
        with self._store.transaction() as conn:
            role = self._get_role(conn, name=role_name)
            if role is None:
                raise AuthError(ErrorCode.NOT_FOUND, f"Role '{role_name}' not found.")
            result = conn.execute(
                user_roles.delete().where(and_(user_roles.c.user_id == user_id, user_roles.c.role_id == role.id))
            )
        if result.rowcount == 0:
            raise AuthError(ErrorCode.NOT_FOUND, "Role is not assigned to this user.")
        self._invalidate(user_id)
        self._audit.record(
            "role.remove", user_id=actor_id, resource="user", resource_id=str(user_id), details={"role": role_name}
        )
        return Result(message="Role removed.")

    def get_user_roles(self, user_id: int) -> list[Role]:
        with self._store.connection() as conn:
            rows = conn.execute(
                select(roles)
                .join(user_roles, user_roles.c.role_id == roles.c.id)
                .where(user_roles.c.user_id == user_id)
                .order_by(roles.c.name)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    # ------------------------------------------------------------------
    # Permission resolution
    # ------------------------------------------------------------------

    def get_permissions(self, user_id: int) -> set[str]:
        if not self._settings.enabled:
            return set()
        if self.cache is not None:
            cached = self.cache.get(user_id)
            if cached is not None:
                return set(cached)
            generation = self.cache.generation()
        permissions: set[str] = set()
        for role in self.get_user_roles(user_id):
            permissions.update(role.permissions)
            if role.name == self._settings.super_admin_role:
                permissions.add(WILDCARD)
        if self.cache is not None:
            self.cache.set(user_id, frozenset(permissions), generation)
        return permissions

    def check_permission(self, user_id: int, permission: str) -> bool:
        permissions = self.get_permissions(user_id)
        return WILDCARD in permissions or permission in permissions

    # ------------------------------------------------------------------
    # Defaults
    # ------------------------------------------------------------------

    def initialize_default_roles(self) -> list[Role]:
        """Create the super-admin and default roles if missing. Idempotent."""
        defaults = {
            self._settings.super_admin_role: DEFAULT_ROLE_PERMISSIONS["admin"],
            self._settings.default_role: DEFAULT_ROLE_PERMISSIONS["user"],
        }
        created = []
        now = to_iso(self._clock())
        with self._store.transaction() as conn:
            for name, permissions in defaults.items():
                if self._get_role(conn, name=name) is not None:
                    continue
                conn.execute(
                    roles.insert().values(
                        name=name,
                        description="Built-in role",
                        permissions=list(permissions),
                        created_at=now,
                        updated_at=now,
                    )
                )
                created.append(self._get_role(conn, name=name))
        for role in created:
            logger.info("Default role %s created", role.name)
        return created

    def assign_default_role(self, user_id: int, conn: Connection | None = None) -> bool:
        """Give a new user the configured default role. Best effort: False on any failure."""
        if not (self._settings.enabled and self._settings.assign_default_on_register):
            return False
        result = self.assign_role(user_id, self._settings.default_role, conn=conn)
        if not result.success:
            logger.warning("Could not assign default role to user %s: %s", user_id, result.message)
        return result.success

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _invalidate(self, user_id: int) -> None:
        if self.cache is not None:
            self.cache.invalidate(user_id)

    def _clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    @staticmethod
    def _get_role(conn: Connection, role_id: int | None = None, name: str | None = None) -> Role | None:
        stmt = roles.select()
        if role_id is not None:
            stmt = stmt.where(roles.c.id == role_id)
        elif name is not None:
            stmt = stmt.where(roles.c.name == name)
        else:
            return None
        row = conn.execute(stmt).fetchone()
        return _row_to_role(row) if row is not None else None

    @staticmethod
    def _get_assignment(conn: Connection, user_id: int, role_id: int) -> UserRole | None:
        row = conn.execute(
            user_roles.select().where(and_(user_roles.c.user_id == user_id, user_roles.c.role_id == role_id))
        ).fetchone()
        if row is None:
            return None
        return UserRole(id=row.id, user_id=row.user_id, role_id=row.role_id, created_at=from_iso(row.created_at))


def _clean(permissions: list[str]) -> list[str]:
    """Strip, drop empties, de-duplicate while keeping order."""
    seen: dict[str, None] = {}
    for p in permissions or []:
        p = p.strip()
        if p:
            seen.setdefault(p, None)
    return list(seen)


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        permissions=list(row.permissions or []),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
