"""
auth/audit.py -- Best-effort, append-only audit log.

record() never raises. An audit write failing must not turn a successful
login into an error, so storage errors are logged and dropped. Callers
record after their own transaction commits; record() always uses a fresh
connection of its own.

Categories are gated by action prefix against the AuditSettings flags. A
disabled category is silently skipped, not queued:

    login*         log_login
    register*      log_registration
    password*      log_password_reset
    verification*  log_account_verification
    role*          log_role_changes
    credential*    log_credential_changes
    session*       log_session_operations

Entries are never updated. prune() deletes in bulk by age; it is driven by
`python main.py prune-audit`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEntry, AuditPage, AuditQuery
from auth.schema import audit_logs
from auth.store import AuthStore, from_iso, to_iso, utcnow
from core.config import AuditSettings

logger = logging.getLogger("simpleauth.audit")

SUCCESS = "success"
FAILURE = "failure"

_MAX_PAGE = 500

_CATEGORY_FLAGS = (
    ("login", "log_login"),
    ("register", "log_registration"),
    ("password", "log_password_reset"),
    ("verification", "log_account_verification"),
    ("role", "log_role_changes"),
    ("credential", "log_credential_changes"),
    ("session", "log_session_operations"),
)


class AuditSink:
    def __init__(
        self,
        store: AuthStore,
        settings: AuditSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def should_log(self, action: str) -> bool:
        if not self._settings.enabled:
            return False
        for prefix, flag in _CATEGORY_FLAGS:
            if action.startswith(prefix):
                return bool(getattr(self._settings, flag))
        return True

    def record(
        self,
        action: str,
        status: str = SUCCESS,
        *,
        user_id: int | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEntry | None:
        """Append an entry. Returns it, or None when skipped or the write failed."""
        if not self.should_log(action):
            return None
        entry = AuditEntry(
            action=action,
            status=status,
            user_id=user_id,
            resource=resource,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        try:
            with self._store.transaction() as conn:
                result = conn.execute(
                    audit_logs.insert().values(
                        user_id=user_id,
                        action=action,
                        resource=resource,
                        resource_id=resource_id,
                        status=status,
                        details=details,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        created_at=to_iso(entry.created_at),
                    )
                )
                entry.id = result.inserted_primary_key[0]
        except SQLAlchemyError:
            logger.exception("Failed to write audit entry %s", action)
            return None
        return entry

    def query(self, q: AuditQuery) -> AuditPage:
        """Return one page of matching entries (newest first) and the total match count."""
        conditions = []
        if q.user_id is not None:
            conditions.append(audit_logs.c.user_id == q.user_id)
        if q.action:
            conditions.append(audit_logs.c.action == q.action)
        if q.resource:
            conditions.append(audit_logs.c.resource == q.resource)
        if q.resource_id:
            conditions.append(audit_logs.c.resource_id == q.resource_id)
        if q.status:
            conditions.append(audit_logs.c.status == q.status)
        if q.start is not None:
            conditions.append(audit_logs.c.created_at >= to_iso(q.start))
        if q.end is not None:
            conditions.append(audit_logs.c.created_at <= to_iso(q.end))
        where = and_(*conditions) if conditions else None

        limit = max(1, min(q.limit, _MAX_PAGE))
        offset = max(0, q.offset)
        count_stmt = select(func.count()).select_from(audit_logs)
        page_stmt = audit_logs.select().order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc())
        if where is not None:
            count_stmt = count_stmt.where(where)
            page_stmt = page_stmt.where(where)

        with self._store.engine.connect() as conn:
            total = conn.execute(count_stmt).scalar() or 0
            rows = conn.execute(page_stmt.limit(limit).offset(offset)).fetchall()
        return AuditPage(entries=[_row_to_entry(r) for r in rows], total=total)

    def get(self, entry_id: int) -> AuditEntry | None:
        with self._store.engine.connect() as conn:
            row = conn.execute(audit_logs.select().where(audit_logs.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def prune(self, retention_days: int | None = None) -> int:
        """Delete entries older than the retention window. Returns the count deleted."""
        days = retention_days if retention_days is not None else self._settings.retention_days
        if days <= 0:
            raise ValueError("retention_days must be positive")
        cutoff = self._clock() - timedelta(days=days)
        with self._store.transaction() as conn:
            result = conn.execute(audit_logs.delete().where(audit_logs.c.created_at < to_iso(cutoff)))
        logger.info("Pruned %d audit entr%s older than %d days", result.rowcount, "y" if result.rowcount == 1 else "ies", days)
        return result.rowcount


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        status=row.status,
        details=row.details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
    )
