"""
api/routes/v1/audit.py -- Audit log query endpoints.

Routes:
  GET  /api/v1/audit              -- filtered, paginated entries, newest first  (audit:read)
  GET  /api/v1/audit/{id}         -- one entry                                   (audit:read)
  POST /api/v1/audit/prune        -- delete entries past retention               (audit:write)

Naive datetimes in the start/end filters are taken as UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditEntryResponse, AuditPageResponse, PruneResponse
from auth.dependencies import get_services, require_permission
from auth.models import AuditQuery, User

router = APIRouter()


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def _require_audit(request: Request) -> None:
    if not get_services(request).audit.enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "feature_disabled", "message": "Audit logging is not enabled."},
        )


@router.get("/audit", response_model=AuditPageResponse)
def query_audit(
    request: Request,
    user_id: Optional[int] = Query(default=None),
    action: Optional[str] = Query(default=None, max_length=100),
    resource: Optional[str] = Query(default=None, max_length=100),
    resource_id: Optional[str] = Query(default=None, max_length=100),
    status: Optional[str] = Query(default=None, pattern="^(success|failure)$"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(require_permission("audit:read")),
) -> AuditPageResponse:
    _require_audit(request)
    page = get_services(request).audit.query(
        AuditQuery(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            status=status,
            start=_utc(start),
            end=_utc(end),
            limit=limit,
            offset=offset,
        )
    )
    return AuditPageResponse(
        entries=[AuditEntryResponse.from_entry(e) for e in page.entries],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.get("/audit/{entry_id}", response_model=AuditEntryResponse)
def get_audit_entry(
    request: Request, entry_id: int, user: User = Depends(require_permission("audit:read"))
) -> AuditEntryResponse:
    _require_audit(request)
    entry = get_services(request).audit.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Audit entry not found."})
    return AuditEntryResponse.from_entry(entry)


@router.post("/audit/prune", response_model=PruneResponse)
def prune_audit(
    request: Request,
    days: Optional[int] = Query(default=None, ge=1),
    user: User = Depends(require_permission("audit:write")),
) -> PruneResponse:
    """Delete entries older than `days` (default: AUDIT__RETENTION_DAYS)."""
    _require_audit(request)
    return PruneResponse(deleted=get_services(request).audit.prune(days))
