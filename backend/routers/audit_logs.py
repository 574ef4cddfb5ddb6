# routers/audit_logs.py — Read-only audit trail (Admin)
# Audit rows are append-only: no update or delete routes.
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthContext, require_min_role
from database import get_db_session
from models import AuditLog, MembershipRole
from rbac import Resource

router = APIRouter(prefix="/api/v1/audit-logs", tags=["Audit"])


class AuditLogOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    created_at: Optional[datetime] = None


class AuditLogPage(BaseModel):
    logs: List[AuditLogOut]
    total: int
    limit: int
    offset: int


@router.get("", response_model=AuditLogPage)
async def list_audit_logs(
    ctx: AuthContext = Depends(require_min_role(MembershipRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    resource: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """Newest first, scoped to the caller's organization"""
    clauses = [AuditLog.org_id == ctx.org_id]
    if resource:
        try:
            resource_kind = Resource(resource.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown audit resource: {resource}")
        clauses.append(AuditLog.resource == resource_kind.value)

    stmt = (
        select(AuditLog)
        .where(*clauses)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = (await db.execute(stmt)).scalars().all()
    total = (await db.execute(select(func.count(AuditLog.id)).where(*clauses))).scalar() or 0

    return AuditLogPage(
        logs=[
            AuditLogOut(
                id=r.id,
                user_id=r.user_id,
                action=r.action,
                resource=r.resource,
                resource_id=r.resource_id,
                metadata=r.extra_data or {},
                ip_address=r.ip_address,
                user_agent=r.user_agent,
                request_id=r.request_id,
                created_at=r.created_at,
            )
            for r in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
