# audit.py — Append-only audit recorder
# Rows are written after the mutation they describe has been committed.
# A failed audit write is logged and never rolls back that mutation.
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthContext
from models import AuditLog

logger = logging.getLogger("taskflow.audit")


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return None


async def audit_log(
    db: AsyncSession,
    ctx: Optional[AuthContext],
    action: str,
    resource: str,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Optional[AuditLog]:
    """Record who did what to which resource.

    Returns the stored row, or None when there is no caller context or the
    write failed.
    """
    if ctx is None:
        return None

    entry = AuditLog(
        org_id=ctx.org_id,
        user_id=ctx.user_id,
        action=str(getattr(action, "value", action)),
        resource=str(getattr(resource, "value", resource)),
        resource_id=resource_id,
        extra_data=jsonable_encoder(metadata or {}),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") if request is not None else None,
        request_id=getattr(request.state, "request_id", None) if request is not None else None,
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error(
            f"Audit write failed: {entry.action} {entry.resource} {resource_id} "
            f"org={ctx.org_id} user={ctx.user_id}",
            exc_info=True,
        )
        return None
    return entry
