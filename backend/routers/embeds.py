# routers/embeds.py — Embed widget management (Manager+ list/create, Admin delete)
import secrets
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import store
from audit import audit_log
from auth import AuthContext, require_min_role
from database import get_db_session
from models import (
    EmbedWidget, EmbedLog, EmbedType, EmbedTargetType, EmbedViewMode,
    EmbedPermission, MembershipRole,
)
from rbac import Resource, require_role

router = APIRouter(prefix="/api/v1/embeds", tags=["Embeds"])


# ============================================================
# SCHEMAS
# ============================================================

class EmbedCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    type: EmbedType = EmbedType.IFRAME
    target_type: EmbedTargetType = Field(..., alias="targetType")
    target_id: Optional[str] = Field(default=None, alias="targetId")
    view_mode: EmbedViewMode = Field(..., alias="viewMode")
    permissions: EmbedPermission = EmbedPermission.VIEW_ONLY
    allowed_domains: List[str] = Field(..., min_length=1, alias="allowedDomains")
    token_expires_at: Optional[datetime] = Field(default=None, alias="tokenExpiresAt")

    @field_validator("allowed_domains")
    @classmethod
    def clean_domains(cls, v: List[str]) -> List[str]:
        cleaned = [d.strip() for d in v if d and d.strip()]
        if not cleaned:
            raise ValueError("At least one allowed domain is required")
        for d in cleaned:
            if any(ch.isspace() for ch in d) or ";" in d or "," in d:
                raise ValueError(f"Invalid domain: {d}")
        return cleaned


class EmbedOut(BaseModel):
    id: str
    name: str
    type: str
    target_type: str
    target_id: Optional[str] = None
    view_mode: str
    permissions: str
    allowed_domains: List[str]
    token: str
    token_expires_at: Optional[datetime] = None
    is_active: bool
    embed_url: str
    view_count: int = 0
    created_at: Optional[datetime] = None


def embed_out(widget: EmbedWidget, view_count: int = 0) -> EmbedOut:
    return EmbedOut(
        id=widget.id,
        name=widget.name,
        type=EmbedType(widget.type).value,
        target_type=EmbedTargetType(widget.target_type).value,
        target_id=widget.target_id,
        view_mode=EmbedViewMode(widget.view_mode).value,
        permissions=EmbedPermission(widget.permissions).value,
        allowed_domains=list(widget.allowed_domains or []),
        token=widget.token,
        token_expires_at=widget.token_expires_at,
        is_active=bool(widget.is_active),
        embed_url=f"/embed/{widget.id}",
        view_count=view_count,
        created_at=widget.created_at,
    )


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("", response_model=List[EmbedOut])
async def list_embeds(
    ctx: AuthContext = Depends(require_min_role(MembershipRole.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    """Widgets of the caller's organization, newest first, with view counts"""
    views = (
        select(EmbedLog.widget_id, func.count(EmbedLog.id).label("views"))
        .where(EmbedLog.action == "VIEW")
        .group_by(EmbedLog.widget_id)
        .subquery()
    )
    stmt = (
        select(EmbedWidget, func.coalesce(views.c.views, 0))
        .outerjoin(views, views.c.widget_id == EmbedWidget.id)
        .where(EmbedWidget.org_id == ctx.org_id)
        .order_by(EmbedWidget.created_at.desc())
    )
    rows = (await db.execute(stmt)).all()
    return [embed_out(widget, count) for widget, count in rows]


@router.post("", response_model=EmbedOut, status_code=201)
async def create_embed(
    data: EmbedCreate,
    request: Request,
    ctx: AuthContext = Depends(require_min_role(MembershipRole.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    if data.permissions == EmbedPermission.OPERATIONS_ALLOWED:
        check = require_role(ctx, MembershipRole.ADMIN)
        if not check.allowed:
            raise HTTPException(
                status_code=403,
                detail="Only Admin can create embeds with operations allowed",
            )

    if data.target_type == EmbedTargetType.SAVED_FILTER:
        raise HTTPException(status_code=400, detail="Saved filter widgets are not supported yet")

    if data.target_type == EmbedTargetType.PROJECT:
        if not data.target_id:
            raise HTTPException(status_code=400, detail="targetId is required for project widgets")
        if await store.get_project_in_org(db, ctx.org_id, data.target_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")

    widget = EmbedWidget(
        org_id=ctx.org_id,
        name=data.name,
        type=data.type,
        target_type=data.target_type,
        target_id=data.target_id if data.target_type == EmbedTargetType.PROJECT else None,
        view_mode=data.view_mode,
        permissions=data.permissions,
        allowed_domains=data.allowed_domains,
        token=secrets.token_hex(32),
        token_expires_at=data.token_expires_at,
        is_active=True,
        created_by_id=ctx.user_id,
    )
    db.add(widget)
    await db.commit()

    await audit_log(
        db, ctx, "CREATE", Resource.EMBED, widget.id,
        {"name": widget.name, "permissions": widget.permissions.value},
        request,
    )
    return embed_out(widget)


@router.delete("/{widget_id}")
async def deactivate_embed(
    widget_id: str,
    request: Request,
    ctx: AuthContext = Depends(require_min_role(MembershipRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Deactivate a widget; its page then answers as not found"""
    stmt = select(EmbedWidget).where(EmbedWidget.id == widget_id, EmbedWidget.org_id == ctx.org_id)
    widget = (await db.execute(stmt)).scalar_one_or_none()
    if widget is None:
        raise HTTPException(status_code=404, detail="Embed not found")

    widget.is_active = False
    await db.commit()
    await audit_log(db, ctx, "DELETE", Resource.EMBED, widget.id, {"name": widget.name}, request)
    return {"success": True, "id": widget.id, "is_active": False}
