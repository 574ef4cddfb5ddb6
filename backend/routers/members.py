# routers/members.py — Organization membership listing
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import AuthContext, get_auth_context
from database import get_db_session
from models import Membership, MembershipRole
from rbac import Action, Resource, check_permission, enforce

router = APIRouter(prefix="/api/v1/members", tags=["Members"])


class MemberOut(BaseModel):
    membership_id: str
    user_id: str
    name: Optional[str] = None
    email: str
    image: Optional[str] = None
    role: str
    joined_at: Optional[datetime] = None


@router.get("", response_model=List[MemberOut])
async def list_members(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Active members of the caller's organization (Manager+)"""
    enforce(await check_permission(ctx, Action.READ, Resource.MEMBERSHIP))

    stmt = (
        select(Membership)
        .where(Membership.org_id == ctx.org_id, Membership.deleted_at.is_(None))
        .options(selectinload(Membership.user))
        .order_by(Membership.created_at.asc())
    )
    memberships = (await db.execute(stmt)).scalars().all()

    return [
        MemberOut(
            membership_id=m.id,
            user_id=m.user_id,
            name=m.user.name,
            email=m.user.email,
            image=m.user.image,
            role=MembershipRole(m.role).value,
            joined_at=m.created_at,
        )
        for m in memberships
        if m.user is not None and m.user.deleted_at is None
    ]
