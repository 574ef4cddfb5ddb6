# routers/auth.py — Signup, login and session introspection
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from audit import audit_log
from auth import (
    AuthService, AuthContext, SignupRequest, LoginRequest,
    get_auth_context, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from models import MembershipRole, Organization
from rbac import Resource

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]
    organization: Optional[Dict[str, Any]] = None
    role: Optional[str] = None


def _user_out(user) -> Dict[str, Any]:
    return {"id": user.id, "name": user.name, "email": user.email, "image": user.image}


def _org_out(org) -> Dict[str, Any]:
    return {"id": org.id, "name": org.name, "slug": org.slug}


@router.post("/signup", response_model=TokenResponse, status_code=201)
async def signup(
    data: SignupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Create an organization with its first (ADMIN) user"""
    user, org = await AuthService.signup(data, db)

    ctx = AuthContext(
        user_id=user.id, email=user.email, name=user.name,
        org_id=org.id, role=MembershipRole.ADMIN,
    )
    await audit_log(db, ctx, "CREATE", Resource.ORGANIZATION, org.id, {"name": org.name, "slug": org.slug}, request)

    return TokenResponse(
        access_token=AuthService.token_for(user),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_user_out(user),
        organization=_org_out(org),
        role=MembershipRole.ADMIN.value,
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate with email + password"""
    user = await AuthService.authenticate(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    membership = await AuthService.get_active_membership(user.id, db)
    org = await db.get(Organization, membership.org_id) if membership else None

    return TokenResponse(
        access_token=AuthService.token_for(user),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_user_out(user),
        organization=_org_out(org) if org else None,
        role=MembershipRole(membership.role).value if membership else None,
    )


@router.get("/me")
async def me(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    org = await db.get(Organization, ctx.org_id)
    return {
        "user": {"id": ctx.user_id, "name": ctx.name, "email": ctx.email},
        "organization": _org_out(org),
        "role": ctx.role.value,
    }
