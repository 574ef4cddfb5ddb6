# auth.py — Authentication & tenant context for TaskFlow
# Features:
# - bcrypt password hashing
# - Signed JWT bearer sessions (HS256, sub = user id)
# - Atomic signup: organization + user + ADMIN membership
# - Active membership resolution (newest, not soft-deleted)
# - Role hierarchy MEMBER < MANAGER < ADMIN as a rank table

import os
import re
import uuid
import string
import secrets
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import APIError
from models import User, Organization, Membership, MembershipRole

logger = logging.getLogger("taskflow.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key; "
        "sessions will not survive a restart."
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))
SLUG_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SLUG_MAX_ATTEMPTS = 10
# bcrypt only looks at the first 72 bytes and rejects longer input
MAX_PASSWORD_BYTES = 72

security = HTTPBearer(auto_error=False)


# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    MembershipRole.MEMBER: 1,
    MembershipRole.MANAGER: 2,
    MembershipRole.ADMIN: 3,
}


def has_role(role: MembershipRole, required: MembershipRole) -> bool:
    return ROLE_HIERARCHY.get(role, 0) >= ROLE_HIERARCHY.get(required, 0)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=100)
    org_name: str = Field(..., min_length=1, max_length=100, alias="orgName")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


@dataclass(frozen=True)
class AuthContext:
    """Who is calling and which organization they act in."""
    user_id: str
    email: str
    name: Optional[str]
    org_id: str
    role: MembershipRole


# ============================================================
# AUTH SERVICE
# ============================================================

def slugify(value: str) -> str:
    slug = value.lower()
    slug = re.sub(r"[^\w\s-]", "", slug, flags=re.ASCII)
    slug = re.sub(r"[\s_-]+", "-", slug)
    slug = slug.strip("-")
    return slug or "org"


def random_slug_suffix(length: int = 5) -> str:
    return "".join(secrets.choice(SLUG_SUFFIX_ALPHABET) for _ in range(length))


class AuthService:
    """Password, token and signup operations"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        encoded = password.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def token_for(user: User) -> str:
        return AuthService.create_access_token({"sub": user.id, "email": user.email})

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    async def unique_slug(db: AsyncSession, org_name: str) -> str:
        base = slugify(org_name)
        candidate = base
        for _ in range(SLUG_MAX_ATTEMPTS):
            stmt = select(Organization.id).where(Organization.slug == candidate)
            if (await db.execute(stmt)).scalar_one_or_none() is None:
                return candidate
            candidate = f"{base}-{random_slug_suffix()}"
        raise APIError(503, "Could not allocate an organization slug, please retry")

    @staticmethod
    async def signup(data: SignupRequest, db: AsyncSession) -> Tuple[User, Organization]:
        email = data.email.lower()
        stmt = select(User.id).where(User.email == email)
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            raise APIError(400, "This email address is already registered", details={"field": "email"})

        slug = await AuthService.unique_slug(db, data.org_name)

        try:
            org = Organization(name=data.org_name, slug=slug)
            user = User(
                name=data.name,
                email=email,
                password_hash=AuthService.hash_password(data.password),
            )
            db.add_all([org, user])
            await db.flush()
            db.add(Membership(org_id=org.id, user_id=user.id, role=MembershipRole.ADMIN))
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise APIError(400, "Email or organization already exists", details={"field": "email"})
        except SQLAlchemyError:
            await db.rollback()
            logger.error("Signup transaction failed", exc_info=True)
            raise APIError(503, "Signup is temporarily unavailable")

        logger.info(f"New organization {org.slug} created by {user.id}")
        return user, org

    @staticmethod
    async def authenticate(email: str, password: str, db: AsyncSession) -> Optional[User]:
        stmt = select(User).where(User.email == email.lower())
        user = (await db.execute(stmt)).scalar_one_or_none()
        if not user or user.deleted_at is not None:
            return None
        if not AuthService.verify_password(password, user.password_hash):
            return None
        return user

    @staticmethod
    async def get_active_membership(user_id: str, db: AsyncSession) -> Optional[Membership]:
        stmt = (
            select(Membership)
            .join(Organization, Organization.id == Membership.org_id)
            .where(
                Membership.user_id == user_id,
                Membership.deleted_at.is_(None),
                Organization.deleted_at.is_(None),
            )
            .order_by(Membership.created_at.desc())
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await db.get(User, payload["sub"])
    if not user or user.deleted_at is not None:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


async def get_auth_context(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    membership = await AuthService.get_active_membership(user.id, db)
    if membership is None:
        raise HTTPException(status_code=404, detail="No organization found")

    return AuthContext(
        user_id=user.id,
        email=user.email,
        name=user.name,
        org_id=membership.org_id,
        role=MembershipRole(membership.role),
    )


def require_min_role(min_role: MembershipRole):
    """Dependency factory: require membership role level >= min_role"""
    async def _check(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not has_role(ctx.role, min_role):
            raise HTTPException(status_code=403, detail=f"Requires {min_role.value} role")
        return ctx
    return _check
