# rbac.py — Permission checker
# Decision table:
#   ADMIN    everything
#   MANAGER  any action on PROJECT / TASK, READ on MEMBERSHIP
#   MEMBER   READ/CREATE TASK, UPDATE/DELETE own or owned-project TASK, READ PROJECT
# Anything not listed is denied with "Insufficient permissions".

from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthContext, has_role
from models import MembershipRole, Project, Task


class Action(str, PyEnum):
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Resource(str, PyEnum):
    TASK = "TASK"
    PROJECT = "PROJECT"
    MEMBERSHIP = "MEMBERSHIP"
    EMBED = "EMBED"
    ORGANIZATION = "ORGANIZATION"
    AGENT_RUN = "AGENT_RUN"
    AGENT_PROPOSAL = "AGENT_PROPOSAL"


@dataclass(frozen=True)
class RBACCheck:
    allowed: bool
    reason: Optional[str] = None


ALLOWED = RBACCheck(allowed=True)
INSUFFICIENT = RBACCheck(allowed=False, reason="Insufficient permissions")


async def _member_owns_task(ctx: AuthContext, task_id: str, db: AsyncSession) -> RBACCheck:
    stmt = (
        select(Task.assignee_id, Project.owner_id)
        .outerjoin(Project, Project.id == Task.project_id)
        .where(Task.id == task_id, Task.org_id == ctx.org_id)
    )
    row = (await db.execute(stmt)).first()
    if row is None:
        return RBACCheck(allowed=False, reason="Task not found")

    assignee_id, project_owner_id = row
    if assignee_id == ctx.user_id or project_owner_id == ctx.user_id:
        return ALLOWED
    return INSUFFICIENT


async def check_permission(
    ctx: AuthContext,
    action: Action,
    resource: Resource,
    resource_id: Optional[str] = None,
    db: Optional[AsyncSession] = None,
) -> RBACCheck:
    """Decide whether ``ctx`` may perform ``action`` on ``resource``.

    Only the MEMBER update/delete branch touches storage; it needs ``db`` and
    ``resource_id`` and denies when either is missing.
    """
    action = Action(action)
    resource = Resource(resource)

    if ctx.role == MembershipRole.ADMIN:
        return ALLOWED

    if ctx.role == MembershipRole.MANAGER:
        if resource in (Resource.PROJECT, Resource.TASK):
            return ALLOWED
        if resource == Resource.MEMBERSHIP and action == Action.READ:
            return ALLOWED

    if ctx.role == MembershipRole.MEMBER:
        if resource == Resource.TASK:
            if action in (Action.READ, Action.CREATE):
                return ALLOWED
            if resource_id and db is not None:
                return await _member_owns_task(ctx, resource_id, db)
        if resource == Resource.PROJECT and action == Action.READ:
            return ALLOWED

    return INSUFFICIENT


def require_role(ctx: AuthContext, role: MembershipRole) -> RBACCheck:
    if has_role(ctx.role, role):
        return ALLOWED
    return RBACCheck(allowed=False, reason=f"Requires {MembershipRole(role).value} role")


def check_org_access(ctx: AuthContext, org_id: str) -> RBACCheck:
    if ctx.org_id != org_id:
        return RBACCheck(allowed=False, reason="Organization mismatch")
    return ALLOWED


def enforce(check: RBACCheck) -> None:
    """Raise the HTTP error that matches a denied check."""
    if check.allowed:
        return
    if check.reason == "Task not found":
        raise HTTPException(status_code=404, detail="Task not found")
    raise HTTPException(status_code=403, detail=check.reason or "Permission denied")
