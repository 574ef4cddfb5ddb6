# routers/projects.py — Projects with task progress stats
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import store
from audit import audit_log
from auth import AuthContext, get_auth_context
from database import get_db_session
from models import Project, ProjectStatus
from rbac import Action, Resource, check_permission, enforce
from store import ProjectCreate

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


class ProjectOut(BaseModel):
    id: str
    org_id: str
    name: str
    description: Optional[str] = None
    status: str
    owner_id: str
    owner: Optional[Dict[str, Any]] = None
    stats: Dict[str, int] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def project_out(project: Project, stats: Optional[Dict[str, int]] = None) -> ProjectOut:
    return ProjectOut(
        id=project.id,
        org_id=project.org_id,
        name=project.name,
        description=project.description,
        status=ProjectStatus(project.status).value,
        owner_id=project.owner_id,
        owner=(
            {"id": project.owner.id, "name": project.owner.name, "image": project.owner.image}
            if project.owner else None
        ),
        stats=stats or {"total": 0, "completed": 0, "in_progress": 0},
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


@router.get("", response_model=List[ProjectOut])
async def list_projects(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ProjectStatus] = None,
):
    """List projects in the caller's organization, recently updated first"""
    enforce(await check_permission(ctx, Action.READ, Resource.PROJECT))
    return [project_out(p, stats) for p, stats in await store.list_projects(db, ctx.org_id, status)]


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project owned by the caller (Manager+)"""
    enforce(await check_permission(ctx, Action.CREATE, Resource.PROJECT))
    project = await store.create_project(db, ctx.org_id, ctx.user_id, data)
    await audit_log(db, ctx, "CREATE", Resource.PROJECT, project.id, {"name": project.name}, request)
    return project_out(project)
