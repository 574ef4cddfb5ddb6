# routers/tasks.py — Tenant-scoped task CRUD with ownership checks
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import store
from audit import audit_log
from auth import AuthContext, get_auth_context
from database import get_db_session
from models import Task, TaskStatus, TaskPriority
from rbac import Action, Resource, check_permission, enforce
from store import TaskCreate, TaskUpdate

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskOut(BaseModel):
    id: str
    org_id: str
    project_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    due_date: Optional[datetime] = None
    assignee_id: Optional[str] = None
    assignee: Optional[Dict[str, Any]] = None
    project: Optional[Dict[str, Any]] = None
    tags: List[str] = []
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskPage(BaseModel):
    tasks: List[TaskOut]
    total: int
    limit: int
    offset: int


def task_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        org_id=task.org_id,
        project_id=task.project_id,
        title=task.title,
        description=task.description,
        status=TaskStatus(task.status).value,
        priority=TaskPriority(task.priority).value,
        due_date=task.due_date,
        assignee_id=task.assignee_id,
        assignee=(
            {"id": task.assignee.id, "name": task.assignee.name, "image": task.assignee.image}
            if task.assignee else None
        ),
        project={"id": task.project.id, "name": task.project.name} if task.project else None,
        tags=list(task.tags or []),
        completed_at=task.completed_at,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("", response_model=TaskPage)
async def list_tasks(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[TaskStatus] = None,
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    assignee_id: Optional[str] = Query(default=None, alias="assigneeId"),
    limit: int = Query(default=store.DEFAULT_PAGE_SIZE, ge=1, le=store.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
):
    """List the organization's tasks, most urgent first"""
    enforce(await check_permission(ctx, Action.READ, Resource.TASK))
    tasks, total = await store.list_tasks(
        db, ctx.org_id, status=status, project_id=project_id,
        assignee_id=assignee_id, limit=limit, offset=offset,
    )
    return TaskPage(tasks=[task_out(t) for t in tasks], total=total, limit=limit, offset=offset)


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    enforce(await check_permission(ctx, Action.CREATE, Resource.TASK))
    task = await store.create_task(db, ctx.org_id, data, created_by_id=ctx.user_id)
    await audit_log(db, ctx, "CREATE", Resource.TASK, task.id, {"title": task.title}, request)
    return task_out(task)


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    enforce(await check_permission(ctx, Action.READ, Resource.TASK))
    return task_out(await store.require_task(db, ctx.org_id, task_id))


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Update a task. Members may only touch their own or owned-project tasks."""
    task = await store.require_task(db, ctx.org_id, task_id)
    enforce(await check_permission(ctx, Action.UPDATE, Resource.TASK, task_id, db))

    changes = await store.update_task(db, ctx.org_id, task, data)
    await audit_log(db, ctx, "UPDATE", Resource.TASK, task_id, {"changes": changes}, request)
    return task_out(await store.require_task(db, ctx.org_id, task_id))


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    task = await store.require_task(db, ctx.org_id, task_id)
    enforce(await check_permission(ctx, Action.DELETE, Resource.TASK, task_id, db))

    title = task.title
    await store.delete_task(db, task)
    await audit_log(db, ctx, "DELETE", Resource.TASK, task_id, {"title": title}, request)
    return {"success": True, "task_id": task_id}
