# store.py — Tenant-scoped task & project persistence
# Every query here filters by org_id; a row from another organization is
# reported exactly like a missing one.
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models import (
    Task, Project, Membership, TaskStatus, TaskPriority, ProjectStatus, utcnow,
)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

PRIORITY_RANK = case(
    {
        TaskPriority.LOW: 1,
        TaskPriority.MEDIUM: 2,
        TaskPriority.HIGH: 3,
        TaskPriority.URGENT: 4,
    },
    value=Task.priority,
    else_=0,
)

# priority desc, due date asc (undated last), newest first
TASK_ORDER = (
    PRIORITY_RANK.desc(),
    Task.due_date.asc().nulls_last(),
    Task.created_at.desc(),
)


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    project_id: Optional[str] = Field(default=None, alias="projectId")
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[str] = Field(default=None, alias="assigneeId")
    tags: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    assignee_id: Optional[str] = Field(default=None, alias="assigneeId")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    tags: Optional[List[str]] = None


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)


# Fields that may be cleared with an explicit null
NULLABLE_TASK_FIELDS = {"description", "due_date", "assignee_id", "project_id"}


# ============================================================
# LOOKUPS
# ============================================================

async def get_task_in_org(db: AsyncSession, org_id: str, task_id: str) -> Optional[Task]:
    stmt = (
        select(Task)
        .where(Task.id == task_id, Task.org_id == org_id)
        .options(selectinload(Task.assignee), selectinload(Task.project))
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_project_in_org(db: AsyncSession, org_id: str, project_id: str) -> Optional[Project]:
    stmt = select(Project).where(Project.id == project_id, Project.org_id == org_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def is_active_member(db: AsyncSession, org_id: str, user_id: str) -> bool:
    stmt = select(Membership.id).where(
        Membership.org_id == org_id,
        Membership.user_id == user_id,
        Membership.deleted_at.is_(None),
    )
    return (await db.execute(stmt)).first() is not None


async def require_task(db: AsyncSession, org_id: str, task_id: str) -> Task:
    task = await get_task_in_org(db, org_id, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


async def validate_task_refs(
    db: AsyncSession,
    org_id: str,
    project_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
) -> None:
    """Reject project or assignee ids that do not belong to ``org_id``."""
    if project_id and await get_project_in_org(db, org_id, project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if assignee_id and not await is_active_member(db, org_id, assignee_id):
        raise HTTPException(status_code=404, detail="Assignee not found in organization")


# ============================================================
# TASKS
# ============================================================

def task_filters(
    org_id: str,
    status: Optional[TaskStatus] = None,
    project_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
) -> list:
    clauses = [Task.org_id == org_id]
    if status is not None:
        clauses.append(Task.status == status)
    if project_id:
        clauses.append(Task.project_id == project_id)
    if assignee_id:
        clauses.append(Task.assignee_id == assignee_id)
    return clauses


async def list_tasks(
    db: AsyncSession,
    org_id: str,
    status: Optional[TaskStatus] = None,
    project_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> Tuple[List[Task], int]:
    clauses = task_filters(org_id, status, project_id, assignee_id)

    stmt = (
        select(Task)
        .where(*clauses)
        .options(selectinload(Task.assignee), selectinload(Task.project))
        .order_by(*TASK_ORDER)
        .limit(limit)
        .offset(offset)
    )
    tasks = list((await db.execute(stmt)).scalars().all())

    total = (await db.execute(select(func.count(Task.id)).where(*clauses))).scalar() or 0
    return tasks, total


async def create_task(db: AsyncSession, org_id: str, data: TaskCreate, created_by_id: Optional[str]) -> Task:
    await validate_task_refs(db, org_id, data.project_id, data.assignee_id)

    task = Task(
        org_id=org_id,
        title=data.title,
        description=data.description,
        project_id=data.project_id,
        due_date=data.due_date,
        priority=data.priority,
        assignee_id=data.assignee_id,
        tags=list(data.tags),
        created_by_id=created_by_id,
    )
    db.add(task)
    await db.commit()
    return await require_task(db, org_id, task.id)


def completion_transition(old: TaskStatus, new: TaskStatus) -> Tuple[bool, Optional[datetime]]:
    """Return (changed, completed_at) for a status move.

    Entering COMPLETED stamps now, leaving it clears the stamp.
    """
    if new == TaskStatus.COMPLETED and old != TaskStatus.COMPLETED:
        return True, utcnow()
    if new != TaskStatus.COMPLETED and old == TaskStatus.COMPLETED:
        return True, None
    return False, None


async def update_task(db: AsyncSession, org_id: str, task: Task, data: TaskUpdate) -> Dict[str, Any]:
    """Apply the fields present in ``data``; returns the applied changes."""
    changes = data.model_dump(exclude_unset=True)
    for key in list(changes):
        if changes[key] is None and key not in NULLABLE_TASK_FIELDS:
            changes.pop(key)

    if "project_id" in changes or "assignee_id" in changes:
        await validate_task_refs(db, org_id, changes.get("project_id"), changes.get("assignee_id"))

    if "status" in changes:
        changed, completed_at = completion_transition(TaskStatus(task.status), changes["status"])
        if changed:
            task.completed_at = completed_at

    for key, value in changes.items():
        setattr(task, key, value)

    await db.commit()
    return changes


async def delete_task(db: AsyncSession, task: Task) -> None:
    await db.delete(task)
    await db.commit()


# ============================================================
# PROJECTS
# ============================================================

async def list_projects(
    db: AsyncSession, org_id: str, status: Optional[ProjectStatus] = None,
) -> List[Tuple[Project, Dict[str, int]]]:
    stmt = (
        select(Project)
        .where(Project.org_id == org_id)
        .options(selectinload(Project.owner))
        .order_by(Project.updated_at.desc())
    )
    if status is not None:
        stmt = stmt.where(Project.status == status)
    projects = list((await db.execute(stmt)).scalars().all())
    if not projects:
        return []

    counts_stmt = (
        select(Task.project_id, Task.status, func.count(Task.id))
        .where(Task.org_id == org_id, Task.project_id.in_([p.id for p in projects]))
        .group_by(Task.project_id, Task.status)
    )
    counts: Dict[str, Dict[str, int]] = {}
    for project_id, task_status, count in (await db.execute(counts_stmt)).all():
        counts.setdefault(project_id, {})[TaskStatus(task_status).value] = count

    out = []
    for p in projects:
        by_status = counts.get(p.id, {})
        out.append((p, {
            "total": sum(by_status.values()),
            "completed": by_status.get(TaskStatus.COMPLETED.value, 0),
            "in_progress": by_status.get(TaskStatus.IN_PROGRESS.value, 0),
        }))
    return out


async def create_project(
    db: AsyncSession, org_id: str, owner_id: str, data: ProjectCreate,
) -> Project:
    if not await is_active_member(db, org_id, owner_id):
        raise HTTPException(status_code=404, detail="Owner not found in organization")

    project = Project(
        org_id=org_id,
        name=data.name,
        description=data.description,
        owner_id=owner_id,
    )
    db.add(project)
    await db.commit()

    stmt = (
        select(Project)
        .where(Project.id == project.id)
        .options(selectinload(Project.owner))
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one()
