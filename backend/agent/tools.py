# agent/tools.py — Function-calling tools exposed to the model
# Each tool gets an immutable ToolContext (org_id, user_id) from the caller.
# Tools that carry an org_id argument reject a mismatch before any storage access.
# Mutating tools never write: they return a proposal for human approval.
import json
import logging
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Optional, List, Dict, Any, Literal, Type, Callable, Awaitable

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

import store
from errors import ToolError
from models import Project, Membership, User, ProjectStatus

logger = logging.getLogger("taskflow.agent.tools")

SEARCH_LIMIT = 10
TENANT_MISMATCH = "Organization mismatch - access denied"


class ToolName(str, PyEnum):
    SEARCH_PROJECTS = "search_projects"
    SEARCH_USERS = "search_users"
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    CREATE_PROJECT = "create_project"
    LOG_AGENT_NOTE = "log_agent_note"


@dataclass(frozen=True)
class ToolContext:
    org_id: str
    user_id: str


# ============================================================
# ARGUMENT MODELS
# ============================================================

class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SearchArgs(_Args):
    query: str
    org_id: str


class CreateTaskArgs(_Args):
    org_id: str
    project_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    due_date: Optional[str] = None
    priority: Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
    assignee_id: Optional[str] = None
    tags: Optional[List[str]] = None


class UpdateTaskArgs(_Args):
    task_id: str
    org_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["TODO", "IN_PROGRESS", "BLOCKED", "COMPLETED", "CANCELLED"]] = None
    priority: Optional[Literal["LOW", "MEDIUM", "HIGH", "URGENT"]] = None
    due_date: Optional[str] = None
    assignee_id: Optional[str] = None


class CreateProjectArgs(_Args):
    org_id: str
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    owner_id: str


class LogNoteArgs(_Args):
    task_id: Optional[str] = None
    note: str


# ============================================================
# HANDLERS
# ============================================================

def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _ensure_tenant(org_id: Optional[str], ctx: ToolContext) -> None:
    if org_id is not None and org_id != ctx.org_id:
        raise ToolError(TENANT_MISMATCH)


def _proposal(name: ToolName, args: BaseModel, message: str) -> Dict[str, Any]:
    return {
        "approval_required": True,
        "action": name.value,
        "data": args.model_dump(exclude_none=True),
        "message": message,
    }


async def search_projects(args: SearchArgs, ctx: ToolContext, db: AsyncSession) -> List[Dict[str, Any]]:
    _ensure_tenant(args.org_id, ctx)
    stmt = (
        select(Project)
        .where(Project.org_id == ctx.org_id, Project.name.ilike(_like_pattern(args.query), escape="\\"))
        .order_by(Project.updated_at.desc())
        .limit(SEARCH_LIMIT)
    )
    projects = (await db.execute(stmt)).scalars().all()
    return [
        {
            "id": p.id,
            "name": p.name,
            "description": p.description,
            "status": ProjectStatus(p.status).value,
        }
        for p in projects
    ]


async def search_users(args: SearchArgs, ctx: ToolContext, db: AsyncSession) -> List[Dict[str, Any]]:
    _ensure_tenant(args.org_id, ctx)
    pattern = _like_pattern(args.query)
    stmt = (
        select(User)
        .join(Membership, Membership.user_id == User.id)
        .where(
            Membership.org_id == ctx.org_id,
            Membership.deleted_at.is_(None),
            User.deleted_at.is_(None),
            or_(User.name.ilike(pattern, escape="\\"), User.email.ilike(pattern, escape="\\")),
        )
        .limit(SEARCH_LIMIT)
    )
    users = (await db.execute(stmt)).scalars().all()
    return [{"id": u.id, "name": u.name, "email": u.email} for u in users]


async def create_task(args: CreateTaskArgs, ctx: ToolContext, db: AsyncSession) -> Dict[str, Any]:
    _ensure_tenant(args.org_id, ctx)
    return _proposal(ToolName.CREATE_TASK, args, "Creating a task requires approval")


async def update_task(args: UpdateTaskArgs, ctx: ToolContext, db: AsyncSession) -> Dict[str, Any]:
    _ensure_tenant(args.org_id, ctx)
    if await store.get_task_in_org(db, ctx.org_id, args.task_id) is None:
        raise ToolError("Task not found or access denied")
    return _proposal(ToolName.UPDATE_TASK, args, "Updating a task requires approval")


async def create_project(args: CreateProjectArgs, ctx: ToolContext, db: AsyncSession) -> Dict[str, Any]:
    _ensure_tenant(args.org_id, ctx)
    return _proposal(ToolName.CREATE_PROJECT, args, "Creating a project requires approval")


async def log_agent_note(args: LogNoteArgs, ctx: ToolContext, db: AsyncSession) -> Dict[str, Any]:
    return {"success": True, "note": args.note, "task_id": args.task_id}


# ============================================================
# REGISTRY
# ============================================================

@dataclass(frozen=True)
class RegisteredTool:
    name: ToolName
    description: str
    args_model: Type[_Args]
    parameters: Dict[str, Any]
    handler: Callable[[Any, ToolContext, AsyncSession], Awaitable[Any]]
    mutating: bool = False

    def definition(self) -> Dict[str, Any]:
        """OpenAI-style function tool declaration"""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _object(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


_STR = {"type": "string"}
_PRIORITY = {"type": "string", "enum": ["LOW", "MEDIUM", "HIGH", "URGENT"]}

TOOL_REGISTRY: Dict[ToolName, RegisteredTool] = {
    ToolName.SEARCH_PROJECTS: RegisteredTool(
        name=ToolName.SEARCH_PROJECTS,
        description="Search projects in the organization by name",
        args_model=SearchArgs,
        parameters=_object({"query": _STR, "org_id": _STR}, ["query", "org_id"]),
        handler=search_projects,
    ),
    ToolName.SEARCH_USERS: RegisteredTool(
        name=ToolName.SEARCH_USERS,
        description="Search members of the organization by name or email",
        args_model=SearchArgs,
        parameters=_object({"query": _STR, "org_id": _STR}, ["query", "org_id"]),
        handler=search_users,
    ),
    ToolName.CREATE_TASK: RegisteredTool(
        name=ToolName.CREATE_TASK,
        description="Propose a new task (requires human approval)",
        args_model=CreateTaskArgs,
        parameters=_object(
            {
                "org_id": _STR,
                "project_id": _STR,
                "title": _STR,
                "description": _STR,
                "due_date": {"type": "string", "description": "ISO 8601"},
                "priority": _PRIORITY,
                "assignee_id": _STR,
                "tags": {"type": "array", "items": _STR},
            },
            ["org_id", "title", "priority"],
        ),
        handler=create_task,
        mutating=True,
    ),
    ToolName.UPDATE_TASK: RegisteredTool(
        name=ToolName.UPDATE_TASK,
        description="Propose changes to an existing task (requires human approval)",
        args_model=UpdateTaskArgs,
        parameters=_object(
            {
                "task_id": _STR,
                "org_id": _STR,
                "title": _STR,
                "description": _STR,
                "status": {
                    "type": "string",
                    "enum": ["TODO", "IN_PROGRESS", "BLOCKED", "COMPLETED", "CANCELLED"],
                },
                "priority": _PRIORITY,
                "due_date": _STR,
                "assignee_id": _STR,
            },
            ["task_id"],
        ),
        handler=update_task,
        mutating=True,
    ),
    ToolName.CREATE_PROJECT: RegisteredTool(
        name=ToolName.CREATE_PROJECT,
        description="Propose a new project (requires human approval)",
        args_model=CreateProjectArgs,
        parameters=_object(
            {"org_id": _STR, "name": _STR, "description": _STR, "owner_id": _STR},
            ["org_id", "name", "owner_id"],
        ),
        handler=create_project,
        mutating=True,
    ),
    ToolName.LOG_AGENT_NOTE: RegisteredTool(
        name=ToolName.LOG_AGENT_NOTE,
        description="Record the reasoning behind a decision",
        args_model=LogNoteArgs,
        parameters=_object({"task_id": _STR, "note": _STR}, ["note"]),
        handler=log_agent_note,
    ),
}

AGENT_TOOLS = [tool.definition() for tool in TOOL_REGISTRY.values()]


def parse_arguments(tool: RegisteredTool, raw_arguments: Any) -> _Args:
    if isinstance(raw_arguments, str):
        try:
            raw_arguments = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError as e:
            raise ToolError(f"Invalid arguments for {tool.name.value}: {e.msg}")
    if not isinstance(raw_arguments, dict):
        raise ToolError(f"Invalid arguments for {tool.name.value}: expected an object")
    try:
        return tool.args_model.model_validate(raw_arguments)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ToolError(f"Invalid arguments for {tool.name.value}: {loc} {first.get('msg')}")


async def dispatch_tool(name: str, raw_arguments: Any, ctx: ToolContext, db: AsyncSession) -> Any:
    """Resolve, validate and run one tool call. Raises ToolError on any refusal."""
    try:
        tool = TOOL_REGISTRY[ToolName(name)]
    except ValueError:
        raise ToolError(f"Unknown tool: {name}")

    args = parse_arguments(tool, raw_arguments)
    result = await tool.handler(args, ctx, db)
    logger.debug(f"Tool {name} ran for org={ctx.org_id} user={ctx.user_id}")
    return result
