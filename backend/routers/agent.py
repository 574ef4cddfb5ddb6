# routers/agent.py — Agent runs and the proposal approval queue
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import store
from agent.client import ModelClient, get_model_client
from agent.proposals import approve_proposal, get_proposal_in_org, reject_proposal
from agent.service import AgentOrchestrator, AgentRequest
from audit import audit_log
from auth import AuthContext, get_auth_context, require_min_role
from database import get_db_session
from errors import build_error_envelope, public_message
from models import (
    AgentRun, AgentProposal, AgentType, AgentRunStatus, ProposalStatus, MembershipRole,
)
from rbac import Resource

router = APIRouter(prefix="/api/v1/agent", tags=["Agent"])

GENERIC_UPSTREAM = "The AI service is temporarily unavailable. Please try again later."
GENERIC_OUTPUT = "The AI response could not be processed. Please try again."
GENERIC_INTERNAL = "Internal server error"


# ============================================================
# SCHEMAS
# ============================================================

class AgentRunBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: AgentType
    input: str = Field(..., min_length=1, max_length=10000)
    project_id: Optional[str] = Field(default=None, alias="projectId")
    context: Optional[str] = Field(default=None, max_length=10000)


class AgentRunOut(BaseModel):
    id: str
    agent_type: str
    input: str
    status: str
    output: Optional[Dict[str, Any]] = None
    approval_required: bool
    error_message: Optional[str] = None
    tool_calls: List[Dict[str, Any]] = []
    usage: Dict[str, int] = {}
    user_id: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ProposalOut(BaseModel):
    id: str
    run_id: str
    action: str
    data: Dict[str, Any]
    message: Optional[str] = None
    status: str
    proposed_by_id: str
    reviewed_by_id: Optional[str] = None
    review_comment: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    result_resource_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ReviewBody(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=2000)


def run_out(run: AgentRun) -> AgentRunOut:
    meta = run.extra_data or {}
    return AgentRunOut(
        id=run.id,
        agent_type=AgentType(run.agent_type).value,
        input=run.input,
        status=AgentRunStatus(run.status).value,
        output=run.output,
        approval_required=bool(run.approval_required),
        error_message=run.error_message,
        tool_calls=meta.get("tool_calls", []),
        usage=meta.get("usage", {}),
        user_id=run.user_id,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


def proposal_out(p: AgentProposal) -> ProposalOut:
    return ProposalOut(
        id=p.id,
        run_id=p.run_id,
        action=p.action,
        data=p.data or {},
        message=p.message,
        status=ProposalStatus(p.status).value,
        proposed_by_id=p.proposed_by_id,
        reviewed_by_id=p.reviewed_by_id,
        review_comment=p.review_comment,
        reviewed_at=p.reviewed_at,
        result_resource_id=p.result_resource_id,
        created_at=p.created_at,
    )


def _failure_message(status_code: int, detail: str) -> str:
    if status_code == 422:
        return public_message(detail, GENERIC_OUTPUT)
    if status_code >= 500 and status_code not in (502, 503):
        return public_message(detail, GENERIC_INTERNAL)
    return public_message(detail, GENERIC_UPSTREAM)


# ============================================================
# RUNS
# ============================================================

@router.post("/run")
async def run_agent(
    body: AgentRunBody,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    model_client: ModelClient = Depends(get_model_client),
):
    """Run one agent; mutations come back as pending proposals."""
    if body.project_id and await store.get_project_in_org(db, ctx.org_id, body.project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")

    orchestrator = AgentOrchestrator(model_client)
    result = await orchestrator.run(db, AgentRequest(
        agent_type=body.type,
        input=body.input,
        org_id=ctx.org_id,
        user_id=ctx.user_id,
        project_id=body.project_id,
        additional_context=body.context,
        metadata={"project_id": body.project_id} if body.project_id else {},
    ))

    await audit_log(
        db, ctx, "CREATE", Resource.AGENT_RUN, result.run_id,
        {
            "type": body.type.value,
            "status": result.status.value if result.status else None,
            "approval_required": result.approval_required,
            "usage": result.usage,
        },
        request,
    )

    if not result.success:
        status_code = result.status_code if result.status_code in (422, 502, 503) else 500
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                **build_error_envelope(
                    _failure_message(status_code, result.error or ""),
                    getattr(request.state, "request_id", None),
                    details={"run_id": result.run_id},
                ),
            },
        )

    return {
        "success": True,
        "run_id": result.run_id,
        "output": result.output,
        "approvalRequired": result.approval_required,
        "usage": result.usage,
        "proposals": result.proposals,
    }


@router.get("/runs", response_model=List[AgentRunOut])
async def list_runs(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    limit: int = 50,
):
    stmt = (
        select(AgentRun)
        .where(AgentRun.org_id == ctx.org_id)
        .order_by(AgentRun.created_at.desc())
        .limit(min(max(limit, 1), 200))
    )
    runs = (await db.execute(stmt)).scalars().all()
    return [run_out(r) for r in runs]


@router.get("/runs/{run_id}", response_model=AgentRunOut)
async def get_run(
    run_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(AgentRun).where(AgentRun.id == run_id, AgentRun.org_id == ctx.org_id)
    run = (await db.execute(stmt)).scalar_one_or_none()
    if not run:
        raise HTTPException(status_code=404, detail="Agent run not found")
    return run_out(run)


# ============================================================
# PROPOSALS
# ============================================================

@router.get("/proposals", response_model=List[ProposalOut])
async def list_proposals(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ProposalStatus] = None,
):
    """Oldest first, so the review queue drains in order"""
    stmt = (
        select(AgentProposal)
        .where(AgentProposal.org_id == ctx.org_id)
        .order_by(AgentProposal.created_at.asc())
    )
    if status is not None:
        stmt = stmt.where(AgentProposal.status == status)
    proposals = (await db.execute(stmt)).scalars().all()
    return [proposal_out(p) for p in proposals]


async def _load_proposal(db: AsyncSession, ctx: AuthContext, proposal_id: str) -> AgentProposal:
    proposal = await get_proposal_in_org(db, ctx.org_id, proposal_id)
    if not proposal:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return proposal


@router.post("/proposals/{proposal_id}/approve", response_model=ProposalOut)
async def approve(
    proposal_id: str,
    request: Request,
    body: Optional[ReviewBody] = None,
    ctx: AuthContext = Depends(require_min_role(MembershipRole.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    proposal = await _load_proposal(db, ctx, proposal_id)
    resource, resource_id, meta = await approve_proposal(
        db, ctx, proposal, body.comment if body else None,
    )

    action = "UPDATE" if proposal.action == "update_task" else "CREATE"
    await audit_log(db, ctx, action, resource, resource_id, meta, request)
    await audit_log(db, ctx, "APPROVE", Resource.AGENT_PROPOSAL, proposal.id, {"action": proposal.action}, request)
    return proposal_out(proposal)


@router.post("/proposals/{proposal_id}/reject", response_model=ProposalOut)
async def reject(
    proposal_id: str,
    request: Request,
    body: Optional[ReviewBody] = None,
    ctx: AuthContext = Depends(require_min_role(MembershipRole.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    proposal = await _load_proposal(db, ctx, proposal_id)
    await reject_proposal(db, ctx, proposal, body.comment if body else None)
    await audit_log(db, ctx, "REJECT", Resource.AGENT_PROPOSAL, proposal.id, {"action": proposal.action}, request)
    return proposal_out(proposal)
