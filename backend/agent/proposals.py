# agent/proposals.py — Human decision on agent proposals
# PENDING → APPROVED (mutation applied through the store) | REJECTED.
# A decided proposal is final.
import logging
from typing import Optional, Tuple

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import store
from auth import AuthContext
from errors import APIError
from models import AgentProposal, AgentRun, AgentRunStatus, ProposalStatus, utcnow
from rbac import Action, Resource, check_permission, enforce
from store import TaskCreate, TaskUpdate, ProjectCreate

logger = logging.getLogger("taskflow.agent.proposals")

# Proposal keys that address the target rather than describe the change
_ADDRESS_KEYS = {"org_id", "task_id", "owner_id"}


async def get_proposal_in_org(db: AsyncSession, org_id: str, proposal_id: str) -> Optional[AgentProposal]:
    stmt = select(AgentProposal).where(
        AgentProposal.id == proposal_id,
        AgentProposal.org_id == org_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


def _payload(model: type, data: dict) -> BaseModel:
    try:
        return model.model_validate({k: v for k, v in data.items() if k not in _ADDRESS_KEYS})
    except ValidationError as e:
        raise APIError(
            400,
            "Proposal data is invalid",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        )


async def _mark(
    db: AsyncSession, proposal: AgentProposal, ctx: AuthContext, status: ProposalStatus, comment: Optional[str],
) -> None:
    """Move PENDING to a decision in the open transaction; only one reviewer can win."""
    values = {
        "status": status,
        "reviewed_by_id": ctx.user_id,
        "review_comment": comment,
        "reviewed_at": utcnow(),
    }
    result = await db.execute(
        update(AgentProposal)
        .where(AgentProposal.id == proposal.id, AgentProposal.status == ProposalStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise APIError(400, "Proposal has already been decided")
    for key, value in values.items():
        setattr(proposal, key, value)


async def approve_proposal(
    db: AsyncSession, ctx: AuthContext, proposal: AgentProposal, comment: Optional[str] = None,
) -> Tuple[Resource, str, dict]:
    """Apply the proposed mutation and mark the proposal APPROVED.

    Returns (resource, resource_id, audit metadata) for the applied change.
    The proposal status is committed together with the mutation.
    """
    data = dict(proposal.data or {})
    if data.get("org_id") not in (None, ctx.org_id):
        raise APIError(403, "Organization mismatch")

    await _mark(db, proposal, ctx, ProposalStatus.APPROVED, comment)

    if proposal.action == "create_task":
        enforce(await check_permission(ctx, Action.CREATE, Resource.TASK))
        task = await store.create_task(db, ctx.org_id, _payload(TaskCreate, data), created_by_id=ctx.user_id)
        resource, resource_id, meta = Resource.TASK, task.id, {"title": task.title}

    elif proposal.action == "update_task":
        task = await store.require_task(db, ctx.org_id, data.get("task_id", ""))
        enforce(await check_permission(ctx, Action.UPDATE, Resource.TASK, task.id, db))
        changes = await store.update_task(db, ctx.org_id, task, _payload(TaskUpdate, data))
        resource, resource_id, meta = Resource.TASK, task.id, {"changes": changes}

    elif proposal.action == "create_project":
        enforce(await check_permission(ctx, Action.CREATE, Resource.PROJECT))
        project = await store.create_project(
            db, ctx.org_id, data.get("owner_id") or ctx.user_id, _payload(ProjectCreate, data),
        )
        resource, resource_id, meta = Resource.PROJECT, project.id, {"name": project.name}

    else:
        raise APIError(400, f"Unsupported proposal action: {proposal.action}")

    proposal.result_resource_id = resource_id
    await db.commit()
    logger.info(f"Proposal {proposal.id} approved by {ctx.user_id} → {resource.value} {resource_id}")
    return resource, resource_id, {**meta, "proposal_id": proposal.id, "run_id": proposal.run_id}


async def reject_proposal(
    db: AsyncSession, ctx: AuthContext, proposal: AgentProposal, comment: Optional[str] = None,
) -> None:
    """Mark the proposal REJECTED; the run follows once all its proposals are rejected."""
    await _mark(db, proposal, ctx, ProposalStatus.REJECTED, comment)

    siblings = (await db.execute(
        select(AgentProposal.status).where(
            AgentProposal.run_id == proposal.run_id,
            AgentProposal.id != proposal.id,
        )
    )).scalars().all()
    if all(s == ProposalStatus.REJECTED for s in siblings):
        run = await db.get(AgentRun, proposal.run_id)
        if run is not None:
            run.status = AgentRunStatus.REJECTED

    await db.commit()
    logger.info(f"Proposal {proposal.id} rejected by {ctx.user_id}")
