# agent/service.py — Agent orchestration loop
# RUNNING → COMPLETED | APPROVAL_REQUIRED | FAILED, persisted on every exit path.
# No retries: a failed run is resubmitted by the caller as a new run.
import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from agent.client import ModelClient, ModelResponse
from agent.prompts import build_system_prompt
from agent.schemas import validate_output
from agent.tools import AGENT_TOOLS, ToolContext, dispatch_tool
from errors import AgentError, ToolError
from models import AgentRun, AgentProposal, AgentRunStatus, AgentType, utcnow
from telemetry import span

logger = logging.getLogger("taskflow.agent")

AGENT_MAX_TOOL_ROUNDS = int(os.getenv("AGENT_MAX_TOOL_ROUNDS", "8"))
GENERIC_FAILURE = "Agent run failed"


@dataclass
class AgentRequest:
    agent_type: AgentType
    input: str
    org_id: str
    user_id: str
    project_id: Optional[str] = None
    additional_context: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    success: bool
    run_id: Optional[str] = None
    status: Optional[AgentRunStatus] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    status_code: int = 200
    approval_required: bool = False
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    proposals: List[Dict[str, Any]] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


def _empty_usage() -> Dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def _add_usage(total: Dict[str, int], response: ModelResponse) -> None:
    for key in total:
        total[key] += int(response.usage.get(key, 0))


def _decode_arguments(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


def _assistant_message(response: ModelResponse) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "content": response.content,
        "tool_calls": response.tool_calls,
    }


class AgentOrchestrator:
    """Runs one agent request against the model with tenant-checked tools."""

    def __init__(self, model_client: ModelClient, max_tool_rounds: int = AGENT_MAX_TOOL_ROUNDS):
        self.model_client = model_client
        self.max_tool_rounds = max_tool_rounds

    async def _complete(self, messages: List[Dict[str, Any]], request: AgentRequest, round_no: int) -> ModelResponse:
        with span("agent.model_call", agent_type=request.agent_type.value, org_id=request.org_id, round=round_no):
            return await self.model_client.complete(messages, AGENT_TOOLS)

    async def _run_tools(
        self,
        response: ModelResponse,
        ctx: ToolContext,
        db: AsyncSession,
        messages: List[Dict[str, Any]],
        trace: List[Dict[str, Any]],
    ) -> None:
        messages.append(_assistant_message(response))
        for call in response.tool_calls:
            function = call.get("function") or {}
            name = function.get("name", "")
            raw_arguments = function.get("arguments")
            entry: Dict[str, Any] = {
                "id": call.get("id"),
                "name": name,
                "arguments": _decode_arguments(raw_arguments),
            }
            try:
                result = await dispatch_tool(name, raw_arguments, ctx, db)
                entry["result"] = result
            except ToolError as e:
                logger.info(f"Tool {name} refused: {e}")
                entry["error"] = str(e)
                result = {"error": str(e)}
            trace.append(entry)
            messages.append({
                "role": "tool",
                "tool_call_id": call.get("id"),
                "content": json.dumps(result, ensure_ascii=False, default=str),
            })

    async def _fail(
        self,
        db: AsyncSession,
        run: AgentRun,
        message: str,
        trace: List[Dict[str, Any]],
        usage: Dict[str, int],
    ) -> None:
        await db.rollback()
        await db.refresh(run)
        run.status = AgentRunStatus.FAILED
        run.error_message = message
        run.approval_required = False
        run.completed_at = utcnow()
        run.extra_data = {**(run.extra_data or {}), "tool_calls": trace, "usage": usage}
        await db.commit()

    async def run(self, db: AsyncSession, request: AgentRequest) -> AgentResult:
        run = AgentRun(
            org_id=request.org_id,
            user_id=request.user_id,
            agent_type=request.agent_type,
            input=request.input,
            status=AgentRunStatus.RUNNING,
            extra_data=dict(request.metadata),
        )
        db.add(run)
        await db.commit()
        run_id = run.id

        ctx = ToolContext(org_id=request.org_id, user_id=request.user_id)
        trace: List[Dict[str, Any]] = []
        usage = _empty_usage()

        try:
            messages: List[Dict[str, Any]] = [
                {
                    "role": "system",
                    "content": build_system_prompt(
                        request.agent_type, request.org_id, request.user_id,
                        request.project_id, request.additional_context,
                    ),
                },
                {"role": "user", "content": request.input},
            ]

            response = await self._complete(messages, request, 0)
            _add_usage(usage, response)

            rounds = 0
            while response.tool_calls:
                rounds += 1
                if rounds > self.max_tool_rounds:
                    raise AgentError(f"Agent exceeded {self.max_tool_rounds} tool-call rounds")
                await self._run_tools(response, ctx, db, messages, trace)
                response = await self._complete(messages, request, rounds)
                _add_usage(usage, response)

            output = validate_output(request.agent_type, response.content)

            proposals = [
                AgentProposal(
                    org_id=request.org_id,
                    run_id=run.id,
                    proposed_by_id=request.user_id,
                    action=entry["result"].get("action", entry["name"]),
                    data=entry["result"].get("data", {}),
                    message=entry["result"].get("message"),
                )
                for entry in trace
                if isinstance(entry.get("result"), dict) and entry["result"].get("approval_required") is True
            ]
            approval_required = bool(proposals)
            db.add_all(proposals)

            run.output = output
            run.approval_required = approval_required
            run.status = AgentRunStatus.APPROVAL_REQUIRED if approval_required else AgentRunStatus.COMPLETED
            run.completed_at = utcnow()
            run.extra_data = {**(run.extra_data or {}), "tool_calls": trace, "usage": usage}
            await db.commit()

        except AgentError as e:
            logger.warning(f"Agent run {run_id} failed: {e}")
            await self._fail(db, run, str(e), trace, usage)
            return AgentResult(
                success=False, run_id=run_id, status=AgentRunStatus.FAILED,
                error=str(e), status_code=e.status_code, tool_calls=trace, usage=usage,
            )
        except Exception:
            logger.error(f"Agent run {run_id} crashed", exc_info=True)
            await self._fail(db, run, GENERIC_FAILURE, trace, usage)
            return AgentResult(
                success=False, run_id=run_id, status=AgentRunStatus.FAILED,
                error=GENERIC_FAILURE, status_code=500, tool_calls=trace, usage=usage,
            )

        logger.info(
            f"Agent run {run.id} ({request.agent_type.value}) → {run.status.value} "
            f"tools={len(trace)} tokens={usage['total_tokens']}"
        )
        return AgentResult(
            success=True,
            run_id=run.id,
            status=run.status,
            output=output,
            approval_required=approval_required,
            tool_calls=trace,
            proposals=[
                {"id": p.id, "action": p.action, "data": p.data, "message": p.message}
                for p in proposals
            ],
            usage=usage,
        )
