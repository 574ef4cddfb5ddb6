# agent/prompts.py — System prompts and context blocks per agent kind
import json
from typing import Optional

from models import AgentType, utcnow
from agent.schemas import output_json_schema

_RULES = """
## Rules
- Tenant boundary: never reference data outside org_id {org_id}.
- Always pass org_id {org_id} to tools that take one.
- Creating or changing data only produces a proposal; a human approves it.
- The final answer must be a single JSON object matching the schema below."""

AGENT_SYSTEM_PROMPTS = {
    AgentType.INTAKE: """You are the Intake Agent of a task management system.
You turn free text (meeting notes, chat logs, memos) into structured tasks.

## Responsibilities
1. Extract the action items from the text.
2. For each task estimate a concise title, an optional description, a due date
   when one is stated, a priority (LOW/MEDIUM/HIGH/URGENT), an assignee when
   a name is mentioned, and tags.
3. Set needs_clarification=true whenever something is uncertain or missing
   and list what to ask in questions. Do not invent missing facts.
4. Rate your confidence from 0 to 1.

Return task_drafts and next_action (CREATE_TASKS / ASK_CLARIFY / PROPOSE_PROJECT).""",

    AgentType.PLANNER: """You are the Planner Agent of a task management system.
You turn a goal into a project plan (work breakdown structure).

## Responsibilities
1. Analyse the goal and structure it as a project.
2. Define milestones and break them into tasks.
3. Identify dependencies between tasks.
4. List risks and assumptions.
5. Suggest assignees and estimate effort in hours.

Return project_name, milestones, risks and assumptions.""",

    AgentType.OPS: """You are the Ops Agent of a task management system.
You support daily operations by analysing task progress.

## Responsibilities
1. Prioritise what should be done today.
2. Detect delayed and stalled tasks.
3. Identify blockers.
4. Recommend concrete next actions.
5. Report weekly metrics (completed, in progress, overdue, completion rate).

Return summary, today_focus, delays, blockers and recommendations.""",

    AgentType.EMBED_COPILOT: """You are the Embed Copilot of a task management system.
You help users configure task widgets embedded in external sites.

## Responsibilities
1. Understand the request and propose a widget configuration.
2. Design a suitable filter.
3. Advise on security settings; recommend VIEW_ONLY by default and explain
   why domain restrictions matter.
4. Explain the next steps.

Return suggested_widget, explanation, security_notes and next_steps.""",
}


def build_agent_context(
    agent_type: AgentType,
    org_id: str,
    user_id: str,
    project_id: Optional[str] = None,
    current_date: Optional[str] = None,
    additional_context: Optional[str] = None,
) -> str:
    lines = [
        "## Context",
        f"- Organization ID: {org_id}",
        f"- User ID: {user_id}",
        f"- Current time: {current_date or utcnow().isoformat()}",
    ]
    if agent_type == AgentType.INTAKE:
        lines.append(f"- Project ID: {project_id or 'not specified'}")
    elif project_id:
        lines.append(f"- Project ID: {project_id}")
    if agent_type == AgentType.OPS:
        lines.append("- Scope: today's tasks and progress")
    if additional_context:
        label = "User request" if agent_type == AgentType.EMBED_COPILOT else "Additional context"
        lines.append(f"- {label}: {additional_context}")
    return "\n".join(lines)


def build_system_prompt(
    agent_type: AgentType,
    org_id: str,
    user_id: str,
    project_id: Optional[str] = None,
    additional_context: Optional[str] = None,
) -> str:
    schema = json.dumps(output_json_schema(agent_type), ensure_ascii=False)
    return "\n".join([
        AGENT_SYSTEM_PROMPTS[agent_type],
        _RULES.format(org_id=org_id),
        "",
        build_agent_context(agent_type, org_id, user_id, project_id, additional_context=additional_context),
        "",
        "## Output JSON schema",
        schema,
    ])
