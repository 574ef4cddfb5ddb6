# agent/schemas.py — Structured output contracts per agent kind
# Validation is strict: wrong types are rejected rather than coerced.
import json
from typing import Optional, List, Literal, Dict, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import AgentOutputError
from models import AgentType

Priority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]


class _Output(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ============================================================
# INTAKE
# ============================================================

class TaskDraft(_Output):
    title: str
    description: Optional[str] = None
    candidate_project: Optional[str] = None
    due_date_guess: Optional[str] = None
    priority_guess: Priority
    assignee_guess: Optional[str] = None
    tags: Optional[List[str]] = None
    confidence: float = Field(..., ge=0, le=1)
    questions: Optional[List[str]] = None
    needs_clarification: bool


class IntakeOutput(_Output):
    task_drafts: List[TaskDraft]
    next_action: Literal["CREATE_TASKS", "ASK_CLARIFY", "PROPOSE_PROJECT"]
    summary: Optional[str] = None
    reasoning: str


# ============================================================
# PLANNER
# ============================================================

class PlannedTask(_Output):
    title: str
    description: Optional[str] = None
    estimated_hours: Optional[float] = None
    dependencies: Optional[List[str]] = None
    assignee_suggestion: Optional[str] = None
    priority: Priority


class Milestone(_Output):
    name: str
    description: Optional[str] = None
    target_date: Optional[str] = None
    tasks: List[PlannedTask]


class Risk(_Output):
    description: str
    mitigation: Optional[str] = None
    impact: Literal["LOW", "MEDIUM", "HIGH"]


class PlannerOutput(_Output):
    project_name: str
    project_description: str
    objectives: List[str]
    milestones: List[Milestone]
    risks: List[Risk]
    assumptions: List[str]
    total_estimated_hours: Optional[float] = None
    reasoning: str


# ============================================================
# OPS
# ============================================================

class FocusItem(_Output):
    task_id: Optional[str] = None
    task_title: str
    reason: str
    priority: Priority


class DelayItem(_Output):
    task_id: Optional[str] = None
    task_title: str
    days_overdue: float
    suggested_action: str


class BlockerItem(_Output):
    task_id: Optional[str] = None
    task_title: str
    blocker_reason: str
    suggested_action: str


class Recommendation(_Output):
    type: Literal["PRIORITIZE", "DELEGATE", "RESCHEDULE", "ESCALATE", "CLARIFY"]
    description: str
    related_task_ids: Optional[List[str]] = None


class WeeklyMetrics(_Output):
    tasks_completed_this_week: float
    tasks_in_progress: float
    tasks_overdue: float
    completion_rate: float


class OpsOutput(_Output):
    date: str
    summary: str
    today_focus: List[FocusItem]
    delays: List[DelayItem]
    blockers: List[BlockerItem]
    recommendations: List[Recommendation]
    metrics: Optional[WeeklyMetrics] = None


# ============================================================
# EMBED COPILOT
# ============================================================

class FilterSuggestion(_Output):
    status: Optional[List[str]] = None
    priority: Optional[List[str]] = None
    due_date_range: Optional[str] = None
    assignee: Optional[str] = None
    project_id: Optional[str] = None


class SuggestedWidget(_Output):
    name: str
    type: Literal["MY_TASKS", "PROJECT", "SAVED_FILTER"]
    view_mode: Literal["LIST", "BOARD", "MINI_DASHBOARD"]
    permissions: Literal["VIEW_ONLY", "OPERATIONS_ALLOWED"]
    filter_suggestion: Optional[FilterSuggestion] = None


class EmbedCopilotOutput(_Output):
    suggested_widget: SuggestedWidget
    explanation: str
    security_notes: List[str]
    next_steps: List[str]


OUTPUT_SCHEMAS: Dict[AgentType, Type[BaseModel]] = {
    AgentType.INTAKE: IntakeOutput,
    AgentType.PLANNER: PlannerOutput,
    AgentType.OPS: OpsOutput,
    AgentType.EMBED_COPILOT: EmbedCopilotOutput,
}


def output_json_schema(agent_type: AgentType) -> dict:
    return OUTPUT_SCHEMAS[agent_type].model_json_schema()


def validate_output(agent_type: AgentType, content: Optional[str]) -> dict:
    """Parse the model's final message and check it against the kind's schema."""
    if not content or not content.strip():
        raise AgentOutputError("Empty response from model")
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise AgentOutputError(f"Model returned invalid JSON: {e.msg}")
    if not isinstance(parsed, dict):
        raise AgentOutputError("Model output must be a JSON object")

    try:
        validated = OUTPUT_SCHEMAS[agent_type].model_validate(parsed, strict=True)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise AgentOutputError(f"Output does not match {agent_type.value} schema: {loc} {first.get('msg')}")
    return validated.model_dump(exclude_none=True)
