# embed.py — Embed widget access gate
# - Widget lookup (inactive and expired widgets look exactly like missing ones)
# - Referer/Origin host check against the widget's allow-list (exact or "*.suffix")
# - frame-ancestors CSP derived from the allow-list, independent of the runtime check
# - Append-only EmbedLog entries for views and completion toggles
import os
import hmac
import logging
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Optional, List, Iterable
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import store
from models import (
    EmbedWidget, EmbedLog, EmbedTargetType, EmbedPermission, Task, TaskStatus,
    as_utc, utcnow,
)

logger = logging.getLogger("taskflow.embed")

EMBED_REQUIRE_REFERRER = os.getenv("EMBED_REQUIRE_REFERRER", "false").lower() == "true"
EMBED_TASK_LIMIT = 50


class GateOutcome(str, PyEnum):
    ALLOWED = "ALLOWED"
    NOT_FOUND = "NOT_FOUND"
    DENIED = "DENIED"


@dataclass
class GateDecision:
    outcome: GateOutcome
    widget: Optional[EmbedWidget] = None
    host: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == GateOutcome.ALLOWED


class UnsupportedTargetError(Exception):
    """The widget's target type has no task resolution."""


class EmbedWriteDenied(Exception):
    """Write attempted through a widget that does not permit it."""


# ============================================================
# DOMAIN MATCHING
# ============================================================

def extract_host(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


def domain_matches(pattern: str, host: str) -> bool:
    pattern = pattern.strip().lower()
    host = host.lower()
    if pattern.startswith("*."):
        suffix = pattern[2:]
        return host == suffix or host.endswith("." + suffix)
    return host == pattern


def is_host_allowed(allowed_domains: Iterable[str], host: str) -> bool:
    return any(domain_matches(entry, host) for entry in allowed_domains)


def frame_ancestors(widget: Optional[EmbedWidget]) -> str:
    domains = list(widget.allowed_domains or []) if widget is not None else []
    sources = " ".join(domains) if domains else "'self'"
    return f"frame-ancestors {sources}"


def check_domain(
    widget: EmbedWidget,
    referer: Optional[str],
    origin: Optional[str],
    require_referrer: bool = EMBED_REQUIRE_REFERRER,
) -> GateDecision:
    allowed_domains = list(widget.allowed_domains or [])
    if not allowed_domains:
        return GateDecision(GateOutcome.ALLOWED, widget)

    if not referer and not origin:
        # Nothing to check against; strict deployments refuse.
        if require_referrer:
            return GateDecision(GateOutcome.DENIED, widget)
        return GateDecision(GateOutcome.ALLOWED, widget)

    host = extract_host(referer) if referer else extract_host(origin)
    if host and is_host_allowed(allowed_domains, host):
        return GateDecision(GateOutcome.ALLOWED, widget, host)
    return GateDecision(GateOutcome.DENIED, widget, host)


# ============================================================
# WIDGET LOOKUP
# ============================================================

async def get_widget(db: AsyncSession, widget_id: str) -> Optional[EmbedWidget]:
    stmt = (
        select(EmbedWidget)
        .where(EmbedWidget.id == widget_id)
        .options(selectinload(EmbedWidget.organization))
    )
    return (await db.execute(stmt)).scalar_one_or_none()


def is_live(widget: Optional[EmbedWidget]) -> bool:
    if widget is None or not widget.is_active:
        return False
    expires_at = as_utc(widget.token_expires_at)
    if expires_at is not None and expires_at <= utcnow():
        return False
    return True


async def evaluate_access(
    db: AsyncSession,
    widget_id: str,
    referer: Optional[str],
    origin: Optional[str],
    require_referrer: bool = EMBED_REQUIRE_REFERRER,
) -> GateDecision:
    widget = await get_widget(db, widget_id)
    if not is_live(widget):
        return GateDecision(GateOutcome.NOT_FOUND)

    decision = check_domain(widget, referer, origin, require_referrer)
    if not decision.allowed:
        logger.warning(
            f"Embed {widget.id} refused for host={decision.host!r} "
            f"(allowed={widget.allowed_domains})"
        )
    return decision


# ============================================================
# LOGGING & TASKS
# ============================================================

async def record_event(
    db: AsyncSession,
    widget: EmbedWidget,
    action: str,
    referer: Optional[str],
    origin: Optional[str],
    user_agent: Optional[str],
    **extra,
) -> EmbedLog:
    entry = EmbedLog(
        widget_id=widget.id,
        action=action,
        extra_data={"referer": referer, "origin": origin, "user_agent": user_agent, **extra},
    )
    db.add(entry)
    await db.commit()
    return entry


def widget_task_filters(widget: EmbedWidget) -> list:
    target = EmbedTargetType(widget.target_type)
    if target == EmbedTargetType.SAVED_FILTER:
        raise UnsupportedTargetError("Saved filter widgets are not supported yet")

    clauses = [Task.org_id == widget.org_id]
    if target == EmbedTargetType.PROJECT:
        if not widget.target_id:
            # A project widget without a project shows nothing
            clauses.append(Task.id.is_(None))
        else:
            clauses.append(Task.project_id == widget.target_id)
    # MY_TASKS: no viewer identity inside an embed, so every org task
    return clauses


async def resolve_widget_tasks(db: AsyncSession, widget: EmbedWidget) -> List[Task]:
    stmt = (
        select(Task)
        .where(*widget_task_filters(widget))
        .options(selectinload(Task.assignee), selectinload(Task.project))
        .order_by(*store.TASK_ORDER)
        .limit(EMBED_TASK_LIMIT)
    )
    return list((await db.execute(stmt)).scalars().all())


def token_matches(widget: EmbedWidget, token: Optional[str]) -> bool:
    if not token:
        return False
    return hmac.compare_digest(widget.token.encode("utf-8"), token.encode("utf-8"))


async def toggle_task(
    db: AsyncSession,
    widget: EmbedWidget,
    task_id: str,
    completed: bool,
    token: Optional[str],
) -> Optional[Task]:
    """Flip a task between TODO and COMPLETED through a widget.

    Returns None when the task is outside the widget's task set.
    """
    if EmbedPermission(widget.permissions) != EmbedPermission.OPERATIONS_ALLOWED:
        raise EmbedWriteDenied("This widget is read-only")
    if not token_matches(widget, token):
        raise EmbedWriteDenied("Invalid embed token")

    stmt = select(Task).where(Task.id == task_id, *widget_task_filters(widget))
    task = (await db.execute(stmt)).scalar_one_or_none()
    if task is None:
        return None

    new_status = TaskStatus.COMPLETED if completed else TaskStatus.TODO
    changed, completed_at = store.completion_transition(TaskStatus(task.status), new_status)
    if changed:
        task.completed_at = completed_at
    task.status = new_status
    await db.commit()
    return task
