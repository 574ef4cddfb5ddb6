# routers/embed_public.py — Unauthenticated iframe surface
# GET  /embed/{widget_id}                        rendered widget page
# PATCH /api/v1/embed/{widget_id}/tasks/{id}     completion toggle (token-bearing page only)
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import embed
import embed_render
from database import get_db_session
from models import TaskStatus

router = APIRouter(tags=["Embed"])


class EmbedToggle(BaseModel):
    completed: bool


def _html(body: str, status_code: int, csp: str) -> HTMLResponse:
    response = HTMLResponse(content=body, status_code=status_code)
    response.headers["Content-Security-Policy"] = csp
    response.headers["Cache-Control"] = "no-store"
    return response


@router.get("/embed/{widget_id}", response_class=HTMLResponse)
async def embed_page(
    widget_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Render a widget for a third-party page, after the origin check"""
    referer = request.headers.get("referer")
    origin = request.headers.get("origin")

    decision = await embed.evaluate_access(db, widget_id, referer, origin)
    # The CSP is derived from the stored allow-list regardless of the outcome
    csp = embed.frame_ancestors(decision.widget or await embed.get_widget(db, widget_id))

    if decision.outcome == embed.GateOutcome.NOT_FOUND:
        return _html(embed_render.render_not_found(), 404, csp)
    if decision.outcome == embed.GateOutcome.DENIED:
        return _html(embed_render.render_denied(), 403, csp)

    widget = decision.widget
    await embed.record_event(
        db, widget, "VIEW", referer, origin, request.headers.get("user-agent"),
    )

    try:
        tasks = await embed.resolve_widget_tasks(db, widget)
    except embed.UnsupportedTargetError:
        return _html(embed_render.render_unsupported(), 501, csp)

    toggle_endpoint = f"/api/v1/embed/{widget.id}/tasks/"
    return _html(embed_render.render_widget(widget, tasks, toggle_endpoint), 200, csp)


@router.patch("/api/v1/embed/{widget_id}/tasks/{task_id}")
async def embed_toggle_task(
    widget_id: str,
    task_id: str,
    data: EmbedToggle,
    request: Request,
    x_embed_token: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
):
    widget = await embed.get_widget(db, widget_id)
    if not embed.is_live(widget):
        raise HTTPException(status_code=404, detail="Widget not found")

    try:
        task = await embed.toggle_task(db, widget, task_id, data.completed, x_embed_token)
    except embed.EmbedWriteDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except embed.UnsupportedTargetError as e:
        raise HTTPException(status_code=501, detail=str(e))

    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    await embed.record_event(
        db, widget, "TOGGLE_TASK",
        request.headers.get("referer"), request.headers.get("origin"),
        request.headers.get("user-agent"),
        task_id=task.id, completed=data.completed,
    )
    return {
        "id": task.id,
        "status": TaskStatus(task.status).value,
        "completed_at": task.completed_at,
    }
