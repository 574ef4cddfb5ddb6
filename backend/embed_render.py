# embed_render.py — HTML for the iframe-embeddable task widget
# Jinja2 with autoescaping; all task text is user-supplied.
from typing import List, Dict, Any

from jinja2 import Environment, DictLoader, select_autoescape

from models import (
    EmbedWidget, EmbedViewMode, EmbedPermission, Task, TaskStatus, TaskPriority,
    as_utc, utcnow,
)

PRIORITY_COLORS = {
    TaskPriority.URGENT.value: "#ef4444",
    TaskPriority.HIGH.value: "#f97316",
    TaskPriority.MEDIUM.value: "#f59e0b",
    TaskPriority.LOW.value: "#10b981",
}

BOARD_COLUMNS = [
    {"id": "TODO", "label": "To do", "color": "#64748b", "statuses": ["TODO", "BLOCKED"]},
    {"id": "IN_PROGRESS", "label": "In progress", "color": "#3b82f6", "statuses": ["IN_PROGRESS"]},
    {"id": "COMPLETED", "label": "Done", "color": "#10b981", "statuses": ["COMPLETED"]},
]

_BASE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{% block title %}TaskFlow Embed{% endblock %}</title>
<style>
  body { margin: 0; font: 14px/1.4 system-ui, sans-serif; background: #0f1115; color: #e5e7eb; }
  header { display: flex; justify-content: space-between; padding: 12px 16px; border-bottom: 1px solid #262a33; }
  h1 { font-size: 14px; margin: 0; }
  .muted { color: #8b93a1; font-size: 12px; }
  .row { display: flex; align-items: center; gap: 12px; padding: 10px 16px; border-bottom: 1px solid #1c2028; }
  .title { flex: 1; min-width: 0; overflow: hidden; text-overflow: ellipsis; white-space: nowrap; }
  .done .title { text-decoration: line-through; color: #8b93a1; }
  .dot { width: 8px; height: 8px; border-radius: 50%; flex: none; }
  .toggle { background: none; border: 0; color: inherit; font-size: 16px; padding: 0; }
  .toggle[disabled] { cursor: default; }
  .toggle:not([disabled]) { cursor: pointer; }
  .board { display: grid; grid-template-columns: repeat(3, 1fr); gap: 12px; padding: 16px; }
  .card { padding: 10px; margin-bottom: 8px; background: #171a21; border: 1px solid #262a33; border-radius: 8px; }
  .stats { display: grid; grid-template-columns: 1fr 1fr; gap: 12px; padding: 16px; }
  .stat { padding: 12px; border-radius: 8px; background: #171a21; }
  .stat b { display: block; font-size: 20px; }
  .bar { height: 8px; margin: 0 16px; background: #262a33; border-radius: 4px; overflow: hidden; }
  .bar span { display: block; height: 100%; background: #6366f1; }
  footer { position: fixed; bottom: 0; left: 0; right: 0; display: flex; justify-content: space-between;
           padding: 8px 16px; border-top: 1px solid #262a33; background: #0f1115; }
  .center { display: flex; align-items: center; justify-content: center; min-height: 100vh; text-align: center; }
</style>
</head>
<body>
{% block body %}{% endblock %}
</body>
</html>
"""

_MACROS = """
{% macro priority_dot(priority) -%}
<span class="dot" title="{{ priority }}" style="background: {{ colors.get(priority, '#6b7280') }}"></span>
{%- endmacro %}

{% macro toggle_button(task, can_edit) -%}
<button class="toggle" data-task-id="{{ task.id }}" data-status="{{ task.status }}"
        {% if not can_edit %}disabled{% endif %}>{% if task.status == 'COMPLETED' %}&#10003;{% else %}&#9675;{% endif %}</button>
{%- endmacro %}
"""

_TOGGLE_SCRIPT = """
{% if can_edit %}
<script>
(function () {
  var config = {{ toggle_config | tojson }};
  function paint(button, status) {
    button.dataset.status = status;
    button.innerHTML = status === "COMPLETED" ? "&#10003;" : "&#9675;";
    var row = button.closest("[data-row]");
    if (row) { row.classList.toggle("done", status === "COMPLETED"); }
  }
  document.querySelectorAll("button.toggle").forEach(function (button) {
    button.addEventListener("click", function () {
      var previous = button.dataset.status;
      var next = previous === "COMPLETED" ? "TODO" : "COMPLETED";
      paint(button, next);
      fetch(config.endpoint + button.dataset.taskId, {
        method: "PATCH",
        headers: {"Content-Type": "application/json", "X-Embed-Token": config.token},
        body: JSON.stringify({completed: next === "COMPLETED"})
      }).then(function (resp) {
        if (!resp.ok) { paint(button, previous); }
      }).catch(function () { paint(button, previous); });
    });
  });
})();
</script>
{% endif %}
"""

_LIST = """{% extends "base.html" %}
{% import "macros.html" as m with context %}
{% block title %}{{ widget.name }}{% endblock %}
{% block body %}
<header><h1>{{ widget.name }}</h1><span class="muted">{{ org_name }}</span></header>
{% for task in tasks %}
<div class="row{% if task.status == 'COMPLETED' %} done{% endif %}" data-row>
  {{ m.toggle_button(task, can_edit) }}
  <div class="title">{{ task.title }}
    {% if task.project_name %}<div class="muted">{{ task.project_name }}</div>{% endif %}
  </div>
  {% if task.due_label %}<span class="muted">{{ task.due_label }}</span>{% endif %}
  {{ m.priority_dot(task.priority) }}
</div>
{% else %}
<div class="center" style="min-height: 200px"><p class="muted">No tasks</p></div>
{% endfor %}
<footer class="muted"><span>Powered by TaskFlow</span><span>{{ tasks | length }} tasks</span></footer>
""" + _TOGGLE_SCRIPT + """
{% endblock %}
"""

_BOARD = """{% extends "base.html" %}
{% import "macros.html" as m with context %}
{% block title %}{{ widget.name }}{% endblock %}
{% block body %}
<header><h1>{{ widget.name }}</h1><span class="muted">{{ org_name }}</span></header>
<div class="board">
{% for column in columns %}
  <section>
    <div class="muted"><span class="dot" style="display: inline-block; background: {{ column.color }}"></span>
      {{ column.label }} {{ column.tasks | length }}</div>
    {% for task in column.tasks %}
    <div class="card{% if task.status == 'COMPLETED' %} done{% endif %}" data-row>
      <div class="title">{{ task.title }}</div>
      <div class="row" style="padding: 4px 0 0; border: 0">
        {{ m.toggle_button(task, can_edit) }}
        <span class="muted" style="flex: 1">{{ task.due_label or "" }}</span>
        {{ m.priority_dot(task.priority) }}
      </div>
    </div>
    {% endfor %}
  </section>
{% endfor %}
</div>
<footer class="muted"><span>Powered by TaskFlow</span><span></span></footer>
""" + _TOGGLE_SCRIPT + """
{% endblock %}
"""

_DASHBOARD = """{% extends "base.html" %}
{% import "macros.html" as m with context %}
{% block title %}{{ widget.name }}{% endblock %}
{% block body %}
<header><h1>{{ widget.name }}</h1><span class="muted">{{ org_name }}</span></header>
<div class="stats">
  <div class="stat"><b style="color: #34d399">{{ stats.completed }}</b><span class="muted">Completed</span></div>
  <div class="stat"><b style="color: #60a5fa">{{ stats.in_progress }}</b><span class="muted">In progress</span></div>
  <div class="stat"><b style="color: #f87171">{{ stats.overdue }}</b><span class="muted">Overdue</span></div>
  <div class="stat"><b style="color: #c084fc">{{ stats.completion_rate }}%</b><span class="muted">Completion rate</span></div>
</div>
<div class="muted" style="display: flex; justify-content: space-between; padding: 0 16px 4px">
  <span>Overall progress</span><span>{{ stats.completed }}/{{ stats.total }}</span>
</div>
<div class="bar"><span style="width: {{ stats.completion_rate }}%"></span></div>
<h2 class="muted" style="padding: 16px 16px 0">Recent tasks</h2>
{% for task in tasks[:5] %}
<div class="row{% if task.status == 'COMPLETED' %} done{% endif %}" data-row>
  {{ m.toggle_button(task, can_edit) }}
  <div class="title">{{ task.title }}</div>
  {{ m.priority_dot(task.priority) }}
</div>
{% endfor %}
<footer class="muted"><span>Powered by TaskFlow</span><span></span></footer>
""" + _TOGGLE_SCRIPT + """
{% endblock %}
"""

_MESSAGE = """{% extends "base.html" %}
{% block body %}
<div class="center"><div>
  <h1 style="color: {{ color }}">{{ heading }}</h1>
  <p class="muted">{{ message }}</p>
</div></div>
{% endblock %}
"""

env = Environment(
    loader=DictLoader({
        "base.html": _BASE,
        "macros.html": _MACROS,
        "list.html": _LIST,
        "board.html": _BOARD,
        "dashboard.html": _DASHBOARD,
        "message.html": _MESSAGE,
    }),
    autoescape=select_autoescape(default_for_string=True, default=True),
)
env.globals["colors"] = PRIORITY_COLORS

VIEW_TEMPLATES = {
    EmbedViewMode.LIST: "list.html",
    EmbedViewMode.BOARD: "board.html",
    EmbedViewMode.MINI_DASHBOARD: "dashboard.html",
}


def _task_view(task: Task) -> Dict[str, Any]:
    due = as_utc(task.due_date)
    return {
        "id": task.id,
        "title": task.title,
        "status": TaskStatus(task.status).value,
        "priority": TaskPriority(task.priority).value,
        "project_name": task.project.name if task.project else None,
        "due": due,
        "due_label": due.strftime("%b %d").replace(" 0", " ") if due else None,
    }


def dashboard_stats(tasks: List[Dict[str, Any]]) -> Dict[str, int]:
    now = utcnow()
    total = len(tasks)
    completed = sum(1 for t in tasks if t["status"] == TaskStatus.COMPLETED.value)
    return {
        "total": total,
        "completed": completed,
        "in_progress": sum(1 for t in tasks if t["status"] == TaskStatus.IN_PROGRESS.value),
        "overdue": sum(
            1 for t in tasks
            if t["due"] is not None and t["due"] < now and t["status"] != TaskStatus.COMPLETED.value
        ),
        "completion_rate": round(completed * 100 / total) if total else 0,
    }


def render_widget(widget: EmbedWidget, tasks: List[Task], toggle_endpoint: str) -> str:
    views = [_task_view(t) for t in tasks]
    can_edit = EmbedPermission(widget.permissions) == EmbedPermission.OPERATIONS_ALLOWED
    context = {
        "widget": widget,
        "org_name": widget.organization.name if widget.organization else "",
        "tasks": views,
        "can_edit": can_edit,
        "toggle_config": {
            "endpoint": toggle_endpoint,
            "token": widget.token if can_edit else None,
        },
    }

    view_mode = EmbedViewMode(widget.view_mode)
    if view_mode == EmbedViewMode.BOARD:
        context["columns"] = [
            dict(column, tasks=[t for t in views if t["status"] in column["statuses"]])
            for column in BOARD_COLUMNS
        ]
    elif view_mode == EmbedViewMode.MINI_DASHBOARD:
        context["stats"] = dashboard_stats(views)

    return env.get_template(VIEW_TEMPLATES[view_mode]).render(**context)


def render_message(heading: str, message: str, color: str = "#e5e7eb") -> str:
    return env.get_template("message.html").render(heading=heading, message=message, color=color)


def render_denied() -> str:
    return render_message(
        "Access denied",
        "Embedding this widget from this domain is not allowed.",
        color="#ef4444",
    )


def render_not_found() -> str:
    return render_message("Widget not found", "This widget does not exist or is no longer available.")


def render_unsupported() -> str:
    return render_message("Not supported", "This widget type is not supported yet.")
