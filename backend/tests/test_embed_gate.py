# tests/test_embed_gate.py — Embed access gate and widget page tests
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

import embed
import embed_render
from models import (
    EmbedLog, EmbedWidget, EmbedTargetType, EmbedViewMode, EmbedPermission,
    Task, TaskPriority, TaskStatus, utcnow,
)


def make_widget(org, **overrides) -> EmbedWidget:
    fields = dict(
        org_id=org.id,
        name="Team board",
        target_type=EmbedTargetType.MY_TASKS,
        view_mode=EmbedViewMode.LIST,
        permissions=EmbedPermission.VIEW_ONLY,
        allowed_domains=["example.com", "*.partner.io"],
        token="a" * 64,
        is_active=True,
    )
    fields.update(overrides)
    return EmbedWidget(**fields)


async def save(db, *objs):
    db.add_all(objs)
    await db.commit()
    return objs[0]


class TestDomainMatching:
    @pytest.mark.parametrize("pattern,host,expected", [
        ("example.com", "example.com", True),
        ("example.com", "EXAMPLE.com", True),
        ("example.com", "www.example.com", False),
        ("*.example.com", "app.example.com", True),
        ("*.example.com", "a.b.example.com", True),
        ("*.example.com", "example.com", True),
        ("*.example.com", "badexample.com", False),
        ("*.example.com", "example.com.evil.net", False),
    ])
    def test_domain_matches(self, pattern, host, expected):
        assert embed.domain_matches(pattern, host) is expected

    def test_extract_host(self):
        assert embed.extract_host("https://app.example.com:8443/page?x=1") == "app.example.com"
        assert embed.extract_host("not a url") is None
        assert embed.extract_host(None) is None

    def test_check_domain_prefers_referer(self):
        widget = EmbedWidget(allowed_domains=["example.com"])
        decision = embed.check_domain(widget, "https://evil.net/x", "https://example.com")
        assert decision.outcome == embed.GateOutcome.DENIED
        assert decision.host == "evil.net"

    def test_check_domain_falls_back_to_origin(self):
        widget = EmbedWidget(allowed_domains=["example.com"])
        assert embed.check_domain(widget, None, "https://example.com").allowed

    def test_empty_allow_list_allows_any(self):
        widget = EmbedWidget(allowed_domains=[])
        assert embed.check_domain(widget, "https://anything.net", None).allowed

    def test_missing_headers_depend_on_strict_mode(self):
        widget = EmbedWidget(allowed_domains=["example.com"])
        assert embed.check_domain(widget, None, None, require_referrer=False).allowed
        assert not embed.check_domain(widget, None, None, require_referrer=True).allowed

    def test_unparseable_header_is_denied(self):
        widget = EmbedWidget(allowed_domains=["example.com"])
        assert not embed.check_domain(widget, "garbage", None).allowed

    def test_frame_ancestors(self):
        assert embed.frame_ancestors(EmbedWidget(allowed_domains=["example.com", "*.partner.io"])) == (
            "frame-ancestors example.com *.partner.io"
        )
        assert embed.frame_ancestors(EmbedWidget(allowed_domains=[])) == "frame-ancestors 'self'"
        assert embed.frame_ancestors(None) == "frame-ancestors 'self'"


@pytest.mark.asyncio
class TestLiveness:
    async def test_inactive_and_expired_look_missing(self, db_session, test_org):
        inactive = await save(db_session, make_widget(test_org, is_active=False, token="b" * 64))
        expired = await save(db_session, make_widget(
            test_org, token="c" * 64, token_expires_at=utcnow() - timedelta(minutes=1),
        ))
        for widget in (inactive, expired):
            decision = await embed.evaluate_access(db_session, widget.id, "https://example.com", None)
            assert decision.outcome == embed.GateOutcome.NOT_FOUND

        unknown = await embed.evaluate_access(db_session, "does-not-exist", None, None)
        assert unknown.outcome == embed.GateOutcome.NOT_FOUND

    async def test_future_expiry_is_live(self, db_session, test_org):
        widget = await save(db_session, make_widget(test_org, token_expires_at=utcnow() + timedelta(days=1)))
        decision = await embed.evaluate_access(db_session, widget.id, "https://example.com/", None)
        assert decision.allowed


@pytest.mark.asyncio
class TestEmbedPage:
    async def test_allowed_page_renders_and_logs_view(self, client: AsyncClient, db_session, test_org):
        widget = await save(db_session, make_widget(test_org))
        await save(db_session, Task(org_id=test_org.id, title="<b>Escape me</b>", priority=TaskPriority.HIGH))

        res = await client.get(
            f"/embed/{widget.id}",
            headers={"Referer": "https://app.partner.io/dashboard", "User-Agent": "iframe-test"},
        )
        assert res.status_code == 200
        assert "text/html" in res.headers["content-type"]
        assert res.headers["Content-Security-Policy"] == "frame-ancestors example.com *.partner.io"
        assert "X-Frame-Options" not in res.headers
        assert "&lt;b&gt;Escape me&lt;/b&gt;" in res.text
        assert "<b>Escape me</b>" not in res.text
        # read-only widgets never ship the token
        assert widget.token not in res.text

        log = (await db_session.execute(select(EmbedLog))).scalar_one()
        assert log.action == "VIEW"
        assert log.extra_data["referer"] == "https://app.partner.io/dashboard"
        assert log.extra_data["user_agent"] == "iframe-test"

    async def test_foreign_domain_is_403_without_log(self, client: AsyncClient, db_session, test_org):
        widget = await save(db_session, make_widget(test_org))
        res = await client.get(f"/embed/{widget.id}", headers={"Referer": "https://evil.net/"})
        assert res.status_code == 403
        assert "Access denied" in res.text
        assert res.headers["Content-Security-Policy"] == "frame-ancestors example.com *.partner.io"
        assert (await db_session.execute(select(EmbedLog))).first() is None

    async def test_unknown_widget_is_404(self, client: AsyncClient):
        res = await client.get("/embed/missing")
        assert res.status_code == 404
        assert "Widget not found" in res.text
        assert res.headers["Content-Security-Policy"] == "frame-ancestors 'self'"

    async def test_api_responses_keep_frame_denial(self, client: AsyncClient):
        res = await client.get("/")
        assert res.headers["X-Frame-Options"] == "DENY"

    async def test_project_widget_shows_only_project_tasks(self, client: AsyncClient, db_session, test_org, test_project):
        widget = await save(db_session, make_widget(
            test_org, target_type=EmbedTargetType.PROJECT, target_id=test_project.id, allowed_domains=[],
        ))
        await save(
            db_session,
            Task(org_id=test_org.id, project_id=test_project.id, title="Inside project"),
            Task(org_id=test_org.id, title="Outside project"),
        )
        res = await client.get(f"/embed/{widget.id}")
        assert res.status_code == 200
        assert "Inside project" in res.text
        assert "Outside project" not in res.text

    async def test_my_tasks_widget_is_org_scoped(self, client: AsyncClient, db_session, test_org, other_org):
        widget = await save(db_session, make_widget(test_org, allowed_domains=[]))
        await save(db_session, Task(org_id=other_org.id, title="Globex task"))
        res = await client.get(f"/embed/{widget.id}")
        assert "Globex task" not in res.text

    async def test_saved_filter_is_501(self, client: AsyncClient, db_session, test_org):
        widget = await save(db_session, make_widget(
            test_org, target_type=EmbedTargetType.SAVED_FILTER, allowed_domains=[],
        ))
        res = await client.get(f"/embed/{widget.id}")
        assert res.status_code == 501


class TestRender:
    def test_dashboard_stats(self):
        past = utcnow() - timedelta(days=2)
        views = [
            {"status": "COMPLETED", "due": past},
            {"status": "IN_PROGRESS", "due": past},
            {"status": "TODO", "due": None},
            {"status": "TODO", "due": utcnow() + timedelta(days=2)},
        ]
        assert embed_render.dashboard_stats(views) == {
            "total": 4, "completed": 1, "in_progress": 1, "overdue": 1, "completion_rate": 25,
        }

    def test_dashboard_stats_empty(self):
        assert embed_render.dashboard_stats([])["completion_rate"] == 0

    def test_operations_widget_ships_token_and_endpoint(self):
        widget = EmbedWidget(
            id="w1", name="Ops", view_mode=EmbedViewMode.BOARD,
            permissions=EmbedPermission.OPERATIONS_ALLOWED, token="t" * 64,
        )
        task = Task(id="t1", title="Card", status=TaskStatus.IN_PROGRESS, priority=TaskPriority.LOW)
        html = embed_render.render_widget(widget, [task], "/api/v1/embed/w1/tasks/")
        assert "t" * 64 in html
        assert "/api/v1/embed/w1/tasks/" in html
        assert "In progress" in html
        assert 'data-task-id="t1"' in html
