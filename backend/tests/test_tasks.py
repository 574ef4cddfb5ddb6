# tests/test_tasks.py — Task CRUD, ordering and ownership tests
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AuditLog, Task, TaskPriority, TaskStatus
from tests.conftest import get_auth_headers


async def create(client: AsyncClient, user, **body) -> dict:
    body.setdefault("title", "Untitled")
    res = await client.post("/api/v1/tasks", json=body, headers=get_auth_headers(user))
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestCreate:
    async def test_member_creates_task(self, client: AsyncClient, member_user, test_project, db_session):
        data = await create(
            client, member_user,
            title="Prepare slides", priority="HIGH",
            projectId=test_project.id, assigneeId=member_user.id, tags=["deck"],
        )
        assert data["status"] == "TODO"
        assert data["priority"] == "HIGH"
        assert data["project"]["name"] == "Website Relaunch"
        assert data["assignee"]["id"] == member_user.id
        assert data["tags"] == ["deck"]

        audit = (await db_session.execute(select(AuditLog).where(AuditLog.resource == "TASK"))).scalar_one()
        assert audit.action == "CREATE"
        assert audit.extra_data == {"title": "Prepare slides"}

    async def test_foreign_project_is_404(self, client: AsyncClient, member_user, other_project):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "Sneaky", "projectId": other_project.id},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 404
        assert res.json()["error"] == "Project not found"

    async def test_foreign_assignee_is_404(self, client: AsyncClient, member_user, outsider):
        res = await client.post(
            "/api/v1/tasks",
            json={"title": "Delegate", "assigneeId": outsider.id},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 404
        assert res.json()["error"] == "Assignee not found in organization"

    async def test_empty_title_is_400(self, client: AsyncClient, member_user):
        res = await client.post("/api/v1/tasks", json={"title": ""}, headers=get_auth_headers(member_user))
        assert res.status_code == 400


@pytest.mark.asyncio
class TestList:
    async def test_ordering_priority_then_due_date(self, client: AsyncClient, admin_user):
        soon = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        later = (datetime.now(timezone.utc) + timedelta(days=7)).isoformat()
        await create(client, admin_user, title="low", priority="LOW")
        await create(client, admin_user, title="high-later", priority="HIGH", dueDate=later)
        await create(client, admin_user, title="urgent", priority="URGENT")
        await create(client, admin_user, title="high-undated", priority="HIGH")
        await create(client, admin_user, title="high-soon", priority="HIGH", dueDate=soon)

        res = await client.get("/api/v1/tasks", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        page = res.json()
        assert page["total"] == 5
        assert [t["title"] for t in page["tasks"]] == [
            "urgent", "high-soon", "high-later", "high-undated", "low",
        ]

    async def test_filters_and_paging(self, client: AsyncClient, admin_user, test_project):
        await create(client, admin_user, title="in project", projectId=test_project.id)
        await create(client, admin_user, title="loose")
        headers = get_auth_headers(admin_user)

        res = await client.get(f"/api/v1/tasks?projectId={test_project.id}", headers=headers)
        assert [t["title"] for t in res.json()["tasks"]] == ["in project"]

        res = await client.get("/api/v1/tasks?limit=1&offset=1", headers=headers)
        page = res.json()
        assert page["total"] == 2
        assert len(page["tasks"]) == 1
        assert page["limit"] == 1 and page["offset"] == 1

    async def test_other_tenant_tasks_are_invisible(self, client: AsyncClient, admin_user, outsider):
        await create(client, outsider, title="globex only")
        res = await client.get("/api/v1/tasks", headers=get_auth_headers(admin_user))
        assert res.json()["total"] == 0


@pytest.mark.asyncio
class TestGet:
    async def test_cross_tenant_get_is_404(self, client: AsyncClient, admin_user, outsider):
        task = await create(client, outsider, title="globex only")
        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 404
        assert res.json()["error"] == "Task not found"


@pytest.mark.asyncio
class TestUpdate:
    async def test_completion_stamps_and_clears(self, client: AsyncClient, admin_user):
        task = await create(client, admin_user, title="Ship it")
        headers = get_auth_headers(admin_user)

        res = await client.patch(f"/api/v1/tasks/{task['id']}", json={"status": "COMPLETED"}, headers=headers)
        assert res.status_code == 200
        assert res.json()["completed_at"] is not None

        res = await client.patch(f"/api/v1/tasks/{task['id']}", json={"status": "IN_PROGRESS"}, headers=headers)
        assert res.json()["status"] == "IN_PROGRESS"
        assert res.json()["completed_at"] is None

    async def test_update_is_audited_with_changes(self, client: AsyncClient, admin_user, db_session):
        task = await create(client, admin_user, title="Old")
        await client.patch(
            f"/api/v1/tasks/{task['id']}", json={"title": "New"}, headers=get_auth_headers(admin_user),
        )
        audit = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "UPDATE", AuditLog.resource_id == task["id"])
        )).scalar_one()
        assert audit.extra_data == {"changes": {"title": "New"}}

    async def test_null_clears_due_date_but_not_title(self, client: AsyncClient, admin_user):
        task = await create(client, admin_user, title="Dated", dueDate="2030-01-01T00:00:00Z")
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"dueDate": None, "title": None},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json()["due_date"] is None
        assert res.json()["title"] == "Dated"

    async def test_member_can_update_own_assignment(self, client: AsyncClient, member_user, manager_user):
        task = await create(client, manager_user, title="Mine", assigneeId=member_user.id)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}", json={"status": "IN_PROGRESS"}, headers=get_auth_headers(member_user),
        )
        assert res.status_code == 200

    async def test_member_cannot_update_others_task(self, client: AsyncClient, member_user, second_member):
        task = await create(client, second_member, title="Bob's", assigneeId=second_member.id)
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}", json={"title": "Hijacked"}, headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403
        assert res.json()["error"] == "Insufficient permissions"

    async def test_cross_tenant_update_is_404(self, client: AsyncClient, admin_user, outsider):
        task = await create(client, outsider, title="globex only")
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}", json={"title": "x"}, headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 404


@pytest.mark.asyncio
class TestDelete:
    async def test_manager_deletes(self, client: AsyncClient, manager_user, member_user, db_session):
        task = await create(client, member_user, title="Throwaway")
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        assert res.json() == {"success": True, "task_id": task["id"]}
        assert await db_session.get(Task, task["id"]) is None

        audit = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "DELETE")
        )).scalar_one()
        assert audit.extra_data == {"title": "Throwaway"}

    async def test_member_cannot_delete_unowned(self, client: AsyncClient, member_user, manager_user):
        task = await create(client, manager_user, title="Manager's")
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(member_user))
        assert res.status_code == 403

    async def test_project_owner_member_can_delete(self, client: AsyncClient, db_session, test_org, member_user, admin_user):
        from models import Project
        project = Project(org_id=test_org.id, name="Mia's project", owner_id=member_user.id)
        db_session.add(project)
        await db_session.commit()

        task = await create(client, admin_user, title="In Mia's project", projectId=project.id)
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(member_user))
        assert res.status_code == 200
