# tests/test_agent_tools.py — Tenant isolation and approval gating of agent tools
import json

import pytest

from agent.tools import AGENT_TOOLS, TOOL_REGISTRY, ToolContext, ToolName, dispatch_tool
from errors import ToolError
from models import Project, Task


class StorageSentinel:
    """Session double that fails the test on any storage access"""

    def __getattr__(self, name):
        raise AssertionError(f"storage touched: {name}")


def test_catalog_lists_every_tool():
    names = [t["function"]["name"] for t in AGENT_TOOLS]
    assert names == [n.value for n in ToolName]
    assert all(t["type"] == "function" for t in AGENT_TOOLS)


def test_only_write_tools_are_mutating():
    mutating = {name for name, tool in TOOL_REGISTRY.items() if tool.mutating}
    assert mutating == {ToolName.CREATE_TASK, ToolName.UPDATE_TASK, ToolName.CREATE_PROJECT}


@pytest.mark.asyncio
class TestTenantIsolation:
    @pytest.mark.parametrize("name,args", [
        ("search_projects", {"query": "x", "org_id": "org-other"}),
        ("search_users", {"query": "x", "org_id": "org-other"}),
        ("create_task", {"org_id": "org-other", "title": "t", "priority": "LOW"}),
        ("update_task", {"task_id": "t1", "org_id": "org-other"}),
        ("create_project", {"org_id": "org-other", "name": "p", "owner_id": "u1"}),
    ])
    async def test_mismatch_rejected_before_storage(self, name, args):
        ctx = ToolContext(org_id="org-mine", user_id="u1")
        with pytest.raises(ToolError, match="Organization mismatch - access denied"):
            await dispatch_tool(name, json.dumps(args), ctx, StorageSentinel())

    async def test_search_projects_is_scoped_and_capped(self, db_session, test_org, other_org, manager_user, outsider):
        db_session.add_all(
            [Project(org_id=test_org.id, name=f"Launch {i}", owner_id=manager_user.id) for i in range(12)]
            + [Project(org_id=other_org.id, name="Launch secret", owner_id=outsider.id)]
        )
        await db_session.commit()

        ctx = ToolContext(org_id=test_org.id, user_id=manager_user.id)
        result = await dispatch_tool("search_projects", {"query": "LAUNCH", "org_id": test_org.id}, ctx, db_session)
        assert len(result) == 10
        assert all(not p["name"].endswith("secret") for p in result)

    async def test_search_users_matches_name_or_email(self, db_session, test_org, member_user, second_member, outsider):
        ctx = ToolContext(org_id=test_org.id, user_id=member_user.id)
        by_name = await dispatch_tool("search_users", {"query": "bob", "org_id": test_org.id}, ctx, db_session)
        assert [u["email"] for u in by_name] == ["bob@acme.dev"]

        by_email = await dispatch_tool("search_users", {"query": "admin@", "org_id": test_org.id}, ctx, db_session)
        assert by_email == []

    async def test_wildcards_in_query_match_literally(self, db_session, test_org, manager_user, member_user, second_member):
        db_session.add_all([
            Project(org_id=test_org.id, name="100% uptime", owner_id=manager_user.id),
            Project(org_id=test_org.id, name="Website", owner_id=manager_user.id),
        ])
        await db_session.commit()

        ctx = ToolContext(org_id=test_org.id, user_id=manager_user.id)
        projects = await dispatch_tool("search_projects", {"query": "%", "org_id": test_org.id}, ctx, db_session)
        assert [p["name"] for p in projects] == ["100% uptime"]

        users = await dispatch_tool("search_users", {"query": "_", "org_id": test_org.id}, ctx, db_session)
        assert users == []

    async def test_update_task_of_other_org_rejected(self, db_session, test_org, other_org, member_user):
        foreign = Task(org_id=other_org.id, title="Globex")
        db_session.add(foreign)
        await db_session.commit()

        ctx = ToolContext(org_id=test_org.id, user_id=member_user.id)
        with pytest.raises(ToolError, match="Task not found or access denied"):
            await dispatch_tool("update_task", {"task_id": foreign.id, "status": "COMPLETED"}, ctx, db_session)


@pytest.mark.asyncio
class TestProposals:
    async def test_create_task_only_proposes(self, db_session, test_org, member_user):
        ctx = ToolContext(org_id=test_org.id, user_id=member_user.id)
        result = await dispatch_tool(
            "create_task",
            {"org_id": test_org.id, "title": "Finish design", "priority": "HIGH", "due_date": "2030-05-03"},
            ctx, db_session,
        )
        assert result["approval_required"] is True
        assert result["action"] == "create_task"
        assert result["data"]["title"] == "Finish design"
        assert result["message"]

        from sqlalchemy import select
        assert (await db_session.execute(select(Task))).first() is None

    async def test_update_task_in_org_proposes(self, db_session, test_org, member_user):
        task = Task(org_id=test_org.id, title="Mine")
        db_session.add(task)
        await db_session.commit()

        ctx = ToolContext(org_id=test_org.id, user_id=member_user.id)
        result = await dispatch_tool("update_task", {"task_id": task.id, "status": "COMPLETED"}, ctx, db_session)
        assert result == {
            "approval_required": True,
            "action": "update_task",
            "data": {"task_id": task.id, "status": "COMPLETED"},
            "message": "Updating a task requires approval",
        }

    async def test_log_agent_note_is_plain_ack(self):
        ctx = ToolContext(org_id="o", user_id="u")
        result = await dispatch_tool("log_agent_note", {"note": "chose HIGH"}, ctx, StorageSentinel())
        assert result["success"] is True
        assert "approval_required" not in result


@pytest.mark.asyncio
class TestDispatchErrors:
    async def test_unknown_tool(self):
        with pytest.raises(ToolError, match="Unknown tool: delete_everything"):
            await dispatch_tool("delete_everything", "{}", ToolContext("o", "u"), StorageSentinel())

    async def test_malformed_json(self):
        with pytest.raises(ToolError, match="Invalid arguments for search_projects"):
            await dispatch_tool("search_projects", "{not json", ToolContext("o", "u"), StorageSentinel())

    async def test_extra_and_missing_fields(self):
        ctx = ToolContext("o", "u")
        with pytest.raises(ToolError):
            await dispatch_tool("search_projects", {"query": "x"}, ctx, StorageSentinel())
        with pytest.raises(ToolError):
            await dispatch_tool("log_agent_note", {"note": "n", "drop_table": True}, ctx, StorageSentinel())

    async def test_bad_priority(self):
        with pytest.raises(ToolError):
            await dispatch_tool(
                "create_task", {"org_id": "o", "title": "t", "priority": "CRITICAL"},
                ToolContext("o", "u"), StorageSentinel(),
            )
