# tests/test_audit.py — Audit recorder tests
import logging

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

from audit import audit_log, client_ip
from auth import AuthContext
from models import AuditLog, MembershipRole


def make_request(headers=None, client=("10.0.0.9", 5123), request_id=None) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/tasks",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "state": {},
    }
    request = Request(scope)
    if request_id:
        request.state.request_id = request_id
    return request


class TestClientIp:
    def test_forwarded_for_first_hop(self):
        req = make_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        assert client_ip(req) == "203.0.113.7"

    def test_real_ip(self):
        assert client_ip(make_request({"X-Real-IP": "198.51.100.2"})) == "198.51.100.2"

    def test_socket_peer(self):
        assert client_ip(make_request()) == "10.0.0.9"

    def test_no_request(self):
        assert client_ip(None) is None


class BrokenSession:
    """Session double whose commit always fails"""

    def __init__(self):
        self.rolled_back = False

    def add(self, obj):
        pass

    async def commit(self):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk full"))

    async def rollback(self):
        self.rolled_back = True


@pytest.mark.asyncio
class TestAuditLog:
    async def test_records_context_and_request(self, db_session, admin_user, test_org):
        ctx = AuthContext(admin_user.id, admin_user.email, admin_user.name, test_org.id, MembershipRole.ADMIN)
        req = make_request(
            {"X-Forwarded-For": "203.0.113.7", "User-Agent": "pytest-agent"},
            request_id="rid-42",
        )
        row = await audit_log(db_session, ctx, "UPDATE", "TASK", "task-1", {"changes": {"title": "x"}}, req)
        assert row is not None

        stored = (await db_session.execute(select(AuditLog))).scalar_one()
        assert stored.org_id == test_org.id
        assert stored.user_id == admin_user.id
        assert stored.action == "UPDATE"
        assert stored.resource == "TASK"
        assert stored.resource_id == "task-1"
        assert stored.extra_data == {"changes": {"title": "x"}}
        assert stored.ip_address == "203.0.113.7"
        assert stored.user_agent == "pytest-agent"
        assert stored.request_id == "rid-42"

    async def test_no_context_is_a_no_op(self, db_session):
        assert await audit_log(db_session, None, "CREATE", "TASK") is None
        assert (await db_session.execute(select(AuditLog))).first() is None

    async def test_write_failure_is_logged_not_raised(self, caplog):
        ctx = AuthContext("u1", "u1@example.com", None, "org-1", MembershipRole.MEMBER)
        session = BrokenSession()
        with caplog.at_level(logging.ERROR, logger="taskflow.audit"):
            result = await audit_log(session, ctx, "DELETE", "TASK", "t-9")
        assert result is None
        assert session.rolled_back
        assert "Audit write failed: DELETE TASK t-9" in caplog.text
