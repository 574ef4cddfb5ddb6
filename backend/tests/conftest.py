# tests/conftest.py — Shared test fixtures
import os
import json
import copy
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("OPENAI_API_KEY", None)

from models import Base, User, Organization, Membership, MembershipRole, Project
from auth import AuthService
from database import get_db_session
from agent.client import ModelResponse, get_model_client
from main import app

TEST_PASSWORD = "TestPassword123!"
USAGE = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# TENANTS & USERS
# ============================================================

async def _create_org(db: AsyncSession, name: str, slug: str) -> Organization:
    org = Organization(name=name, slug=slug)
    db.add(org)
    await db.commit()
    await db.refresh(org)
    return org


async def create_member(
    db: AsyncSession, org: Organization, email: str, role: MembershipRole, name: Optional[str] = None,
) -> User:
    user = User(
        name=name or email.split("@")[0].title(),
        email=email,
        password_hash=AuthService.hash_password(TEST_PASSWORD),
    )
    db.add(user)
    await db.flush()
    db.add(Membership(org_id=org.id, user_id=user.id, role=role))
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_org(db_session):
    return await _create_org(db_session, "Acme", "acme")


@pytest_asyncio.fixture
async def other_org(db_session):
    return await _create_org(db_session, "Globex", "globex")


@pytest_asyncio.fixture
async def admin_user(db_session, test_org):
    return await create_member(db_session, test_org, "admin@acme.dev", MembershipRole.ADMIN, "Alice Admin")


@pytest_asyncio.fixture
async def manager_user(db_session, test_org):
    return await create_member(db_session, test_org, "manager@acme.dev", MembershipRole.MANAGER, "Mark Manager")


@pytest_asyncio.fixture
async def member_user(db_session, test_org):
    return await create_member(db_session, test_org, "member@acme.dev", MembershipRole.MEMBER, "Mia Member")


@pytest_asyncio.fixture
async def second_member(db_session, test_org):
    return await create_member(db_session, test_org, "bob@acme.dev", MembershipRole.MEMBER, "Bob Member")


@pytest_asyncio.fixture
async def outsider(db_session, other_org):
    """Admin of a different organization"""
    return await create_member(db_session, other_org, "admin@globex.dev", MembershipRole.ADMIN, "Olga Outsider")


@pytest_asyncio.fixture
async def test_project(db_session, test_org, manager_user):
    project = Project(org_id=test_org.id, name="Website Relaunch", owner_id=manager_user.id)
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


@pytest_asyncio.fixture
async def other_project(db_session, other_org, outsider):
    project = Project(org_id=other_org.id, name="Globex Secret", owner_id=outsider.id)
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    return {"Authorization": f"Bearer {AuthService.token_for(user)}"}


# ============================================================
# MODEL CLIENT FAKE
# ============================================================

def tool_call(name: str, arguments: Any, call_id: str = "call_1") -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {
            "name": name,
            "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
        },
    }


def tool_message(*calls: Dict[str, Any]) -> Dict[str, Any]:
    return {"role": "assistant", "content": None, "tool_calls": list(calls)}


def final_message(output: Any) -> Dict[str, Any]:
    content = output if isinstance(output, str) else json.dumps(output)
    return {"role": "assistant", "content": content}


class FakeModelClient:
    """Replays scripted assistant messages; an exception in the script is raised."""

    def __init__(self, script: Optional[List[Any]] = None):
        self.script = list(script or [])
        self.calls: List[List[Dict[str, Any]]] = []
        self.tools: List[Any] = []

    def queue(self, *items: Any) -> None:
        self.script.extend(items)

    async def complete(self, messages, tools=None) -> ModelResponse:
        self.calls.append(copy.deepcopy(messages))
        self.tools.append(tools)
        if not self.script:
            raise AssertionError("FakeModelClient script exhausted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return ModelResponse(message=item, usage=dict(USAGE))

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_model():
    fake = FakeModelClient()
    app.dependency_overrides[get_model_client] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_model_client, None)


INTAKE_OUTPUT = {
    "task_drafts": [
        {
            "title": "Finish the design",
            "due_date_guess": "Friday",
            "priority_guess": "MEDIUM",
            "assignee_guess": "Tanaka",
            "confidence": 0.7,
            "needs_clarification": True,
            "questions": ["Which Friday is meant?"],
        }
    ],
    "next_action": "CREATE_TASKS",
    "reasoning": "One action item with an ambiguous date",
}
