# models.py — Database models for TaskFlow
# - UUID string primary keys everywhere
# - Every tenant-scoped row carries org_id
# - Memberships are soft-deleted, audit/embed logs are append-only

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================
# ENUMS
# ============================================================

class MembershipRole(str, PyEnum):
    MEMBER = "MEMBER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class ProjectStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class TaskStatus(str, PyEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskPriority(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class EmbedType(str, PyEnum):
    IFRAME = "IFRAME"
    JS_WIDGET = "JS_WIDGET"


class EmbedTargetType(str, PyEnum):
    MY_TASKS = "MY_TASKS"
    PROJECT = "PROJECT"
    SAVED_FILTER = "SAVED_FILTER"


class EmbedViewMode(str, PyEnum):
    LIST = "LIST"
    BOARD = "BOARD"
    MINI_DASHBOARD = "MINI_DASHBOARD"


class EmbedPermission(str, PyEnum):
    VIEW_ONLY = "VIEW_ONLY"
    OPERATIONS_ALLOWED = "OPERATIONS_ALLOWED"


class AgentType(str, PyEnum):
    INTAKE = "INTAKE"
    PLANNER = "PLANNER"
    OPS = "OPS"
    EMBED_COPILOT = "EMBED_COPILOT"


class AgentRunStatus(str, PyEnum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class ProposalStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ============================================================
# TENANCY
# ============================================================

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship("Membership", back_populates="organization")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=True)
    image = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship("Membership", back_populates="user")


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(SQLEnum(MembershipRole), default=MembershipRole.MEMBER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    organization = relationship("Organization", back_populates="memberships")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_membership_org_user"),
        Index("idx_membership_user_active", "user_id", "deleted_at"),
    )


# ============================================================
# PROJECTS & TASKS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False, index=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, index=True)

    owner = relationship("User", foreign_keys=[owner_id])
    tasks = relationship("Task", back_populates="project")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.TODO, nullable=False, index=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False, index=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="tasks")
    assignee = relationship("User", foreign_keys=[assignee_id])

    __table_args__ = (
        Index("idx_task_org_status", "org_id", "status"),
    )


# ============================================================
# EMBEDS
# ============================================================

class EmbedWidget(Base):
    __tablename__ = "embed_widgets"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(SQLEnum(EmbedType), default=EmbedType.IFRAME, nullable=False)
    target_type = Column(SQLEnum(EmbedTargetType), nullable=False)
    target_id = Column(String, nullable=True)
    view_mode = Column(SQLEnum(EmbedViewMode), default=EmbedViewMode.LIST, nullable=False)
    permissions = Column(SQLEnum(EmbedPermission), default=EmbedPermission.VIEW_ONLY, nullable=False)
    allowed_domains = Column(JSON, nullable=False, default=list)  # exact host or "*.example.com"
    token = Column(String, unique=True, nullable=False)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    organization = relationship("Organization")
    logs = relationship("EmbedLog", back_populates="widget")


class EmbedLog(Base):
    __tablename__ = "embed_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    widget_id = Column(String, ForeignKey("embed_widgets.id"), nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    extra_data = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    widget = relationship("EmbedWidget", back_populates="logs")


# ============================================================
# AUDIT
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)  # CREATE / UPDATE / DELETE / ...
    resource = Column(String, nullable=False, index=True)  # TASK / PROJECT / EMBED / ...
    resource_id = Column(String, nullable=True, index=True)
    extra_data = Column("metadata", JSON, nullable=False, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User")


# ============================================================
# AGENT
# ============================================================

class AgentRun(Base):
    __tablename__ = "agent_runs"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    agent_type = Column(SQLEnum(AgentType), nullable=False, index=True)
    input = Column(Text, nullable=False)
    status = Column(SQLEnum(AgentRunStatus), default=AgentRunStatus.RUNNING, nullable=False, index=True)
    output = Column(JSON, nullable=True)
    approval_required = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text, nullable=True)
    extra_data = Column("metadata", JSON, nullable=False, default=dict)  # tool-call trace, usage
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    proposals = relationship("AgentProposal", back_populates="run")


class AgentProposal(Base):
    """A mutation proposed by an agent tool call, waiting for a human decision."""
    __tablename__ = "agent_proposals"

    id = Column(String, primary_key=True, default=new_uuid)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    run_id = Column(String, ForeignKey("agent_runs.id"), nullable=False, index=True)
    proposed_by_id = Column(String, ForeignKey("users.id"), nullable=False)
    action = Column(String, nullable=False)  # create_task / update_task / create_project
    data = Column(JSON, nullable=False, default=dict)
    message = Column(String, nullable=True)
    status = Column(SQLEnum(ProposalStatus), default=ProposalStatus.PENDING, nullable=False, index=True)
    reviewed_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    review_comment = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    result_resource_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    run = relationship("AgentRun", back_populates="proposals")
