from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from tasktrack.domain.state_machine import TaskStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def new_id() -> str:
    return str(uuid4())


class Role(StrEnum):
    SUPER_ADMIN = "SuperAdmin"
    MANAGER = "Manager"
    USER = "User"


LEADER_ROLES = (Role.SUPER_ADMIN, Role.MANAGER)


class SubscriptionPlan(StrEnum):
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class CompanySize(StrEnum):
    XS = "1-10 Employees"
    S = "11-50 Employees"
    M = "51-200 Employees"
    L = "201-500 Employees"
    XL = "500+ Employees"


class Industry(StrEnum):
    HOSPITALITY = "Hospitality"
    TECHNOLOGY = "Technology"
    HEALTHCARE = "Healthcare"
    FINANCE = "Finance"
    EDUCATION = "Education"
    RETAIL = "Retail"
    MANUFACTURING = "Manufacturing"
    CONSULTING = "Consulting"
    OTHER = "Other"


class TaskType(StrEnum):
    ASSIGNED = "AssignedTask"
    PROJECT = "ProjectTask"


class TaskPriority(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class NotificationType(StrEnum):
    TASK_ASSIGNMENT = "TaskAssignment"
    TASK_UPDATE = "TaskUpdate"
    TASK_ACTIVITY = "TaskActivity"


class AttachmentType(StrEnum):
    IMAGE = "image"
    VIDEO = "video"
    PDF = "pdf"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=new_id, primary_key=True)
    event_type: str = Field(index=True)
    company_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Company(SQLModel, table=True):
    __tablename__ = "companies"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    phone: str = Field(unique=True)
    address: str
    size: CompanySize = Field(default=CompanySize.XS)
    industry: Industry = Field(default=Industry.HOSPITALITY)
    subscription_plan: SubscriptionPlan = Field(default=SubscriptionPlan.BASIC)
    subscription_status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Department(SQLModel, table=True):
    __tablename__ = "departments"
    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_departments_company_name"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (Index("ix_users_company_department", "company_id", "department_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    department_id: str = Field(foreign_key="departments.id", index=True)
    first_name: str
    last_name: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    role: Role = Field(default=Role.USER, index=True)
    position: str | None = None
    is_active: bool = Field(default=True, index=True)
    is_verified: bool = Field(default=False)
    last_login_at: datetime | None = None
    pending_email: str | None = None
    verification_token_hash: str | None = Field(default=None, index=True)
    verification_token_expires_at: datetime | None = None
    email_change_token_hash: str | None = Field(default=None, index=True)
    email_change_token_expires_at: datetime | None = None
    reset_password_token_hash: str | None = Field(default=None, index=True)
    reset_password_expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class DepartmentManager(SQLModel, table=True):
    __tablename__ = "department_managers"

    department_id: str = Field(foreign_key="departments.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_company_department", "company_id", "department_id"),
        Index("ix_tasks_department_status", "department_id", "status"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    department_id: str = Field(foreign_key="departments.id", index=True)
    task_type: TaskType = Field(index=True)
    title: str
    description: str
    location: str
    due_date: datetime
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    status: TaskStatus = Field(default=TaskStatus.TODO, index=True)
    created_by: str = Field(foreign_key="users.id", index=True)
    client_info: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class TaskAssignee(SQLModel, table=True):
    __tablename__ = "task_assignees"

    task_id: str = Field(foreign_key="tasks.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True, index=True)
    created_at: datetime = Field(default_factory=now_utc)


class TaskActivity(SQLModel, table=True):
    __tablename__ = "task_activities"

    id: str = Field(default_factory=new_id, primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    performed_by: str = Field(foreign_key="users.id", index=True)
    description: str
    status_from: TaskStatus | None = None
    status_to: TaskStatus | None = None
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_user_read", "user_id", "is_read"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    department_id: str = Field(foreign_key="departments.id", index=True)
    task_id: str | None = Field(default=None, foreign_key="tasks.id", index=True)
    type: NotificationType
    message: str
    is_read: bool = Field(default=False)
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RoutineTask(SQLModel, table=True):
    __tablename__ = "routine_tasks"
    __table_args__ = (
        Index("ix_routine_tasks_department_date", "department_id", "date"),
        Index("ix_routine_tasks_performer_date", "performed_by", "date"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(foreign_key="companies.id", index=True)
    department_id: str = Field(foreign_key="departments.id")
    performed_by: str = Field(foreign_key="users.id")
    date: datetime = Field(default_factory=now_utc)
    performed_tasks: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    progress: int = Field(default=0)
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


@dataclass(frozen=True)
class Principal:
    """The authenticated user together with the tenant objects that scope it."""

    user: User
    company: Company
    department: Department
    managed_department_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def company_id(self) -> str:
        return self.company.id

    @property
    def department_id(self) -> str:
        return self.department.id

    @property
    def role(self) -> Role:
        return Role(self.user.role)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=new_id)
    event_type: str
    company_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ClientInfo(BaseModel):
    name: str
    phone: str
    address: str | None = None


class ClientInfoInput(BaseModel):
    name: str | None = None
    phone: str | None = None
    address: str | None = None


class Attachment(BaseModel):
    url: str
    public_id: str | None = None
    type: AttachmentType = AttachmentType.IMAGE
    uploaded_at: datetime = PydanticField(default_factory=now_utc)


class CompanyRegistration(BaseModel):
    name: str = PydanticField(min_length=2, max_length=100)
    email: EmailStr
    phone: str
    address: str = PydanticField(min_length=2, max_length=100)
    size: CompanySize = CompanySize.XS
    industry: Industry = Industry.HOSPITALITY


class AdminRegistration(BaseModel):
    first_name: str = PydanticField(min_length=2, max_length=30)
    last_name: str = PydanticField(min_length=2, max_length=30)
    position: str | None = None
    email: EmailStr
    password: str = PydanticField(min_length=6)
    department_name: str = PydanticField(min_length=2, max_length=50)


class RegisterRequest(BaseModel):
    company: CompanyRegistration
    admin: AdminRegistration


class LoginRequest(BaseModel):
    email: str | None = None
    password: str | None = None


class TokenRequest(BaseModel):
    token: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = PydanticField(min_length=6)


class ChangeEmailRequest(BaseModel):
    new_email: EmailStr


class CompanyRead(ORMReadModel):
    id: str
    name: str
    email: str
    phone: str
    address: str
    size: CompanySize
    industry: Industry
    subscription_plan: SubscriptionPlan
    subscription_status: SubscriptionStatus
    is_active: bool
    created_at: datetime


class DepartmentCreate(BaseModel):
    name: str = PydanticField(min_length=2, max_length=50)
    description: str | None = PydanticField(default=None, max_length=500)


class DepartmentUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=2, max_length=50)
    description: str | None = PydanticField(default=None, max_length=500)
    is_active: bool | None = None


class DepartmentRead(ORMReadModel):
    id: str
    company_id: str
    name: str
    description: str | None = None
    is_active: bool
    manager_ids: list[str] = PydanticField(default_factory=list)
    created_at: datetime


class UserCreate(BaseModel):
    first_name: str = PydanticField(min_length=2, max_length=30)
    last_name: str = PydanticField(min_length=2, max_length=30)
    email: EmailStr
    password: str = PydanticField(min_length=6)
    role: Role = Role.USER
    position: str | None = None
    department_id: str | None = None


class UserUpdate(BaseModel):
    first_name: str | None = PydanticField(default=None, min_length=2, max_length=30)
    last_name: str | None = PydanticField(default=None, min_length=2, max_length=30)
    position: str | None = None
    role: Role | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    company_id: str
    department_id: str
    first_name: str
    last_name: str
    email: str
    role: Role
    position: str | None = None
    is_active: bool
    is_verified: bool
    last_login_at: datetime | None = None
    created_at: datetime


class SessionRead(BaseModel):
    user: UserRead
    company: CompanyRead
    department: DepartmentRead
    managed_department_ids: list[str]


class TaskCreate(BaseModel):
    title: str | None = None
    description: str | None = None
    location: str | None = None
    due_date: str | None = None
    priority: TaskPriority | None = None
    task_type: str | None = None
    assigned_to: list[str] | None = None
    client_info: ClientInfoInput | None = None


class TaskUpdate(BaseModel):
    # Unknown and immutable keys are accepted here and stripped by the service.
    model_config = ConfigDict(extra="allow")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    due_date: str | None = None
    priority: TaskPriority | None = None
    assigned_to: list[str] | None = None
    client_info: ClientInfoInput | None = None


class TaskRead(BaseModel):
    id: str
    company_id: str
    department_id: str
    task_type: TaskType
    title: str
    description: str
    location: str
    due_date: datetime
    priority: TaskPriority
    status: TaskStatus
    created_by: str
    assigned_to: list[str] | None = None
    client_info: ClientInfo | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task, assignee_ids: list[str]) -> TaskRead:
        is_assigned = task.task_type == TaskType.ASSIGNED
        return cls(
            id=task.id,
            company_id=task.company_id,
            department_id=task.department_id,
            task_type=task.task_type,
            title=task.title,
            description=task.description,
            location=task.location,
            due_date=task.due_date,
            priority=task.priority,
            status=task.status,
            created_by=task.created_by,
            assigned_to=sorted(assignee_ids) if is_assigned else None,
            client_info=ClientInfo(**task.client_info) if task.client_info and not is_assigned else None,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class ActivityCreate(BaseModel):
    description: str = PydanticField(min_length=1, max_length=500)
    status: TaskStatus | None = None
    attachments: list[Attachment] = PydanticField(default_factory=list)


class TaskActivityRead(ORMReadModel):
    id: str
    task_id: str
    performed_by: str
    description: str
    status_from: TaskStatus | None = None
    status_to: TaskStatus | None = None
    attachments: list[dict[str, Any]]
    created_at: datetime


class NotificationRead(ORMReadModel):
    id: str
    user_id: str
    company_id: str
    department_id: str
    task_id: str | None = None
    type: NotificationType
    message: str
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime


class RoutineTaskItem(BaseModel):
    description: str = PydanticField(min_length=1, max_length=500)
    is_completed: bool = False


class RoutineTaskCreate(BaseModel):
    date: datetime | None = None
    performed_tasks: list[RoutineTaskItem] = PydanticField(default_factory=list)
    attachments: list[Attachment] = PydanticField(default_factory=list)


class RoutineTaskUpdate(BaseModel):
    date: datetime | None = None
    performed_tasks: list[RoutineTaskItem] | None = None
    attachments: list[Attachment] | None = None


class RoutineTaskRead(ORMReadModel):
    id: str
    company_id: str
    department_id: str
    performed_by: str
    date: datetime
    performed_tasks: list[dict[str, Any]]
    progress: int
    attachments: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime
