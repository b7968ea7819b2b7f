from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from sitework.domain.state_machine import TaskStatus, UpdateStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class MediaType(StrEnum):
    IMAGE = "image"
    VIDEO = "video"


class NotificationCategory(StrEnum):
    TASK_UPDATE_SUBMITTED = "TASK_UPDATE_SUBMITTED"
    TASK_UPDATE_APPROVED = "TASK_UPDATE_APPROVED"
    TASK_UPDATE_REJECTED = "TASK_UPDATE_REJECTED"
    TASK_COMPLETED = "TASK_COMPLETED"


class NotificationChannel(StrEnum):
    IN_APP = "IN_APP"
    PUSH = "PUSH"
    ALL = "ALL"


class PendingOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    organization_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(index=True)
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


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str
    code: str = Field(index=True)
    admin_id: str | None = Field(default=None, index=True)
    owner_id: str | None = Field(default=None, index=True)
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Department(SQLModel, table=True):
    __tablename__ = "departments"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    name: str
    supervisor_id: str | None = Field(default=None, index=True)
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Contractor(SQLModel, table=True):
    __tablename__ = "contractors"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    company_name: str
    contractor_admin_id: str | None = Field(default=None, index=True)
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_department_id_status", "department_id", "status"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(foreign_key="departments.id", index=True)
    parent_task_id: str | None = Field(default=None, foreign_key="tasks.id", index=True)
    contractor_id: str | None = Field(default=None, foreign_key="contractors.id", index=True)
    title: str
    code: str = Field(index=True)
    status: TaskStatus = Field(default=TaskStatus.NOT_STARTED, index=True)
    progress: float = Field(default=0.0)
    assigned_to_user_id: str | None = Field(default=None, index=True)
    completed_at: datetime | None = None
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class TaskAssignee(SQLModel, table=True):
    __tablename__ = "task_assignees"
    __table_args__ = (UniqueConstraint("task_id", "user_id", name="uq_task_assignees_task_user"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    user_id: str = Field(index=True)
    is_active: bool = Field(default=True, index=True)
    assigned_at: datetime = Field(default_factory=now_utc)


class TaskUpdate(SQLModel, table=True):
    __tablename__ = "task_updates"
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "submitted_by_user_id",
            "submitted_on",
            name="uq_task_updates_task_submitter_day",
        ),
        Index("ix_task_updates_status_submitted_at", "status", "submitted_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    submitted_by_user_id: str = Field(index=True)
    description: str
    summary: str | None = None
    progress_percentage: float = Field(default=0.0)
    media_urls: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    media_types: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    status: UpdateStatus = Field(default=UpdateStatus.SUBMITTED, index=True)
    submitted_at: datetime = Field(default_factory=now_utc, index=True)
    submitted_on: date

    contractor_admin_reviewer_id: str | None = None
    contractor_admin_approved: bool | None = None
    contractor_admin_feedback: str | None = None
    contractor_admin_reviewed_at: datetime | None = None

    supervisor_reviewer_id: str | None = None
    supervisor_approved: bool | None = None
    supervisor_feedback: str | None = None
    supervisor_reviewed_at: datetime | None = None

    admin_reviewer_id: str | None = None
    admin_approved: bool | None = None
    admin_feedback: str | None = None
    admin_reviewed_at: datetime | None = None

    is_deleted: bool = Field(default=False, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_recipient_id_is_read", "recipient_id", "is_read"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    recipient_id: str = Field(index=True)
    title: str
    body: str
    category: NotificationCategory = Field(index=True)
    channel: NotificationChannel = Field(default=NotificationChannel.ALL)
    related_entity_id: str | None = Field(default=None, index=True)
    related_entity_type: str | None = None
    action_link: str | None = None
    is_read: bool = Field(default=False)
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    organization_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TaskUpdateSubmitRequest(BaseModel):
    description: str = PydanticField(min_length=1, max_length=5000)
    summary: str | None = PydanticField(default=None, max_length=1000)
    progress_percentage: float = PydanticField(ge=0, le=100)
    media_urls: list[str] = PydanticField(default_factory=list)
    media_types: list[MediaType] = PydanticField(default_factory=list)

    @model_validator(mode="after")
    def _media_lists_align(self) -> TaskUpdateSubmitRequest:
        if len(self.media_urls) != len(self.media_types):
            raise ValueError("media_urls and media_types must have the same length")
        return self


class ReviewDecisionRequest(BaseModel):
    approved: bool
    feedback: str | None = PydanticField(default=None, max_length=2000)


class TaskUpdateRead(ORMReadModel):
    id: str
    task_id: str
    submitted_by_user_id: str
    description: str
    summary: str | None
    progress_percentage: float
    media_urls: list[str]
    media_types: list[str]
    status: UpdateStatus
    submitted_at: datetime
    contractor_admin_reviewer_id: str | None
    contractor_admin_approved: bool | None
    contractor_admin_feedback: str | None
    contractor_admin_reviewed_at: datetime | None
    supervisor_reviewer_id: str | None
    supervisor_approved: bool | None
    supervisor_feedback: str | None
    supervisor_reviewed_at: datetime | None
    admin_reviewer_id: str | None
    admin_approved: bool | None
    admin_feedback: str | None
    admin_reviewed_at: datetime | None


class PendingReviewItemRead(TaskUpdateRead):
    task_title: str
    task_code: str
    department_id: str
    department_name: str
    project_id: str
    project_name: str
    contractor_id: str | None = None


class TaskUpdateSubmitResponse(BaseModel):
    update_id: str
    task_id: str
    status: UpdateStatus
    message: str


class ReviewResultRead(BaseModel):
    update_id: str
    status: UpdateStatus
    message: str


class TaskCompletionRead(BaseModel):
    task_id: str
    message: str


class TaskUpdateListRead(BaseModel):
    items: list[TaskUpdateRead]
    total_count: int


class PendingReviewPageRead(BaseModel):
    items: list[PendingReviewItemRead]
    total_count: int
    page: int
    page_size: int


class NotificationRead(ORMReadModel):
    id: str
    recipient_id: str
    title: str
    body: str
    category: NotificationCategory
    channel: NotificationChannel
    related_entity_id: str | None
    related_entity_type: str | None
    action_link: str | None
    is_read: bool
    read_at: datetime | None
    created_at: datetime


class NotificationPageRead(BaseModel):
    items: list[NotificationRead]
    total_count: int
    page: int
    page_size: int
