import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import DateTime
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class BatchAction(str, Enum):
    COMPLETE = "COMPLETE"
    DELETE = "DELETE"


# Users


class UserBase(SQLModel):
    email: str = Field(max_length=255, unique=True, index=True)
    name: str = Field(min_length=1, max_length=255)


class User(UserBase, table=True):
    """Database model"""

    __tablename__ = "users"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class UserCreate(UserBase):
    pass


class UserResponse(UserBase):
    id: uuid.UUID
    created_at: datetime

    model_config = {"from_attributes": True}


# Tasks


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=255, index=True)
    description: str | None = Field(default=None)
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, index=True)
    due_date: datetime | None = None


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="users.id", index=True)
    due_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    user_id: uuid.UUID


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None


class TaskResponse(TaskBase):
    """Schema for task responses"""

    id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class TaskFilter(SQLModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    user_id: uuid.UUID | None = None


class PageMeta(SQLModel):
    total: int
    page: int
    limit: int
    total_pages: int


class TaskPage(SQLModel):
    data: list[TaskResponse]
    meta: PageMeta


class TaskStats(SQLModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    high_priority: int = 0


class BatchOperation(SQLModel):
    tasks: list[uuid.UUID] = Field(min_length=1)
    action: BatchAction


class BatchItemResult(SQLModel):
    task_id: uuid.UUID
    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None


class BatchResult(SQLModel):
    processed: int
    successful: int
    failed: int
    results: list[BatchItemResult]
