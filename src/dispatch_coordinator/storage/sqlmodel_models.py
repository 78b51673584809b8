"""SQLModel ORM tables for coordination storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class ExecutorRow(SQLModel, table=True):
    __tablename__ = "executors"  # type: ignore[bad-override]

    executor_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    role: str = ""
    skills_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    max_concurrent_tasks: int = Field(default=5)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_status_deadline", "status", "deadline"),
        Index("idx_tasks_assignee_status", "assignee_id", "status"),
        Index("idx_tasks_requester_created", "requester_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    original_intent: str = Field(default="", sa_column=Column(Text, nullable=False))
    requester_id: str
    assignee_id: str | None = None
    execution_tier: str = Field(index=True)
    status: str = Field(index=True)
    priority: str
    required_skills_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    routing_reason: str | None = Field(default=None, sa_column=Column(Text))
    estimated_minutes: int | None = None
    deadline: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    checked_at_50: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    warned_at_75: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    reassigned_at_90: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    manual_review: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    previous_assignee_ids_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False),
    )
    result: str | None = Field(default=None, sa_column=Column(Text))
    feedback_quality: str | None = None
    feedback_kudos: bool | None = None
    feedback_by_id: str | None = None
    is_anonymous: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1")),
    )
    requester_revealed: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )


class ExecutorAssignmentRow(SQLModel, table=True):
    __tablename__ = "executor_assignments"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("executor_id", "task_id", name="pk_executor_assignments"),
    )

    executor_id: str = Field(
        sa_column=Column(
            ForeignKey("executors.executor_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    over_capacity: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    assigned_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    actor_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskMessageRow(SQLModel, table=True):
    __tablename__ = "task_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_messages_task_time", "task_id", "created_at"),)

    message_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    author_id: str | None = None
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SharedWinRow(SQLModel, table=True):
    __tablename__ = "shared_wins"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("task_id", name="uq_shared_wins_task"),)

    win_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_title: str
    completed_by_id: str | None = None
    completed_by_name: str
    completed_by_role: str
    execution_tier: str
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    feedback_quality: str | None = None
    feedback_kudos: bool | None = None


class AssignmentHistoryRow(SQLModel, table=True):
    __tablename__ = "assignment_history"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_executor_id: str | None = None
    to_executor_id: str
    reason: str = Field(sa_column=Column(Text, nullable=False))
    degraded: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
