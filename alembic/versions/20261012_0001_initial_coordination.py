"""Initial coordination schema: executors, tasks, capacity rows and audit events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "executors",
        sa.Column("executor_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default=""),
        sa.Column("skills_json", sa.Text(), nullable=False),
        sa.Column("max_concurrent_tasks", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("executor_id"),
    )
    op.create_index("ix_executors_name", "executors", ["name"])

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("original_intent", sa.Text(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("assignee_id", sa.String(), nullable=True),
        sa.Column("execution_tier", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("required_skills_json", sa.Text(), nullable=False),
        sa.Column("routing_reason", sa.Text(), nullable=True),
        sa.Column("estimated_minutes", sa.Integer(), nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("checked_at_50", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("warned_at_75", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("reassigned_at_90", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("manual_review", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("previous_assignee_ids_json", sa.Text(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("feedback_quality", sa.String(), nullable=True),
        sa.Column("feedback_kudos", sa.Boolean(), nullable=True),
        sa.Column("feedback_by_id", sa.String(), nullable=True),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "requester_revealed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_execution_tier", "tasks", ["execution_tier"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("idx_tasks_status_deadline", "tasks", ["status", "deadline"])
    op.create_index("idx_tasks_assignee_status", "tasks", ["assignee_id", "status"])
    op.create_index("idx_tasks_requester_created", "tasks", ["requester_id", "created_at"])

    op.create_table(
        "executor_assignments",
        sa.Column("executor_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("over_capacity", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["executor_id"], ["executors.executor_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("executor_id", "task_id", name="pk_executor_assignments"),
    )
    op.create_index(
        "ix_executor_assignments_executor_id",
        "executor_assignments",
        ["executor_id"],
    )
    op.create_index("ix_executor_assignments_task_id", "executor_assignments", ["task_id"])

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"])
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_index("ix_task_events_task_id", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("ix_executor_assignments_task_id", table_name="executor_assignments")
    op.drop_index("ix_executor_assignments_executor_id", table_name="executor_assignments")
    op.drop_table("executor_assignments")
    op.drop_index("idx_tasks_requester_created", table_name="tasks")
    op.drop_index("idx_tasks_assignee_status", table_name="tasks")
    op.drop_index("idx_tasks_status_deadline", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_execution_tier", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_executors_name", table_name="executors")
    op.drop_table("executors")
