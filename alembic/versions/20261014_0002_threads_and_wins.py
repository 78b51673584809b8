"""Add task discussion threads, shared wins and assignment history."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261014_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("author_id", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_task_messages_task_id", "task_messages", ["task_id"])
    op.create_index("idx_task_messages_task_time", "task_messages", ["task_id", "created_at"])

    op.create_table(
        "shared_wins",
        sa.Column("win_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_title", sa.String(), nullable=False),
        sa.Column("completed_by_id", sa.String(), nullable=True),
        sa.Column("completed_by_name", sa.String(), nullable=False),
        sa.Column("completed_by_role", sa.String(), nullable=False),
        sa.Column("execution_tier", sa.String(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("feedback_quality", sa.String(), nullable=True),
        sa.Column("feedback_kudos", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("win_id"),
        sa.UniqueConstraint("task_id", name="uq_shared_wins_task"),
    )

    op.create_table(
        "assignment_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("from_executor_id", sa.String(), nullable=True),
        sa.Column("to_executor_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("degraded", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_assignment_history_task_id", "assignment_history", ["task_id"])


def downgrade() -> None:
    op.drop_index("ix_assignment_history_task_id", table_name="assignment_history")
    op.drop_table("assignment_history")
    op.drop_table("shared_wins")
    op.drop_index("idx_task_messages_task_time", table_name="task_messages")
    op.drop_index("ix_task_messages_task_id", table_name="task_messages")
    op.drop_table("task_messages")
