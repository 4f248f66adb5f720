"""Create task and task event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scaffolder_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("spec_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("secrets_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_scaffolder_tasks_status", "scaffolder_tasks", ["status"])
    op.create_index("ix_scaffolder_tasks_worker_id", "scaffolder_tasks", ["worker_id"])
    op.create_index(
        "idx_scaffolder_tasks_queue",
        "scaffolder_tasks",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "scaffolder_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["scaffolder_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_scaffolder_task_events_task_id", "scaffolder_task_events", ["task_id"])
    op.create_index(
        "ix_scaffolder_task_events_event_type",
        "scaffolder_task_events",
        ["event_type"],
    )
    op.create_index(
        "idx_scaffolder_task_events_task_id",
        "scaffolder_task_events",
        ["task_id", "id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_scaffolder_task_events_task_id", table_name="scaffolder_task_events")
    op.drop_index("ix_scaffolder_task_events_event_type", table_name="scaffolder_task_events")
    op.drop_index("ix_scaffolder_task_events_task_id", table_name="scaffolder_task_events")
    op.drop_table("scaffolder_task_events")
    op.drop_index("idx_scaffolder_tasks_queue", table_name="scaffolder_tasks")
    op.drop_index("ix_scaffolder_tasks_worker_id", table_name="scaffolder_tasks")
    op.drop_index("ix_scaffolder_tasks_status", table_name="scaffolder_tasks")
    op.drop_table("scaffolder_tasks")
