"""Initial task, worker and system event schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="scheduler"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("depends_on_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("review_comment", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("log_file_url", sa.String(), nullable=True),
        sa.Column("assigned_worker_id", sa.String(), nullable=True),
        sa.Column("repo_url", sa.String(), nullable=True),
        sa.Column("base_branch", sa.String(), nullable=False, server_default="main"),
        sa.Column("work_branch", sa.String(), nullable=True),
        sa.Column("pr_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_group_id", "tasks", ["group_id"])
    op.create_index("ix_tasks_agent_id", "tasks", ["agent_id"])
    op.create_index("ix_tasks_source", "tasks", ["source"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_assigned_worker_id", "tasks", ["assigned_worker_id"])
    op.create_index(
        "idx_tasks_source_status_queued",
        "tasks",
        ["source", "status", "queued_at"],
    )
    op.create_index("idx_tasks_group_source", "tasks", ["group_id", "source"])

    op.create_table(
        "workers",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="offline"),
        sa.Column("mode", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("current_task_id", sa.String(), nullable=True),
        sa.Column("supported_agent_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("max_concurrent", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cpu_usage", sa.Float(), nullable=True),
        sa.Column("memory_usage_mb", sa.Float(), nullable=True),
        sa.Column("disk_usage_mb", sa.Float(), nullable=True),
        sa.Column("log_tail", sa.Text(), nullable=True),
        sa.Column("reported_env_vars_json", sa.Text(), nullable=True),
        sa.Column("reported_auth_status", sa.String(), nullable=True),
        sa.Column("total_tasks_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tasks_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("uptime_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("worker_id"),
    )
    op.create_index("ix_workers_name", "workers", ["name"])
    op.create_index("ix_workers_status", "workers", ["status"])

    op.create_table(
        "system_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_system_events_event_type", "system_events", ["event_type"])
    op.create_index("ix_system_events_task_id", "system_events", ["task_id"])
    op.create_index("ix_system_events_worker_id", "system_events", ["worker_id"])
    op.create_index(
        "idx_system_events_type_time",
        "system_events",
        ["event_type", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_system_events_type_time", table_name="system_events")
    op.drop_index("ix_system_events_worker_id", table_name="system_events")
    op.drop_index("ix_system_events_task_id", table_name="system_events")
    op.drop_index("ix_system_events_event_type", table_name="system_events")
    op.drop_table("system_events")
    op.drop_index("ix_workers_status", table_name="workers")
    op.drop_index("ix_workers_name", table_name="workers")
    op.drop_table("workers")
    op.drop_index("idx_tasks_group_source", table_name="tasks")
    op.drop_index("idx_tasks_source_status_queued", table_name="tasks")
    op.drop_index("ix_tasks_assigned_worker_id", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_source", table_name="tasks")
    op.drop_index("ix_tasks_agent_id", table_name="tasks")
    op.drop_index("ix_tasks_group_id", table_name="tasks")
    op.drop_table("tasks")
