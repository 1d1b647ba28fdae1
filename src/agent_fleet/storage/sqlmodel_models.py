"""SQLModel ORM tables for task and worker storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_source_status_queued", "source", "status", "queued_at"),
        Index("idx_tasks_group_source", "group_id", "source"),
    )

    task_id: str = Field(primary_key=True)
    group_id: str | None = Field(default=None, index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    agent_id: str = Field(index=True)
    source: str = Field(default="scheduler", index=True)
    status: str = Field(index=True)
    depends_on_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=2)
    feedback: str | None = Field(default=None, sa_column=Column(Text))
    review_comment: str | None = Field(default=None, sa_column=Column(Text))
    summary: str | None = Field(default=None, sa_column=Column(Text))
    log_file_url: str | None = None
    assigned_worker_id: str | None = Field(default=None, index=True)
    repo_url: str | None = None
    base_branch: str = Field(default="main")
    work_branch: str | None = None
    pr_url: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    reviewed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class WorkerRow(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    status: str = Field(default="offline", index=True)
    mode: str = Field(default="unknown")
    current_task_id: str | None = None
    supported_agent_ids_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    max_concurrent: int = Field(default=1)
    last_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    cpu_usage: float | None = Field(default=None, sa_column=Column(Float))
    memory_usage_mb: float | None = Field(default=None, sa_column=Column(Float))
    disk_usage_mb: float | None = Field(default=None, sa_column=Column(Float))
    log_tail: str | None = Field(default=None, sa_column=Column(Text))
    reported_env_vars_json: str | None = Field(default=None, sa_column=Column(Text))
    reported_auth_status: str | None = None
    total_tasks_completed: int = Field(default=0)
    total_tasks_failed: int = Field(default=0)
    uptime_since: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SystemEventRow(SQLModel, table=True):
    __tablename__ = "system_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_system_events_type_time", "event_type", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    actor: str | None = None
    task_id: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None, index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
