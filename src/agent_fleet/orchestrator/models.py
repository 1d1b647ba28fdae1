"""Domain models for task lifecycle and worker coordination."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    WAITING = "waiting"
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class TaskSource(str, Enum):
    """Who drives the task: the lifecycle engine or an interactive terminal session."""

    SCHEDULER = "scheduler"
    TERMINAL = "terminal"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"
    DRAINING = "draining"


class WorkerMode(str, Enum):
    DAEMON = "daemon"
    TASK = "task"
    UNKNOWN = "unknown"


class WorkerAction(str, Enum):
    """Administrative worker actions."""

    DRAIN = "drain"
    OFFLINE = "offline"
    ACTIVATE = "activate"


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Readiness(str, Enum):
    """Dependency readiness of one task."""

    READY = "ready"
    BLOCKED = "blocked"
    PENDING = "pending"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    agent_id: str
    task_id: str | None = None
    group_id: str | None = None
    description: str = ""
    source: TaskSource = TaskSource.SCHEDULER
    status: TaskStatus | None = None
    depends_on: tuple[str, ...] = ()
    max_retries: int = 2
    feedback: str | None = None
    repo_url: str | None = None
    base_branch: str = "main"
    work_branch: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for engine logic and CLI."""

    task_id: str
    group_id: str | None
    title: str
    description: str
    agent_id: str
    source: TaskSource
    status: TaskStatus
    depends_on: tuple[str, ...]
    retry_count: int
    max_retries: int
    feedback: str | None
    review_comment: str | None
    summary: str | None
    log_file_url: str | None
    assigned_worker_id: str | None
    repo_url: str | None
    base_branch: str
    work_branch: str | None
    pr_url: str | None
    created_at: datetime
    updated_at: datetime
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    reviewed_at: datetime | None


@dataclass(slots=True)
class WorkerCreate:
    """Input payload for registering a worker."""

    name: str
    worker_id: str | None = None
    supported_agent_ids: tuple[str, ...] = ()
    max_concurrent: int = 1
    mode: WorkerMode = WorkerMode.UNKNOWN


@dataclass(slots=True)
class WorkerView:
    """Readable worker view."""

    worker_id: str
    name: str
    status: WorkerStatus
    mode: WorkerMode
    current_task_id: str | None
    supported_agent_ids: tuple[str, ...]
    max_concurrent: int
    last_heartbeat_at: datetime | None
    cpu_usage: float | None
    memory_usage_mb: float | None
    disk_usage_mb: float | None
    log_tail: str | None
    reported_env_vars: tuple[str, ...] | None
    reported_auth_status: str | None
    total_tasks_completed: int
    total_tasks_failed: int
    uptime_since: datetime | None
    created_at: datetime
    updated_at: datetime

    def supports_agent(self, agent_id: str) -> bool:
        """Empty capability list means the worker accepts every agent."""

        return not self.supported_agent_ids or agent_id in self.supported_agent_ids


@dataclass(slots=True)
class SystemEventView:
    """Audit trail entry."""

    event_id: int
    event_type: str
    actor: str | None
    task_id: str | None
    worker_id: str | None
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HeartbeatReport:
    """Worker self-report delivered with each heartbeat."""

    status: WorkerStatus = WorkerStatus.BUSY
    current_task_id: str | None = None
    cpu_usage: float | None = None
    memory_usage_mb: float | None = None
    disk_usage_mb: float | None = None
    log_tail: str | None = None
    mode: WorkerMode | None = None
    reported_env_vars: tuple[str, ...] | None = None
    reported_auth_status: str | None = None


@dataclass(slots=True)
class HeartbeatResult:
    worker: WorkerView
    reported_status: WorkerStatus
    resolved_status: WorkerStatus
    attempts: int


@dataclass(slots=True)
class ReviewDecision:
    """Reviewer verdict for a task waiting in ``awaiting_review``."""

    action: ReviewAction
    comment: str | None = None
    feedback: str | None = None
    merge: bool = False


@dataclass(slots=True)
class ReviewOutcome:
    task: TaskView
    merged: bool = False
    pull_request_url: str | None = None


@dataclass(slots=True)
class RowOutcome:
    """Per-row result of a multi-row operation."""

    task_id: str
    previous_status: TaskStatus
    target_status: TaskStatus
    applied: bool


@dataclass(slots=True)
class RestartFromResult:
    group_id: str
    from_task_id: str
    rows: list[RowOutcome]
    queued_immediately: bool
    outstanding_dependencies: tuple[str, ...] = ()

    @property
    def updated_task_ids(self) -> list[str]:
        return [row.task_id for row in self.rows if row.applied]

    @property
    def skipped_task_ids(self) -> list[str]:
        return [row.task_id for row in self.rows if not row.applied]


@dataclass(slots=True)
class GroupRerunResult:
    group_id: str
    rows: list[RowOutcome]

    @property
    def updated_task_ids(self) -> list[str]:
        return [row.task_id for row in self.rows if row.applied]

    @property
    def skipped_task_ids(self) -> list[str]:
        return [row.task_id for row in self.rows if not row.applied]


@dataclass(slots=True)
class RecoveryOutcome:
    """Result of recovering running tasks whose worker went away."""

    requeued_task_ids: list[str] = field(default_factory=list)
    failed_task_ids: list[str] = field(default_factory=list)
    skipped_task_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SchedulerTickSummary:
    """Aggregated counters for one scheduler tick."""

    skipped: bool = False
    promoted: int = 0
    demoted: int = 0
    blocked: int = 0
    assigned: int = 0
    unassigned: int = 0
    stale_workers: int = 0
    recovered_tasks: int = 0
    assignments: list[tuple[str, str]] = field(default_factory=list)
