"""Persistent task/worker store with conditional (compare-and-swap) writes."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_fleet.orchestrator.errors import (
    StateConflictError,
    TaskNotFoundError,
    WorkerNotFoundError,
)
from agent_fleet.orchestrator.models import (
    SystemEventView,
    TaskCreate,
    TaskSource,
    TaskStatus,
    TaskView,
    WorkerCreate,
    WorkerMode,
    WorkerStatus,
    WorkerView,
)
from agent_fleet.storage.alembic_runner import upgrade_head
from agent_fleet.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_fleet.storage.sqlmodel_models import SystemEventRow, TaskRow, WorkerRow

logger = logging.getLogger(__name__)

_ANY = object()


class OrchestratorRepository:
    """Task and worker persistence facade backed by SQLModel + SQLite.

    Every mutating method is a conditional update guarded by the previously
    observed status. A guarded update that matches zero rows returns ``None``
    (or ``False``) and leaves the row untouched; callers decide whether that is
    a conflict.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task; tasks with dependencies start ``waiting``, others ``queued``."""

        if payload.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        status = payload.status or (
            TaskStatus.WAITING if payload.depends_on else TaskStatus.QUEUED
        )
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                group_id=payload.group_id,
                title=payload.title,
                description=payload.description,
                agent_id=payload.agent_id,
                source=payload.source.value,
                status=status.value,
                depends_on_json=json.dumps(list(payload.depends_on)),
                retry_count=0,
                max_retries=payload.max_retries,
                feedback=payload.feedback,
                repo_url=payload.repo_url,
                base_branch=payload.base_branch,
                work_branch=payload.work_branch,
                created_at=now,
                updated_at=now,
                queued_at=now if status == TaskStatus.QUEUED else None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        source: TaskSource | None = None,
        group_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if source is not None:
                statement = statement.where(TaskRow.source == source.value)
            if group_id is not None:
                statement = statement.where(TaskRow.group_id == group_id)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_group_tasks(
        self,
        group_id: str,
        *,
        source: TaskSource | None = TaskSource.SCHEDULER,
    ) -> list[TaskView]:
        """All tasks of one group in creation order."""

        with Session(self.engine) as session:
            statement = (
                select(TaskRow)
                .where(TaskRow.group_id == group_id)
                .order_by(col(TaskRow.created_at).asc(), col(TaskRow.task_id).asc())
            )
            if source is not None:
                statement = statement.where(TaskRow.source == source.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_schedulable_tasks(self, *, status: TaskStatus, limit: int) -> list[TaskView]:
        """Scheduler-sourced tasks in ``status``, oldest first."""

        order_column = TaskRow.queued_at if status == TaskStatus.QUEUED else TaskRow.created_at
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.status == status.value,
                    TaskRow.source == TaskSource.SCHEDULER.value,
                )
                .order_by(col(order_column).asc(), col(TaskRow.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_task_statuses(self, task_ids: Iterable[str]) -> dict[str, TaskStatus]:
        """Current status of each existing task id; unknown ids are absent."""

        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.task_id, TaskRow.status).where(col(TaskRow.task_id).in_(ids)),
            ).all()
        return {task_id: TaskStatus(status) for task_id, status in rows}

    def list_running_tasks(self, *, worker_id: str | None = None) -> list[TaskView]:
        """Running scheduler-sourced tasks, optionally for one worker."""

        with Session(self.engine) as session:
            statement = select(TaskRow).where(
                TaskRow.status == TaskStatus.RUNNING.value,
                TaskRow.source == TaskSource.SCHEDULER.value,
            )
            if worker_id is not None:
                statement = statement.where(TaskRow.assigned_worker_id == worker_id)
            rows = session.exec(statement.order_by(col(TaskRow.started_at).asc())).all()
        return [_to_task_view(row) for row in rows]

    def count_running_tasks_for_worker(self, worker_id: str) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(TaskRow)
                    .where(
                        TaskRow.assigned_worker_id == worker_id,
                        TaskRow.status == TaskStatus.RUNNING.value,
                    ),
                ).one(),
            )

    def update_task_if_status(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        values: Mapping[str, Any],
        expected_worker_id: str | None | object = _ANY,
    ) -> TaskView | None:
        """Apply ``values`` only if the task is still in ``expected_status``.

        ``expected_worker_id`` additionally guards on the assigned worker.
        Returns the updated view, or ``None`` when the guard matched no row.
        """

        now = utc_now()
        with Session(self.engine) as session:
            statement = sa_update(TaskRow).where(
                col(TaskRow.task_id) == task_id,
                col(TaskRow.status) == expected_status.value,
            )
            if expected_worker_id is not _ANY:
                if expected_worker_id is None:
                    statement = statement.where(col(TaskRow.assigned_worker_id).is_(None))
                else:
                    statement = statement.where(
                        col(TaskRow.assigned_worker_id) == expected_worker_id,
                    )
            result = session.exec(
                statement.values(**_task_update_values(values), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug(
                    "Conditional task update lost: task_id=%s expected_status=%s",
                    task_id,
                    expected_status.value,
                )
                return None
            session.commit()
            row = session.get(TaskRow, task_id, populate_existing=True)
            return _to_task_view(row) if row is not None else None

    def cancel_task(self, task_id: str) -> TaskView:
        """Administrative cancel; already-terminal tasks are returned unchanged."""

        task = self.require_task(task_id)
        if task.status in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}:
            return task
        updated = self.update_task_if_status(
            task_id,
            expected_status=task.status,
            values={
                "status": TaskStatus.CANCELLED,
                "completed_at": utc_now(),
                "assigned_worker_id": None,
            },
        )
        if updated is None:
            raise StateConflictError(
                "Task state changed concurrently while canceling; "
                f"please retry command (task_id={task_id}).",
                current_status=task.status.value,
            )
        return updated

    # Workers

    def register_worker(self, payload: WorkerCreate) -> WorkerView:
        """Register a worker; new workers stay ``offline`` until activated."""

        if payload.max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0.")
        now = utc_now()
        worker_id = payload.worker_id or str(uuid4())
        with Session(self.engine) as session:
            row = WorkerRow(
                worker_id=worker_id,
                name=payload.name,
                status=WorkerStatus.OFFLINE.value,
                mode=payload.mode.value,
                supported_agent_ids_json=json.dumps(list(payload.supported_agent_ids)),
                max_concurrent=payload.max_concurrent,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def get_worker(self, worker_id: str) -> WorkerView | None:
        with Session(self.engine) as session:
            row = session.get(WorkerRow, worker_id)
            return _to_worker_view(row) if row is not None else None

    def require_worker(self, worker_id: str) -> WorkerView:
        worker = self.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFoundError(f"Worker not found: {worker_id}", worker_id=worker_id)
        return worker

    def list_workers(
        self,
        *,
        status: WorkerStatus | None = None,
        heartbeat_before: datetime | None = None,
    ) -> list[WorkerView]:
        """Workers ordered by least recently heartbeated first.

        ``heartbeat_before`` keeps only workers whose last heartbeat is older
        than the cutoff or missing.
        """

        with Session(self.engine) as session:
            statement = select(WorkerRow).order_by(
                col(WorkerRow.last_heartbeat_at).asc(),
                col(WorkerRow.created_at).asc(),
            )
            if status is not None:
                statement = statement.where(WorkerRow.status == status.value)
            if heartbeat_before is not None:
                statement = statement.where(_heartbeat_older_than(heartbeat_before))
            rows = session.exec(statement).all()
        return [_to_worker_view(row) for row in rows]

    def update_worker_if_status(
        self,
        worker_id: str,
        *,
        expected_status: WorkerStatus,
        values: Mapping[str, Any],
        heartbeat_before: datetime | None = None,
    ) -> WorkerView | None:
        """Apply ``values`` only if the worker is still in ``expected_status``.

        ``heartbeat_before`` additionally requires the heartbeat to still be stale.
        """

        now = utc_now()
        with Session(self.engine) as session:
            statement = sa_update(WorkerRow).where(
                col(WorkerRow.worker_id) == worker_id,
                col(WorkerRow.status) == expected_status.value,
            )
            if heartbeat_before is not None:
                statement = statement.where(_heartbeat_older_than(heartbeat_before))
            result = session.exec(
                statement.values(**_worker_update_values(values), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug(
                    "Conditional worker update lost: worker_id=%s expected_status=%s",
                    worker_id,
                    expected_status.value,
                )
                return None
            session.commit()
            row = session.get(WorkerRow, worker_id, populate_existing=True)
            return _to_worker_view(row) if row is not None else None

    def increment_worker_counters(
        self,
        worker_id: str,
        *,
        completed: int = 0,
        failed: int = 0,
    ) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(WorkerRow)
                .where(col(WorkerRow.worker_id) == worker_id)
                .values(
                    total_tasks_completed=col(WorkerRow.total_tasks_completed) + completed,
                    total_tasks_failed=col(WorkerRow.total_tasks_failed) + failed,
                ),
            )
            session.commit()

    def bind_task_to_worker(
        self,
        *,
        task_id: str,
        worker_id: str,
        started_at: datetime,
    ) -> bool:
        """Move task ``queued -> running`` and worker ``idle -> busy`` in one transaction.

        Both guarded updates must match exactly one row, otherwise nothing is
        written and ``False`` is returned.
        """

        started = to_db_datetime(started_at)
        with Session(self.engine) as session:
            task_result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.QUEUED.value,
                    col(TaskRow.source) == TaskSource.SCHEDULER.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    assigned_worker_id=worker_id,
                    started_at=started,
                    updated_at=started,
                ),
            )
            if task_result.rowcount != 1:
                session.rollback()
                return False
            worker_result = session.exec(
                sa_update(WorkerRow)
                .where(
                    col(WorkerRow.worker_id) == worker_id,
                    col(WorkerRow.status) == WorkerStatus.IDLE.value,
                )
                .values(
                    status=WorkerStatus.BUSY.value,
                    current_task_id=task_id,
                    updated_at=started,
                ),
            )
            if worker_result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Events

    def add_event(  # noqa: PLR0913
        self,
        *,
        event_type: str,
        payload: Mapping[str, Any],
        actor: str | None = None,
        task_id: str | None = None,
        worker_id: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                SystemEventRow(
                    event_type=event_type,
                    actor=actor,
                    task_id=task_id,
                    worker_id=worker_id,
                    payload_json=json.dumps(dict(payload), ensure_ascii=False, sort_keys=True)
                    if payload
                    else None,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_events(
        self,
        *,
        task_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[SystemEventView]:
        """Audit events in insertion order."""

        with Session(self.engine) as session:
            statement = select(SystemEventRow).order_by(col(SystemEventRow.id).asc()).limit(limit)
            if task_id is not None:
                statement = statement.where(SystemEventRow.task_id == task_id)
            if event_type is not None:
                statement = statement.where(SystemEventRow.event_type == event_type)
            rows = session.exec(statement).all()
        return [
            SystemEventView(
                event_id=int(row.id or 0),
                event_type=row.event_type,
                actor=row.actor,
                task_id=row.task_id,
                worker_id=row.worker_id,
                created_at=to_utc_aware_datetime(row.created_at),
                payload=json.loads(row.payload_json) if row.payload_json else {},
            )
            for row in rows
        ]


def _heartbeat_older_than(cutoff: datetime) -> Any:
    return or_(
        col(WorkerRow.last_heartbeat_at).is_(None),
        col(WorkerRow.last_heartbeat_at) < to_db_datetime(cutoff),
    )


def _task_update_values(values: Mapping[str, Any]) -> dict[str, Any]:
    normalized = _normalize_values(values)
    if "depends_on" in normalized:
        normalized["depends_on_json"] = json.dumps(list(normalized.pop("depends_on")))
    return normalized


def _worker_update_values(values: Mapping[str, Any]) -> dict[str, Any]:
    normalized = _normalize_values(values)
    if "reported_env_vars" in normalized:
        env_vars = normalized.pop("reported_env_vars")
        normalized["reported_env_vars_json"] = (
            json.dumps(list(env_vars)) if env_vars is not None else None
        )
    return normalized


def _normalize_values(values: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            normalized[key] = value.value
        elif isinstance(value, datetime):
            normalized[key] = to_db_datetime(value)
        else:
            normalized[key] = value
    return normalized


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        group_id=row.group_id,
        title=row.title,
        description=row.description,
        agent_id=row.agent_id,
        source=TaskSource(row.source),
        status=TaskStatus(row.status),
        depends_on=tuple(json.loads(row.depends_on_json or "[]")),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        feedback=row.feedback,
        review_comment=row.review_comment,
        summary=row.summary,
        log_file_url=row.log_file_url,
        assigned_worker_id=row.assigned_worker_id,
        repo_url=row.repo_url,
        base_branch=row.base_branch,
        work_branch=row.work_branch,
        pr_url=row.pr_url,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        reviewed_at=optional_utc(row.reviewed_at),
    )


def _to_worker_view(row: WorkerRow) -> WorkerView:
    return WorkerView(
        worker_id=row.worker_id,
        name=row.name,
        status=WorkerStatus(row.status),
        mode=WorkerMode(row.mode),
        current_task_id=row.current_task_id,
        supported_agent_ids=tuple(json.loads(row.supported_agent_ids_json or "[]")),
        max_concurrent=row.max_concurrent,
        last_heartbeat_at=optional_utc(row.last_heartbeat_at),
        cpu_usage=row.cpu_usage,
        memory_usage_mb=row.memory_usage_mb,
        disk_usage_mb=row.disk_usage_mb,
        log_tail=row.log_tail,
        reported_env_vars=(
            tuple(json.loads(row.reported_env_vars_json))
            if row.reported_env_vars_json is not None
            else None
        ),
        reported_auth_status=row.reported_auth_status,
        total_tasks_completed=row.total_tasks_completed,
        total_tasks_failed=row.total_tasks_failed,
        uptime_since=optional_utc(row.uptime_since),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
