"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from agent_fleet.orchestrator.models import (
    HeartbeatReport,
    TaskCreate,
    TaskStatus,
    TaskView,
    WorkerCreate,
    WorkerStatus,
    WorkerView,
)
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.storage.common import utc_now


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(tmp_path / "fleet.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def add_task(
    repository: OrchestratorRepository,
    task_id: str,
    *,
    status: TaskStatus | None = None,
    depends_on: tuple[str, ...] = (),
    group_id: str | None = "group-1",
    agent_id: str = "claude",
    **overrides: object,
) -> TaskView:
    """Create a task directly in ``status``, bypassing the lifecycle."""

    return repository.create_task(
        TaskCreate(
            title=f"Task {task_id}",
            agent_id=agent_id,
            task_id=task_id,
            group_id=group_id,
            status=status,
            depends_on=depends_on,
            **overrides,  # type: ignore[arg-type]
        ),
    )


def add_worker(
    repository: OrchestratorRepository,
    worker_id: str,
    *,
    status: WorkerStatus = WorkerStatus.IDLE,
    heartbeat_at: datetime | None = None,
    supported_agent_ids: tuple[str, ...] = (),
    current_task_id: str | None = None,
) -> WorkerView:
    """Register a worker and put it into ``status`` with a fresh heartbeat by default."""

    repository.register_worker(
        WorkerCreate(
            name=f"worker {worker_id}",
            worker_id=worker_id,
            supported_agent_ids=supported_agent_ids,
        ),
    )
    worker = repository.update_worker_if_status(
        worker_id,
        expected_status=WorkerStatus.OFFLINE,
        values={
            "status": status,
            "current_task_id": current_task_id,
            "last_heartbeat_at": heartbeat_at or utc_now(),
        },
    )
    assert worker is not None
    return worker


def stale(seconds: float = 120.0) -> datetime:
    return utc_now() - timedelta(seconds=seconds)


def busy_report(task_id: str | None = None) -> HeartbeatReport:
    return HeartbeatReport(status=WorkerStatus.BUSY, current_task_id=task_id, cpu_usage=12.5)
