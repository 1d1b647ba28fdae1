from __future__ import annotations

import allure
import pytest

from agent_fleet.orchestrator.errors import StateConflictError, WorkerNotFoundError
from agent_fleet.orchestrator.events import AuditEventEmitter, Broadcaster
from agent_fleet.orchestrator.heartbeat import (
    WorkerHeartbeatCoordinator,
    resolve_current_task_id,
    resolve_heartbeat_status,
)
from agent_fleet.orchestrator.models import HeartbeatReport, WorkerMode, WorkerStatus
from agent_fleet.orchestrator.repository import OrchestratorRepository
from conftest import add_worker, busy_report

pytestmark = [
    allure.epic("Worker Coordination"),
    allure.feature("Heartbeat Reconciliation"),
]


@pytest.mark.parametrize(
    ("stored", "reported", "expected"),
    [
        (WorkerStatus.DRAINING, WorkerStatus.BUSY, WorkerStatus.DRAINING),
        (WorkerStatus.DRAINING, WorkerStatus.IDLE, WorkerStatus.DRAINING),
        (WorkerStatus.DRAINING, WorkerStatus.OFFLINE, WorkerStatus.OFFLINE),
        (WorkerStatus.OFFLINE, WorkerStatus.IDLE, WorkerStatus.OFFLINE),
        (WorkerStatus.OFFLINE, WorkerStatus.BUSY, WorkerStatus.OFFLINE),
        (WorkerStatus.OFFLINE, WorkerStatus.DRAINING, WorkerStatus.OFFLINE),
        (WorkerStatus.IDLE, WorkerStatus.BUSY, WorkerStatus.BUSY),
        (WorkerStatus.BUSY, WorkerStatus.IDLE, WorkerStatus.IDLE),
    ],
)
def test_resolve_heartbeat_status(
    stored: WorkerStatus,
    reported: WorkerStatus,
    expected: WorkerStatus,
) -> None:
    assert resolve_heartbeat_status(stored, reported) == expected


def test_idle_and_offline_clear_current_task() -> None:
    assert resolve_current_task_id(WorkerStatus.IDLE, "t1") is None
    assert resolve_current_task_id(WorkerStatus.OFFLINE, "t1") is None
    assert resolve_current_task_id(WorkerStatus.DRAINING, "t1") == "t1"
    assert resolve_current_task_id(WorkerStatus.BUSY, "t1") == "t1"


def test_draining_worker_keeps_draining_and_reported_task(
    repository: OrchestratorRepository,
) -> None:
    add_worker(repository, "w1", status=WorkerStatus.DRAINING)
    coordinator = WorkerHeartbeatCoordinator(repository=repository)

    result = coordinator.apply_heartbeat("w1", busy_report("t1"))

    assert result.reported_status == WorkerStatus.BUSY
    assert result.resolved_status == WorkerStatus.DRAINING
    assert result.attempts == 1
    assert result.worker.status == WorkerStatus.DRAINING
    assert result.worker.current_task_id == "t1"
    assert result.worker.cpu_usage == 12.5


def test_offline_worker_stays_offline_after_heartbeat(repository: OrchestratorRepository) -> None:
    add_worker(repository, "w1", status=WorkerStatus.OFFLINE)
    previous = repository.require_worker("w1").last_heartbeat_at

    result = WorkerHeartbeatCoordinator(repository=repository).apply_heartbeat(
        "w1",
        HeartbeatReport(status=WorkerStatus.IDLE, current_task_id="t1"),
    )

    assert result.worker.status == WorkerStatus.OFFLINE
    assert result.worker.current_task_id is None
    assert previous is not None
    assert result.worker.last_heartbeat_at is not None
    assert result.worker.last_heartbeat_at >= previous


def test_optional_fields_are_only_written_when_reported(
    repository: OrchestratorRepository,
) -> None:
    add_worker(repository, "w1")
    coordinator = WorkerHeartbeatCoordinator(repository=repository)
    coordinator.apply_heartbeat(
        "w1",
        HeartbeatReport(
            status=WorkerStatus.BUSY,
            current_task_id="t1",
            log_tail="step 3/5",
            mode=WorkerMode.DAEMON,
            reported_env_vars=("ANTHROPIC_API_KEY",),
            reported_auth_status="ok",
        ),
    )

    result = coordinator.apply_heartbeat(
        "w1",
        HeartbeatReport(status=WorkerStatus.IDLE, memory_usage_mb=512.0),
    )

    worker = result.worker
    assert worker.status == WorkerStatus.IDLE
    assert worker.current_task_id is None
    assert worker.log_tail == "step 3/5"
    assert worker.mode == WorkerMode.DAEMON
    assert worker.reported_env_vars == ("ANTHROPIC_API_KEY",)
    assert worker.reported_auth_status == "ok"
    assert worker.memory_usage_mb == 512.0
    assert worker.cpu_usage is None


def test_heartbeat_defaults_to_busy(repository: OrchestratorRepository) -> None:
    add_worker(repository, "w1")

    result = WorkerHeartbeatCoordinator(repository=repository).apply_heartbeat(
        "w1",
        HeartbeatReport(current_task_id="t1"),
    )

    assert result.worker.status == WorkerStatus.BUSY


def test_heartbeat_for_unknown_worker(repository: OrchestratorRepository) -> None:
    with pytest.raises(WorkerNotFoundError):
        WorkerHeartbeatCoordinator(repository=repository).apply_heartbeat("ghost", busy_report())


def test_heartbeat_retries_after_lost_race(
    repository: OrchestratorRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    add_worker(repository, "w1")
    original = repository.update_worker_if_status
    calls = {"count": 0}

    def _lose_first(worker_id, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            # An operator drains the worker between read and write.
            original(
                worker_id,
                expected_status=WorkerStatus.IDLE,
                values={"status": WorkerStatus.DRAINING},
            )
        return original(worker_id, **kwargs)

    monkeypatch.setattr(repository, "update_worker_if_status", _lose_first)

    result = WorkerHeartbeatCoordinator(repository=repository).apply_heartbeat(
        "w1",
        busy_report("t1"),
    )

    assert result.attempts == 2
    assert result.resolved_status == WorkerStatus.DRAINING
    assert result.worker.status == WorkerStatus.DRAINING


def test_heartbeat_gives_up_after_max_attempts(
    repository: OrchestratorRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    add_worker(repository, "w1")
    monkeypatch.setattr(repository, "update_worker_if_status", lambda *_, **__: None)

    with pytest.raises(StateConflictError):
        WorkerHeartbeatCoordinator(repository=repository, max_attempts=3).apply_heartbeat(
            "w1",
            busy_report(),
        )


def test_heartbeat_is_broadcast_but_not_audited(repository: OrchestratorRepository) -> None:
    add_worker(repository, "w1")
    broadcaster = Broadcaster()
    received: list[tuple[str, dict]] = []
    broadcaster.subscribe(lambda event_type, payload: received.append((event_type, dict(payload))))

    WorkerHeartbeatCoordinator(
        repository=repository,
        events=AuditEventEmitter(repository, broadcaster),
    ).apply_heartbeat("w1", busy_report("t1"))

    assert [event_type for event_type, _ in received] == ["worker.heartbeat"]
    assert received[0][1]["status"] == "busy"
    assert repository.list_events() == []


def test_coordinator_rejects_non_positive_attempts(repository: OrchestratorRepository) -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        WorkerHeartbeatCoordinator(repository=repository, max_attempts=0)
