from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from agent_fleet.orchestrator.errors import StateConflictError, WorkerNotFoundError
from agent_fleet.orchestrator.events import AuditEventEmitter
from agent_fleet.orchestrator.models import (
    TaskStatus,
    WorkerAction,
    WorkerCreate,
    WorkerStatus,
)
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.orchestrator.workers import (
    RecoveryAction,
    WorkerAdministration,
    decide_recovery_action,
    is_worker_alive_for_task,
)
from agent_fleet.storage.common import utc_now
from conftest import add_task, add_worker, stale

pytestmark = [
    allure.epic("Worker Coordination"),
    allure.feature("Administration & Recovery"),
]

STALE_AFTER = timedelta(seconds=30)


def _administration(repository: OrchestratorRepository) -> WorkerAdministration:
    return WorkerAdministration(repository=repository, events=AuditEventEmitter(repository))


def _running_on(
    repository: OrchestratorRepository,
    task_id: str,
    worker_id: str,
    *,
    retry_count: int = 0,
    max_retries: int = 2,
) -> None:
    add_task(repository, task_id, max_retries=max_retries)
    assert repository.bind_task_to_worker(task_id=task_id, worker_id=worker_id, started_at=utc_now())
    if retry_count:
        assert repository.update_task_if_status(
            task_id,
            expected_status=TaskStatus.RUNNING,
            values={"retry_count": retry_count},
        )


def test_worker_liveness_requires_busy_matching_task_and_fresh_heartbeat(
    repository: OrchestratorRepository,
) -> None:
    stale_before = utc_now() - STALE_AFTER
    fresh = add_worker(repository, "fresh", status=WorkerStatus.BUSY, current_task_id="t1")
    old = add_worker(
        repository,
        "old",
        status=WorkerStatus.BUSY,
        current_task_id="t1",
        heartbeat_at=stale(),
    )
    idle = add_worker(repository, "idle")

    assert is_worker_alive_for_task(fresh, task_id="t1", stale_before=stale_before)
    assert not is_worker_alive_for_task(fresh, task_id="t2", stale_before=stale_before)
    assert not is_worker_alive_for_task(old, task_id="t1", stale_before=stale_before)
    assert not is_worker_alive_for_task(idle, task_id="t1", stale_before=stale_before)
    assert not is_worker_alive_for_task(None, task_id="t1", stale_before=stale_before)


@pytest.mark.parametrize(
    ("alive", "retry_count", "max_retries", "expected"),
    [
        (True, 5, 1, RecoveryAction.KEEP_RUNNING),
        (False, 0, 2, RecoveryAction.RETRY),
        (False, 1, 2, RecoveryAction.RETRY),
        (False, 2, 2, RecoveryAction.FAIL),
    ],
)
def test_decide_recovery_action(
    alive: bool,
    retry_count: int,
    max_retries: int,
    expected: RecoveryAction,
) -> None:
    assert (
        decide_recovery_action(
            worker_alive=alive,
            retry_count=retry_count,
            max_retries=max_retries,
        )
        == expected
    )


def test_registered_worker_starts_offline_and_is_audited(
    repository: OrchestratorRepository,
) -> None:
    worker = _administration(repository).register_worker(
        WorkerCreate(name="laptop", worker_id="w1", supported_agent_ids=("claude",)),
        actor="ops",
    )

    assert worker.status == WorkerStatus.OFFLINE
    assert worker.supported_agent_ids == ("claude",)
    events = repository.list_events(event_type="worker.registered")
    assert events[0].worker_id == "w1"


def test_register_rejects_non_positive_capacity(repository: OrchestratorRepository) -> None:
    with pytest.raises(ValueError, match="max_concurrent"):
        _administration(repository).register_worker(WorkerCreate(name="w", max_concurrent=0))


def test_drain_then_activate(repository: OrchestratorRepository) -> None:
    add_worker(repository, "w1", status=WorkerStatus.BUSY, current_task_id="t1")
    administration = _administration(repository)

    drained = administration.apply_action("w1", WorkerAction.DRAIN, actor="ops")
    assert drained.status == WorkerStatus.DRAINING
    assert drained.current_task_id == "t1"

    activated = administration.apply_action("w1", WorkerAction.ACTIVATE, actor="ops")
    assert activated.status == WorkerStatus.IDLE
    assert activated.current_task_id is None

    changes = repository.list_events(event_type="worker.status_changed")
    assert [event.payload["to_status"] for event in changes] == ["draining", "idle"]
    assert changes[0].payload["from_status"] == "busy"


def test_activate_offline_worker_resets_uptime(repository: OrchestratorRepository) -> None:
    repository.register_worker(WorkerCreate(name="w", worker_id="w1"))

    activated = _administration(repository).apply_action("w1", WorkerAction.ACTIVATE)

    assert activated.status == WorkerStatus.IDLE
    assert activated.uptime_since is not None


def test_offline_action_recovers_running_tasks(repository: OrchestratorRepository) -> None:
    add_worker(repository, "w1")
    _running_on(repository, "t1", "w1", retry_count=0, max_retries=2)

    offline = _administration(repository).apply_action("w1", WorkerAction.OFFLINE)

    assert offline.status == WorkerStatus.OFFLINE
    assert offline.current_task_id is None
    task = repository.require_task("t1")
    assert task.status == TaskStatus.QUEUED
    assert task.retry_count == 1
    assert task.assigned_worker_id is None
    assert task.started_at is None
    assert task.queued_at is not None


def test_apply_action_unknown_worker(repository: OrchestratorRepository) -> None:
    with pytest.raises(WorkerNotFoundError):
        _administration(repository).apply_action("ghost", WorkerAction.DRAIN)


def test_apply_action_conflicts_when_status_moves_underneath(
    repository: OrchestratorRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    add_worker(repository, "w1")
    monkeypatch.setattr(repository, "update_worker_if_status", lambda *_, **__: None)

    with pytest.raises(StateConflictError):
        _administration(repository).apply_action("w1", WorkerAction.DRAIN)


def test_recovery_fails_task_without_retry_budget(repository: OrchestratorRepository) -> None:
    add_worker(repository, "w1")
    _running_on(repository, "t1", "w1", retry_count=2, max_retries=2)

    outcome = _administration(repository).recover_running_tasks_for_worker(
        "w1",
        reason="worker_offline_manual",
    )

    assert outcome.failed_task_ids == ["t1"]
    assert outcome.requeued_task_ids == []
    task = repository.require_task("t1")
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert task.completed_at is not None


def test_stale_busy_worker_is_swept_offline(repository: OrchestratorRepository) -> None:
    add_worker(repository, "stale-worker")
    add_worker(repository, "fresh-worker")
    _running_on(repository, "t1", "stale-worker")
    _running_on(repository, "t2", "fresh-worker")
    assert repository.update_worker_if_status(
        "stale-worker",
        expected_status=WorkerStatus.BUSY,
        values={"last_heartbeat_at": stale()},
    )

    result = _administration(repository).sweep_stale_workers(stale_after=STALE_AFTER)

    assert result.offline_worker_ids == ["stale-worker"]
    assert result.recovery.requeued_task_ids == ["t1"]
    assert repository.require_worker("stale-worker").status == WorkerStatus.OFFLINE
    assert repository.require_worker("fresh-worker").status == WorkerStatus.BUSY
    assert repository.require_task("t1").status == TaskStatus.QUEUED
    assert repository.require_task("t2").status == TaskStatus.RUNNING
    offline_events = repository.list_events(event_type="worker.offline")
    assert offline_events[0].payload["reason"] == "worker_heartbeat_timeout"


def test_sweep_skips_worker_that_heartbeated_meanwhile(
    repository: OrchestratorRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    add_worker(repository, "w1", status=WorkerStatus.BUSY, heartbeat_at=stale())
    original = repository.list_workers

    def _list_then_heartbeat(**kwargs):
        workers = original(**kwargs)
        repository.update_worker_if_status(
            "w1",
            expected_status=WorkerStatus.BUSY,
            values={"last_heartbeat_at": utc_now()},
        )
        return workers

    monkeypatch.setattr(repository, "list_workers", _list_then_heartbeat)

    result = _administration(repository).sweep_stale_workers(stale_after=STALE_AFTER)

    assert result.offline_worker_ids == []
    assert repository.require_worker("w1").status == WorkerStatus.BUSY


def test_startup_recovery_keeps_live_and_recovers_dangling(
    repository: OrchestratorRepository,
) -> None:
    add_worker(repository, "live")
    add_worker(repository, "dead")
    _running_on(repository, "kept", "live")
    _running_on(repository, "retried", "dead", retry_count=1, max_retries=2)
    add_task(repository, "orphan", status=TaskStatus.RUNNING, max_retries=0)
    assert repository.update_worker_if_status(
        "dead",
        expected_status=WorkerStatus.BUSY,
        values={"last_heartbeat_at": stale()},
    )

    outcome = _administration(repository).recover_dangling_running_tasks(stale_after=STALE_AFTER)

    assert outcome.requeued_task_ids == ["retried"]
    assert outcome.failed_task_ids == ["orphan"]
    assert repository.require_task("kept").status == TaskStatus.RUNNING
    retried = repository.require_task("retried")
    assert retried.status == TaskStatus.QUEUED
    assert retried.retry_count == 2
    assert repository.require_task("orphan").status == TaskStatus.FAILED
    assert len(repository.list_events(event_type="task.recovered_after_restart")) == 1
    assert len(repository.list_events(event_type="task.recovery_failed_after_restart")) == 1
