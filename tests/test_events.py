from __future__ import annotations

import allure
import pytest

from agent_fleet.orchestrator.events import AuditEventEmitter, Broadcaster
from agent_fleet.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Audit Events"),
]


def test_audit_emitter_records_row_and_broadcasts(repository: OrchestratorRepository) -> None:
    broadcaster = Broadcaster()
    received: list[str] = []
    broadcaster.subscribe(lambda event_type, _payload: received.append(event_type))

    AuditEventEmitter(repository, broadcaster).emit(
        "task.rerun_requested",
        {"task_id": "t1", "worker_id": "w1", "retry_count": 1},
        actor="alice",
    )

    events = repository.list_events()
    assert len(events) == 1
    assert events[0].event_type == "task.rerun_requested"
    assert events[0].actor == "alice"
    assert events[0].task_id == "t1"
    assert events[0].worker_id == "w1"
    assert events[0].payload == {"task_id": "t1", "worker_id": "w1", "retry_count": 1}
    assert received == ["task.rerun_requested"]


def test_failing_subscriber_does_not_stop_others() -> None:
    broadcaster = Broadcaster()
    received: list[str] = []

    def _boom(_event_type, _payload):
        raise RuntimeError("subscriber down")

    broadcaster.subscribe(_boom)
    broadcaster.subscribe(lambda event_type, _payload: received.append(event_type))

    broadcaster.broadcast("worker.offline", {"worker_id": "w1"})

    assert received == ["worker.offline"]


def test_unsubscribe_stops_delivery() -> None:
    broadcaster = Broadcaster()
    received: list[str] = []
    unsubscribe = broadcaster.subscribe(lambda event_type, _payload: received.append(event_type))

    unsubscribe()
    broadcaster.broadcast("worker.offline", {})

    assert received == []


def test_audit_write_failure_is_swallowed(
    repository: OrchestratorRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _fail(**_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(repository, "add_event", _fail)
    broadcaster = Broadcaster()
    received: list[str] = []
    broadcaster.subscribe(lambda event_type, _payload: received.append(event_type))

    AuditEventEmitter(repository, broadcaster).emit("task.progress", {"task_id": "t1"})

    assert received == ["task.progress"]
