from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_fleet.main import agent_fleet
from agent_fleet.orchestrator.models import TaskStatus, WorkerStatus
from agent_fleet.orchestrator.repository import OrchestratorRepository
from conftest import add_task, add_worker

pytestmark = [
    allure.epic("Worker Coordination"),
    allure.feature("CLI Flows"),
]


@pytest.fixture(autouse=True)
def _no_provider_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_FLEET_GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    group, command, *rest = args
    return runner.invoke(agent_fleet, [group, command, "--db-path", str(db_path), *rest])


def _open(db_path: Path) -> OrchestratorRepository:
    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    return repository


def test_task_flow_from_creation_to_rejected_review(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    init = _invoke(runner, db_path, "db", "init")
    assert init.exit_code == 0, init.output
    assert "Database ready" in init.output

    root = _invoke(runner, db_path, "tasks", "add", "--title", "Root", "--agent", "claude",
                   "--task-id", "A", "--group", "g1")
    assert root.exit_code == 0, root.output
    assert "task_id=A status=queued" in root.output

    child = _invoke(runner, db_path, "tasks", "add", "--title", "Child", "--agent", "claude",
                    "--task-id", "B", "--group", "g1", "--depends-on", "A")
    assert child.exit_code == 0, child.output
    assert "task_id=B status=waiting" in child.output

    register = _invoke(runner, db_path, "workers", "register", "--name", "laptop",
                       "--worker-id", "w1", "--agent", "claude", "--activate")
    assert register.exit_code == 0, register.output
    assert "w1 name=laptop status=idle" in register.output

    heartbeat = _invoke(runner, db_path, "workers", "heartbeat", "--worker-id", "w1",
                        "--status", "idle", "--cpu", "3.5")
    assert heartbeat.exit_code == 0, heartbeat.output
    assert "status=idle" in heartbeat.output

    tick = _invoke(runner, db_path, "scheduler", "tick")
    assert tick.exit_code == 0, tick.output
    assert "assigned=1" in tick.output
    assert "A -> w1" in tick.output

    finish = _invoke(runner, db_path, "tasks", "finish", "--task-id", "A", "--worker-id", "w1",
                     "--summary", "done")
    assert finish.exit_code == 0, finish.output
    assert "status=awaiting_review" in finish.output

    reject = _invoke(runner, db_path, "tasks", "review", "--task-id", "A", "--action", "reject",
                     "--feedback", "add tests", "--comment", "missing coverage")
    assert reject.exit_code == 0, reject.output
    assert "A status=queued" in reject.output
    assert "retries=1/2" in reject.output

    inspect = _invoke(runner, db_path, "tasks", "inspect", "--task-id", "A")
    assert inspect.exit_code == 0, inspect.output
    assert "Feedback: add tests" in inspect.output
    assert "task.review_rejected" in inspect.output
    assert "task.assigned" in inspect.output

    listing = _invoke(runner, db_path, "tasks", "list", "--group", "g1")
    assert listing.exit_code == 0, listing.output
    assert "Tasks: 2" in listing.output

    repository = _open(db_path)
    assert repository.require_worker("w1").status == WorkerStatus.IDLE
    assert repository.require_worker("w1").total_tasks_completed == 1
    repository.close()


def test_review_of_queued_task_fails_with_message(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    repository = _open(db_path)
    add_task(repository, "A")
    repository.close()

    result = _invoke(runner, db_path, "tasks", "review", "--task-id", "A", "--action", "approve")

    assert result.exit_code == 1
    assert "cannot be reviewed in status queued" in result.output


def test_unknown_task_is_reported(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), tmp_path / "cli.db", "tasks", "inspect", "--task-id", "ghost")

    assert result.exit_code == 1
    assert "Task not found: ghost" in result.output


def test_restart_from_replays_downstream(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = _open(db_path)
    add_task(repository, "A", status=TaskStatus.COMPLETED)
    add_task(repository, "B", status=TaskStatus.FAILED, depends_on=("A",))
    add_task(repository, "C", status=TaskStatus.CANCELLED, depends_on=("B",))
    repository.close()

    result = _invoke(CliRunner(), db_path, "groups", "restart-from", "--group", "group-1",
                     "--from-task", "B", "--feedback", "try again")

    assert result.exit_code == 0, result.output
    assert "Restarted group group-1 from B: updated=2 skipped=0" in result.output
    repository = _open(db_path)
    assert repository.require_task("A").status == TaskStatus.COMPLETED
    assert repository.require_task("B").status == TaskStatus.QUEUED
    assert repository.require_task("B").feedback == "try again"
    assert repository.require_task("C").status == TaskStatus.WAITING
    repository.close()


def test_drain_and_offline_worker_actions(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    repository = _open(db_path)
    add_worker(repository, "w1")
    repository.close()

    drained = _invoke(runner, db_path, "workers", "drain", "--worker-id", "w1")
    offline = _invoke(runner, db_path, "workers", "offline", "--worker-id", "w1")
    listing = _invoke(runner, db_path, "workers", "list", "--status", "offline")

    assert "status=draining" in drained.output
    assert "status=offline" in offline.output
    assert "Workers: 1" in listing.output


def test_claim_without_ready_task(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = _open(db_path)
    add_worker(repository, "w1")
    repository.close()

    result = _invoke(CliRunner(), db_path, "workers", "claim", "--worker-id", "w1")

    assert result.exit_code == 0, result.output
    assert "No task available for worker w1" in result.output


def test_cancel_lost_race_is_reported_as_conflict(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    db_path = tmp_path / "cli.db"
    repository = _open(db_path)
    add_task(repository, "A")
    repository.close()
    monkeypatch.setattr(
        OrchestratorRepository,
        "update_task_if_status",
        lambda *_args, **_kwargs: None,
    )

    result = _invoke(CliRunner(), db_path, "tasks", "cancel", "--task-id", "A")

    assert result.exit_code == 1
    assert "changed concurrently while canceling" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)
