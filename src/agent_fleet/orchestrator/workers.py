"""Worker administration and recovery of tasks stranded on lost workers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from agent_fleet.orchestrator.errors import StateConflictError
from agent_fleet.orchestrator.events import EventEmitter, NullEventEmitter
from agent_fleet.orchestrator.models import (
    RecoveryOutcome,
    TaskStatus,
    TaskView,
    WorkerAction,
    WorkerCreate,
    WorkerStatus,
    WorkerView,
)
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)


class RecoveryAction(str, Enum):
    KEEP_RUNNING = "keep_running"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(slots=True)
class StaleSweepResult:
    offline_worker_ids: list[str]
    recovery: RecoveryOutcome


def is_worker_alive_for_task(
    worker: WorkerView | None,
    *,
    task_id: str,
    stale_before: datetime,
) -> bool:
    """A worker still owns a task only while busy on it with a fresh heartbeat."""

    if worker is None or worker.status != WorkerStatus.BUSY:
        return False
    if worker.current_task_id != task_id or worker.last_heartbeat_at is None:
        return False
    return worker.last_heartbeat_at >= stale_before


def decide_recovery_action(
    *,
    worker_alive: bool,
    retry_count: int,
    max_retries: int,
) -> RecoveryAction:
    if worker_alive:
        return RecoveryAction.KEEP_RUNNING
    return RecoveryAction.RETRY if retry_count < max_retries else RecoveryAction.FAIL


class WorkerAdministration:
    """Operator actions on workers plus liveness-driven task recovery."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        events: EventEmitter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.events = events or NullEventEmitter()
        self.clock = clock

    def register_worker(self, payload: WorkerCreate, *, actor: str | None = None) -> WorkerView:
        worker = self.repository.register_worker(payload)
        self.events.emit(
            "worker.registered",
            {
                "worker_id": worker.worker_id,
                "name": worker.name,
                "supported_agent_ids": list(worker.supported_agent_ids),
                "max_concurrent": worker.max_concurrent,
            },
            actor=actor,
        )
        return worker

    def apply_action(
        self,
        worker_id: str,
        action: WorkerAction,
        *,
        actor: str | None = None,
    ) -> WorkerView:
        """Drain, take offline or activate a worker.

        Taking a worker offline also recovers the scheduler tasks it was running.
        """

        existing = self.repository.require_worker(worker_id)
        values: dict[str, object]
        if action == WorkerAction.DRAIN:
            values = {"status": WorkerStatus.DRAINING}
        elif action == WorkerAction.OFFLINE:
            values = {"status": WorkerStatus.OFFLINE, "current_task_id": None}
        else:
            values = {"status": WorkerStatus.IDLE, "current_task_id": None}
            if existing.status == WorkerStatus.OFFLINE:
                values["uptime_since"] = self.clock()

        updated = self.repository.update_worker_if_status(
            worker_id,
            expected_status=existing.status,
            values=values,
        )
        if updated is None:
            raise StateConflictError(
                f"Worker {worker_id} status changed concurrently; retry {action.value}.",
                current_status=existing.status.value,
            )

        if action == WorkerAction.OFFLINE:
            self.recover_running_tasks_for_worker(
                worker_id,
                reason="worker_offline_manual",
                actor=actor,
            )

        self.events.emit(
            "worker.status_changed",
            {
                "worker_id": worker_id,
                "name": existing.name,
                "action": action.value,
                "from_status": existing.status.value,
                "to_status": updated.status.value,
                "current_task_id": updated.current_task_id,
            },
            actor=actor,
        )
        return updated

    def recover_running_tasks_for_worker(
        self,
        worker_id: str,
        *,
        reason: str,
        actor: str | None = None,
    ) -> RecoveryOutcome:
        """Requeue (retry budget left) or fail every running task assigned to the worker."""

        outcome = RecoveryOutcome()
        for task in self.repository.list_running_tasks(worker_id=worker_id):
            action = decide_recovery_action(
                worker_alive=False,
                retry_count=task.retry_count,
                max_retries=task.max_retries,
            )
            applied = self._recover_task(task, action)
            if applied is None:
                outcome.skipped_task_ids.append(task.task_id)
                continue
            if action == RecoveryAction.RETRY:
                outcome.requeued_task_ids.append(task.task_id)
            else:
                outcome.failed_task_ids.append(task.task_id)
            self.events.emit(
                "task.progress",
                {
                    "task_id": task.task_id,
                    "worker_id": worker_id,
                    "status": applied.status.value,
                    "retry_count": applied.retry_count,
                    "reason": reason,
                },
                actor=actor,
                audit=False,
            )
        if outcome.requeued_task_ids or outcome.failed_task_ids:
            logger.info(
                "Recovered tasks of worker %s (%s): requeued=%s failed=%s",
                worker_id,
                reason,
                len(outcome.requeued_task_ids),
                len(outcome.failed_task_ids),
            )
        return outcome

    def sweep_stale_workers(self, *, stale_after: timedelta) -> StaleSweepResult:
        """Take busy workers with a stale heartbeat offline and recover their tasks."""

        cutoff = self.clock() - stale_after
        offline: list[str] = []
        recovery = RecoveryOutcome()
        stale_workers = self.repository.list_workers(
            status=WorkerStatus.BUSY,
            heartbeat_before=cutoff,
        )
        for worker in stale_workers:
            marked = self.repository.update_worker_if_status(
                worker.worker_id,
                expected_status=WorkerStatus.BUSY,
                heartbeat_before=cutoff,
                values={"status": WorkerStatus.OFFLINE, "current_task_id": None},
            )
            if marked is None:
                continue
            logger.warning("Worker %s missed heartbeats; marked offline", worker.worker_id)
            offline.append(worker.worker_id)
            outcome = self.recover_running_tasks_for_worker(
                worker.worker_id,
                reason="worker_heartbeat_timeout",
            )
            recovery.requeued_task_ids.extend(outcome.requeued_task_ids)
            recovery.failed_task_ids.extend(outcome.failed_task_ids)
            recovery.skipped_task_ids.extend(outcome.skipped_task_ids)
            self.events.emit(
                "worker.offline",
                {"worker_id": worker.worker_id, "reason": "worker_heartbeat_timeout"},
            )
        return StaleSweepResult(offline_worker_ids=offline, recovery=recovery)

    def recover_dangling_running_tasks(self, *, stale_after: timedelta) -> RecoveryOutcome:
        """Startup pass: running tasks whose worker no longer owns them are retried or failed."""

        stale_before = self.clock() - stale_after
        outcome = RecoveryOutcome()
        workers: dict[str, WorkerView | None] = {}
        for task in self.repository.list_running_tasks():
            worker_id = task.assigned_worker_id
            if worker_id is not None and worker_id not in workers:
                workers[worker_id] = self.repository.get_worker(worker_id)
            worker = workers.get(worker_id) if worker_id is not None else None
            action = decide_recovery_action(
                worker_alive=is_worker_alive_for_task(
                    worker,
                    task_id=task.task_id,
                    stale_before=stale_before,
                ),
                retry_count=task.retry_count,
                max_retries=task.max_retries,
            )
            if action == RecoveryAction.KEEP_RUNNING:
                continue
            applied = self._recover_task(task, action)
            if applied is None:
                outcome.skipped_task_ids.append(task.task_id)
                continue
            if action == RecoveryAction.RETRY:
                outcome.requeued_task_ids.append(task.task_id)
                self.events.emit(
                    "task.recovered_after_restart",
                    {
                        "task_id": task.task_id,
                        "previous_status": TaskStatus.RUNNING.value,
                        "retry_count": applied.retry_count,
                        "max_retries": applied.max_retries,
                        "reason": "worker_stale_or_missing_after_restart",
                    },
                )
            else:
                outcome.failed_task_ids.append(task.task_id)
                self.events.emit(
                    "task.recovery_failed_after_restart",
                    {
                        "task_id": task.task_id,
                        "previous_status": TaskStatus.RUNNING.value,
                        "retry_count": applied.retry_count,
                        "max_retries": applied.max_retries,
                        "reason": "max_retries_reached_during_restart_recovery",
                    },
                )
        if outcome.requeued_task_ids or outcome.failed_task_ids:
            logger.info(
                "Startup recovery: requeued=%s failed=%s",
                len(outcome.requeued_task_ids),
                len(outcome.failed_task_ids),
            )
        return outcome

    def _recover_task(self, task: TaskView, action: RecoveryAction) -> TaskView | None:
        now = self.clock()
        if action == RecoveryAction.RETRY:
            values: dict[str, object] = {
                "status": TaskStatus.QUEUED,
                "retry_count": task.retry_count + 1,
                "assigned_worker_id": None,
                "queued_at": now,
                "started_at": None,
                "completed_at": None,
            }
        else:
            values = {
                "status": TaskStatus.FAILED,
                "assigned_worker_id": None,
                "completed_at": now,
            }
        return self.repository.update_task_if_status(
            task.task_id,
            expected_status=TaskStatus.RUNNING,
            expected_worker_id=task.assigned_worker_id,
            values=values,
        )
