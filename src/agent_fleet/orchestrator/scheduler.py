"""Scheduler tick: dependency gates, worker binding and stale-worker sweep."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agent_fleet.orchestrator.events import EventEmitter, NullEventEmitter
from agent_fleet.orchestrator.graph import (
    build_blocked_summary,
    derive_readiness,
    inspect_dependencies,
)
from agent_fleet.orchestrator.models import (
    Readiness,
    RecoveryOutcome,
    SchedulerTickSummary,
    TaskStatus,
    TaskView,
    WorkerStatus,
    WorkerView,
)
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.orchestrator.workers import WorkerAdministration
from agent_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerRuntime:
    """Engine-owned scheduler state shared by every tick of one process."""

    started: bool = False
    started_at: datetime | None = None
    last_tick_at: datetime | None = None
    tick_count: int = 0
    tick_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass(slots=True)
class SchedulerLoopSummary:
    ticks: int = 0
    skipped: int = 0
    errors: int = 0
    promoted: int = 0
    assigned: int = 0
    recovered_tasks: int = 0


class Scheduler:
    """Moves scheduler-sourced tasks through the dependency gates onto idle workers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        workers: WorkerAdministration | None = None,
        events: EventEmitter | None = None,
        runtime: SchedulerRuntime | None = None,
        waiting_batch_size: int = 50,
        queued_batch_size: int = 20,
        worker_stale_timeout_seconds: float = 30.0,
        interval_seconds: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if waiting_batch_size <= 0 or queued_batch_size <= 0:
            raise ValueError("Scheduler batch sizes must be > 0.")
        if worker_stale_timeout_seconds <= 0:
            raise ValueError("worker_stale_timeout_seconds must be > 0.")
        self.repository = repository
        self.events = events or NullEventEmitter()
        self.workers = workers or WorkerAdministration(
            repository=repository,
            events=self.events,
            clock=clock,
        )
        self.runtime = runtime or SchedulerRuntime()
        self.waiting_batch_size = waiting_batch_size
        self.queued_batch_size = queued_batch_size
        self.stale_after = timedelta(seconds=worker_stale_timeout_seconds)
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._stop = threading.Event()

    def start(self, *, recover: bool = True) -> RecoveryOutcome:
        """Mark the runtime started, running startup recovery the first time only."""

        if self.runtime.started:
            return RecoveryOutcome()
        self.runtime.started = True
        self.runtime.started_at = self.clock()
        if not recover:
            return RecoveryOutcome()
        return self.workers.recover_dangling_running_tasks(stale_after=self.stale_after)

    def tick(self) -> SchedulerTickSummary:
        """Run one pass; a tick that overlaps an in-flight one is skipped."""

        if not self.runtime.tick_lock.acquire(blocking=False):
            logger.debug("Scheduler tick already in flight; skipping")
            return SchedulerTickSummary(skipped=True)
        try:
            summary = SchedulerTickSummary()
            self._promote_waiting(summary)
            self._dispatch_queued(summary)
            sweep = self.workers.sweep_stale_workers(stale_after=self.stale_after)
            summary.stale_workers = len(sweep.offline_worker_ids)
            summary.recovered_tasks = len(sweep.recovery.requeued_task_ids) + len(
                sweep.recovery.failed_task_ids,
            )
            self.runtime.last_tick_at = self.clock()
            self.runtime.tick_count += 1
            if summary.promoted or summary.assigned or summary.blocked or summary.stale_workers:
                logger.info(
                    "Scheduler tick: promoted=%s demoted=%s blocked=%s assigned=%s stale=%s",
                    summary.promoted,
                    summary.demoted,
                    summary.blocked,
                    summary.assigned,
                    summary.stale_workers,
                )
            return summary
        finally:
            self.runtime.tick_lock.release()

    def claim_next_task(self, worker_id: str) -> TaskView | None:
        """Let an idle worker pull the oldest ready queued task it supports."""

        worker = self.repository.require_worker(worker_id)
        if worker.status != WorkerStatus.IDLE:
            return None
        candidates = self.repository.list_schedulable_tasks(
            status=TaskStatus.QUEUED,
            limit=self.queued_batch_size,
        )
        statuses = self._dependency_statuses(candidates)
        for task in candidates:
            if not worker.supports_agent(task.agent_id):
                continue
            readiness = derive_readiness(inspect_dependencies(task.depends_on, statuses))
            if readiness != Readiness.READY:
                continue
            if self._bind(task, worker, actor=worker_id):
                return self.repository.get_task(task.task_id)
            # Losing the worker CAS means this worker is no longer idle.
            if self.repository.require_worker(worker_id).status != WorkerStatus.IDLE:
                return None
        return None

    def run_loop(
        self,
        *,
        max_ticks: int | None = None,
        recover_on_start: bool = True,
    ) -> SchedulerLoopSummary:
        """Tick every ``interval_seconds`` until stopped or ``max_ticks`` is reached."""

        aggregate = SchedulerLoopSummary()
        recovery = self.start(recover=recover_on_start)
        aggregate.recovered_tasks += len(recovery.requeued_task_ids) + len(
            recovery.failed_task_ids,
        )
        with self._signal_handlers():
            while not self._stop.is_set():
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                try:
                    summary = self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
                    aggregate.errors += 1
                    summary = None
                aggregate.ticks += 1
                if summary is not None:
                    aggregate.skipped += int(summary.skipped)
                    aggregate.promoted += summary.promoted
                    aggregate.assigned += summary.assigned
                    aggregate.recovered_tasks += summary.recovered_tasks
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                self._stop.wait(self.interval_seconds)
        return aggregate

    def stop(self) -> None:
        self._stop.set()

    def _promote_waiting(self, summary: SchedulerTickSummary) -> None:
        tasks = self.repository.list_schedulable_tasks(
            status=TaskStatus.WAITING,
            limit=self.waiting_batch_size,
        )
        statuses = self._dependency_statuses(tasks)
        for task in tasks:
            inspection = inspect_dependencies(task.depends_on, statuses)
            readiness = derive_readiness(inspection)
            if readiness == Readiness.PENDING:
                continue
            if readiness == Readiness.BLOCKED:
                if self._fail_blocked(task, build_blocked_summary(inspection)):
                    summary.blocked += 1
                continue
            promoted = self.repository.update_task_if_status(
                task.task_id,
                expected_status=TaskStatus.WAITING,
                values={"status": TaskStatus.QUEUED, "queued_at": self.clock()},
            )
            if promoted is None:
                continue
            summary.promoted += 1
            self.events.emit(
                "task.dependencies_satisfied",
                {"task_id": task.task_id, "depends_on": list(task.depends_on)},
            )

    def _dispatch_queued(self, summary: SchedulerTickSummary) -> None:
        tasks = self.repository.list_schedulable_tasks(
            status=TaskStatus.QUEUED,
            limit=self.queued_batch_size,
        )
        statuses = self._dependency_statuses(tasks)
        for task in tasks:
            inspection = inspect_dependencies(task.depends_on, statuses)
            readiness = derive_readiness(inspection)
            if readiness == Readiness.PENDING:
                demoted = self.repository.update_task_if_status(
                    task.task_id,
                    expected_status=TaskStatus.QUEUED,
                    values={"status": TaskStatus.WAITING, "queued_at": None},
                )
                if demoted is not None:
                    summary.demoted += 1
                continue
            if readiness == Readiness.BLOCKED:
                if self._fail_blocked(task, build_blocked_summary(inspection)):
                    summary.blocked += 1
                continue

            worker_id = self._assign(task)
            if worker_id is None:
                summary.unassigned += 1
                continue
            summary.assigned += 1
            summary.assignments.append((task.task_id, worker_id))

    def _assign(self, task: TaskView) -> str | None:
        for worker in self._eligible_workers(task):
            if self._bind(task, worker, actor=None):
                return worker.worker_id
            current = self.repository.get_task(task.task_id)
            if current is None or current.status != TaskStatus.QUEUED:
                return None
        return None

    def _eligible_workers(self, task: TaskView) -> list[WorkerView]:
        fresh_after = self.clock() - self.stale_after
        eligible: list[WorkerView] = []
        for worker in self.repository.list_workers(status=WorkerStatus.IDLE):
            if not worker.supports_agent(task.agent_id):
                continue
            if worker.last_heartbeat_at is None or worker.last_heartbeat_at < fresh_after:
                continue
            running = self.repository.count_running_tasks_for_worker(worker.worker_id)
            if running >= worker.max_concurrent:
                continue
            eligible.append(worker)
        return eligible

    def _bind(self, task: TaskView, worker: WorkerView, *, actor: str | None) -> bool:
        if not self.repository.bind_task_to_worker(
            task_id=task.task_id,
            worker_id=worker.worker_id,
            started_at=self.clock(),
        ):
            logger.debug("Binding %s -> %s lost its race", task.task_id, worker.worker_id)
            return False
        self.events.emit(
            "task.assigned",
            {
                "task_id": task.task_id,
                "worker_id": worker.worker_id,
                "agent_id": task.agent_id,
            },
            actor=actor,
        )
        return True

    def _fail_blocked(self, task: TaskView, blocked_summary: str) -> bool:
        failed = self.repository.update_task_if_status(
            task.task_id,
            expected_status=task.status,
            values={
                "status": TaskStatus.FAILED,
                "summary": blocked_summary,
                "completed_at": self.clock(),
            },
        )
        if failed is None:
            return False
        logger.info("Task %s failed: %s", task.task_id, blocked_summary)
        self.events.emit(
            "task.dependencies_blocked",
            {"task_id": task.task_id, "summary": blocked_summary},
        )
        return True

    def _dependency_statuses(self, tasks: list[TaskView]) -> dict[str, TaskStatus]:
        return self.repository.get_task_statuses(
            dep_id for task in tasks for dep_id in task.depends_on
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Scheduler stopping on %s", signal.Signals(signum).name)
            self._stop.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
