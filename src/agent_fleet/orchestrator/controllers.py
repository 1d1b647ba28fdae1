"""Controllers for agent-fleet CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_fleet.config import Settings
from agent_fleet.orchestrator.events import AuditEventEmitter
from agent_fleet.orchestrator.heartbeat import WorkerHeartbeatCoordinator
from agent_fleet.orchestrator.lifecycle import TaskLifecycleManager
from agent_fleet.orchestrator.models import (
    HeartbeatReport,
    ReviewAction,
    ReviewDecision,
    RowOutcome,
    TaskCreate,
    TaskSource,
    TaskStatus,
    TaskView,
    WorkerAction,
    WorkerCreate,
    WorkerMode,
    WorkerStatus,
    WorkerView,
)
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.orchestrator.scheduler import Scheduler
from agent_fleet.orchestrator.vcs import GitHubClient
from agent_fleet.orchestrator.workers import WorkerAdministration

CLI_ACTOR = "cli"


@dataclass(slots=True)
class DbCommand:
    db_path: Path | None


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    agent_id: str
    task_id: str | None = None
    group_id: str | None = None
    description: str = ""
    source: str = "scheduler"
    depends_on: tuple[str, ...] = ()
    max_retries: int = 2
    repo_url: str | None = None
    base_branch: str = "main"
    work_branch: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    group_id: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRerunCommand:
    db_path: Path | None
    task_id: str
    feedback: str | None


@dataclass(slots=True)
class TaskReviewCommand:
    """CLI input for approve/reject."""

    db_path: Path | None
    task_id: str
    action: str
    comment: str | None
    feedback: str | None
    merge: bool


@dataclass(slots=True)
class TaskFinishCommand:
    """CLI input for a worker's execution report."""

    db_path: Path | None
    task_id: str
    worker_id: str
    succeeded: bool
    summary: str | None
    log_file_url: str | None
    pr_url: str | None


@dataclass(slots=True)
class GroupRestartCommand:
    db_path: Path | None
    group_id: str
    from_task_id: str
    feedback: str | None


@dataclass(slots=True)
class GroupRerunCommand:
    db_path: Path | None
    group_id: str
    feedback: str | None


@dataclass(slots=True)
class WorkerRegisterCommand:
    db_path: Path | None
    name: str
    worker_id: str | None
    supported_agent_ids: tuple[str, ...]
    max_concurrent: int
    mode: str
    activate: bool


@dataclass(slots=True)
class WorkerListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class WorkerHeartbeatCommand:
    """CLI input for one worker heartbeat."""

    db_path: Path | None
    worker_id: str
    status: str
    current_task_id: str | None
    cpu_usage: float | None
    memory_usage_mb: float | None
    disk_usage_mb: float | None
    log_tail: str | None
    mode: str | None


@dataclass(slots=True)
class WorkerActionCommand:
    db_path: Path | None
    worker_id: str
    action: str


@dataclass(slots=True)
class SchedulerTickCommand:
    db_path: Path | None
    recover: bool


@dataclass(slots=True)
class SchedulerRunCommand:
    db_path: Path | None
    max_ticks: int | None


@dataclass(slots=True)
class WorkerClaimCommand:
    db_path: Path | None
    worker_id: str


class FleetCliController:
    """Coordinates task, group, worker and scheduler CLI operations."""

    def init_db(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    # Tasks

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    title=command.title,
                    agent_id=command.agent_id,
                    task_id=command.task_id,
                    group_id=command.group_id,
                    description=command.description,
                    source=TaskSource(command.source),
                    depends_on=command.depends_on,
                    max_retries=command.max_retries,
                    repo_url=command.repo_url,
                    base_branch=command.base_branch,
                    work_branch=command.work_branch,
                ),
            )
            AuditEventEmitter(repository).emit(
                "task.created",
                {"task_id": task.task_id, "group_id": task.group_id, "status": task.status.value},
                actor=CLI_ACTOR,
            )
        return [f"Task created: task_id={task.task_id} status={task.status.value}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                group_id=command.group_id,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.require_task(command.task_id)
            events = repository.list_events(task_id=command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value} source={task.source.value} agent={task.agent_id}",
            f"Group: {task.group_id or '-'}",
            f"Depends on: {', '.join(task.depends_on) or '-'}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Worker: {task.assigned_worker_id or '-'}",
            f"PR: {task.pr_url or '-'}",
        ]
        if task.feedback:
            lines.append(f"Feedback: {task.feedback}")
        if task.review_comment:
            lines.append(f"Review comment: {task.review_comment}")
        if task.summary:
            lines.append(f"Summary: {task.summary}")
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"actor={event.actor or '-'} {json.dumps(event.payload, sort_keys=True)}",
            )
        return lines

    def rerun_task(self, command: TaskRerunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = _lifecycle(repository, settings).rerun_task(
                command.task_id,
                feedback=command.feedback,
                actor=CLI_ACTOR,
            )
        return [f"Task re-queued: {_task_line(task)}"]

    def review_task(self, command: TaskReviewCommand) -> list[str]:
        settings = _settings(command.db_path)
        decision = ReviewDecision(
            action=ReviewAction(command.action),
            comment=command.comment,
            feedback=command.feedback,
            merge=command.merge,
        )
        with _repository(settings) as repository, _vcs_client(settings) as vcs_client:
            outcome = _lifecycle(repository, settings, vcs_client=vcs_client).review_task(
                command.task_id,
                decision,
                actor=CLI_ACTOR,
            )
        lines = [f"Task reviewed: {_task_line(outcome.task)}"]
        if outcome.merged:
            lines.append(f"Merged: {outcome.pull_request_url}")
        return lines

    def finish_task(self, command: TaskFinishCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _vcs_client(settings) as vcs_client:
            task = _lifecycle(repository, settings, vcs_client=vcs_client).report_execution_finished(
                command.task_id,
                worker_id=command.worker_id,
                succeeded=command.succeeded,
                summary=command.summary,
                log_file_url=command.log_file_url,
                pr_url=command.pr_url,
            )
        return [f"Task finished: {_task_line(task)}"]

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            previous = repository.require_task(command.task_id)
            task = repository.cancel_task(command.task_id)
            if previous.status != task.status:
                AuditEventEmitter(repository).emit(
                    "task.cancelled",
                    {"task_id": task.task_id, "previous_status": previous.status.value},
                    actor=CLI_ACTOR,
                )
        return [f"Task canceled: {_task_line(task)}"]

    # Groups

    def restart_from(self, command: GroupRestartCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = _lifecycle(repository, settings).restart_from(
                command.group_id,
                command.from_task_id,
                feedback=command.feedback,
                actor=CLI_ACTOR,
            )
        lines = [
            f"Restarted group {result.group_id} from {result.from_task_id}: "
            f"updated={len(result.updated_task_ids)} skipped={len(result.skipped_task_ids)}",
        ]
        if not result.queued_immediately:
            lines.append(
                "Waiting on dependencies: " + ", ".join(result.outstanding_dependencies),
            )
        lines.extend(_row_lines(result.rows))
        return lines

    def rerun_failed(self, command: GroupRerunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = _lifecycle(repository, settings).rerun_failed_in_group(
                command.group_id,
                feedback=command.feedback,
                actor=CLI_ACTOR,
            )
        lines = [
            f"Re-queued failed tasks in {result.group_id}: "
            f"updated={len(result.updated_task_ids)} skipped={len(result.skipped_task_ids)}",
        ]
        lines.extend(_row_lines(result.rows))
        return lines

    # Workers

    def register_worker(self, command: WorkerRegisterCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            administration = WorkerAdministration(
                repository=repository,
                events=AuditEventEmitter(repository),
            )
            worker = administration.register_worker(
                WorkerCreate(
                    name=command.name,
                    worker_id=command.worker_id,
                    supported_agent_ids=command.supported_agent_ids,
                    max_concurrent=command.max_concurrent,
                    mode=WorkerMode(command.mode),
                ),
                actor=CLI_ACTOR,
            )
            if command.activate:
                worker = administration.apply_action(
                    worker.worker_id,
                    WorkerAction.ACTIVATE,
                    actor=CLI_ACTOR,
                )
        return [f"Worker registered: {_worker_line(worker)}"]

    def list_workers(self, command: WorkerListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = WorkerStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            workers = repository.list_workers(status=status_filter)
        lines = [f"Workers: {len(workers)}"]
        lines.extend(f"  {_worker_line(worker)}" for worker in workers)
        return lines

    def heartbeat(self, command: WorkerHeartbeatCommand) -> list[str]:
        settings = _settings(command.db_path)
        report = HeartbeatReport(
            status=WorkerStatus(command.status),
            current_task_id=command.current_task_id,
            cpu_usage=command.cpu_usage,
            memory_usage_mb=command.memory_usage_mb,
            disk_usage_mb=command.disk_usage_mb,
            log_tail=command.log_tail,
            mode=WorkerMode(command.mode) if command.mode else None,
        )
        with _repository(settings) as repository:
            result = WorkerHeartbeatCoordinator(
                repository=repository,
                events=AuditEventEmitter(repository),
                max_attempts=settings.heartbeat.max_attempts,
            ).apply_heartbeat(command.worker_id, report)
        return [
            f"Heartbeat applied: worker_id={command.worker_id} "
            f"reported={result.reported_status.value} status={result.resolved_status.value} "
            f"attempts={result.attempts}",
        ]

    def worker_action(self, command: WorkerActionCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            worker = WorkerAdministration(
                repository=repository,
                events=AuditEventEmitter(repository),
            ).apply_action(command.worker_id, WorkerAction(command.action), actor=CLI_ACTOR)
        return [f"Worker updated: {_worker_line(worker)}"]

    def claim_task(self, command: WorkerClaimCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = _scheduler(repository, settings).claim_next_task(command.worker_id)
        if task is None:
            return [f"No task available for worker {command.worker_id}"]
        return [f"Task claimed: {_task_line(task)}"]

    # Scheduler

    def scheduler_tick(self, command: SchedulerTickCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            scheduler = _scheduler(repository, settings)
            recovery = scheduler.start(recover=command.recover)
            summary = scheduler.tick()
        lines = []
        if recovery.requeued_task_ids or recovery.failed_task_ids:
            lines.append(
                "Startup recovery: "
                f"requeued={len(recovery.requeued_task_ids)} "
                f"failed={len(recovery.failed_task_ids)}",
            )
        lines.append(
            "Scheduler tick: "
            f"promoted={summary.promoted} demoted={summary.demoted} blocked={summary.blocked} "
            f"assigned={summary.assigned} unassigned={summary.unassigned} "
            f"stale_workers={summary.stale_workers} recovered={summary.recovered_tasks}",
        )
        lines.extend(f"  {task_id} -> {worker_id}" for task_id, worker_id in summary.assignments)
        return lines

    def scheduler_run(self, command: SchedulerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            summary = _scheduler(repository, settings).run_loop(
                max_ticks=command.max_ticks,
                recover_on_start=settings.scheduler.recover_on_start,
            )
        return [
            "Scheduler summary: "
            f"ticks={summary.ticks} skipped={summary.skipped} errors={summary.errors} "
            f"promoted={summary.promoted} assigned={summary.assigned} "
            f"recovered={summary.recovered_tasks}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _lifecycle(
    repository: OrchestratorRepository,
    settings: Settings,
    *,
    vcs_client: GitHubClient | None = None,
) -> TaskLifecycleManager:
    return TaskLifecycleManager(
        repository=repository,
        events=AuditEventEmitter(repository),
        vcs_client=vcs_client,
        pr_title_prefix=settings.vcs.title_prefix,
    )


def _scheduler(repository: OrchestratorRepository, settings: Settings) -> Scheduler:
    return Scheduler(
        repository=repository,
        events=AuditEventEmitter(repository),
        waiting_batch_size=settings.scheduler.waiting_batch_size,
        queued_batch_size=settings.scheduler.queued_batch_size,
        worker_stale_timeout_seconds=settings.scheduler.worker_stale_timeout_seconds,
        interval_seconds=settings.scheduler.interval_seconds,
    )


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} status={task.status.value} agent={task.agent_id} "
        f"retries={task.retry_count}/{task.max_retries} "
        f"worker={task.assigned_worker_id or '-'} title={task.title}"
    )


def _worker_line(worker: WorkerView) -> str:
    heartbeat = worker.last_heartbeat_at.isoformat() if worker.last_heartbeat_at else "-"
    return (
        f"{worker.worker_id} name={worker.name} status={worker.status.value} "
        f"task={worker.current_task_id or '-'} "
        f"agents={','.join(worker.supported_agent_ids) or '*'} "
        f"heartbeat={heartbeat}"
    )


def _row_lines(rows: list[RowOutcome]) -> list[str]:
    return [
        f"  {row.task_id} {row.previous_status.value} -> {row.target_status.value} "
        f"{'applied' if row.applied else 'skipped'}"
        for row in rows
    ]


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.storage.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _vcs_client(settings: Settings) -> Iterator[GitHubClient | None]:
    if not settings.vcs.github_token:
        yield None
        return
    client = GitHubClient(
        token=settings.vcs.github_token,
        api_base_url=settings.vcs.github_api_base_url,
        merge_method=settings.vcs.merge_method,
        timeout_seconds=settings.vcs.request_timeout_seconds,
    )
    try:
        yield client
    finally:
        client.close()
