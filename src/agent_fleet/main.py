"""CLI entrypoint for agent-fleet."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_fleet import __version__
from agent_fleet.config import Settings
from agent_fleet.orchestrator.controllers import (
    DbCommand,
    FleetCliController,
    GroupRerunCommand,
    GroupRestartCommand,
    SchedulerRunCommand,
    SchedulerTickCommand,
    TaskAddCommand,
    TaskFinishCommand,
    TaskListCommand,
    TaskRefCommand,
    TaskRerunCommand,
    TaskReviewCommand,
    WorkerActionCommand,
    WorkerClaimCommand,
    WorkerHeartbeatCommand,
    WorkerListCommand,
    WorkerRegisterCommand,
)
from agent_fleet.orchestrator.errors import EngineError

click.rich_click.USE_MARKDOWN = True
FLEET_CONTROLLER = FleetCliController()

TASK_STATUSES = [
    "waiting",
    "queued",
    "running",
    "awaiting_review",
    "completed",
    "failed",
    "cancelled",
]
WORKER_STATUSES = ["idle", "busy", "offline", "draining"]
WORKER_MODES = ["daemon", "task", "unknown"]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-fleet")
def agent_fleet() -> None:
    """Task lifecycle and worker coordination for coding agents."""

    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_fleet.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@db_path_option
def db_init(db_path: Path | None) -> None:
    """Create or upgrade the database schema."""

    with _engine_errors():
        _emit_lines(FLEET_CONTROLLER.init_db(DbCommand(db_path=db_path)))


@agent_fleet.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("add")
@db_path_option
@click.option("--title", required=True, help="Task title.")
@click.option("--agent", "agent_id", required=True, help="Agent id that should run the task.")
@click.option("--task-id", default=None, help="Explicit task id (default: generated).")
@click.option("--group", "group_id", default=None, help="Task group id.")
@click.option("--description", default="", help="Task description / prompt.")
@click.option(
    "--source",
    type=click.Choice(["scheduler", "terminal"], case_sensitive=False),
    default="scheduler",
    show_default=True,
    help="Who drives the task.",
)
@click.option(
    "--depends-on",
    multiple=True,
    help="Prerequisite task id. Can be repeated.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=2,
    show_default=True,
    help="Retry budget.",
)
@click.option("--repo-url", default=None, help="Git repository URL.")
@click.option("--base-branch", default="main", show_default=True, help="Pull request base.")
@click.option("--work-branch", default=None, help="Branch the agent pushes to.")
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    agent_id: str,
    task_id: str | None,
    group_id: str | None,
    description: str,
    source: str,
    depends_on: tuple[str, ...],
    max_retries: int,
    repo_url: str | None,
    base_branch: str,
    work_branch: str | None,
) -> None:
    """Create a task; tasks with dependencies start waiting."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.add_task(
                TaskAddCommand(
                    db_path=db_path,
                    title=title,
                    agent_id=agent_id,
                    task_id=task_id,
                    group_id=group_id,
                    description=description,
                    source=source.lower(),
                    depends_on=depends_on,
                    max_retries=max_retries,
                    repo_url=repo_url,
                    base_branch=base_branch,
                    work_branch=work_branch,
                ),
            ),
        )


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--group", "group_id", default=None, help="Optional group filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, group_id: str | None, limit: int) -> None:
    """List recent tasks."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    status=status.lower() if status else None,
                    group_id=group_id,
                    limit=limit,
                ),
            ),
        )


@tasks.command("inspect")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its audit events."""

    with _engine_errors():
        _emit_lines(FLEET_CONTROLLER.inspect_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@tasks.command("rerun")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--feedback", default=None, help="Feedback for the next attempt.")
def tasks_rerun(db_path: Path | None, task_id: str, feedback: str | None) -> None:
    """Re-queue a completed, failed or cancelled task."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.rerun_task(
                TaskRerunCommand(db_path=db_path, task_id=task_id, feedback=feedback),
            ),
        )


@tasks.command("review")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--action",
    type=click.Choice(["approve", "reject"], case_sensitive=False),
    required=True,
    help="Review verdict.",
)
@click.option("--comment", default=None, help="Review comment.")
@click.option("--feedback", default=None, help="Feedback for the next attempt (reject).")
@click.option(
    "--merge/--no-merge",
    default=False,
    show_default=True,
    help="Merge the pull request on approve.",
)
def tasks_review(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    action: str,
    comment: str | None,
    feedback: str | None,
    merge: bool,
) -> None:
    """Approve or reject a task awaiting review."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.review_task(
                TaskReviewCommand(
                    db_path=db_path,
                    task_id=task_id,
                    action=action.lower(),
                    comment=comment,
                    feedback=feedback,
                    merge=merge,
                ),
            ),
        )


@tasks.command("finish")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--worker-id", required=True, help="Reporting worker id.")
@click.option(
    "--succeeded/--failed",
    default=True,
    show_default=True,
    help="Execution outcome.",
)
@click.option("--summary", default=None, help="Execution summary.")
@click.option("--log-url", "log_file_url", default=None, help="URL of the execution log.")
@click.option("--pr-url", default=None, help="Pull request opened by the worker.")
def tasks_finish(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    worker_id: str,
    succeeded: bool,
    summary: str | None,
    log_file_url: str | None,
    pr_url: str | None,
) -> None:
    """Record the end of an execution attempt."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.finish_task(
                TaskFinishCommand(
                    db_path=db_path,
                    task_id=task_id,
                    worker_id=worker_id,
                    succeeded=succeeded,
                    summary=summary,
                    log_file_url=log_file_url,
                    pr_url=pr_url,
                ),
            ),
        )


@tasks.command("cancel")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task that is not yet terminal."""

    with _engine_errors():
        _emit_lines(FLEET_CONTROLLER.cancel_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@agent_fleet.group()
def groups() -> None:
    """Task group commands."""


@groups.command("restart-from")
@db_path_option
@click.option("--group", "group_id", required=True, help="Task group id.")
@click.option("--from-task", "from_task_id", required=True, help="First task to replay.")
@click.option("--feedback", default=None, help="Feedback for the replayed task.")
def groups_restart_from(
    db_path: Path | None,
    group_id: str,
    from_task_id: str,
    feedback: str | None,
) -> None:
    """Replay a task and everything downstream of it."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.restart_from(
                GroupRestartCommand(
                    db_path=db_path,
                    group_id=group_id,
                    from_task_id=from_task_id,
                    feedback=feedback,
                ),
            ),
        )


@groups.command("rerun-failed")
@db_path_option
@click.option("--group", "group_id", required=True, help="Task group id.")
@click.option("--feedback", default=None, help="Feedback for the re-queued tasks.")
def groups_rerun_failed(db_path: Path | None, group_id: str, feedback: str | None) -> None:
    """Re-queue every failed or cancelled task of a group."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.rerun_failed(
                GroupRerunCommand(db_path=db_path, group_id=group_id, feedback=feedback),
            ),
        )


@agent_fleet.group()
def workers() -> None:
    """Worker commands."""


@workers.command("register")
@db_path_option
@click.option("--name", required=True, help="Worker display name.")
@click.option("--worker-id", default=None, help="Explicit worker id (default: generated).")
@click.option(
    "--agent",
    "supported_agent_ids",
    multiple=True,
    help="Supported agent id. Can be repeated; none means every agent.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Max running tasks on this worker.",
)
@click.option(
    "--mode",
    type=click.Choice(WORKER_MODES, case_sensitive=False),
    default="unknown",
    show_default=True,
    help="Worker run mode.",
)
@click.option(
    "--activate/--no-activate",
    default=False,
    show_default=True,
    help="Move the new worker straight to idle.",
)
def workers_register(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    worker_id: str | None,
    supported_agent_ids: tuple[str, ...],
    max_concurrent: int,
    mode: str,
    activate: bool,
) -> None:
    """Register a worker."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.register_worker(
                WorkerRegisterCommand(
                    db_path=db_path,
                    name=name,
                    worker_id=worker_id,
                    supported_agent_ids=supported_agent_ids,
                    max_concurrent=max_concurrent,
                    mode=mode.lower(),
                    activate=activate,
                ),
            ),
        )


@workers.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(WORKER_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def workers_list(db_path: Path | None, status: str | None) -> None:
    """List workers, least recently heard from first."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.list_workers(
                WorkerListCommand(db_path=db_path, status=status.lower() if status else None),
            ),
        )


@workers.command("heartbeat")
@db_path_option
@click.option("--worker-id", required=True, help="Worker id.")
@click.option(
    "--status",
    type=click.Choice(WORKER_STATUSES, case_sensitive=False),
    default="busy",
    show_default=True,
    help="Status the worker reports.",
)
@click.option("--task-id", "current_task_id", default=None, help="Task the worker is running.")
@click.option("--cpu", "cpu_usage", type=float, default=None, help="CPU usage percent.")
@click.option("--memory-mb", "memory_usage_mb", type=float, default=None, help="Memory in MB.")
@click.option("--disk-mb", "disk_usage_mb", type=float, default=None, help="Disk usage in MB.")
@click.option("--log-tail", default=None, help="Last lines of the worker log.")
@click.option(
    "--mode",
    type=click.Choice(WORKER_MODES, case_sensitive=False),
    default=None,
    help="Worker run mode.",
)
def workers_heartbeat(  # noqa: PLR0913
    db_path: Path | None,
    worker_id: str,
    status: str,
    current_task_id: str | None,
    cpu_usage: float | None,
    memory_usage_mb: float | None,
    disk_usage_mb: float | None,
    log_tail: str | None,
    mode: str | None,
) -> None:
    """Apply one worker heartbeat."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.heartbeat(
                WorkerHeartbeatCommand(
                    db_path=db_path,
                    worker_id=worker_id,
                    status=status.lower(),
                    current_task_id=current_task_id,
                    cpu_usage=cpu_usage,
                    memory_usage_mb=memory_usage_mb,
                    disk_usage_mb=disk_usage_mb,
                    log_tail=log_tail,
                    mode=mode.lower() if mode else None,
                ),
            ),
        )


@workers.command("drain")
@db_path_option
@click.option("--worker-id", required=True, help="Worker id.")
def workers_drain(db_path: Path | None, worker_id: str) -> None:
    """Stop assigning new tasks to a worker."""

    _worker_action(db_path, worker_id, "drain")


@workers.command("offline")
@db_path_option
@click.option("--worker-id", required=True, help="Worker id.")
def workers_offline(db_path: Path | None, worker_id: str) -> None:
    """Take a worker offline and recover its running tasks."""

    _worker_action(db_path, worker_id, "offline")


@workers.command("activate")
@db_path_option
@click.option("--worker-id", required=True, help="Worker id.")
def workers_activate(db_path: Path | None, worker_id: str) -> None:
    """Return a worker to idle."""

    _worker_action(db_path, worker_id, "activate")


@workers.command("claim")
@db_path_option
@click.option("--worker-id", required=True, help="Worker id.")
def workers_claim(db_path: Path | None, worker_id: str) -> None:
    """Pull the oldest ready task this worker supports."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.claim_task(WorkerClaimCommand(db_path=db_path, worker_id=worker_id)),
        )


@agent_fleet.group()
def scheduler() -> None:
    """Scheduler commands."""


@scheduler.command("tick")
@db_path_option
@click.option(
    "--recover/--no-recover",
    default=False,
    show_default=True,
    help="Run startup recovery of dangling running tasks first.",
)
def scheduler_tick(db_path: Path | None, recover: bool) -> None:
    """Run one scheduler tick."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.scheduler_tick(SchedulerTickCommand(db_path=db_path, recover=recover)),
        )


@scheduler.command("run")
@db_path_option
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until interrupted).",
)
def scheduler_run(db_path: Path | None, max_ticks: int | None) -> None:
    """Tick the scheduler periodically."""

    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.scheduler_run(SchedulerRunCommand(db_path=db_path, max_ticks=max_ticks)),
        )


def _worker_action(db_path: Path | None, worker_id: str, action: str) -> None:
    with _engine_errors():
        _emit_lines(
            FLEET_CONTROLLER.worker_action(
                WorkerActionCommand(db_path=db_path, worker_id=worker_id, action=action),
            ),
        )


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except (EngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_fleet()
