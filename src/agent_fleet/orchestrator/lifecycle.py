"""Task lifecycle operations: rerun, review outcome, restart-from and execution reports."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from agent_fleet.orchestrator.errors import (
    ClosureConflictError,
    ExternalServiceError,
    PreconditionError,
    StateConflictError,
    TaskNotFoundError,
)
from agent_fleet.orchestrator.events import EventEmitter, NullEventEmitter
from agent_fleet.orchestrator.graph import (
    build_dependents_map,
    compute_dependency_closure,
    outstanding_dependencies,
)
from agent_fleet.orchestrator.models import (
    GroupRerunResult,
    RestartFromResult,
    ReviewAction,
    ReviewDecision,
    ReviewOutcome,
    RowOutcome,
    TaskSource,
    TaskStatus,
    TaskView,
    WorkerStatus,
)
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.orchestrator.retry import compute_retry_window, should_consume_retry
from agent_fleet.orchestrator.vcs import (
    GitRepositoryRef,
    PullRequestClient,
    PullRequestRef,
    VcsError,
    build_pull_request_draft,
    parse_git_repository,
    parse_pull_request_url,
)
from agent_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)

RERUNNABLE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
GROUP_RERUN_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


def build_replay_values(  # noqa: PLR0913
    *,
    status: TaskStatus,
    feedback: str | None,
    retry_count: int,
    max_retries: int,
    queued_at: datetime | None,
) -> dict[str, Any]:
    """Column values for a task sent back to ``queued``/``waiting`` by a replay."""

    if status not in {TaskStatus.QUEUED, TaskStatus.WAITING}:
        raise ValueError(f"Replay target must be queued or waiting, got {status.value}")
    return {
        "status": status,
        "feedback": feedback,
        "retry_count": retry_count,
        "max_retries": max_retries,
        "assigned_worker_id": None,
        "queued_at": queued_at,
        "started_at": None,
        "completed_at": None,
        "reviewed_at": None,
        "review_comment": None,
        "summary": None,
        "log_file_url": None,
    }


class TaskLifecycleManager:
    """Read-compute-conditional-write operations over scheduler-sourced tasks."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        events: EventEmitter | None = None,
        vcs_client: PullRequestClient | None = None,
        pr_title_prefix: str = "[CAM]",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.events = events or NullEventEmitter()
        self.vcs_client = vcs_client
        self.pr_title_prefix = pr_title_prefix
        self.clock = clock

    # Rerun

    def rerun_task(
        self,
        task_id: str,
        *,
        feedback: str | None = None,
        actor: str | None = None,
    ) -> TaskView:
        """Requeue one completed/failed/cancelled task, consuming a retry."""

        task = self.repository.require_task(task_id)
        _require_scheduler_source(task, operation="rerun")
        if task.status in {TaskStatus.QUEUED, TaskStatus.RUNNING}:
            raise StateConflictError(
                f"Task {task_id} is {task.status.value}; rerun would duplicate execution.",
                current_status=task.status.value,
            )
        if task.status == TaskStatus.AWAITING_REVIEW:
            raise StateConflictError(
                f"Task {task_id} is awaiting review; reject it with feedback instead of rerun.",
                current_status=task.status.value,
            )
        if task.status not in RERUNNABLE_STATUSES:
            raise PreconditionError(
                f"Task {task_id} has not run yet (status={task.status.value}); nothing to rerun.",
                current_status=task.status.value,
            )

        window = compute_retry_window(task.retry_count, task.max_retries, should_increment=True)
        updated = self.repository.update_task_if_status(
            task_id,
            expected_status=task.status,
            values=build_replay_values(
                status=TaskStatus.QUEUED,
                feedback=feedback if feedback is not None else task.feedback,
                retry_count=window.next_retry_count,
                max_retries=window.next_max_retries,
                queued_at=self.clock(),
            ),
        )
        if updated is None:
            raise _changed_concurrently(task_id, "rerun")

        self.events.emit(
            "task.rerun_requested",
            {
                "task_id": task_id,
                "previous_status": task.status.value,
                "retry_count": window.next_retry_count,
                "max_retries": window.next_max_retries,
                "feedback": feedback,
            },
            actor=actor,
        )
        self._emit_progress(updated)
        return updated

    def rerun_failed_in_group(
        self,
        group_id: str,
        *,
        feedback: str | None = None,
        actor: str | None = None,
    ) -> GroupRerunResult:
        """Requeue every failed or cancelled scheduler task of a group."""

        tasks = self.repository.list_group_tasks(group_id)
        if not tasks:
            raise TaskNotFoundError(f"Task group not found: {group_id}")

        rows: list[RowOutcome] = []
        now = self.clock()
        for task in tasks:
            if task.status not in GROUP_RERUN_STATUSES:
                continue
            window = compute_retry_window(
                task.retry_count,
                task.max_retries,
                should_increment=True,
            )
            updated = self.repository.update_task_if_status(
                task.task_id,
                expected_status=task.status,
                values=build_replay_values(
                    status=TaskStatus.QUEUED,
                    feedback=feedback if feedback is not None else task.feedback,
                    retry_count=window.next_retry_count,
                    max_retries=window.next_max_retries,
                    queued_at=now,
                ),
            )
            rows.append(
                RowOutcome(
                    task_id=task.task_id,
                    previous_status=task.status,
                    target_status=TaskStatus.QUEUED,
                    applied=updated is not None,
                ),
            )
            if updated is None:
                logger.warning("Skipped group rerun for %s: changed concurrently", task.task_id)
                continue
            self.events.emit(
                "task.rerun_requested",
                {
                    "task_id": task.task_id,
                    "group_id": group_id,
                    "previous_status": task.status.value,
                    "retry_count": window.next_retry_count,
                    "max_retries": window.next_max_retries,
                },
                actor=actor,
            )
            self._emit_progress(updated)

        result = GroupRerunResult(group_id=group_id, rows=rows)
        self.events.emit(
            "task_group.rerun_failed",
            {"group_id": group_id, "task_ids": result.updated_task_ids, "feedback": feedback},
            actor=actor,
        )
        return result

    # Restart-from

    def restart_from(
        self,
        group_id: str,
        from_task_id: str,
        *,
        feedback: str | None = None,
        actor: str | None = None,
    ) -> RestartFromResult:
        """Replay ``from_task_id`` and everything downstream of it within the group.

        Rejected as a whole if a task in the closure is running. Otherwise each
        closure row is written independently; rows that changed since they were
        read are skipped and reported, never retried.
        """

        tasks = self.repository.list_group_tasks(group_id)
        if not tasks:
            raise TaskNotFoundError(f"Task group not found: {group_id}")
        by_id = {task.task_id: task for task in tasks}
        from_task = by_id.get(from_task_id)
        if from_task is None:
            raise TaskNotFoundError(
                f"Task {from_task_id} is not part of group {group_id}",
                task_id=from_task_id,
            )

        closure = compute_dependency_closure(from_task_id, build_dependents_map(tasks))
        running = tuple(
            task.task_id
            for task in tasks
            if task.task_id in closure and task.status == TaskStatus.RUNNING
        )
        if running:
            raise ClosureConflictError(
                f"Cannot restart from {from_task_id}: tasks still running: {', '.join(running)}",
                running_task_ids=running,
            )

        dep_statuses = self.repository.get_task_statuses(from_task.depends_on)
        outstanding = outstanding_dependencies(from_task.depends_on, dep_statuses)
        deps_completed = not outstanding

        now = self.clock()
        rows: list[RowOutcome] = []
        for task in tasks:
            if task.task_id not in closure:
                continue
            is_from = task.task_id == from_task_id
            target = TaskStatus.QUEUED if is_from and deps_completed else TaskStatus.WAITING
            window = compute_retry_window(
                task.retry_count,
                task.max_retries,
                should_increment=should_consume_retry(task.status),
            )
            next_feedback = feedback if is_from and feedback is not None else task.feedback
            updated = self.repository.update_task_if_status(
                task.task_id,
                expected_status=task.status,
                values=build_replay_values(
                    status=target,
                    feedback=next_feedback,
                    retry_count=window.next_retry_count,
                    max_retries=window.next_max_retries,
                    queued_at=now if target == TaskStatus.QUEUED else None,
                ),
            )
            rows.append(
                RowOutcome(
                    task_id=task.task_id,
                    previous_status=task.status,
                    target_status=target,
                    applied=updated is not None,
                ),
            )
            if updated is None:
                logger.warning(
                    "Skipped restart of %s in group %s: changed concurrently",
                    task.task_id,
                    group_id,
                )
                continue
            self.events.emit(
                "task.restart_from",
                {
                    "task_id": task.task_id,
                    "group_id": group_id,
                    "from_task_id": from_task_id,
                    "previous_status": task.status.value,
                    "next_status": target.value,
                    "retry_count": window.next_retry_count,
                    "max_retries": window.next_max_retries,
                },
                actor=actor,
            )
            self._emit_progress(updated)

        result = RestartFromResult(
            group_id=group_id,
            from_task_id=from_task_id,
            rows=rows,
            queued_immediately=any(
                row.task_id == from_task_id and row.applied and row.target_status == TaskStatus.QUEUED
                for row in rows
            ),
            outstanding_dependencies=outstanding,
        )
        self.events.emit(
            "task_group.restart_from",
            {
                "group_id": group_id,
                "from_task_id": from_task_id,
                "task_ids": result.updated_task_ids,
                "skipped_task_ids": result.skipped_task_ids,
                "feedback": feedback,
            },
            actor=actor,
        )
        return result

    # Review

    def review_task(
        self,
        task_id: str,
        decision: ReviewDecision,
        *,
        actor: str | None = None,
    ) -> ReviewOutcome:
        """Apply a reviewer verdict to a task in ``awaiting_review``."""

        task = self.repository.require_task(task_id)
        _require_scheduler_source(task, operation="review")
        if task.status != TaskStatus.AWAITING_REVIEW:
            raise PreconditionError(
                f"Task {task_id} cannot be reviewed in status {task.status.value}.",
                current_status=task.status.value,
            )
        if decision.action == ReviewAction.APPROVE:
            return self._approve(task, decision, actor=actor)
        return self._reject(task, decision, actor=actor)

    def _approve(
        self,
        task: TaskView,
        decision: ReviewDecision,
        *,
        actor: str | None,
    ) -> ReviewOutcome:
        repository_ref = parse_git_repository(task.repo_url)
        pr_url = task.pr_url
        merged = False

        if decision.merge:
            client = self._require_vcs_client()
            if repository_ref is None:
                raise PreconditionError(
                    f"Repository provider is not supported for merge: {task.repo_url!r}",
                    current_status=task.status.value,
                )
            if not pr_url:
                pr_url = self._create_and_bind_pull_request(task, repository_ref, actor=actor)

            pull_request = _matching_pull_request(pr_url, repository_ref)
            if pull_request is None:
                raise PreconditionError(
                    f"Pull request URL is not valid for merge: {pr_url!r}",
                    current_status=task.status.value,
                )

            current = self.repository.require_task(task.task_id)
            if current.status != TaskStatus.AWAITING_REVIEW:
                raise StateConflictError(
                    f"Task {task.task_id} changed to {current.status.value}; merge aborted.",
                    current_status=current.status.value,
                )

            try:
                merge = client.merge_pull_request(
                    pull_request=pull_request,
                    commit_title=f"{self.pr_title_prefix} {task.title}".strip(),
                    commit_message=decision.comment or None,
                )
            except VcsError as exc:
                raise ExternalServiceError(
                    f"Merge failed for task {task.task_id}: {exc}",
                    provider=repository_ref.provider.value,
                ) from exc
            merged = merge.merged
            self.events.emit(
                "task.pr_merged",
                {
                    "task_id": task.task_id,
                    "pr_url": pr_url,
                    "pr_number": pull_request.number,
                    "provider": repository_ref.provider.value,
                    "merged": merge.merged,
                    "sha": merge.sha,
                },
                actor=actor,
            )

        now = self.clock()
        approved = self.repository.update_task_if_status(
            task.task_id,
            expected_status=TaskStatus.AWAITING_REVIEW,
            values={
                "status": TaskStatus.COMPLETED,
                "review_comment": decision.comment or None,
                "reviewed_at": now,
                "completed_at": now,
            },
        )
        if approved is None:
            raise _changed_concurrently(task.task_id, "approve")

        self.events.emit(
            "task.review_approved",
            {
                "task_id": task.task_id,
                "comment": decision.comment,
                "merge_requested": decision.merge,
                "merged": merged,
                "provider": repository_ref.provider.value if repository_ref else None,
            },
            actor=actor,
        )
        self._emit_progress(approved)

        if pr_url and repository_ref is not None:
            lines = [
                "Approved & merged" if decision.merge else "Approved",
                f"Task ID: {task.task_id}",
            ]
            if decision.comment:
                lines.append(f"Comment: {decision.comment}")
            self._comment_best_effort(task.task_id, pr_url, repository_ref, "\n".join(lines), actor)
        return ReviewOutcome(task=approved, merged=merged, pull_request_url=pr_url)

    def _reject(
        self,
        task: TaskView,
        decision: ReviewDecision,
        *,
        actor: str | None,
    ) -> ReviewOutcome:
        feedback = (decision.feedback or "").strip()
        if not feedback:
            raise ValueError("Rejecting a review requires feedback for the next attempt.")

        window = compute_retry_window(task.retry_count, task.max_retries, should_increment=True)
        now = self.clock()
        exhausted = window.next_retry_count > task.max_retries
        if exhausted:
            values: dict[str, Any] = {
                "status": TaskStatus.FAILED,
                "feedback": feedback,
                "review_comment": decision.comment or None,
                "reviewed_at": now,
                "completed_at": now,
                "retry_count": window.next_retry_count,
                "max_retries": window.next_max_retries,
                "assigned_worker_id": None,
            }
            event_type = "task.review_rejected_max_retries"
        else:
            values = {
                "status": TaskStatus.QUEUED,
                "feedback": feedback,
                "review_comment": decision.comment or None,
                "reviewed_at": now,
                "retry_count": window.next_retry_count,
                "assigned_worker_id": None,
                "queued_at": now,
                "started_at": None,
                "completed_at": None,
            }
            event_type = "task.review_rejected"

        rejected = self.repository.update_task_if_status(
            task.task_id,
            expected_status=TaskStatus.AWAITING_REVIEW,
            values=values,
        )
        if rejected is None:
            raise _changed_concurrently(task.task_id, "reject")

        self.events.emit(
            event_type,
            {
                "task_id": task.task_id,
                "feedback": feedback,
                "comment": decision.comment,
                "retry_count": window.next_retry_count,
                "max_retries": task.max_retries,
            },
            actor=actor,
        )
        self._emit_progress(rejected)

        repository_ref = parse_git_repository(task.repo_url)
        if task.pr_url and repository_ref is not None:
            headline = "Rejected (max retries reached)" if exhausted else "Rejected & re-queued"
            body = "\n".join([headline, f"Task ID: {task.task_id}", f"Feedback: {feedback}"])
            self._comment_best_effort(task.task_id, task.pr_url, repository_ref, body, actor)
        return ReviewOutcome(task=rejected, pull_request_url=task.pr_url)

    # Execution reports

    def report_execution_finished(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        worker_id: str,
        succeeded: bool,
        summary: str | None = None,
        log_file_url: str | None = None,
        pr_url: str | None = None,
    ) -> TaskView:
        """Record the end of an execution attempt reported by the assigned worker.

        Success moves ``running -> awaiting_review``, failure ``running -> failed``.
        The write is guarded on both the status and the assigned worker, so a
        late report from a worker that lost the task is a conflict.
        """

        task = self.repository.require_task(task_id)
        if task.status != TaskStatus.RUNNING:
            raise PreconditionError(
                f"Task {task_id} is not running (status={task.status.value}).",
                current_status=task.status.value,
            )
        if task.assigned_worker_id != worker_id:
            raise StateConflictError(
                f"Task {task_id} is assigned to {task.assigned_worker_id}, not {worker_id}.",
                current_status=task.status.value,
            )

        now = self.clock()
        values: dict[str, Any] = {
            "status": TaskStatus.AWAITING_REVIEW if succeeded else TaskStatus.FAILED,
            "summary": summary,
            "log_file_url": log_file_url,
            "assigned_worker_id": None,
        }
        if pr_url:
            values["pr_url"] = pr_url
        if not succeeded:
            values["completed_at"] = now
        updated = self.repository.update_task_if_status(
            task_id,
            expected_status=TaskStatus.RUNNING,
            expected_worker_id=worker_id,
            values=values,
        )
        if updated is None:
            raise _changed_concurrently(task_id, "finish")

        self.repository.increment_worker_counters(
            worker_id,
            completed=1 if succeeded else 0,
            failed=0 if succeeded else 1,
        )
        self._release_worker(worker_id, task_id)
        self._emit_progress(updated, summary=summary)

        if succeeded and not updated.pr_url:
            updated = self._open_pull_request_best_effort(updated)
        return updated

    def _release_worker(self, worker_id: str, task_id: str) -> None:
        worker = self.repository.get_worker(worker_id)
        if worker is None or worker.current_task_id != task_id:
            return
        if worker.status not in {WorkerStatus.BUSY, WorkerStatus.DRAINING}:
            return
        next_status = WorkerStatus.IDLE if worker.status == WorkerStatus.BUSY else worker.status
        released = self.repository.update_worker_if_status(
            worker_id,
            expected_status=worker.status,
            values={"status": next_status, "current_task_id": None},
        )
        if released is None:
            logger.info("Worker %s changed concurrently; leaving it to its next heartbeat", worker_id)

    def _open_pull_request_best_effort(self, task: TaskView) -> TaskView:
        repository_ref = parse_git_repository(task.repo_url)
        if repository_ref is None:
            self.events.emit(
                "task.pr_skipped",
                {"task_id": task.task_id, "reason": "repo_provider_unsupported"},
            )
            return task
        if self.vcs_client is None:
            self.events.emit(
                "task.pr_skipped",
                {"task_id": task.task_id, "reason": "missing_provider_token"},
            )
            return task
        try:
            self._create_and_bind_pull_request(task, repository_ref, actor=None)
        except (VcsError, ExternalServiceError, StateConflictError, PreconditionError) as exc:
            logger.warning("Pull request for task %s not opened: %s", task.task_id, exc)
            self.events.emit("task.pr_failed", {"task_id": task.task_id, "error": str(exc)})
            return task
        return self.repository.get_task(task.task_id) or task

    # Helpers

    def _create_and_bind_pull_request(
        self,
        task: TaskView,
        repository_ref: GitRepositoryRef,
        *,
        actor: str | None,
    ) -> str:
        client = self._require_vcs_client()
        if not task.work_branch:
            raise PreconditionError(
                f"Task {task.task_id} has no work branch to open a pull request from.",
                current_status=task.status.value,
            )
        draft = build_pull_request_draft(
            task_id=task.task_id,
            title=task.title,
            agent_id=task.agent_id,
            work_branch=task.work_branch,
            description=task.description,
            title_prefix=self.pr_title_prefix,
        )
        try:
            pull_request = client.create_or_find_pull_request(
                repository=repository_ref,
                head_branch=task.work_branch,
                base_branch=task.base_branch,
                title=draft.title,
                body=draft.body,
            )
        except VcsError as exc:
            raise ExternalServiceError(
                f"Pull request creation failed for task {task.task_id}: {exc}",
                provider=repository_ref.provider.value,
            ) from exc

        bound = self.repository.update_task_if_status(
            task.task_id,
            expected_status=TaskStatus.AWAITING_REVIEW,
            values={"pr_url": pull_request.html_url},
        )
        if bound is None:
            raise _changed_concurrently(task.task_id, "bind pull request")
        self.events.emit(
            "task.pr_created",
            {
                "task_id": task.task_id,
                "pr_url": pull_request.html_url,
                "pr_number": pull_request.number,
                "provider": repository_ref.provider.value,
                "owner": repository_ref.owner,
                "repo": repository_ref.repo,
            },
            actor=actor,
        )
        return pull_request.html_url

    def _comment_best_effort(
        self,
        task_id: str,
        pr_url: str,
        repository_ref: GitRepositoryRef,
        body: str,
        actor: str | None,
    ) -> None:
        if self.vcs_client is None:
            return
        pull_request = _matching_pull_request(pr_url, repository_ref)
        if pull_request is None:
            return
        try:
            comment_url = self.vcs_client.comment_pull_request(
                pull_request=pull_request,
                body=body,
            )
        except VcsError as exc:
            logger.warning("PR comment failed for task %s: %s", task_id, exc)
            self.events.emit(
                "task.pr_comment_failed",
                {"task_id": task_id, "pr_url": pr_url, "error": str(exc)},
                actor=actor,
            )
            return
        self.events.emit(
            "task.pr_commented",
            {"task_id": task_id, "pr_url": pr_url, "comment_url": comment_url},
            actor=actor,
        )

    def _require_vcs_client(self) -> PullRequestClient:
        if self.vcs_client is None:
            raise PreconditionError("Merge requested but no git provider token is configured.")
        return self.vcs_client

    def _emit_progress(self, task: TaskView, *, summary: str | None = None) -> None:
        payload: dict[str, Any] = {"task_id": task.task_id, "status": task.status.value}
        if summary is not None:
            payload["summary"] = summary
        self.events.emit("task.progress", payload, audit=False)


def _matching_pull_request(
    pr_url: str | None,
    repository_ref: GitRepositoryRef,
) -> PullRequestRef | None:
    pull_request = parse_pull_request_url(pr_url)
    if pull_request is None:
        return None
    if (
        pull_request.repository.provider != repository_ref.provider
        or pull_request.repository.project_path != repository_ref.project_path
    ):
        return None
    return pull_request


def _require_scheduler_source(task: TaskView, *, operation: str) -> None:
    if task.source != TaskSource.SCHEDULER:
        raise PreconditionError(
            f"Only scheduler tasks support {operation}; task {task.task_id} "
            f"is driven by {task.source.value}.",
            current_status=task.status.value,
        )


def _changed_concurrently(task_id: str, operation: str) -> StateConflictError:
    return StateConflictError(
        f"Task state changed concurrently during {operation}; "
        f"please re-fetch and retry (task_id={task_id}).",
    )
