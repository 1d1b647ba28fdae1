"""Worker heartbeat reconciliation with a bounded compare-and-swap loop."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from agent_fleet.orchestrator.errors import StateConflictError
from agent_fleet.orchestrator.events import EventEmitter, NullEventEmitter
from agent_fleet.orchestrator.models import HeartbeatReport, HeartbeatResult, WorkerStatus
from agent_fleet.orchestrator.repository import OrchestratorRepository
from agent_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def resolve_heartbeat_status(stored: WorkerStatus, reported: WorkerStatus) -> WorkerStatus:
    """Status to persist given the stored status and the worker's report.

    ``draining`` survives idle/busy reports and ``offline`` survives everything
    except another ``offline`` report; only an explicit activation clears them.
    """

    if stored == WorkerStatus.DRAINING and reported in {WorkerStatus.IDLE, WorkerStatus.BUSY}:
        return WorkerStatus.DRAINING
    if stored == WorkerStatus.OFFLINE and reported != WorkerStatus.OFFLINE:
        return WorkerStatus.OFFLINE
    return reported


def resolve_current_task_id(status: WorkerStatus, reported_task_id: str | None) -> str | None:
    if status in {WorkerStatus.IDLE, WorkerStatus.OFFLINE}:
        return None
    return reported_task_id


class WorkerHeartbeatCoordinator:
    """Applies worker self-reports without clobbering administrative status changes."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        events: EventEmitter | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0.")
        self.repository = repository
        self.events = events or NullEventEmitter()
        self.max_attempts = max_attempts
        self.clock = clock

    def apply_heartbeat(self, worker_id: str, report: HeartbeatReport) -> HeartbeatResult:
        """Persist one heartbeat, re-reading the stored status on every attempt.

        Raises ``StateConflictError`` once ``max_attempts`` conditional writes
        have all lost their race; the next heartbeat simply tries again.
        """

        for attempt in range(1, self.max_attempts + 1):
            stored = self.repository.require_worker(worker_id)
            resolved = resolve_heartbeat_status(stored.status, report.status)
            current_task_id = resolve_current_task_id(resolved, report.current_task_id)
            updated = self.repository.update_worker_if_status(
                worker_id,
                expected_status=stored.status,
                values=_heartbeat_values(report, resolved, current_task_id, self.clock()),
            )
            if updated is not None:
                self.events.emit(
                    "worker.heartbeat",
                    {
                        "worker_id": worker_id,
                        "status": resolved.value,
                        "current_task_id": current_task_id,
                        "cpu_usage": report.cpu_usage,
                        "memory_usage_mb": report.memory_usage_mb,
                        "log_tail": report.log_tail,
                    },
                    audit=False,
                )
                return HeartbeatResult(
                    worker=updated,
                    reported_status=report.status,
                    resolved_status=resolved,
                    attempts=attempt,
                )
            logger.debug(
                "Heartbeat CAS lost for worker %s (attempt %s/%s, stored=%s)",
                worker_id,
                attempt,
                self.max_attempts,
                stored.status.value,
            )

        logger.warning(
            "Heartbeat for worker %s gave up after %s conflicting attempts",
            worker_id,
            self.max_attempts,
        )
        raise StateConflictError(
            f"Worker {worker_id} status changed concurrently; heartbeat not applied.",
        )


def _heartbeat_values(
    report: HeartbeatReport,
    status: WorkerStatus,
    current_task_id: str | None,
    now: datetime,
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "status": status,
        "current_task_id": current_task_id,
        "cpu_usage": report.cpu_usage,
        "memory_usage_mb": report.memory_usage_mb,
        "disk_usage_mb": report.disk_usage_mb,
        "last_heartbeat_at": now,
    }
    if report.log_tail is not None:
        values["log_tail"] = report.log_tail
    if report.mode is not None:
        values["mode"] = report.mode
    if report.reported_env_vars is not None:
        values["reported_env_vars"] = report.reported_env_vars
    if report.reported_auth_status is not None:
        values["reported_auth_status"] = report.reported_auth_status
    return values
