"""Retry window policy for replayed and rejected tasks."""

from __future__ import annotations

from typing import NamedTuple

from agent_fleet.orchestrator.models import TaskStatus

RETRY_CONSUMING_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.AWAITING_REVIEW,
    },
)


class RetryWindow(NamedTuple):
    next_retry_count: int
    next_max_retries: int


def compute_retry_window(
    retry_count: int,
    max_retries: int,
    *,
    should_increment: bool,
) -> RetryWindow:
    """Next retry counters; the ceiling widens so a manual replay is never blocked."""

    if retry_count < 0 or max_retries < 0:
        raise ValueError(
            f"Retry counters must be non-negative, got retry_count={retry_count} "
            f"max_retries={max_retries}.",
        )
    if not should_increment:
        return RetryWindow(retry_count, max_retries)
    next_retry_count = retry_count + 1
    return RetryWindow(next_retry_count, max(max_retries, next_retry_count))


def should_consume_retry(status: TaskStatus) -> bool:
    """A replay consumes a retry unless the task never left ``waiting``/``queued``."""

    return status in RETRY_CONSUMING_STATUSES
