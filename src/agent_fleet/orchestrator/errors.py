"""Error taxonomy surfaced by engine operations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class EngineError(Exception):
    """Base engine error. A raised error leaves rows in their pre-operation status."""

    message: str
    code: str = "engine_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class TaskNotFoundError(EngineError):
    code: str = "not_found"
    task_id: str | None = None


@dataclass(slots=True)
class WorkerNotFoundError(EngineError):
    code: str = "not_found"
    worker_id: str | None = None


@dataclass(slots=True)
class PreconditionError(EngineError):
    """Operation rejected before any write."""

    code: str = "precondition_failed"
    current_status: str | None = None


@dataclass(slots=True)
class StateConflictError(EngineError):
    """Conditional write matched zero rows, or the current status forbids the operation."""

    code: str = "state_conflict"
    current_status: str | None = None


@dataclass(slots=True)
class ClosureConflictError(StateConflictError):
    """Restart-from found tasks still running inside the replay closure."""

    code: str = "closure_running_conflict"
    running_task_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class ExternalServiceError(EngineError):
    """Remote collaborator (VCS provider) call failed."""

    code: str = "external_service_failed"
    provider: str | None = None
