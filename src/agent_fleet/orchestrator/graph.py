"""Dependency graph helpers for grouped tasks."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from agent_fleet.orchestrator.models import Readiness, TaskStatus


class DependencyNode(Protocol):
    task_id: str
    depends_on: tuple[str, ...]


@dataclass(slots=True)
class DependencyInspection:
    """Snapshot of a task's prerequisites."""

    all_completed: bool
    missing_dep_ids: tuple[str, ...]
    terminal_deps: tuple[tuple[str, TaskStatus], ...]


def build_dependents_map(nodes: Iterable[DependencyNode]) -> dict[str, list[str]]:
    """Invert ``depends_on``: map each task id to the tasks that directly depend on it."""

    dependents: dict[str, list[str]] = {}
    for node in nodes:
        for dep_id in node.depends_on:
            dependents.setdefault(dep_id, []).append(node.task_id)
    return dependents


def compute_dependency_closure(
    from_task_id: str,
    dependents: Mapping[str, list[str]],
    can_visit: Callable[[str], bool] | None = None,
) -> set[str]:
    """Return ``from_task_id`` plus every task transitively depending on it.

    Traversal is breadth-first with a visited set, so cyclic input terminates.
    ``can_visit`` prunes a task and everything reachable only through it.
    """

    visited = {from_task_id}
    pending = deque([from_task_id])
    while pending:
        current = pending.popleft()
        for task_id in dependents.get(current, ()):
            if task_id in visited:
                continue
            if can_visit is not None and not can_visit(task_id):
                continue
            visited.add(task_id)
            pending.append(task_id)
    return visited


def inspect_dependencies(
    depends_on: Iterable[str],
    dep_statuses: Mapping[str, TaskStatus],
) -> DependencyInspection:
    dep_ids = tuple(depends_on)
    if not dep_ids:
        return DependencyInspection(all_completed=True, missing_dep_ids=(), terminal_deps=())

    missing = tuple(dep_id for dep_id in dep_ids if dep_id not in dep_statuses)
    terminal = tuple(
        (dep_id, dep_statuses[dep_id])
        for dep_id in dep_ids
        if dep_statuses.get(dep_id) in {TaskStatus.FAILED, TaskStatus.CANCELLED}
    )
    all_completed = not missing and all(
        dep_statuses[dep_id] == TaskStatus.COMPLETED for dep_id in dep_ids
    )
    return DependencyInspection(
        all_completed=all_completed,
        missing_dep_ids=missing,
        terminal_deps=terminal,
    )


def derive_readiness(inspection: DependencyInspection) -> Readiness:
    """Missing or failed/cancelled prerequisites block; otherwise ready or still pending."""

    if inspection.missing_dep_ids or inspection.terminal_deps:
        return Readiness.BLOCKED
    if inspection.all_completed:
        return Readiness.READY
    return Readiness.PENDING


def build_blocked_summary(inspection: DependencyInspection) -> str:
    parts: list[str] = []
    if inspection.missing_dep_ids:
        parts.append(f"missing=[{', '.join(inspection.missing_dep_ids)}]")
    if inspection.terminal_deps:
        terminal = ", ".join(f"{dep_id}:{status.value}" for dep_id, status in inspection.terminal_deps)
        parts.append(f"terminal=[{terminal}]")
    return f"Blocked by unsatisfied dependencies: {'; '.join(parts)}"


def outstanding_dependencies(
    depends_on: Iterable[str],
    dep_statuses: Mapping[str, TaskStatus],
) -> tuple[str, ...]:
    """Dependencies that are missing or not yet ``completed``."""

    return tuple(
        dep_id for dep_id in depends_on if dep_statuses.get(dep_id) != TaskStatus.COMPLETED
    )
