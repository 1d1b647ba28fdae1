"""Audit and broadcast side effects of engine transitions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from agent_fleet.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Mapping[str, Any]], None]


class EventEmitter(Protocol):
    """Fire-and-forget sink for transition events."""

    def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        actor: str | None = None,
        audit: bool = True,
    ) -> None:
        """Record and broadcast one event; must never raise."""


class Broadcaster:
    """In-process fan-out to subscribers (for example an SSE bridge)."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def broadcast(self, event_type: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event_type, payload)
            except Exception:  # noqa: BLE001
                logger.warning("Event subscriber failed for %s", event_type, exc_info=True)


class AuditEventEmitter:
    """Writes ``system_events`` rows and broadcasts, at most once and best effort."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self.repository = repository
        self.broadcaster = broadcaster or Broadcaster()

    def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        actor: str | None = None,
        audit: bool = True,
    ) -> None:
        if audit:
            try:
                self.repository.add_event(
                    event_type=event_type,
                    payload=payload,
                    actor=actor,
                    task_id=_optional_str(payload.get("task_id")),
                    worker_id=_optional_str(payload.get("worker_id")),
                )
            except Exception:  # noqa: BLE001
                logger.warning("Failed to record audit event %s", event_type, exc_info=True)
        self.broadcaster.broadcast(event_type, payload)


class NullEventEmitter:
    def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        actor: str | None = None,
        audit: bool = True,
    ) -> None:
        return None


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None
