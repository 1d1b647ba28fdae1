"""Runtime configuration for the task lifecycle engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_MERGE_METHODS = ("merge", "squash", "rebase")


@dataclass(slots=True)
class StorageSettings:
    """SQLite access policy."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler tick cadence and batch sizes."""

    interval_seconds: float = 15.0
    waiting_batch_size: int = 50
    queued_batch_size: int = 20
    worker_stale_timeout_seconds: float = 30.0
    recover_on_start: bool = True


@dataclass(slots=True)
class HeartbeatSettings:
    """Worker heartbeat reconciliation settings."""

    max_attempts: int = 3


@dataclass(slots=True)
class VcsSettings:
    """Pull-request provider settings."""

    github_token: str | None = None
    github_api_base_url: str = "https://api.github.com"
    merge_method: str = "squash"
    title_prefix: str = "[CAM]"
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_fleet.db")
    log_level: str = "WARNING"
    storage: StorageSettings = field(default_factory=StorageSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    heartbeat: HeartbeatSettings = field(default_factory=HeartbeatSettings)
    vcs: VcsSettings = field(default_factory=VcsSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_FLEET_DB_PATH", ".agent_fleet.db")),
            log_level=os.getenv("AGENT_FLEET_LOG_LEVEL", "WARNING").strip().upper(),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("AGENT_FLEET_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            scheduler=SchedulerSettings(
                interval_seconds=float(
                    os.getenv("AGENT_FLEET_SCHEDULER_INTERVAL_SECONDS", "15"),
                ),
                waiting_batch_size=int(
                    os.getenv("AGENT_FLEET_SCHEDULER_WAITING_BATCH_SIZE", "50"),
                ),
                queued_batch_size=int(
                    os.getenv("AGENT_FLEET_SCHEDULER_QUEUED_BATCH_SIZE", "20"),
                ),
                worker_stale_timeout_seconds=_worker_stale_timeout_seconds(),
                recover_on_start=_env_bool(
                    "AGENT_FLEET_SCHEDULER_RECOVER_ON_START",
                    default=True,
                ),
            ),
            heartbeat=HeartbeatSettings(
                max_attempts=int(os.getenv("AGENT_FLEET_HEARTBEAT_MAX_ATTEMPTS", "3")),
            ),
            vcs=VcsSettings(
                github_token=os.getenv("AGENT_FLEET_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN"),
                github_api_base_url=os.getenv(
                    "AGENT_FLEET_GITHUB_API_BASE_URL",
                    "https://api.github.com",
                ).rstrip("/"),
                merge_method=os.getenv("AGENT_FLEET_MERGE_METHOD", "squash").strip().lower(),
                title_prefix=os.getenv("AGENT_FLEET_PR_TITLE_PREFIX", "[CAM]"),
                request_timeout_seconds=float(
                    os.getenv("AGENT_FLEET_VCS_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("AGENT_FLEET_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.scheduler.interval_seconds <= 0:
            raise ValueError("AGENT_FLEET_SCHEDULER_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.waiting_batch_size <= 0:
            raise ValueError("AGENT_FLEET_SCHEDULER_WAITING_BATCH_SIZE must be > 0.")
        if self.scheduler.queued_batch_size <= 0:
            raise ValueError("AGENT_FLEET_SCHEDULER_QUEUED_BATCH_SIZE must be > 0.")
        if self.scheduler.worker_stale_timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_WORKER_STALE_TIMEOUT_MS must be > 0.")
        if self.heartbeat.max_attempts <= 0:
            raise ValueError("AGENT_FLEET_HEARTBEAT_MAX_ATTEMPTS must be > 0.")
        if self.vcs.merge_method not in SUPPORTED_MERGE_METHODS:
            raise ValueError(
                "AGENT_FLEET_MERGE_METHOD must be one of: "
                f"{', '.join(SUPPORTED_MERGE_METHODS)} (got {self.vcs.merge_method!r}).",
            )
        parsed = urlparse(self.vcs.github_api_base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid AGENT_FLEET_GITHUB_API_BASE_URL: "
                f"{self.vcs.github_api_base_url!r}. Expected an absolute http(s) URL.",
            )
        if self.vcs.request_timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_VCS_REQUEST_TIMEOUT_SECONDS must be > 0.")


def _worker_stale_timeout_seconds() -> float:
    raw = os.getenv("AGENT_FLEET_WORKER_STALE_TIMEOUT_MS", "").strip()
    if not raw:
        return 30.0
    try:
        value = int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid AGENT_FLEET_WORKER_STALE_TIMEOUT_MS: {raw!r}") from error
    return value / 1000.0


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
