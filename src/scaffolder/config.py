"""Runtime configuration for the task broker and worker."""

from __future__ import annotations

import logging
import os
import socket
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop, heartbeat and workspace settings."""

    working_directory: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "scaffolder",
    )
    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 10.0
    step_log_level: str = "INFO"
    action_modules: tuple[str, ...] = ()


@dataclass(slots=True)
class StoreSettings:
    """Task store staleness and retry policy."""

    heartbeat_stale_seconds: int = 120
    retry_attempts: int = 5
    retry_base_seconds: float = 0.5
    retry_max_seconds: float = 10.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".scaffolder.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        working_directory = os.getenv("SCAFFOLDER_WORKING_DIRECTORY", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("SCAFFOLDER_DB_PATH", ".scaffolder.db")),
            worker=WorkerSettings(
                working_directory=(
                    Path(working_directory)
                    if working_directory
                    else Path(tempfile.gettempdir()) / "scaffolder"
                ),
                worker_id=os.getenv("SCAFFOLDER_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("SCAFFOLDER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("SCAFFOLDER_HEARTBEAT_INTERVAL_SECONDS", "10"),
                ),
                step_log_level=os.getenv("SCAFFOLDER_STEP_LOG_LEVEL", "INFO").strip().upper(),
                action_modules=_split_csv(os.getenv("SCAFFOLDER_ACTION_MODULES", "")),
            ),
            store=StoreSettings(
                heartbeat_stale_seconds=int(
                    os.getenv("SCAFFOLDER_HEARTBEAT_STALE_SECONDS", "120"),
                ),
                retry_attempts=int(os.getenv("SCAFFOLDER_STORE_RETRY_ATTEMPTS", "5")),
                retry_base_seconds=float(
                    os.getenv("SCAFFOLDER_STORE_RETRY_BASE_SECONDS", "0.5"),
                ),
                retry_max_seconds=float(
                    os.getenv("SCAFFOLDER_STORE_RETRY_MAX_SECONDS", "10"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("SCAFFOLDER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("SCAFFOLDER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("SCAFFOLDER_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.store.heartbeat_stale_seconds <= 2 * self.worker.heartbeat_interval_seconds:
            raise ValueError(
                "SCAFFOLDER_HEARTBEAT_STALE_SECONDS must be greater than twice "
                "SCAFFOLDER_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.store.retry_attempts < 1:
            raise ValueError("SCAFFOLDER_STORE_RETRY_ATTEMPTS must be >= 1.")
        if self.store.retry_base_seconds <= 0 or self.store.retry_max_seconds <= 0:
            raise ValueError("Store retry backoff seconds must be > 0.")
        if self.store.retry_max_seconds < self.store.retry_base_seconds:
            raise ValueError(
                "SCAFFOLDER_STORE_RETRY_MAX_SECONDS must be >= "
                "SCAFFOLDER_STORE_RETRY_BASE_SECONDS.",
            )
        if self.store.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SCAFFOLDER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.worker.step_log_level), int):
            raise ValueError(
                f"Invalid SCAFFOLDER_STEP_LOG_LEVEL: {self.worker.step_log_level!r}",
            )
        for spec in self.worker.action_modules:
            module_name, _, factory_name = spec.partition(":")
            if not module_name or not factory_name:
                raise ValueError(
                    "Invalid SCAFFOLDER_ACTION_MODULES entry: "
                    f"{spec!r}. Expected format '<module>:<factory>'.",
                )


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _split_csv(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)
