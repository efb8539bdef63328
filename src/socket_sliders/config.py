"""Runtime configuration for the job queue, worker pool and compiler."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from socket_sliders.jobs.models import RetentionPolicy, RetryPolicy

ENV_PREFIX = "SOCKET_SLIDERS_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool sizing, pacing and liveness settings."""

    concurrency: int = 2
    job_timeout_seconds: float = 60.0
    rate_limit_max_starts: int = 10
    rate_limit_window_seconds: float = 60.0
    poll_interval_seconds: float = 1.0
    stall_after_seconds: float = 120.0
    heartbeat_interval_seconds: float = 5.0
    maintenance_interval_seconds: float = 30.0


@dataclass(slots=True)
class QueueSettings:
    """Retry policy and queue retention."""

    max_attempts: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 300.0
    completed_job_max_age_hours: float = 24.0
    completed_job_max_count: int = 1000
    failed_job_max_age_days: float = 7.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
        )

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            completed_max_age=timedelta(hours=self.completed_job_max_age_hours),
            completed_max_count=self.completed_job_max_count,
            failed_max_age=timedelta(days=self.failed_job_max_age_days),
        )


@dataclass(slots=True)
class CompilerSettings:
    """External geometry compiler invocation."""

    executable: str = "openscad"
    templates_dir: Path = Path("templates")
    timeout_seconds: float = 60.0
    min_output_bytes: int = 100


@dataclass(slots=True)
class StorageSettings:
    """Scratch workspace and artifact store locations."""

    workspace_dir: Path = Path(".socket_sliders/work")
    artifacts_dir: Path = Path(".socket_sliders/artifacts")
    artifact_max_age_hours: float = 24.0
    artifact_max_count: int = 1000

    @property
    def artifact_max_age(self) -> timedelta:
        return timedelta(hours=self.artifact_max_age_hours)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".socket_sliders.db")
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    compiler: CompilerSettings = field(default_factory=CompilerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".socket_sliders.db")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            worker=WorkerSettings(
                concurrency=_env_int("WORKER_CONCURRENCY", 2),
                job_timeout_seconds=_env_float("JOB_TIMEOUT_SECONDS", 60.0),
                rate_limit_max_starts=_env_int("RATE_LIMIT_MAX_STARTS", 10),
                rate_limit_window_seconds=_env_float("RATE_LIMIT_WINDOW_SECONDS", 60.0),
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 1.0),
                stall_after_seconds=_env_float("STALL_AFTER_SECONDS", 120.0),
                heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 5.0),
                maintenance_interval_seconds=_env_float("MAINTENANCE_INTERVAL_SECONDS", 30.0),
            ),
            queue=QueueSettings(
                max_attempts=_env_int("MAX_ATTEMPTS", 3),
                retry_base_seconds=_env_float("RETRY_BASE_SECONDS", 2.0),
                retry_max_seconds=_env_float("RETRY_MAX_SECONDS", 300.0),
                completed_job_max_age_hours=_env_float("COMPLETED_JOB_MAX_AGE_HOURS", 24.0),
                completed_job_max_count=_env_int("COMPLETED_JOB_MAX_COUNT", 1000),
                failed_job_max_age_days=_env_float("FAILED_JOB_MAX_AGE_DAYS", 7.0),
            ),
            compiler=CompilerSettings(
                executable=_env("OPENSCAD_BIN", "openscad"),
                templates_dir=Path(_env("TEMPLATES_DIR", "templates")),
                timeout_seconds=_env_float("COMPILER_TIMEOUT_SECONDS", 60.0),
                min_output_bytes=_env_int("MIN_OUTPUT_BYTES", 100),
            ),
            storage=StorageSettings(
                workspace_dir=Path(_env("WORKSPACE_DIR", ".socket_sliders/work")),
                artifacts_dir=Path(_env("ARTIFACTS_DIR", ".socket_sliders/artifacts")),
                artifact_max_age_hours=_env_float("ARTIFACT_MAX_AGE_HOURS", 24.0),
                artifact_max_count=_env_int("ARTIFACT_MAX_COUNT", 1000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        positive_ints = {
            "WORKER_CONCURRENCY": self.worker.concurrency,
            "RATE_LIMIT_MAX_STARTS": self.worker.rate_limit_max_starts,
            "MAX_ATTEMPTS": self.queue.max_attempts,
        }
        for name, value in positive_ints.items():
            if value < 1:
                raise ValueError(f"{ENV_PREFIX}{name} must be >= 1.")

        positive_floats = {
            "JOB_TIMEOUT_SECONDS": self.worker.job_timeout_seconds,
            "RATE_LIMIT_WINDOW_SECONDS": self.worker.rate_limit_window_seconds,
            "POLL_INTERVAL_SECONDS": self.worker.poll_interval_seconds,
            "STALL_AFTER_SECONDS": self.worker.stall_after_seconds,
            "HEARTBEAT_INTERVAL_SECONDS": self.worker.heartbeat_interval_seconds,
            "COMPILER_TIMEOUT_SECONDS": self.compiler.timeout_seconds,
            "RETRY_MAX_SECONDS": self.queue.retry_max_seconds,
        }
        for name, value in positive_floats.items():
            if value <= 0:
                raise ValueError(f"{ENV_PREFIX}{name} must be > 0.")

        non_negative = {
            "MAINTENANCE_INTERVAL_SECONDS": self.worker.maintenance_interval_seconds,
            "RETRY_BASE_SECONDS": self.queue.retry_base_seconds,
            "MIN_OUTPUT_BYTES": self.compiler.min_output_bytes,
            "ARTIFACT_MAX_AGE_HOURS": self.storage.artifact_max_age_hours,
            "ARTIFACT_MAX_COUNT": self.storage.artifact_max_count,
            "COMPLETED_JOB_MAX_AGE_HOURS": self.queue.completed_job_max_age_hours,
            "COMPLETED_JOB_MAX_COUNT": self.queue.completed_job_max_count,
            "FAILED_JOB_MAX_AGE_DAYS": self.queue.failed_job_max_age_days,
        }
        for name, value in non_negative.items():
            if value < 0:
                raise ValueError(f"{ENV_PREFIX}{name} must be >= 0.")

        if self.worker.heartbeat_interval_seconds >= self.worker.stall_after_seconds:
            raise ValueError(
                f"{ENV_PREFIX}HEARTBEAT_INTERVAL_SECONDS must be lower than "
                f"{ENV_PREFIX}STALL_AFTER_SECONDS.",
            )
        if not self.compiler.executable.strip():
            raise ValueError(f"{ENV_PREFIX}OPENSCAD_BIN must not be empty.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"{ENV_PREFIX}LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}.",
            )


def configure_logging(level: str) -> None:
    """Route library loggers to stderr at the configured level."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}.") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}.") from error
