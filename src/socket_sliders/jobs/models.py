"""Domain models for the job queue and execution pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from socket_sliders.jobs.specs import JobPayload


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class PublicJobStatus(str, Enum):
    """Client-facing status vocabulary."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
CLAIMABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.STALLED})


class FailureClass(str, Enum):
    """Normalized failure classes recorded with the last error."""

    TIMEOUT = "timeout"
    COMPILER_FAILURE = "compiler_failure"
    VALIDATION_FAILURE = "validation_failure"
    PACKAGING_FAILURE = "packaging_failure"
    STALLED = "stalled"
    CANCELED = "canceled"
    INTERNAL_ERROR = "internal_error"


class ProgressStep(str, Enum):
    """Well-known pipeline checkpoints."""

    VALIDATING = "validating"
    EXECUTING_COMPILER = "executing_compiler"
    VALIDATING_MESH = "validating_mesh"
    CREATING_ARCHIVE = "creating_archive"
    STORING_ARTIFACT = "storing_artifact"
    COMPLETED = "completed"


@dataclass(slots=True, frozen=True)
class JobProgress:
    """Advisory progress snapshot, overwritten in place."""

    step: str
    message: str
    percentage: int

    def __post_init__(self) -> None:
        if not 0 <= self.percentage <= 100:
            raise ValueError(f"Progress percentage must be within 0..100, got {self.percentage}")


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    job_id: str
    payload: JobPayload
    max_attempts: int = 3
    run_after: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services, worker and CLI."""

    job_id: str
    status: JobStatus
    payload: JobPayload
    attempt: int
    max_attempts: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    worker_id: str | None
    progress: JobProgress | None
    artifact_ref: str | None
    failure_class: FailureClass | None
    error: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_left(self) -> bool:
        return self.attempt < self.max_attempts


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True, frozen=True)
class FailOutcome:
    """What the queue decided after a failed attempt."""

    recorded: bool
    retry_scheduled: bool
    run_after: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.recorded and not self.retry_scheduled


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff schedule: base * 2^(attempt - 1), capped."""

    base_seconds: float = 2.0
    max_seconds: float = 300.0

    def delay_for(self, attempt: int) -> timedelta:
        seconds = self.base_seconds * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(self.max_seconds, seconds))


@dataclass(slots=True, frozen=True)
class RetentionPolicy:
    """Queue retention windows, shorter for success than for failure."""

    completed_max_age: timedelta = timedelta(hours=24)
    completed_max_count: int = 1000
    failed_max_age: timedelta = timedelta(days=7)


@dataclass(slots=True)
class JobStatusView:
    """Client-facing status document."""

    job_id: str
    status: PublicJobStatus
    created_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    download_ref: str | None = None
    progress: JobProgress | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.job_id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at.isoformat()
        if self.error is not None:
            payload["error"] = self.error
        if self.download_ref is not None:
            payload["downloadRef"] = self.download_ref
        if self.progress is not None:
            payload["progress"] = {
                "step": self.progress.step,
                "message": self.progress.message,
                "percentage": self.progress.percentage,
            }
        return payload
