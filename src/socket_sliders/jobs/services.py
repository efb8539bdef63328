"""Intake and status facade over the job queue and the artifact store."""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

from socket_sliders.jobs.artifacts import ArtifactStore
from socket_sliders.jobs.errors import ArtifactNotReadyError, InconsistentStateError
from socket_sliders.jobs.models import (
    JobCreate,
    JobStatus,
    JobStatusView,
    JobView,
    PublicJobStatus,
)
from socket_sliders.jobs.repository import JobRepository
from socket_sliders.jobs.specs import JobPayload, parse_submission

logger = logging.getLogger(__name__)


def public_status(job: JobView) -> PublicJobStatus:
    """Map the internal status onto the client vocabulary.

    ``stalled`` is reported as ``pending`` while the job will be retried and
    as ``failed`` once its attempts are exhausted.
    """

    if job.status == JobStatus.STALLED:
        return PublicJobStatus.PENDING if job.retries_left else PublicJobStatus.FAILED
    return PublicJobStatus(job.status.value)


class JobService:
    """Submit, inspect, download and cancel jobs."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        artifact_store: ArtifactStore,
        max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.artifact_store = artifact_store
        self.max_attempts = max_attempts

    def submit(self, payload: JobPayload, *, job_id: str | None = None) -> JobView:
        job = self.repository.enqueue_job(
            JobCreate(
                job_id=job_id or str(uuid4()),
                payload=payload,
                max_attempts=self.max_attempts,
            ),
        )
        logger.info("Job %s submitted with %d spec(s)", job.job_id, len(payload.specs))
        return job

    def submit_raw(self, raw: object, *, job_id: str | None = None) -> JobView:
        """Validate a ``socketConfig``/``socketConfigs`` document and enqueue it."""

        return self.submit(parse_submission(raw), job_id=job_id)

    def get_status(self, job_id: str) -> JobStatusView:
        """Read-only status snapshot; safe to call any number of times."""

        job = self.repository.get_job(job_id)
        status = public_status(job)
        return JobStatusView(
            job_id=job.job_id,
            status=status,
            created_at=job.created_at,
            completed_at=job.completed_at,
            error=job.error if status == PublicJobStatus.FAILED else None,
            download_ref=job.artifact_ref if status == PublicJobStatus.COMPLETED else None,
            progress=job.progress,
        )

    def resolve_artifact(self, job_id: str) -> Path:
        job = self.repository.get_job(job_id)
        if job.status != JobStatus.COMPLETED:
            raise ArtifactNotReadyError(job_id, public_status(job).value)
        path = self.artifact_store.resolve(job_id)
        if path is None:
            logger.error("Job %s is completed but no artifact exists in the store", job_id)
            raise InconsistentStateError(job_id)
        return path

    def cancel(self, job_id: str) -> JobStatus:
        """Remove a pending, stalled or active job; terminal jobs are a conflict."""

        return self.repository.cancel_job(job_id=job_id)
