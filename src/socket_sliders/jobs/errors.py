"""Error taxonomy for the job pipeline.

Queue and facade errors are raised to callers. Pipeline errors are caught at
the attempt boundary, turned into one error string and handed to the queue,
which owns the retry decision.
"""

from __future__ import annotations

from socket_sliders.jobs.models import FailureClass
from socket_sliders.jobs.specs import PayloadValidationError

__all__ = [
    "ArtifactNotReadyError",
    "AttemptCanceledError",
    "CancelConflictError",
    "CompilerFailureError",
    "ExecutionTimeoutError",
    "InconsistentStateError",
    "JobError",
    "JobNotFoundError",
    "OutputValidationError",
    "PackagingError",
    "PayloadValidationError",
    "PipelineError",
    "SubmissionConflictError",
]


class JobError(RuntimeError):
    """Base class for job pipeline errors."""


class JobNotFoundError(JobError):
    """Unknown job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class SubmissionConflictError(JobError):
    """A job with the same id is already queued."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job already exists: {job_id}")
        self.job_id = job_id


class CancelConflictError(JobError):
    """Cancel requested for a job that already reached a terminal state."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Cannot cancel job {job_id} in status={status}")
        self.job_id = job_id
        self.status = status


class ArtifactNotReadyError(JobError):
    """Artifact requested for a job that has not completed."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Artifact is not available for job {job_id} (status={status})")
        self.job_id = job_id
        self.status = status


class InconsistentStateError(JobError):
    """Completed job whose artifact is missing from the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is completed but its artifact is missing")
        self.job_id = job_id


class PipelineError(JobError):
    """One attempt failed; carries the failure class used in the error string."""

    failure_class: FailureClass = FailureClass.INTERNAL_ERROR

    def summary(self) -> str:
        return f"{self.failure_class.value}: {self}"


class ExecutionTimeoutError(PipelineError):
    failure_class = FailureClass.TIMEOUT


class CompilerFailureError(PipelineError):
    failure_class = FailureClass.COMPILER_FAILURE


class OutputValidationError(PipelineError):
    failure_class = FailureClass.VALIDATION_FAILURE


class PackagingError(PipelineError):
    failure_class = FailureClass.PACKAGING_FAILURE


class AttemptCanceledError(PipelineError):
    failure_class = FailureClass.CANCELED
