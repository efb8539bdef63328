from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from socket_sliders.jobs.artifacts import ArtifactStore
from socket_sliders.jobs.errors import (
    ArtifactNotReadyError,
    CancelConflictError,
    InconsistentStateError,
    JobNotFoundError,
    PayloadValidationError,
)
from socket_sliders.jobs.models import FailureClass, JobStatus, PublicJobStatus
from socket_sliders.jobs.repository import JobRepository
from socket_sliders.jobs.services import JobService, public_status

pytestmark = [
    allure.epic("Job Intake"),
    allure.feature("Status & Artifact Resolution"),
]


@pytest.fixture()
def service(tmp_path: Path, repository: JobRepository) -> JobService:
    return JobService(
        repository=repository,
        artifact_store=ArtifactStore(tmp_path / "artifacts"),
        max_attempts=2,
    )


def _publish(service: JobService, tmp_path: Path, job_id: str, extension: str) -> Path:
    source = tmp_path / f"source{extension}"
    source.write_bytes(b"x" * 200)
    return service.artifact_store.publish(job_id=job_id, source=source, extension=extension)


def test_submit_assigns_uuid_and_queues_pending_job(service: JobService, vertical_config) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})

    assert len(job.job_id) == 36
    assert job.max_attempts == 2
    status = service.get_status(job.job_id)
    assert status.status == PublicJobStatus.PENDING
    assert status.to_dict() == {
        "id": job.job_id,
        "status": "pending",
        "createdAt": job.created_at.isoformat(),
    }


def test_invalid_submission_never_reaches_the_queue(
    service: JobService,
    repository: JobRepository,
) -> None:
    with pytest.raises(PayloadValidationError):
        service.submit_raw({"socketConfig": {"orientation": "vertical"}})

    assert sum(repository.count_by_status().values()) == 0


def test_status_read_is_idempotent(service: JobService, vertical_config) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})

    assert service.get_status(job.job_id) == service.get_status(job.job_id)
    assert service.repository.get_job(job.job_id).updated_at == job.updated_at


def test_unknown_job_status_is_not_found(service: JobService) -> None:
    with pytest.raises(JobNotFoundError):
        service.get_status("3f0c5c1e-0000-0000-0000-000000000000")


def test_stalled_job_is_pending_while_retries_remain(
    service: JobService,
    repository: JobRepository,
    fake_clock,
    vertical_config,
) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})
    repository.claim_next_ready_job(worker_id="dead")
    fake_clock.advance(300)
    repository.mark_stalled_jobs(stall_after=timedelta(seconds=120))

    stalled = repository.get_job(job.job_id)
    assert stalled.status == JobStatus.STALLED
    assert public_status(stalled) == PublicJobStatus.PENDING
    assert service.get_status(job.job_id).error is None

    exhausted = stalled
    exhausted.attempt = exhausted.max_attempts
    assert public_status(exhausted) == PublicJobStatus.FAILED


def test_completed_job_resolves_single_mesh_before_archive(
    tmp_path: Path,
    service: JobService,
    repository: JobRepository,
    vertical_config,
) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})
    repository.claim_next_ready_job(worker_id="w1")
    mesh = _publish(service, tmp_path, job.job_id, ".stl")
    repository.complete_job(job_id=job.job_id, artifact_ref=mesh.name)

    assert service.resolve_artifact(job.job_id) == mesh
    status = service.get_status(job.job_id)
    assert status.status == PublicJobStatus.COMPLETED
    assert status.download_ref == mesh.name


def test_artifact_of_unfinished_job_is_not_ready(service: JobService, vertical_config) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})

    with pytest.raises(ArtifactNotReadyError, match="status=pending"):
        service.resolve_artifact(job.job_id)


def test_artifact_of_unknown_job_is_not_found(service: JobService) -> None:
    with pytest.raises(JobNotFoundError):
        service.resolve_artifact("missing")


def test_completed_job_without_artifact_is_inconsistent(
    service: JobService,
    repository: JobRepository,
    caplog: pytest.LogCaptureFixture,
    vertical_config,
) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})
    repository.claim_next_ready_job(worker_id="w1")
    repository.complete_job(job_id=job.job_id, artifact_ref=f"{job.job_id}.stl")

    with (
        caplog.at_level(logging.ERROR, logger="socket_sliders.jobs.services"),
        pytest.raises(InconsistentStateError),
    ):
        service.resolve_artifact(job.job_id)

    assert "no artifact exists" in caplog.text


def test_failed_job_reports_last_error(
    service: JobService,
    repository: JobRepository,
    fake_clock,
    vertical_config,
) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})
    for attempt in (1, 2):
        repository.claim_next_ready_job(worker_id="w1")
        repository.fail_job(
            job_id=job.job_id,
            error=f"validation_failure: attempt {attempt}",
            failure_class=FailureClass.VALIDATION_FAILURE,
        )
        fake_clock.advance(10)

    status = service.get_status(job.job_id)
    assert status.status == PublicJobStatus.FAILED
    assert status.error == "validation_failure: attempt 2"
    assert status.completed_at is not None


def test_cancel_pending_job_then_it_is_gone(service: JobService, vertical_config) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})

    assert service.cancel(job.job_id) == JobStatus.PENDING

    with pytest.raises(JobNotFoundError):
        service.get_status(job.job_id)
    with pytest.raises(JobNotFoundError):
        service.cancel(job.job_id)


def test_cancel_completed_job_conflicts(
    service: JobService,
    repository: JobRepository,
    vertical_config,
) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})
    repository.claim_next_ready_job(worker_id="w1")
    repository.complete_job(job_id=job.job_id, artifact_ref=f"{job.job_id}.stl")

    with pytest.raises(CancelConflictError):
        service.cancel(job.job_id)
    assert repository.get_job(job.job_id).status == JobStatus.COMPLETED


def test_cancel_failed_job_conflicts(
    service: JobService,
    repository: JobRepository,
    fake_clock,
    vertical_config,
) -> None:
    job = service.submit_raw({"socketConfig": vertical_config})
    for _ in range(job.max_attempts):
        repository.claim_next_ready_job(worker_id="w1")
        repository.fail_job(
            job_id=job.job_id,
            error="compiler_failure: boom",
            failure_class=FailureClass.COMPILER_FAILURE,
        )
        fake_clock.advance(10)

    with pytest.raises(CancelConflictError):
        service.cancel(job.job_id)
    assert repository.get_job(job.job_id).status == JobStatus.FAILED
