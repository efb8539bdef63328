"""Controllers for job queue and worker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from socket_sliders.config import Settings
from socket_sliders.jobs.artifacts import ArtifactStore
from socket_sliders.jobs.compiler import OpenScadCompiler
from socket_sliders.jobs.models import JobStatus
from socket_sliders.jobs.pipeline import ExecutionPipeline
from socket_sliders.jobs.repository import JobRepository
from socket_sliders.jobs.services import JobService, public_status
from socket_sliders.jobs.worker import WorkerPool
from socket_sliders.jobs.workspace import JobWorkspaceManager


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    config_file: Path


@dataclass(slots=True)
class JobStatusCommand:
    """CLI input for client-facing status."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for cancel and artifact lookups."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class GcCommand:
    """CLI input for retention and stall recovery."""

    db_path: Path | None


class JobsCliController:
    """Coordinates submission, inspection, worker and cleanup CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        raw = json.loads(command.config_file.read_text("utf-8"))
        with _repository(settings) as repository:
            job = _service(settings, repository).submit_raw(raw)
        return [
            f"Job submitted: job_id={job.job_id} status={job.status.value} "
            f"specs={len(job.payload.specs)}",
        ]

    def status(self, command: JobStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            view = _service(settings, repository).get_status(command.job_id)
        return [json.dumps(view.to_dict(), indent=2)]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)
            counts = repository.count_by_status()

        lines = [
            "Queue: " + " ".join(f"{status.value}={count}" for status, count in counts.items()),
            f"Jobs: {len(jobs)}",
        ]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} "
                f"public={public_status(job).value} specs={len(job.payload.specs)} "
                f"attempt={job.attempt}/{job.max_attempts} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: JobInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)

        job = details.job
        progress = (
            f"{job.progress.step} {job.progress.percentage}% {job.progress.message}"
            if job.progress is not None
            else "-"
        )
        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value} (public: {public_status(job).value})",
            f"Specs: {len(job.payload.specs)}",
            f"Attempt: {job.attempt}/{job.max_attempts}",
            f"Run after: {job.run_after.isoformat()}",
            f"Worker: {job.worker_id or '-'}",
            f"Progress: {progress}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error or '-'}",
            f"Artifact: {job.artifact_ref or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel(self, command: JobMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            previous = _service(settings, repository).cancel(command.job_id)
        return [f"Job canceled: {command.job_id} (was {previous.value})"]

    def artifact(self, command: JobMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            path = _service(settings, repository).resolve_artifact(command.job_id)
        return [str(path)]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            pool = build_worker_pool(settings, repository)
            summary = pool.run_loop(
                max_jobs=1 if command.once else command.max_jobs,
                max_idle_polls=1 if command.once else command.max_idle_polls,
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} canceled={summary.canceled} "
            f"stalled={summary.stalled} idle_polls={summary.idle_polls}",
        ]

    def gc(self, command: GcCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            stalled = repository.mark_stalled_jobs(
                stall_after=timedelta(seconds=settings.worker.stall_after_seconds),
            )
            pruned_jobs = repository.prune_jobs(settings.queue.retention_policy())
        pruned_artifacts = ArtifactStore(settings.storage.artifacts_dir).prune(
            max_age=settings.storage.artifact_max_age,
            max_count=settings.storage.artifact_max_count,
        )
        return [
            f"Stalled jobs requeued or failed: {len(stalled)}",
            f"Jobs pruned: {pruned_jobs}",
            f"Artifacts pruned: {pruned_artifacts}",
        ]


def build_pipeline(settings: Settings) -> ExecutionPipeline:
    """Wire the compiler, workspace manager and artifact store from settings."""

    return ExecutionPipeline(
        compiler=OpenScadCompiler(
            executable=settings.compiler.executable,
            templates_dir=settings.compiler.templates_dir,
        ),
        workspace_manager=JobWorkspaceManager(settings.storage.workspace_dir),
        artifact_store=ArtifactStore(settings.storage.artifacts_dir),
        compiler_timeout_seconds=settings.compiler.timeout_seconds,
        min_output_bytes=settings.compiler.min_output_bytes,
    )


def build_worker_pool(settings: Settings, repository: JobRepository) -> WorkerPool:
    worker = settings.worker
    return WorkerPool(
        repository=repository,
        pipeline=build_pipeline(settings),
        concurrency=worker.concurrency,
        job_timeout_seconds=worker.job_timeout_seconds,
        rate_limit_max_starts=worker.rate_limit_max_starts,
        rate_limit_window_seconds=worker.rate_limit_window_seconds,
        poll_interval_seconds=worker.poll_interval_seconds,
        stall_after_seconds=worker.stall_after_seconds,
        heartbeat_interval_seconds=worker.heartbeat_interval_seconds,
        maintenance_interval_seconds=worker.maintenance_interval_seconds,
        retention=settings.queue.retention_policy(),
        artifact_max_age=settings.storage.artifact_max_age,
        artifact_max_count=settings.storage.artifact_max_count,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _service(settings: Settings, repository: JobRepository) -> JobService:
    return JobService(
        repository=repository,
        artifact_store=ArtifactStore(settings.storage.artifacts_dir),
        max_attempts=settings.queue.max_attempts,
    )


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        retry_policy=settings.queue.retry_policy(),
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
