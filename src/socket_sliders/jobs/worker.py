"""Worker pool that drains the job queue through the execution pipeline."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from uuid import uuid4

from socket_sliders.jobs.artifacts import ArtifactStore
from socket_sliders.jobs.errors import AttemptCanceledError, JobNotFoundError, PipelineError
from socket_sliders.jobs.models import FailureClass, JobProgress, JobView, RetentionPolicy
from socket_sliders.jobs.pipeline import AttemptControl, ExecutionPipeline
from socket_sliders.jobs.rate_limit import SlidingWindowRateLimiter
from socket_sliders.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class WorkerEventType(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    STALLED = "stalled"
    CANCELED = "canceled"


@dataclass(slots=True)
class WorkerEvent:
    """Observability event; nothing in the pool depends on who listens."""

    event_type: WorkerEventType
    job_id: str
    worker_id: str
    attempt: int | None = None
    details: dict[str, object] = field(default_factory=dict)


WorkerEventListener = Callable[[WorkerEvent], None]


class AttemptStatus(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    CANCELED = "canceled"
    LOST = "lost"


@dataclass(slots=True)
class AttemptOutcome:
    """How one claimed attempt ended."""

    job_id: str
    status: AttemptStatus
    failure_class: FailureClass | None = None
    error: str | None = None


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    canceled: int = 0
    stalled: int = 0
    idle_polls: int = 0

    def record(self, outcome: AttemptOutcome) -> None:
        self.processed += 1
        if outcome.failure_class == FailureClass.TIMEOUT:
            self.timeouts += 1
        if outcome.status == AttemptStatus.COMPLETED:
            self.succeeded += 1
        elif outcome.status == AttemptStatus.RETRY_SCHEDULED:
            self.retried += 1
        elif outcome.status == AttemptStatus.FAILED:
            self.failed += 1
        else:
            self.canceled += 1


class _Heartbeat:
    """Throttled heartbeat that also notices when the job was taken away."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        job_id: str,
        worker_id: str,
        attempt: int,
        interval_seconds: float,
    ) -> None:
        self._repository = repository
        self._job_id = job_id
        self._worker_id = worker_id
        self._attempt = attempt
        self._interval_seconds = interval_seconds
        self._last_beat = time.monotonic()
        self._lost = False

    def mark_lost(self) -> None:
        self._lost = True

    def lost(self) -> bool:
        if self._lost:
            return True
        now = time.monotonic()
        if now - self._last_beat >= self._interval_seconds:
            self._last_beat = now
            held = self._repository.touch_job(
                job_id=self._job_id,
                worker_id=self._worker_id,
                attempt=self._attempt,
            )
            if not held:
                self._lost = True
        return self._lost


class JobWorker:
    """Runs one claimed job through the pipeline and records the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        pipeline: ExecutionPipeline,
        worker_id: str,
        job_timeout_seconds: float = 60.0,
        heartbeat_interval_seconds: float = 5.0,
        on_event: WorkerEventListener | None = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.worker_id = worker_id
        self.job_timeout_seconds = job_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.on_event = on_event

    @property
    def artifact_store(self) -> ArtifactStore:
        return self.pipeline.artifact_store

    def execute(self, job: JobView) -> AttemptOutcome:
        """Execute an already claimed job; never raises for attempt failures."""

        self.emit(WorkerEventType.STARTED, job, spec_count=len(job.payload.specs))
        heartbeat = _Heartbeat(
            repository=self.repository,
            job_id=job.job_id,
            worker_id=self.worker_id,
            attempt=job.attempt,
            interval_seconds=self.heartbeat_interval_seconds,
        )
        control = AttemptControl.start(self.job_timeout_seconds, is_canceled=heartbeat.lost)

        def on_progress(progress: JobProgress) -> None:
            held = self.repository.update_progress(
                job_id=job.job_id,
                progress=progress,
                worker_id=self.worker_id,
                attempt=job.attempt,
            )
            if not held:
                heartbeat.mark_lost()

        try:
            result = self.pipeline.run(
                job_id=job.job_id,
                payload=job.payload,
                control=control,
                on_progress=on_progress,
            )
        except AttemptCanceledError:
            logger.info("Job %s attempt %d stopped: no longer held", job.job_id, job.attempt)
            self.emit(WorkerEventType.CANCELED, job)
            return AttemptOutcome(job_id=job.job_id, status=AttemptStatus.CANCELED)
        except PipelineError as error:
            return self._record_failure(
                job,
                error=error.summary(),
                failure_class=error.failure_class,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while executing job %s", job.job_id)
            return self._record_failure(
                job,
                error=f"{FailureClass.INTERNAL_ERROR.value}: {error}",
                failure_class=FailureClass.INTERNAL_ERROR,
            )

        if self.repository.complete_job(
            job_id=job.job_id,
            artifact_ref=result.artifact_ref,
            worker_id=self.worker_id,
            attempt=job.attempt,
        ):
            self.emit(
                WorkerEventType.COMPLETED,
                job,
                artifact_ref=result.artifact_ref,
                spec_count=result.spec_count,
            )
            return AttemptOutcome(job_id=job.job_id, status=AttemptStatus.COMPLETED)

        self._discard_orphaned_artifact(job.job_id)
        self.emit(WorkerEventType.CANCELED, job)
        return AttemptOutcome(job_id=job.job_id, status=AttemptStatus.LOST)

    def emit(self, event_type: WorkerEventType, job: JobView, **details: object) -> None:
        event = WorkerEvent(
            event_type=event_type,
            job_id=job.job_id,
            worker_id=self.worker_id,
            attempt=job.attempt,
            details=dict(details),
        )
        logger.info(
            "worker=%s job=%s attempt=%d event=%s %s",
            self.worker_id,
            job.job_id,
            job.attempt,
            event_type.value,
            details or "",
        )
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:  # noqa: BLE001
            logger.exception("Worker event listener failed for job %s", job.job_id)

    def _record_failure(
        self,
        job: JobView,
        *,
        error: str,
        failure_class: FailureClass,
    ) -> AttemptOutcome:
        outcome = self.repository.fail_job(
            job_id=job.job_id,
            error=error,
            failure_class=failure_class,
            worker_id=self.worker_id,
            attempt=job.attempt,
        )
        if not outcome.recorded:
            logger.warning("Job %s failed but is no longer held: %s", job.job_id, error)
            return AttemptOutcome(
                job_id=job.job_id,
                status=AttemptStatus.LOST,
                failure_class=failure_class,
                error=error,
            )
        if outcome.retry_scheduled:
            self.emit(
                WorkerEventType.RETRY_SCHEDULED,
                job,
                error=error,
                run_after=outcome.run_after.isoformat() if outcome.run_after else None,
            )
            status = AttemptStatus.RETRY_SCHEDULED
        else:
            self.emit(WorkerEventType.FAILED, job, error=error)
            status = AttemptStatus.FAILED
        return AttemptOutcome(
            job_id=job.job_id,
            status=status,
            failure_class=failure_class,
            error=error,
        )

    def _discard_orphaned_artifact(self, job_id: str) -> None:
        try:
            self.repository.get_job(job_id)
        except JobNotFoundError:
            logger.info("Job %s was canceled while running; discarding its artifact", job_id)
            self.artifact_store.discard(job_id)
            return
        logger.warning("Job %s is held by another attempt; keeping its artifact", job_id)


class WorkerPool:
    """Claims ready jobs under a concurrency cap and a start-rate budget."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        pipeline: ExecutionPipeline,
        worker_id: str | None = None,
        concurrency: int = 2,
        job_timeout_seconds: float = 60.0,
        rate_limit_max_starts: int = 10,
        rate_limit_window_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        stall_after_seconds: float = 120.0,
        heartbeat_interval_seconds: float = 5.0,
        maintenance_interval_seconds: float = 30.0,
        retention: RetentionPolicy | None = None,
        artifact_max_age: timedelta | None = None,
        artifact_max_count: int = 1000,
        on_event: WorkerEventListener | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.repository = repository
        self.pipeline = pipeline
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.stall_after_seconds = stall_after_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.retention = retention
        self.artifact_max_age = artifact_max_age
        self.artifact_max_count = artifact_max_count
        self.on_event = on_event
        self.rate_limiter = SlidingWindowRateLimiter(
            max_starts=rate_limit_max_starts,
            window_seconds=rate_limit_window_seconds,
        )
        self.worker = JobWorker(
            repository=repository,
            pipeline=pipeline,
            worker_id=self.worker_id,
            job_timeout_seconds=job_timeout_seconds,
            heartbeat_interval_seconds=heartbeat_interval_seconds,
            on_event=on_event,
        )
        self._stop = threading.Event()
        self._stop_signal_name: str | None = None
        self._last_maintenance: float | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, *, signal_name: str | None = None) -> None:
        """Stop claiming new jobs; running attempts are allowed to finish."""

        if signal_name is not None:
            self._stop_signal_name = signal_name
            logger.info("Worker %s received %s, shutting down", self.worker_id, signal_name)
        self._stop.set()

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_jobs`` attempts started, or the queue stays idle.

        Args:
            max_jobs: Stop claiming after this many attempts (None = unlimited).
            max_idle_polls: Exit after this many consecutive polls that found
                no ready job while nothing was running (None = never).
        """

        aggregate = WorkerRunSummary()
        in_flight: dict[Future[AttemptOutcome], str] = {}
        started = 0
        consecutive_idle = 0
        logger.info(
            "Worker pool %s started: concurrency=%d poll=%.2fs",
            self.worker_id,
            self.concurrency,
            self.poll_interval_seconds,
        )
        executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=f"{self.worker_id}-job",
        )
        try:
            with self._signal_handlers():
                while not self.stop_requested:
                    self._collect(in_flight, aggregate, block=False)
                    try:
                        self.run_maintenance(aggregate)
                    except Exception:  # noqa: BLE001
                        logger.exception("Worker pool %s maintenance failed", self.worker_id)
                    if max_jobs is not None and started >= max_jobs:
                        break
                    if len(in_flight) >= self.concurrency:
                        self._collect(in_flight, aggregate, block=True)
                        continue
                    wait_seconds = self.rate_limiter.seconds_until_available()
                    if wait_seconds > 0:
                        self._stop.wait(min(wait_seconds, self.poll_interval_seconds))
                        continue

                    job = self.repository.claim_next_ready_job(worker_id=self.worker_id)
                    if job is None:
                        if in_flight:
                            self._collect(in_flight, aggregate, block=True)
                            continue
                        consecutive_idle += 1
                        aggregate.idle_polls += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._stop.wait(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    started += 1
                    self.rate_limiter.record_start()
                    in_flight[executor.submit(self.worker.execute, job)] = job.job_id
        finally:
            while in_flight:
                self._collect(in_flight, aggregate, block=True)
            executor.shutdown(wait=True)
            logger.info("Worker pool %s stopped: %s", self.worker_id, aggregate)
        return aggregate

    def run_maintenance(self, aggregate: WorkerRunSummary | None = None) -> None:
        """Requeue stalled jobs and apply retention, at most once per interval."""

        now = time.monotonic()
        if (
            self._last_maintenance is not None
            and now - self._last_maintenance < self.maintenance_interval_seconds
        ):
            return
        self._last_maintenance = now

        stalled = self.repository.mark_stalled_jobs(
            stall_after=timedelta(seconds=self.stall_after_seconds),
        )
        for job_id in stalled:
            if aggregate is not None:
                aggregate.stalled += 1
            logger.info("worker=%s job=%s event=%s", self.worker_id, job_id, "stalled")
            if self.on_event is not None:
                try:
                    self.on_event(
                        WorkerEvent(
                            event_type=WorkerEventType.STALLED,
                            job_id=job_id,
                            worker_id=self.worker_id,
                        ),
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("Worker event listener failed for job %s", job_id)

        if self.retention is not None:
            self.repository.prune_jobs(self.retention)
        if self.artifact_max_age is not None:
            self.pipeline.artifact_store.prune(
                max_age=self.artifact_max_age,
                max_count=self.artifact_max_count,
            )

    def _collect(
        self,
        in_flight: dict[Future[AttemptOutcome], str],
        aggregate: WorkerRunSummary,
        *,
        block: bool,
    ) -> None:
        if not in_flight:
            return
        done, _ = wait(
            list(in_flight),
            timeout=self.poll_interval_seconds if block else 0,
            return_when=FIRST_COMPLETED,
        )
        for future in done:
            job_id = in_flight.pop(future)
            try:
                outcome = future.result()
            except Exception:  # noqa: BLE001
                logger.exception("Worker thread crashed while running job %s", job_id)
                continue
            aggregate.record(outcome)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
