"""Persistent job queue backed by SQLModel + SQLite.

Every state transition is a conditional ``UPDATE`` (compare-and-swap on the
current status), so concurrent pollers never double-claim a job and a late
writer never overwrites a transition made by someone else.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from socket_sliders.jobs.errors import (
    CancelConflictError,
    JobNotFoundError,
    SubmissionConflictError,
)
from socket_sliders.jobs.models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    FailOutcome,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobProgress,
    JobStatus,
    JobView,
    ProgressStep,
    RetentionPolicy,
    RetryPolicy,
)
from socket_sliders.jobs.specs import JobPayload
from socket_sliders.storage.alembic_runner import upgrade_head
from socket_sliders.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from socket_sliders.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 2000


class JobRepository:
    """Queue persistence facade; the single source of truth for job state."""

    def __init__(
        self,
        db_path: Path,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self._clock()

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Insert a pending job; a duplicate id is rejected, never merged."""

        now = self.now()
        with Session(self.engine) as session:
            row = Job(
                job_id=payload.job_id,
                status=JobStatus.PENDING.value,
                payload_json=json.dumps(payload.payload.to_dict(), sort_keys=True),
                spec_count=len(payload.payload.specs),
                attempt=0,
                max_attempts=payload.max_attempts,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise SubmissionConflictError(payload.job_id) from error
            self._add_event(
                session=session,
                job_id=payload.job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "spec_count": len(payload.payload.specs),
                    "max_attempts": payload.max_attempts,
                },
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise SubmissionConflictError(payload.job_id) from error
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView:
        """Return one job or raise :class:`JobNotFoundError`."""

        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return _to_job_view(row)

    def claim_next_ready_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the earliest ready job."""

        while True:
            now = self.now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        col(Job.status).in_([status.value for status in CLAIMABLE_STATUSES]),
                        Job.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(Job.run_after).asc(),
                        col(Job.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                previous = JobStatus(candidate.status)
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == previous.value,
                        col(Job.attempt) == candidate.attempt,
                        Job.run_after <= to_db_datetime(now),
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        completed_at=None,
                        worker_id=worker_id,
                        progress_step=None,
                        progress_message=None,
                        progress_percentage=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(select(Job).where(Job.job_id == candidate.job_id)).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=previous,
                    status_to=JobStatus.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                session.refresh(claimed)
                return _to_job_view(claimed)

    def update_progress(
        self,
        *,
        job_id: str,
        progress: JobProgress,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> bool:
        """Overwrite progress of an active job; no-op once the job left ``active``."""

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*self._held_by(job_id=job_id, worker_id=worker_id, attempt=attempt))
                .values(
                    progress_step=progress.step,
                    progress_message=progress.message,
                    progress_percentage=progress.percentage,
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def touch_job(
        self,
        *,
        job_id: str,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> bool:
        """Refresh the heartbeat; False when the caller no longer holds the job."""

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*self._held_by(job_id=job_id, worker_id=worker_id, attempt=attempt))
                .values(
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def complete_job(
        self,
        *,
        job_id: str,
        artifact_ref: str,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> bool:
        """Mark an active job as completed."""

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*self._held_by(job_id=job_id, worker_id=worker_id, attempt=attempt))
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    artifact_ref=artifact_ref,
                    failure_class=None,
                    error=None,
                    progress_step=ProgressStep.COMPLETED.value,
                    progress_message="Artifact stored successfully",
                    progress_percentage=100,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.COMPLETED,
                details={"artifact_ref": artifact_ref},
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        error: str,
        failure_class: FailureClass,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> FailOutcome:
        """Record a failed attempt and apply the retry policy.

        While ``attempt < max_attempts`` the job goes back to ``pending`` with
        an exponential backoff delay; afterwards ``failed`` is terminal.
        """

        now = self.now()
        error_text = _bounded_error(error)
        held = self._held_by(job_id=job_id, worker_id=worker_id, attempt=attempt)
        with Session(self.engine) as session:
            row = session.exec(
                select(Job).where(*held),
            ).one_or_none()
            if row is None:
                return FailOutcome(recorded=False, retry_scheduled=False)

            if row.attempt < row.max_attempts:
                run_after = now + self.retry_policy.delay_for(row.attempt)
                result = session.exec(
                    sa_update(Job)
                    .where(*held)
                    .values(
                        status=JobStatus.PENDING.value,
                        run_after=to_db_datetime(run_after),
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        failure_class=failure_class.value,
                        error=error_text,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return FailOutcome(recorded=False, retry_scheduled=False)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="retry_scheduled",
                    status_from=JobStatus.ACTIVE,
                    status_to=JobStatus.PENDING,
                    details={
                        "attempt": row.attempt,
                        "failure_class": failure_class.value,
                        "run_after": to_utc_aware_datetime(run_after).isoformat(),
                        "error": error_text,
                    },
                )
                session.commit()
                return FailOutcome(recorded=True, retry_scheduled=True, run_after=run_after)

            result = session.exec(
                sa_update(Job)
                .where(*held)
                .values(
                    status=JobStatus.FAILED.value,
                    completed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    failure_class=failure_class.value,
                    error=error_text,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return FailOutcome(recorded=False, retry_scheduled=False)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.FAILED,
                details={
                    "attempt": row.attempt,
                    "failure_class": failure_class.value,
                    "error": error_text,
                },
            )
            session.commit()
            return FailOutcome(recorded=True, retry_scheduled=False)

    def cancel_job(self, *, job_id: str) -> JobStatus:
        """Remove a non-terminal job from the queue; return the status it had."""

        while True:
            with Session(self.engine) as session:
                row = session.get(Job, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                previous = JobStatus(row.status)
                if previous in TERMINAL_STATUSES:
                    raise CancelConflictError(job_id, previous.value)

                session.exec(sa_delete(JobEvent).where(col(JobEvent.job_id) == job_id))
                result = session.exec(
                    sa_delete(Job).where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == previous.value,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            logger.info("Job %s canceled from status=%s", job_id, previous.value)
            return previous

    def mark_stalled_jobs(self, *, stall_after: timedelta) -> list[str]:
        """Requeue (or fail) active jobs whose heartbeat is older than ``stall_after``."""

        now = self.now()
        cutoff = to_db_datetime(now - stall_after)
        affected: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(
                    Job.status == JobStatus.ACTIVE.value,
                    col(Job.heartbeat_at) < cutoff,
                ),
            ).all()
            candidates = [
                (row.job_id, row.attempt, row.max_attempts, row.worker_id) for row in rows
            ]

        for job_id, attempt, max_attempts, worker_id in candidates:
            error_text = (
                f"{FailureClass.STALLED.value}: no heartbeat from worker {worker_id} "
                f"for {int(stall_after.total_seconds())}s"
            )
            retries_left = attempt < max_attempts
            if retries_left:
                values: dict[str, object] = {
                    "status": JobStatus.STALLED.value,
                    "run_after": to_db_datetime(now + self.retry_policy.delay_for(attempt)),
                    "worker_id": None,
                }
                status_to = JobStatus.STALLED
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "completed_at": to_db_datetime(now),
                }
                status_to = JobStatus.FAILED
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.ACTIVE.value,
                        col(Job.heartbeat_at) < cutoff,
                    )
                    .values(
                        failure_class=FailureClass.STALLED.value,
                        error=error_text,
                        updated_at=to_db_datetime(now),
                        **values,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stalled",
                    status_from=JobStatus.ACTIVE,
                    status_to=status_to,
                    details={"attempt": attempt, "worker_id": worker_id},
                )
                session.commit()
            logger.warning(
                "Job %s stalled on worker %s (attempt %d/%d) -> %s",
                job_id,
                worker_id,
                attempt,
                max_attempts,
                status_to.value,
            )
            affected.append(job_id)
        return affected

    def prune_jobs(self, policy: RetentionPolicy) -> int:
        """Drop finished jobs outside the retention windows."""

        now = self.now()
        with Session(self.engine) as session:
            expired_completed = session.exec(
                select(Job.job_id).where(
                    Job.status == JobStatus.COMPLETED.value,
                    col(Job.completed_at) < to_db_datetime(now - policy.completed_max_age),
                ),
            ).all()
            overflow_completed = session.exec(
                select(Job.job_id)
                .where(Job.status == JobStatus.COMPLETED.value)
                .order_by(col(Job.completed_at).desc())
                .offset(max(policy.completed_max_count, 0)),
            ).all()
            expired_failed = session.exec(
                select(Job.job_id).where(
                    Job.status == JobStatus.FAILED.value,
                    col(Job.completed_at) < to_db_datetime(now - policy.failed_max_age),
                ),
            ).all()
            doomed = sorted({*expired_completed, *overflow_completed, *expired_failed})
            if not doomed:
                return 0
            session.exec(sa_delete(JobEvent).where(col(JobEvent.job_id).in_(doomed)))
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.job_id).in_(doomed),
                    col(Job.status).in_([status.value for status in TERMINAL_STATUSES]),
                ),
            )
            session.commit()
            removed = result.rowcount
        logger.info("Pruned %d finished jobs from the queue", removed)
        return removed

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[JobStatus, int]:
        """Number of jobs per status."""

        counts = {status: 0 for status in JobStatus}
        with Session(self.engine) as session:
            rows = session.exec(select(Job.status, func.count()).group_by(Job.status)).all()
        for status, count in rows:
            counts[JobStatus(status)] = count
        return counts

    def get_job_details(self, *, job_id: str) -> JobDetails:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job_view = _to_job_view(job)

            events: list[JobEventView] = []
            for row in event_rows:
                details = {}
                if row.details_json:
                    parsed = json.loads(row.details_json)
                    if isinstance(parsed, dict):
                        details = parsed
                events.append(
                    JobEventView(
                        event_id=row.id or 0,
                        job_id=row.job_id,
                        event_type=row.event_type,
                        status_from=(
                            JobStatus(row.status_from) if row.status_from is not None else None
                        ),
                        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                        created_at=to_utc_aware_datetime(row.created_at),
                        details=details,
                    ),
                )
        return JobDetails(job=job_view, events=events)

    @staticmethod
    def _held_by(
        *,
        job_id: str,
        worker_id: str | None,
        attempt: int | None = None,
    ) -> tuple[object, ...]:
        clauses: list[object] = [
            col(Job.job_id) == job_id,
            col(Job.status) == JobStatus.ACTIVE.value,
        ]
        if worker_id is not None:
            clauses.append(col(Job.worker_id) == worker_id)
        if attempt is not None:
            clauses.append(col(Job.attempt) == attempt)
        return tuple(clauses)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.now()),
            ),
        )


def _bounded_error(error: str) -> str:
    text = error.strip() or "unknown error"
    if len(text) <= MAX_ERROR_CHARS:
        return text
    return text[: MAX_ERROR_CHARS - 3] + "..."


def _to_job_view(row: Job) -> JobView:
    progress = None
    if row.progress_step is not None:
        progress = JobProgress(
            step=row.progress_step,
            message=row.progress_message or "",
            percentage=row.progress_percentage or 0,
        )
    return JobView(
        job_id=row.job_id,
        status=JobStatus(row.status),
        payload=JobPayload.from_dict(json.loads(row.payload_json)),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        heartbeat_at=(
            to_utc_aware_datetime(row.heartbeat_at) if row.heartbeat_at is not None else None
        ),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        worker_id=row.worker_id,
        progress=progress,
        artifact_ref=row.artifact_ref,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
