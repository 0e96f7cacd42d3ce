"""Job service - durable job queue with atomic claims, retries and dead letters."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_engine.core.config import settings
from campaign_engine.core.errors import ConflictError, NotFoundError, ValidationError
from campaign_engine.db.enums import TERMINAL_JOB_STATUSES, JobStatus, JobType
from campaign_engine.db.models import Job
from campaign_engine.utils import utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000


class JobCancelled(Exception):
    """Raised by a handler that observed a cancellation request before costly work."""
    pass


class JobDeferred(Exception):
    """Raised by a handler to put its job back in the queue without spending an attempt."""

    def __init__(self, run_at: datetime, reason: str = ""):
        super().__init__(reason or "deferred")
        self.run_at = run_at
        self.reason = reason


def _job_type_value(job_type: JobType | str) -> str:
    value = job_type.value if isinstance(job_type, JobType) else str(job_type or "").strip()
    if not value or len(value) > 50:
        raise ValidationError("job_type must be a non-empty string of at most 50 characters")
    return value


def _supports_skip_locked(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def retry_delay_seconds(attempts: int) -> int:
    """Exponential backoff for the given number of spent attempts."""
    exponent = max(attempts - 1, 0)
    return min(settings.JOB_RETRY_MAX_SECONDS, settings.JOB_RETRY_BASE_SECONDS * (2**exponent))


# =============================================================================
# Enqueue / claim
# =============================================================================


def enqueue(
    db: Session,
    job_type: JobType | str,
    payload: dict | None = None,
    *,
    priority: int = 0,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> Job:
    """
    Add a job to the queue.

    If run_at is None, the job is due immediately. When idempotency_key
    matches an existing job, that job is returned and nothing is inserted.
    With commit=False the insert joins the caller's transaction.
    """
    job_type_value = _job_type_value(job_type)
    if max_attempts is not None and max_attempts < 1:
        raise ValidationError("max_attempts must be at least 1")

    if idempotency_key:
        existing = _get_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing

    job = Job(
        job_type=job_type_value,
        payload=payload or {},
        priority=priority,
        scheduled_at=run_at or utc_now(),
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        existing = _get_by_idempotency_key(db, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        return existing

    if commit:
        db.commit()
        db.refresh(job)
    return job


def _get_by_idempotency_key(db: Session, key: str) -> Job | None:
    return db.execute(select(Job).where(Job.idempotency_key == key)).scalar_one_or_none()


def claim_next(
    db: Session,
    worker_id: str,
    *,
    job_types: list[JobType | str] | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Atomically claim the next due job for ``worker_id``.

    A single UPDATE both picks the candidate (highest priority, then earliest
    scheduled_at) and flips it to processing, guarded by status = 'pending'.
    Concurrent callers can never both win the same row; on PostgreSQL the
    candidate subquery also skips rows locked by other claimers.
    """
    now = now or utc_now()
    candidate = (
        select(Job.id)
        .where(Job.status == JobStatus.PENDING.value, Job.scheduled_at <= now)
        .order_by(Job.priority.desc(), Job.scheduled_at, Job.created_at)
        .limit(1)
    )
    if job_types:
        candidate = candidate.where(Job.job_type.in_([_job_type_value(t) for t in job_types]))
    if _supports_skip_locked(db):
        candidate = candidate.with_for_update(skip_locked=True)

    stmt = (
        update(Job)
        .where(Job.id == candidate.scalar_subquery(), Job.status == JobStatus.PENDING.value)
        .values(
            status=JobStatus.PROCESSING.value,
            claimed_by=worker_id,
            claimed_at=now,
            updated_at=now,
        )
        .returning(Job.id)
        .execution_options(synchronize_session=False)
    )
    job_id = db.execute(stmt).scalar_one_or_none()
    db.commit()
    if job_id is None:
        return None
    return db.get(Job, job_id, populate_existing=True)


# =============================================================================
# Outcome transitions
# =============================================================================


def _lock_job(db: Session, job_id: UUID) -> Job:
    job = db.execute(select(Job).where(Job.id == job_id).with_for_update()).scalar_one_or_none()
    if not job:
        raise NotFoundError(f"Job {job_id} not found")
    return job


def complete(db: Session, job_id: UUID, result: dict | None = None) -> Job:
    """Mark a processing job as completed."""
    job = _lock_job(db, job_id)
    if job.status != JobStatus.PROCESSING.value:
        db.rollback()
        raise ConflictError(f"Job {job_id} is {job.status}, not processing")
    now = utc_now()
    job.status = JobStatus.COMPLETED.value
    job.result = result
    job.last_error = None
    job.completed_at = now
    job.claimed_by = None
    db.commit()
    db.refresh(job)
    return job


def fail(db: Session, job_id: UUID, error: str, *, retryable: bool = True) -> Job:
    """
    Record a failed attempt.

    Retryable failures go back to pending with exponential backoff until
    max_attempts is spent, then land in dead_letter. Non-retryable failures
    become failed immediately. The error text is always kept.
    """
    job = _lock_job(db, job_id)
    if JobStatus(job.status) in TERMINAL_JOB_STATUSES:
        db.rollback()
        raise ConflictError(f"Job {job_id} is already {job.status}")
    _apply_failure(job, error, retryable=retryable, now=utc_now())
    db.commit()
    db.refresh(job)
    return job


def _apply_failure(job: Job, error: str, *, retryable: bool, now: datetime) -> None:
    job.attempts += 1
    job.last_error = (error or "")[:MAX_ERROR_LENGTH]
    job.claimed_by = None
    job.claimed_at = None

    if not retryable:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        logger.warning("Job %s failed permanently: %s", job.id, job.last_error)
    elif job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        job.scheduled_at = now + timedelta(seconds=retry_delay_seconds(job.attempts))
    else:
        job.status = JobStatus.DEAD_LETTER.value
        job.completed_at = now
        logger.error(
            "Job %s moved to dead letter after %s attempts: %s",
            job.id,
            job.attempts,
            job.last_error,
        )


def defer(db: Session, job_id: UUID, run_at: datetime, reason: str | None = None) -> Job:
    """Return a processing job to pending at ``run_at`` without spending an attempt."""
    job = _lock_job(db, job_id)
    if job.status != JobStatus.PROCESSING.value:
        db.rollback()
        raise ConflictError(f"Job {job_id} is {job.status}, not processing")
    job.status = JobStatus.PENDING.value
    job.scheduled_at = run_at
    job.claimed_by = None
    job.claimed_at = None
    if reason:
        job.last_error = reason[:MAX_ERROR_LENGTH]
    db.commit()
    db.refresh(job)
    return job


def cancel(db: Session, job_id: UUID) -> Job:
    """
    Cancel a job.

    Pending jobs are cancelled immediately. Processing jobs get a
    cancellation request that their handler checks before costly work.
    """
    job = _lock_job(db, job_id)
    if job.status == JobStatus.PENDING.value:
        job.status = JobStatus.CANCELLED.value
        job.cancel_requested = True
        job.completed_at = utc_now()
    elif job.status == JobStatus.PROCESSING.value:
        job.cancel_requested = True
    else:
        db.rollback()
        raise ConflictError(f"Job {job_id} is already {job.status}")
    db.commit()
    db.refresh(job)
    return job


def is_cancel_requested(db: Session, job_id: UUID) -> bool:
    """Read the cancellation flag straight from the database."""
    row = db.execute(
        select(Job.cancel_requested, Job.status).where(Job.id == job_id)
    ).one_or_none()
    if row is None:
        return True
    return bool(row.cancel_requested) or row.status == JobStatus.CANCELLED.value


def mark_cancelled(db: Session, job_id: UUID) -> Job:
    """Finish a processing job whose handler stopped on a cancellation request."""
    job = _lock_job(db, job_id)
    job.status = JobStatus.CANCELLED.value
    job.claimed_by = None
    job.completed_at = utc_now()
    db.commit()
    db.refresh(job)
    return job


def replay_job(db: Session, job_id: UUID) -> Job:
    """Put a dead-lettered or failed job back in the queue with a fresh retry budget."""
    job = _lock_job(db, job_id)
    if job.status not in (JobStatus.DEAD_LETTER.value, JobStatus.FAILED.value):
        db.rollback()
        raise ConflictError(f"Only dead_letter or failed jobs can be replayed (job is {job.status})")
    job.status = JobStatus.PENDING.value
    job.attempts = 0
    job.scheduled_at = utc_now()
    job.completed_at = None
    job.claimed_by = None
    job.claimed_at = None
    job.cancel_requested = False
    db.commit()
    db.refresh(job)
    logger.info("Job %s replayed from dead letter", job.id)
    return job


def requeue_stale_jobs(db: Session, older_than_seconds: int | None = None) -> int:
    """
    Recover jobs whose worker died mid-flight.

    Processing claims older than the cutoff count as a failed attempt (so a
    job that keeps killing workers still ends up in dead_letter).
    """
    seconds = older_than_seconds if older_than_seconds is not None else settings.WORKER_STALE_CLAIM_SECONDS
    now = utc_now()
    cutoff = now - timedelta(seconds=seconds)
    query = select(Job).where(
        Job.status == JobStatus.PROCESSING.value,
        Job.claimed_at < cutoff,
    )
    if _supports_skip_locked(db):
        query = query.with_for_update(skip_locked=True)
    stale = db.execute(query).scalars().all()
    for job in stale:
        _apply_failure(job, f"Claim by {job.claimed_by} expired", retryable=True, now=now)
    db.commit()
    if stale:
        logger.warning("Requeued %s stale job claims", len(stale))
    return len(stale)


# =============================================================================
# Queries
# =============================================================================


def get_job(db: Session, job_id: UUID) -> Job | None:
    """Get a job by ID."""
    return db.get(Job, job_id)


def list_jobs(
    db: Session,
    status: JobStatus | None = None,
    job_type: JobType | str | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs with optional filters, newest first."""
    query = select(Job)
    if status:
        query = query.where(Job.status == status.value)
    if job_type:
        query = query.where(Job.job_type == _job_type_value(job_type))
    return list(db.execute(query.order_by(Job.created_at.desc()).limit(limit)).scalars())


def list_dead_letter_jobs(db: Session, limit: int = 100) -> list[Job]:
    """Jobs waiting for manual inspection (dead_letter and failed)."""
    query = (
        select(Job)
        .where(Job.status.in_([JobStatus.DEAD_LETTER.value, JobStatus.FAILED.value]))
        .order_by(Job.updated_at.desc())
        .limit(limit)
    )
    return list(db.execute(query).scalars())


def get_job_stats(db: Session) -> dict[str, int]:
    """Count jobs per status."""
    rows = db.execute(select(Job.status, func.count(Job.id)).group_by(Job.status)).all()
    stats = {status.value: 0 for status in JobStatus}
    for status, count in rows:
        stats[status] = count
    return stats


def cleanup_jobs(db: Session, days_to_keep: int | None = None) -> int:
    """Delete completed and cancelled jobs older than the retention window. Dead letters stay."""
    days = days_to_keep if days_to_keep is not None else settings.JOB_RETENTION_DAYS
    cutoff = utc_now() - timedelta(days=days)
    result = db.execute(
        delete(Job)
        .where(
            Job.status.in_([JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]),
            Job.completed_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
