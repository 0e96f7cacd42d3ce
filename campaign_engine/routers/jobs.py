"""Jobs router - inspect, enqueue, cancel and replay background jobs."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from campaign_engine.core.deps import get_db
from campaign_engine.core.errors import NotFoundError
from campaign_engine.db.enums import JobStatus, JobType
from campaign_engine.schemas.job import JobCreate, JobListItem, JobRead
from campaign_engine.services import job_service

router = APIRouter(tags=["Jobs"])


@router.get("", response_model=list[JobListItem])
def list_jobs(
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List recent jobs."""
    return job_service.list_jobs(db, status=status, job_type=job_type, limit=min(limit, 100))


@router.post("", response_model=JobRead, status_code=201)
def enqueue_job(data: JobCreate, db: Session = Depends(get_db)):
    """Enqueue a job. An existing idempotency key returns the existing job."""
    return job_service.enqueue(
        db,
        data.job_type,
        data.payload,
        priority=data.priority,
        run_at=data.run_at,
        max_attempts=data.max_attempts,
        idempotency_key=data.idempotency_key,
    )


@router.get("/stats")
def get_job_stats(db: Session = Depends(get_db)) -> dict[str, int]:
    """Job counts per status."""
    return job_service.get_job_stats(db)


@router.get("/dead-letter", response_model=list[JobRead])
def list_dead_letter_jobs(limit: int = 100, db: Session = Depends(get_db)):
    """Dead-lettered and failed jobs, with their last error, awaiting replay."""
    return job_service.list_dead_letter_jobs(db, limit=min(limit, 500))


@router.get("/{job_id}", response_model=JobRead)
def get_job(job_id: UUID, db: Session = Depends(get_db)):
    """Get a job by ID."""
    job = job_service.get_job(db, job_id)
    if not job:
        raise NotFoundError(f"Job {job_id} not found")
    return job


@router.post("/{job_id}/cancel", response_model=JobRead)
def cancel_job(job_id: UUID, db: Session = Depends(get_db)):
    """Cancel a pending job, or ask a running one to stop before its next costly step."""
    return job_service.cancel(db, job_id)


@router.post("/{job_id}/replay", response_model=JobRead)
def replay_job(job_id: UUID, db: Session = Depends(get_db)):
    return job_service.replay_job(db, job_id)
