"""
Background worker for processing queued jobs.

Usage:
    python -m campaign_engine.worker

The worker claims due jobs atomically and runs them through the handler
registry. Several workers can run side by side; each claim is won by exactly
one of them. For production, run this as a separate process (e.g. systemd
service, Docker container) or through worker_service.
"""

import asyncio
import logging
import os
import socket
import time
from datetime import timedelta

from campaign_engine.core.config import settings
from campaign_engine.core.errors import NotFoundError, RateLimitExceeded, ValidationError
from campaign_engine.core.structured_logging import build_log_context
from campaign_engine.db.enums import JobType
from campaign_engine.db.session import SessionLocal
from campaign_engine.jobs.registry import resolve_job_handler
from campaign_engine.services import job_service
from campaign_engine.utils import utc_now

logger = logging.getLogger(__name__)

# Worker configuration
POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE
STALE_CHECK_INTERVAL_SECONDS = 60


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def run_job(db, job, worker_id: str = "") -> str:
    """
    Run one claimed job and record its outcome. Returns the resulting status.

    Handler exceptions map onto queue transitions: bad input fails the job
    for good, rate limits and deferrals requeue it without spending an
    attempt, anything else is retried until the job dead-letters.
    """
    job_id = job.id
    job_type = job.job_type
    log_context = build_log_context(job_id=job_id, job_type=job_type, worker_id=worker_id)
    logger.info("Processing job (attempt %s)", job.attempts + 1, extra=log_context)

    try:
        handler = resolve_job_handler(job_type)
        result = await handler(db, job)
    except job_service.JobCancelled:
        db.rollback()
        job = job_service.mark_cancelled(db, job_id)
        logger.info("Job cancelled before running", extra=log_context)
    except job_service.JobDeferred as exc:
        db.rollback()
        job = job_service.defer(db, job_id, exc.run_at, exc.reason)
        logger.info("Job deferred until %s: %s", exc.run_at.isoformat(), exc.reason, extra=log_context)
    except RateLimitExceeded as exc:
        db.rollback()
        run_at = utc_now() + timedelta(seconds=max(exc.retry_after, 1.0))
        job = job_service.defer(db, job_id, run_at, exc.message)
        logger.warning("Job rate limited on %s, retry in %.1fs", exc.service, exc.retry_after, extra=log_context)
    except (ValidationError, NotFoundError) as exc:
        db.rollback()
        job = job_service.fail(db, job_id, exc.message, retryable=False)
        logger.warning("Job rejected: %s", exc.message, extra=log_context)
    except Exception as exc:
        db.rollback()
        job = job_service.fail(db, job_id, f"{type(exc).__name__}: {exc}")
        logger.error("Job failed: %s", type(exc).__name__, extra=log_context)
    else:
        job = job_service.complete(db, job_id, result)
        logger.info("Job completed", extra=log_context)
    return job.status


async def process_available_jobs(db, worker_id: str, limit: int = BATCH_SIZE) -> int:
    """Claim and run up to ``limit`` due jobs. Returns how many ran."""
    processed = 0
    while processed < limit:
        job = job_service.claim_next(db, worker_id)
        if job is None:
            break
        await run_job(db, job, worker_id)
        processed += 1
    return processed


def enqueue_dispatch_sweep(db, now: float | None = None):
    """Enqueue this window's dispatch sweep (one per WORKER_SWEEP_INTERVAL across all workers)."""
    window = int((now or time.time()) // max(settings.WORKER_SWEEP_INTERVAL, 1))
    return job_service.enqueue(
        db,
        JobType.DISPATCH_SWEEP,
        {},
        priority=10,
        idempotency_key=f"{JobType.DISPATCH_SWEEP.value}:{window}",
    )


async def worker_loop(worker_id: str | None = None, stop_event: asyncio.Event | None = None) -> None:
    """Main worker loop - polls for and processes pending jobs."""
    worker_id = worker_id or default_worker_id()
    logger.info(
        "Worker %s starting (poll interval: %ss, batch size: %s)",
        worker_id,
        POLL_INTERVAL_SECONDS,
        BATCH_SIZE,
    )
    last_stale_check = 0.0
    last_sweep = 0.0

    while stop_event is None or not stop_event.is_set():
        processed = 0
        with SessionLocal() as db:
            try:
                now = time.monotonic()
                if now - last_stale_check >= STALE_CHECK_INTERVAL_SECONDS:
                    job_service.requeue_stale_jobs(db)
                    last_stale_check = now
                if now - last_sweep >= settings.WORKER_SWEEP_INTERVAL:
                    enqueue_dispatch_sweep(db)
                    last_sweep = now
                processed = await process_available_jobs(db, worker_id)
            except Exception:
                db.rollback()
                logger.exception("Error in worker loop", extra=build_log_context(worker_id=worker_id))

        if not processed:
            await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
