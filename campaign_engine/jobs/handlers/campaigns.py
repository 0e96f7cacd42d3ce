"""Campaign job handlers."""

from __future__ import annotations

import logging

from campaign_engine.core.config import settings

logger = logging.getLogger(__name__)


async def process_campaign_step(db, job) -> dict:
    """
    Process a CAMPAIGN_STEP job - send one sequence step for one enrollment.

    Payload:
        - enrollment_id: UUID of the enrollment
        - instance_id: UUID of the instance (informational)
        - step_number: step to send
    """
    from campaign_engine.services import sequence_service
    from campaign_engine.services.providers import get_provider_registry

    return await sequence_service.execute_step(db, job, get_provider_registry())


async def process_dispatch_sweep(db, job) -> dict:
    """
    Process a DISPATCH_SWEEP job - enqueue step jobs for due enrollments.

    Payload:
        - instance_id: restrict the sweep to one instance (optional)
        - limit: max enrollments per sweep (optional)
    """
    from uuid import UUID

    from campaign_engine.services import sequence_service

    payload = job.payload or {}
    instance_id = payload.get("instance_id")
    limit = payload.get("limit") or settings.WORKER_BATCH_SIZE * 100

    scheduled = sequence_service.schedule_enrollments(
        db,
        UUID(instance_id) if instance_id else None,
        due_only=True,
        limit=limit,
    )
    db.commit()
    if scheduled:
        logger.info("Dispatch sweep scheduled %s step jobs", scheduled)
    return {"scheduled": scheduled}
