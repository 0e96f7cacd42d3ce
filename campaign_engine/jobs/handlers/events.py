"""Webhook event job handlers."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


async def process_orphaned_event(db, job) -> dict:
    """
    Process an ORPHANED_EVENT job - retry correlation of a webhook event.

    Events can arrive before the send that produced them is recorded. Each
    attempt that still finds no enrollment raises UncorrelatedEventError,
    which the worker retries with backoff until the job dead-letters.
    """
    from campaign_engine.services import event_service
    from campaign_engine.services.event_normalizer import NormalizedEvent

    event = NormalizedEvent.from_payload(job.payload or {})
    result = event_service.ingest_event(db, event, queue_orphans=False)
    db.commit()
    logger.info(
        "Orphaned %s event %s resolved as %s",
        event.provider,
        event.provider_event_id,
        result.status,
    )
    return {"status": result.status}
