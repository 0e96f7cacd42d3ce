"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from campaign_engine.core.errors import ValidationError
from campaign_engine.db.enums import JobType
from campaign_engine.jobs.handlers import campaigns, events

JobHandler = Callable[[object, object], Awaitable[dict | None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.CAMPAIGN_STEP.value: campaigns.process_campaign_step,
    JobType.DISPATCH_SWEEP.value: campaigns.process_dispatch_sweep,
    JobType.ORPHANED_EVENT.value: events.process_orphaned_event,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValidationError(f"Unknown job type: {job_type}")
    return handler
