"""
Sequence service - schedules and executes campaign steps for enrollments.

A step job carries ``{"enrollment_id", "instance_id", "step_number"}`` and an
idempotency key per (enrollment, step), so re-scheduling the same step from
activation, the dispatch sweep or a retry never sends twice.

Provider calls happen outside any database transaction: everything the send
needs is read and committed first, then the result is applied in a fresh
transaction.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from campaign_engine.core.errors import NotFoundError, ProviderError, ValidationError
from campaign_engine.core.structured_logging import build_log_context
from campaign_engine.db.enums import (
    TERMINAL_INSTANCE_STATUSES,
    Channel,
    EnrollmentStatus,
    EventType,
    InstanceStatus,
    JobType,
    LinkedInActionType,
)
from campaign_engine.db.models import CampaignEnrollment, CampaignInstance, Job
from campaign_engine.services import job_service
from campaign_engine.services.event_normalizer import NormalizedEvent
from campaign_engine.services.providers import (
    EmailMessage,
    LinkedInAction,
    ProviderRegistry,
    SendResult,
    VideoRequest,
)
from campaign_engine.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# How long a step waits before re-checking a draft/paused instance
PAUSED_RECHECK_SECONDS = 300

LINKEDIN_SENT_EVENTS = {
    LinkedInActionType.PROFILE_VISIT.value: EventType.LINKEDIN_PROFILE_VISITED,
    LinkedInActionType.CONNECTION_REQUEST.value: EventType.LINKEDIN_CONNECTION_SENT,
    LinkedInActionType.MESSAGE.value: EventType.LINKEDIN_MESSAGE_SENT,
}


# =============================================================================
# Snapshot navigation
# =============================================================================

def find_step(snapshot: list[dict], step_number: int) -> dict | None:
    for step in snapshot or []:
        if step.get("step_number") == step_number:
            return step
    return None


def next_step_after(snapshot: list[dict], step_number: int) -> dict | None:
    """First step with a number greater than ``step_number`` (0 gives the first step)."""
    candidates = [s for s in snapshot or [] if s.get("step_number", 0) > step_number]
    if not candidates:
        return None
    return min(candidates, key=lambda s: s["step_number"])


def pick_variant(step: dict, enrollment_id: UUID | str) -> dict:
    """Deterministic A/B split: the same enrollment always gets the same variant."""
    variants = step.get("variants") or []
    if not variants:
        raise ValidationError(f"Email step {step.get('step_number')} has no variants")
    digest = hashlib.sha256(str(enrollment_id).encode("utf-8")).hexdigest()
    return variants[int(digest[:8], 16) % len(variants)]


def sent_event_type(step: dict) -> EventType | None:
    channel = step.get("channel")
    if channel == Channel.EMAIL.value:
        return EventType.EMAIL_SENT
    if channel == Channel.LINKEDIN.value:
        return LINKEDIN_SENT_EVENTS.get(step.get("action_type"))
    # Videos report generation through their own webhook
    return None


# =============================================================================
# Scheduling
# =============================================================================

def step_job_key(enrollment_id: UUID | str, step_number: int) -> str:
    return f"{JobType.CAMPAIGN_STEP.value}:{enrollment_id}:{step_number}"


def schedule_step_job(
    db: Session,
    enrollment: CampaignEnrollment,
    step: dict,
    run_at: datetime,
) -> Job:
    """Enqueue the job for ``step`` inside the caller's transaction."""
    enrollment.next_action_at = run_at
    return job_service.enqueue(
        db,
        JobType.CAMPAIGN_STEP,
        {
            "enrollment_id": str(enrollment.id),
            "instance_id": str(enrollment.instance_id),
            "step_number": step["step_number"],
        },
        run_at=run_at,
        idempotency_key=step_job_key(enrollment.id, step["step_number"]),
        commit=False,
    )


def first_action_at(snapshot: list[dict], start: datetime) -> datetime | None:
    step = next_step_after(snapshot, 0)
    if step is None:
        return None
    return start + timedelta(hours=step.get("delay_hours") or 0)


def schedule_enrollments(
    db: Session,
    instance_id: UUID | None = None,
    *,
    due_only: bool = True,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """
    Enqueue step jobs for active enrollments of active instances.

    With ``due_only`` only enrollments whose next_action_at has passed are
    considered (the dispatch sweep); activation schedules every enrollment at
    its own next_action_at. Does not commit.
    """
    now = now or utc_now()
    query = (
        db.query(CampaignEnrollment, CampaignInstance.sequence_snapshot)
        .join(CampaignInstance, CampaignInstance.id == CampaignEnrollment.instance_id)
        .filter(
            CampaignInstance.status == InstanceStatus.ACTIVE.value,
            CampaignEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
    )
    if instance_id:
        query = query.filter(CampaignEnrollment.instance_id == instance_id)
    if due_only:
        query = query.filter(
            CampaignEnrollment.next_action_at.is_not(None),
            CampaignEnrollment.next_action_at <= now,
        )
    query = query.order_by(CampaignEnrollment.next_action_at)
    if limit:
        query = query.limit(limit)

    scheduled = 0
    for enrollment, snapshot in query.all():
        step = next_step_after(snapshot, enrollment.current_step)
        if step is None:
            continue
        run_at = ensure_utc(enrollment.next_action_at) if enrollment.next_action_at else now
        schedule_step_job(db, enrollment, step, max(run_at, now) if due_only else run_at)
        scheduled += 1
    return scheduled


# =============================================================================
# Execution
# =============================================================================

def _variables(enrollment: CampaignEnrollment) -> dict[str, Any]:
    extra = enrollment.extra or {}
    variables = dict(extra.get("variables") or {})
    variables.setdefault("contact_id", enrollment.contact_id)
    if enrollment.contact_email:
        variables.setdefault("email", enrollment.contact_email)
    if enrollment.contact_linkedin_url:
        variables.setdefault("linkedin_url", enrollment.contact_linkedin_url)
    return variables


def build_send_params(
    instance: CampaignInstance,
    enrollment: CampaignEnrollment,
    step: dict,
) -> tuple[EmailMessage | LinkedInAction | VideoRequest, str | None]:
    """Build the provider request for ``step``; also returns the chosen A/B variant."""
    config = instance.provider_config or {}
    variables = _variables(enrollment)
    metadata = {
        "enrollment_id": str(enrollment.id),
        "instance_id": str(instance.id),
        "step_number": step["step_number"],
    }
    channel = Channel(step["channel"])

    if channel == Channel.EMAIL:
        if not enrollment.contact_email:
            raise ValidationError(f"Enrollment {enrollment.id} has no email address")
        variant = pick_variant(step, enrollment.id)
        metadata["variant"] = variant["variant"]
        return (
            EmailMessage(
                to_email=enrollment.contact_email,
                subject=variant["subject"],
                html_body=variant["body"],
                from_email=config.get("from_email"),
                reply_to=config.get("reply_to"),
                variables=variables,
                metadata=metadata,
                provider_campaign_id=config.get("lemlist_campaign_id"),
            ),
            variant["variant"],
        )

    if channel == Channel.LINKEDIN:
        if not enrollment.contact_linkedin_url:
            raise ValidationError(f"Enrollment {enrollment.id} has no LinkedIn URL")
        return (
            LinkedInAction(
                action_type=LinkedInActionType(step["action_type"]),
                profile_url=enrollment.contact_linkedin_url,
                message=step.get("message"),
                contact_email=enrollment.contact_email,
                variables=variables,
                metadata=metadata,
                provider_campaign_id=config.get("lemlist_campaign_id"),
            ),
            None,
        )

    return (
        VideoRequest(
            script=step["script"],
            avatar_id=step["avatar_id"],
            voice_id=step["voice_id"],
            title=f"{instance.name} - step {step['step_number']}",
            callback_id=f"{enrollment.id}:{step['step_number']}",
            variables=variables,
            metadata=metadata,
        ),
        None,
    )


def _parse_step_payload(job: Job) -> tuple[UUID, int]:
    payload = job.payload or {}
    try:
        return UUID(str(payload["enrollment_id"])), int(payload["step_number"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("campaign_step job needs enrollment_id and step_number") from None


async def execute_step(db: Session, job: Job, registry: ProviderRegistry) -> dict[str, Any]:
    """
    Send one sequence step for one enrollment.

    Raises JobDeferred while the instance is draft or paused, JobCancelled on
    a cancellation request, ProviderError when the vendor rejects the send.
    Skips (returns a result with ``skipped``) when there is nothing to do.
    """
    job_id = job.id
    enrollment_id, step_number = _parse_step_payload(job)

    enrollment = db.get(CampaignEnrollment, enrollment_id)
    if not enrollment:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    instance = db.get(CampaignInstance, enrollment.instance_id)
    if not instance:
        raise NotFoundError(f"Instance {enrollment.instance_id} not found")

    status = InstanceStatus(instance.status)
    if status in TERMINAL_INSTANCE_STATUSES:
        return {"skipped": f"instance {status.value}"}
    if status in (InstanceStatus.DRAFT, InstanceStatus.PAUSED):
        raise job_service.JobDeferred(
            utc_now() + timedelta(seconds=PAUSED_RECHECK_SECONDS), f"instance {status.value}"
        )
    if enrollment.status == EnrollmentStatus.PAUSED.value:
        raise job_service.JobDeferred(
            utc_now() + timedelta(seconds=PAUSED_RECHECK_SECONDS), "enrollment paused"
        )
    if enrollment.status != EnrollmentStatus.ACTIVE.value:
        return {"skipped": f"enrollment {enrollment.status}"}
    if enrollment.current_step >= step_number:
        return {"skipped": f"step {step_number} already sent"}

    step = find_step(instance.sequence_snapshot, step_number)
    if step is None:
        raise ValidationError(f"Instance {instance.id} has no step {step_number}")
    if job_service.is_cancel_requested(db, job_id):
        raise job_service.JobCancelled()

    channel = Channel(step["channel"])
    override = (instance.provider_config or {}).get(f"{channel.value}_provider")
    provider = registry.get(channel, override)
    params, variant = build_send_params(instance, enrollment, step)
    log_context = build_log_context(
        job_id=job_id,
        instance_id=instance.id,
        enrollment_id=enrollment_id,
        provider=provider.name,
        channel=channel.value,
    )
    # Nothing may hold a transaction across the vendor call
    db.commit()

    logger.info("Sending step %s via %s", step_number, provider.name, extra=log_context)
    result: SendResult = await provider.send(params)
    if not result.success:
        raise ProviderError(provider.name, result.error or "send rejected", step_number=step_number)

    return _apply_send_result(
        db,
        enrollment_id,
        step,
        result,
        variant=variant,
        record_sent=not provider.get_capabilities().reports_send_events,
        log_context=log_context,
    )


def _apply_send_result(
    db: Session,
    enrollment_id: UUID,
    step: dict,
    result: SendResult,
    *,
    variant: str | None,
    record_sent: bool,
    log_context: dict,
) -> dict[str, Any]:
    from campaign_engine.services import event_service

    now = utc_now()
    step_number = step["step_number"]
    enrollment = db.get(
        CampaignEnrollment, enrollment_id, with_for_update=True, populate_existing=True
    )
    if not enrollment:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    instance = db.get(CampaignInstance, enrollment.instance_id)

    if step["channel"] == Channel.EMAIL.value:
        enrollment.provider_message_id = result.message_id
    else:
        enrollment.provider_action_id = result.message_id
    enrollment.current_step = max(enrollment.current_step, step_number)
    if variant:
        extra = dict(enrollment.extra or {})
        variants = dict(extra.get("ab_variants") or {})
        variants[str(step_number)] = variant
        extra["ab_variants"] = variants
        enrollment.extra = extra

    next_step = None
    if enrollment.status == EnrollmentStatus.ACTIVE.value:
        next_step = next_step_after(instance.sequence_snapshot, step_number)
        if next_step is None:
            enrollment.status = EnrollmentStatus.COMPLETED.value
            enrollment.completed_at = now
            enrollment.next_action_at = None
        else:
            run_at = now + timedelta(hours=next_step.get("delay_hours") or 0)
            schedule_step_job(db, enrollment, next_step, run_at)
    else:
        enrollment.next_action_at = None

    event_type = sent_event_type(step)
    if record_sent and event_type and result.message_id:
        event_service.ingest_event(
            db,
            NormalizedEvent(
                event_type=event_type,
                channel=event_type.channel,
                provider=result.provider,
                provider_event_id=f"{result.provider}:{result.message_id}:sent",
                occurred_at=now,
                provider_message_id=result.message_id,
                enrollment_id=str(enrollment.id),
                step_number=step_number,
                metadata={"variant": variant} if variant else {},
            ),
            queue_orphans=False,
        )
    db.commit()
    logger.info("Step %s sent (message %s)", step_number, result.message_id, extra=log_context)
    return {
        "step_number": step_number,
        "provider": result.provider,
        "message_id": result.message_id,
        "next_step": next_step["step_number"] if next_step else None,
    }
