"""
Event service - applies normalized provider events to campaigns.

Ingestion is idempotent: the unique provider_event_id on campaign_events
turns a repeated delivery into a no-op, and counters are only bumped for the
insert that won. Nothing here commits; callers own the transaction.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_engine.core.config import settings
from campaign_engine.core.errors import CampaignEngineError
from campaign_engine.db.enums import EnrollmentStatus, EventType, JobType
from campaign_engine.db.models import CampaignEnrollment, CampaignEvent, CampaignInstance
from campaign_engine.services import job_service
from campaign_engine.services.event_normalizer import NormalizedEvent, get_counter_increments
from campaign_engine.utils import utc_now

logger = logging.getLogger(__name__)

INGEST_CREATED = "created"
INGEST_DUPLICATE = "duplicate"
INGEST_ORPHANED = "orphaned"

# Enrollment status an event forces (terminal outcomes only)
ENROLLMENT_EFFECTS = {
    EventType.EMAIL_BOUNCED: EnrollmentStatus.BOUNCED,
    EventType.EMAIL_UNSUBSCRIBED: EnrollmentStatus.UNSUBSCRIBED,
    EventType.EMAIL_SPAM_REPORTED: EnrollmentStatus.UNSUBSCRIBED,
    EventType.EMAIL_REPLIED: EnrollmentStatus.COMPLETED,
    EventType.LINKEDIN_MESSAGE_REPLIED: EnrollmentStatus.COMPLETED,
}

# Counters that count contacts, not events
OUTCOME_COUNTERS = ("total_bounced", "total_unsubscribed")


class UncorrelatedEventError(CampaignEngineError):
    """No enrollment matches the event (yet). Retryable."""

    status_code = 404


@dataclass
class IngestResult:
    status: str
    event: CampaignEvent | None = None
    job_id: UUID | None = None


# =============================================================================
# Correlation
# =============================================================================

def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def correlate(db: Session, event: NormalizedEvent) -> tuple[CampaignEnrollment | None, int | None]:
    """
    Find the enrollment an event belongs to.

    Order: the enrollment hint the vendor echoed back, then the recorded send
    with the same provider message id (which also yields the step), then the
    enrollment's last outbound message/action id.
    """
    enrollment_id = _parse_uuid(event.enrollment_id)
    if enrollment_id:
        enrollment = db.get(CampaignEnrollment, enrollment_id)
        if enrollment:
            return enrollment, event.step_number

    if not event.provider_message_id:
        return None, None

    sent = db.execute(
        select(CampaignEvent.enrollment_id, CampaignEvent.step_number)
        .where(
            CampaignEvent.provider == event.provider,
            CampaignEvent.provider_message_id == event.provider_message_id,
        )
        .order_by(CampaignEvent.occurred_at)
        .limit(1)
    ).first()
    if sent:
        enrollment = db.get(CampaignEnrollment, sent.enrollment_id)
        if enrollment:
            return enrollment, event.step_number or sent.step_number

    enrollment = (
        db.query(CampaignEnrollment)
        .filter(
            or_(
                CampaignEnrollment.provider_message_id == event.provider_message_id,
                CampaignEnrollment.provider_action_id == event.provider_message_id,
            )
        )
        .order_by(CampaignEnrollment.enrolled_at.desc())
        .first()
    )
    return enrollment, event.step_number


# =============================================================================
# Ingestion
# =============================================================================

def _event_exists(db: Session, provider_event_id: str) -> bool:
    return (
        db.execute(
            select(CampaignEvent.id).where(CampaignEvent.provider_event_id == provider_event_id)
        ).first()
        is not None
    )


def queue_orphan(db: Session, event: NormalizedEvent) -> UUID:
    """Park an uncorrelated event in the job queue for later correlation."""
    job = job_service.enqueue(
        db,
        JobType.ORPHANED_EVENT,
        event.to_payload(),
        run_at=utc_now(),
        max_attempts=settings.ORPHANED_EVENT_MAX_ATTEMPTS,
        idempotency_key=f"{JobType.ORPHANED_EVENT.value}:{event.provider_event_id}",
        commit=False,
    )
    return job.id


def ingest_event(db: Session, event: NormalizedEvent, *, queue_orphans: bool = True) -> IngestResult:
    """
    Store one normalized event and apply its effects.

    Returns ``duplicate`` when the provider_event_id was already stored,
    ``orphaned`` when no enrollment matches (queued for retry unless
    ``queue_orphans`` is False), ``created`` otherwise.
    """
    if _event_exists(db, event.provider_event_id):
        return IngestResult(status=INGEST_DUPLICATE)

    enrollment, step_number = correlate(db, event)
    if enrollment is None:
        if not queue_orphans:
            raise UncorrelatedEventError(
                f"No enrollment for {event.provider} event {event.provider_event_id}"
            )
        job_id = queue_orphan(db, event)
        logger.warning(
            "Queued uncorrelated %s event %s", event.provider, event.provider_event_id
        )
        return IngestResult(status=INGEST_ORPHANED, job_id=job_id)

    row = CampaignEvent(
        enrollment_id=enrollment.id,
        instance_id=enrollment.instance_id,
        event_type=event.event_type.value,
        channel=event.channel.value,
        provider=event.provider,
        provider_event_id=event.provider_event_id,
        provider_message_id=event.provider_message_id,
        step_number=step_number,
        occurred_at=event.occurred_at,
        raw_payload=event.raw_payload or {},
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        # Lost the race to a concurrent delivery of the same event
        return IngestResult(status=INGEST_DUPLICATE)

    # A repeat opt-out or bounce for the same contact is stored but not counted again
    skip = OUTCOME_COUNTERS if _already_in_effect(enrollment, event.event_type) else ()
    apply_counters(db, enrollment.instance_id, event.event_type, skip=skip)
    apply_enrollment_effect(enrollment, event.event_type)
    return IngestResult(status=INGEST_CREATED, event=row)


def apply_counters(
    db: Session,
    instance_id: UUID,
    event_type: EventType,
    skip: tuple[str, ...] = (),
) -> None:
    """Bump instance counters in SQL so concurrent ingests never lose an update."""
    increments = {
        name: delta
        for name, delta in get_counter_increments(event_type).items()
        if name not in skip
    }
    if not increments:
        return
    values = {
        name: getattr(CampaignInstance, name) + delta for name, delta in increments.items()
    }
    db.execute(
        update(CampaignInstance)
        .where(CampaignInstance.id == instance_id)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )


def _already_in_effect(enrollment: CampaignEnrollment, event_type: EventType) -> bool:
    target = ENROLLMENT_EFFECTS.get(event_type)
    return target is not None and enrollment.status == target.value


def apply_enrollment_effect(enrollment: CampaignEnrollment, event_type: EventType) -> None:
    target = ENROLLMENT_EFFECTS.get(event_type)
    if target is None:
        return
    allowed = {EnrollmentStatus.ACTIVE.value, EnrollmentStatus.PAUSED.value}
    if target in (EnrollmentStatus.BOUNCED, EnrollmentStatus.UNSUBSCRIBED):
        # A bounce or opt-out after the last step still overrides completion
        allowed.add(EnrollmentStatus.COMPLETED.value)
    if enrollment.status not in allowed:
        return
    now = utc_now()
    enrollment.status = target.value
    enrollment.next_action_at = None
    if target == EnrollmentStatus.UNSUBSCRIBED:
        enrollment.unsubscribed_at = now
    else:
        enrollment.completed_at = now
    logger.info("Enrollment %s -> %s after %s", enrollment.id, target.value, event_type.value)


# =============================================================================
# Queries
# =============================================================================

def list_events(
    db: Session,
    instance_id: UUID,
    event_type: EventType | None = None,
    enrollment_id: UUID | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[CampaignEvent]:
    """Events of an instance, most recent first."""
    query = db.query(CampaignEvent).filter(CampaignEvent.instance_id == instance_id)
    if event_type:
        query = query.filter(CampaignEvent.event_type == event_type.value)
    if enrollment_id:
        query = query.filter(CampaignEvent.enrollment_id == enrollment_id)
    return query.order_by(CampaignEvent.occurred_at.desc()).offset(offset).limit(limit).all()
