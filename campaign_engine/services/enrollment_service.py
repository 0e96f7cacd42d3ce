"""Enrollment service - bulk enrollment, lookups and unsubscribes."""

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from campaign_engine.core.errors import ConflictError, NotFoundError
from campaign_engine.db.enums import (
    TERMINAL_INSTANCE_STATUSES,
    EnrollmentStatus,
    InstanceStatus,
)
from campaign_engine.db.models import CampaignEnrollment, CampaignInstance
from campaign_engine.schemas.campaign import EnrollmentContact
from campaign_engine.services import campaign_service, sequence_service
from campaign_engine.utils import utc_now

logger = logging.getLogger(__name__)


def bulk_enroll(
    db: Session,
    instance_id: UUID,
    contacts: list[EnrollmentContact],
) -> tuple[list[CampaignEnrollment], int]:
    """
    Enroll contacts into an instance.

    The instance row is locked for the whole operation. Contacts repeated in
    the input or already enrolled are skipped. First-step jobs are queued
    only when the instance is active; draft instances get theirs on
    activation.

    Returns (new enrollments, skipped count).
    """
    instance = campaign_service.lock_instance(db, instance_id)
    if InstanceStatus(instance.status) in TERMINAL_INSTANCE_STATUSES:
        db.rollback()
        raise ConflictError(f"Cannot enroll into a {instance.status} instance")

    unique: dict[str, EnrollmentContact] = {}
    for contact in contacts:
        unique.setdefault(contact.contact_id, contact)

    existing: set[str] = set()
    ids = list(unique)
    # Chunked IN lists stay under SQLite's bound parameter limit
    for start in range(0, len(ids), 500):
        chunk = ids[start : start + 500]
        rows = (
            db.query(CampaignEnrollment.contact_id)
            .filter(
                CampaignEnrollment.instance_id == instance_id,
                CampaignEnrollment.contact_id.in_(chunk),
            )
            .all()
        )
        existing.update(row.contact_id for row in rows)

    now = utc_now()
    first_at = sequence_service.first_action_at(instance.sequence_snapshot, now)
    first_step = sequence_service.next_step_after(instance.sequence_snapshot, 0)
    is_active = instance.status == InstanceStatus.ACTIVE.value

    created: list[CampaignEnrollment] = []
    for contact_id, contact in unique.items():
        if contact_id in existing:
            continue
        enrollment = CampaignEnrollment(
            instance_id=instance.id,
            contact_id=contact_id,
            contact_email=contact.email,
            contact_linkedin_url=contact.linkedin_url,
            status=EnrollmentStatus.ACTIVE.value,
            current_step=0,
            next_action_at=first_at,
            extra={"variables": contact.variables} if contact.variables else {},
            enrolled_at=now,
        )
        db.add(enrollment)
        created.append(enrollment)

    if created:
        db.flush()
        db.execute(
            update(CampaignInstance)
            .where(CampaignInstance.id == instance.id)
            .values(total_enrolled=CampaignInstance.total_enrolled + len(created))
            .execution_options(synchronize_session="fetch")
        )
        if is_active and first_step is not None:
            for enrollment in created:
                sequence_service.schedule_step_job(db, enrollment, first_step, first_at)

    skipped = len(contacts) - len(created)
    db.commit()
    logger.info(
        "Enrolled %s contacts into instance %s (%s skipped)", len(created), instance_id, skipped
    )
    return created, skipped


def list_enrollments(
    db: Session,
    instance_id: UUID,
    status: EnrollmentStatus | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[CampaignEnrollment], int]:
    campaign_service.get_instance(db, instance_id)
    query = db.query(CampaignEnrollment).filter(CampaignEnrollment.instance_id == instance_id)
    if status:
        query = query.filter(CampaignEnrollment.status == status.value)
    total = query.count()
    enrollments = query.order_by(CampaignEnrollment.enrolled_at).offset(offset).limit(limit).all()
    return enrollments, total


def get_enrollment(db: Session, enrollment_id: UUID) -> CampaignEnrollment:
    enrollment = db.get(CampaignEnrollment, enrollment_id)
    if not enrollment:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    return enrollment


def unsubscribe(db: Session, enrollment_id: UUID) -> CampaignEnrollment:
    """
    Opt a contact out of an instance.

    Pending step jobs stay queued and skip themselves once they see the
    enrollment is no longer active.
    """
    enrollment = db.get(CampaignEnrollment, enrollment_id, with_for_update=True)
    if not enrollment:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    if enrollment.status == EnrollmentStatus.UNSUBSCRIBED.value:
        return enrollment
    if enrollment.status == EnrollmentStatus.BOUNCED.value:
        db.rollback()
        raise ConflictError(f"Enrollment {enrollment_id} already bounced")
    enrollment.status = EnrollmentStatus.UNSUBSCRIBED.value
    enrollment.unsubscribed_at = utc_now()
    enrollment.next_action_at = None
    db.execute(
        update(CampaignInstance)
        .where(CampaignInstance.id == enrollment.instance_id)
        .values(total_unsubscribed=CampaignInstance.total_unsubscribed + 1)
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    db.refresh(enrollment)
    logger.info("Enrollment %s unsubscribed", enrollment_id)
    return enrollment
