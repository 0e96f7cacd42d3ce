"""Campaign instances router - lifecycle, enrollments, events and performance."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from campaign_engine.core.deps import get_db
from campaign_engine.db.enums import EnrollmentStatus, EventType, InstanceStatus
from campaign_engine.schemas.campaign import (
    BulkEnrollRequest,
    BulkEnrollResponse,
    EnrollmentRead,
    EventRead,
    InstanceCreate,
    InstanceListItem,
    InstanceRead,
    InstanceStatusUpdate,
)
from campaign_engine.services import (
    analytics_service,
    campaign_service,
    enrollment_service,
    event_service,
)

router = APIRouter(tags=["Campaigns"])


# =============================================================================
# Instances
# =============================================================================

@router.get("/instances", response_model=list[InstanceListItem])
def list_instances(
    status: InstanceStatus | None = None,
    template_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    instances, _ = campaign_service.list_instances(
        db, status=status, template_id=template_id, limit=min(limit, 100), offset=offset
    )
    return instances


@router.post("/instances", response_model=InstanceRead, status_code=201)
def create_instance(data: InstanceCreate, db: Session = Depends(get_db)):
    """Create a draft instance; the template's active steps are frozen into it."""
    return campaign_service.create_instance(db, data)


@router.get("/instances/{instance_id}", response_model=InstanceRead)
def get_instance(instance_id: UUID, db: Session = Depends(get_db)):
    return campaign_service.get_instance(db, instance_id)


@router.patch("/instances/{instance_id}/status", response_model=InstanceRead)
def update_instance_status(
    instance_id: UUID,
    data: InstanceStatusUpdate,
    db: Session = Depends(get_db),
):
    """
    Change instance status.

    draft -> active; active -> paused | completed; paused -> active | completed.
    Anything else returns 409 and leaves the instance unchanged.
    """
    return campaign_service.update_status(db, instance_id, data.status)


@router.get("/instances/{instance_id}/performance")
def get_instance_performance(instance_id: UUID, db: Session = Depends(get_db)) -> dict:
    """Funnel, rates and breakdowns computed from grouped aggregates."""
    return analytics_service.get_performance(db, instance_id)


@router.get("/instances/{instance_id}/events", response_model=list[EventRead])
def list_instance_events(
    instance_id: UUID,
    event_type: EventType | None = None,
    enrollment_id: UUID | None = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    campaign_service.get_instance(db, instance_id)
    return event_service.list_events(
        db,
        instance_id,
        event_type=event_type,
        enrollment_id=enrollment_id,
        limit=min(limit, 500),
        offset=offset,
    )


# =============================================================================
# Enrollments
# =============================================================================

@router.post("/instances/{instance_id}/enrollments", response_model=BulkEnrollResponse)
def bulk_enroll(
    instance_id: UUID,
    data: BulkEnrollRequest,
    db: Session = Depends(get_db),
):
    """Enroll contacts; repeats and existing enrollments are skipped, not rejected."""
    created, skipped = enrollment_service.bulk_enroll(db, instance_id, data.all_contacts())
    return BulkEnrollResponse(
        enrolled=len(created),
        skipped=skipped,
        enrollment_ids=[e.id for e in created],
    )


@router.get("/instances/{instance_id}/enrollments", response_model=list[EnrollmentRead])
def list_enrollments(
    instance_id: UUID,
    status: EnrollmentStatus | None = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    enrollments, _ = enrollment_service.list_enrollments(
        db, instance_id, status=status, limit=min(limit, 500), offset=offset
    )
    return enrollments


@router.get("/enrollments/{enrollment_id}", response_model=EnrollmentRead)
def get_enrollment(enrollment_id: UUID, db: Session = Depends(get_db)):
    return enrollment_service.get_enrollment(db, enrollment_id)


@router.post("/enrollments/{enrollment_id}/unsubscribe", response_model=EnrollmentRead)
def unsubscribe_enrollment(enrollment_id: UUID, db: Session = Depends(get_db)):
    return enrollment_service.unsubscribe(db, enrollment_id)
