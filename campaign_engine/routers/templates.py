"""Campaign template router - templates and their sequence steps."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from campaign_engine.core.deps import get_db
from campaign_engine.db.enums import Channel
from campaign_engine.schemas.campaign import (
    EmailStepCreate,
    LinkedInStepCreate,
    StepUpdate,
    TemplateCreate,
    TemplateListItem,
    TemplateRead,
    TemplateUpdate,
    VideoStepCreate,
)
from campaign_engine.services import campaign_service

router = APIRouter(tags=["Templates"])


# =============================================================================
# Templates
# =============================================================================

@router.get("", response_model=list[TemplateListItem])
def list_templates(
    include_inactive: bool = False,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    """List campaign templates."""
    templates, _ = campaign_service.list_templates(
        db, include_inactive=include_inactive, limit=min(limit, 100), offset=offset
    )
    return templates


@router.post("", response_model=TemplateRead, status_code=201)
def create_template(data: TemplateCreate, db: Session = Depends(get_db)):
    """Create a template with its initial steps."""
    return campaign_service.create_template(db, data)


@router.get("/{template_id}", response_model=TemplateRead)
def get_template(template_id: UUID, db: Session = Depends(get_db)):
    return campaign_service.get_template(db, template_id)


@router.patch("/{template_id}", response_model=TemplateRead)
def update_template(template_id: UUID, data: TemplateUpdate, db: Session = Depends(get_db)):
    return campaign_service.update_template(db, template_id, data)


@router.delete("/{template_id}", response_model=TemplateRead)
def delete_template(template_id: UUID, db: Session = Depends(get_db)):
    """
    Soft-delete a template.

    Returns 409 while any draft, active or paused instance uses it.
    """
    campaign_service.delete_template(db, template_id)
    return campaign_service.get_template(db, template_id)


# =============================================================================
# Steps
# =============================================================================

@router.post("/{template_id}/steps/email", response_model=TemplateRead, status_code=201)
def add_email_step(template_id: UUID, data: EmailStepCreate, db: Session = Depends(get_db)):
    return campaign_service.add_step(db, template_id, data)


@router.post("/{template_id}/steps/linkedin", response_model=TemplateRead, status_code=201)
def add_linkedin_step(template_id: UUID, data: LinkedInStepCreate, db: Session = Depends(get_db)):
    return campaign_service.add_step(db, template_id, data)


@router.post("/{template_id}/steps/video", response_model=TemplateRead, status_code=201)
def add_video_step(template_id: UUID, data: VideoStepCreate, db: Session = Depends(get_db)):
    return campaign_service.add_step(db, template_id, data)


@router.patch("/{template_id}/steps/{channel}/{step_id}", response_model=TemplateRead)
def update_step(
    template_id: UUID,
    channel: Channel,
    step_id: UUID,
    data: StepUpdate,
    db: Session = Depends(get_db),
):
    """Update a step. Existing instances keep the sequence they were created with."""
    return campaign_service.update_step(db, template_id, channel, step_id, data)


@router.delete("/{template_id}/steps/{channel}/{step_id}", response_model=TemplateRead)
def delete_step(
    template_id: UUID,
    channel: Channel,
    step_id: UUID,
    db: Session = Depends(get_db),
):
    return campaign_service.delete_step(db, template_id, channel, step_id)
