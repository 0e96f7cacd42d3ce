"""Campaign service - templates, sequence steps and the instance state machine."""

import logging
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from campaign_engine.core.errors import ConflictError, NotFoundError, ValidationError
from campaign_engine.db.enums import (
    ACTIVE_INSTANCE_STATUSES,
    INSTANCE_TRANSITIONS,
    TERMINAL_INSTANCE_STATUSES,
    Channel,
    InstanceStatus,
    LinkedInActionType,
)
from campaign_engine.db.models import (
    CampaignInstance,
    CampaignTemplate,
    EmailSequenceStep,
    LinkedInSequenceStep,
    VideoSequenceStep,
)
from campaign_engine.schemas.campaign import (
    EmailStepCreate,
    InstanceCreate,
    LinkedInStepCreate,
    StepUpdate,
    TemplateCreate,
    TemplateUpdate,
    VideoStepCreate,
)
from campaign_engine.utils import utc_now

logger = logging.getLogger(__name__)

STEP_MODELS = {
    Channel.EMAIL: EmailSequenceStep,
    Channel.LINKEDIN: LinkedInSequenceStep,
    Channel.VIDEO: VideoSequenceStep,
}

# Fields a StepUpdate may touch per channel
STEP_UPDATE_FIELDS = {
    Channel.EMAIL: {"subject", "body", "delay_hours", "is_active"},
    Channel.LINKEDIN: {"action_type", "message", "delay_hours", "is_active"},
    Channel.VIDEO: {"script", "avatar_id", "voice_id", "delay_hours", "is_active"},
}


# =============================================================================
# Templates
# =============================================================================

def _template_query(db: Session):
    return db.query(CampaignTemplate).options(
        selectinload(CampaignTemplate.email_steps),
        selectinload(CampaignTemplate.linkedin_steps),
        selectinload(CampaignTemplate.video_steps),
    )


def list_templates(
    db: Session,
    include_inactive: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CampaignTemplate], int]:
    """List templates, newest first."""
    query = db.query(CampaignTemplate)
    if not include_inactive:
        query = query.filter(CampaignTemplate.is_active.is_(True))
    total = query.count()
    templates = query.order_by(CampaignTemplate.created_at.desc()).offset(offset).limit(limit).all()
    return templates, total


def get_template(db: Session, template_id: UUID) -> CampaignTemplate:
    template = _template_query(db).filter(CampaignTemplate.id == template_id).first()
    if not template:
        raise NotFoundError(f"Template {template_id} not found")
    return template


def _lock_template(db: Session, template_id: UUID) -> CampaignTemplate:
    template = (
        db.query(CampaignTemplate)
        .filter(CampaignTemplate.id == template_id)
        .with_for_update()
        .first()
    )
    if not template:
        raise NotFoundError(f"Template {template_id} not found")
    return template


def _step_numbers(template: CampaignTemplate) -> dict[int, Channel]:
    numbers: dict[int, Channel] = {}
    for channel, steps in (
        (Channel.EMAIL, template.email_steps),
        (Channel.LINKEDIN, template.linkedin_steps),
        (Channel.VIDEO, template.video_steps),
    ):
        for step in steps:
            numbers[step.step_number] = channel
    return numbers


def _check_step_number(template: CampaignTemplate, channel: Channel, step_number: int, variant: str | None = None) -> None:
    """
    Step numbers are unique across channels. Email A/B variants share a number
    but each variant letter appears once.
    """
    owner = _step_numbers(template).get(step_number)
    if owner is None:
        return
    if owner != channel:
        raise ConflictError(f"Step {step_number} is already a {owner.value} step")
    if channel == Channel.EMAIL and variant is not None:
        taken = {s.a_b_variant for s in template.email_steps if s.step_number == step_number}
        if variant not in taken:
            return
        raise ConflictError(f"Email step {step_number} variant {variant} already exists")
    raise ConflictError(f"Step {step_number} already exists")


def _build_step(channel: Channel, data) -> EmailSequenceStep | LinkedInSequenceStep | VideoSequenceStep:
    if channel == Channel.EMAIL:
        return EmailSequenceStep(
            step_number=data.step_number,
            subject=data.subject,
            body=data.body,
            delay_hours=data.delay_hours,
            a_b_variant=data.a_b_variant,
        )
    if channel == Channel.LINKEDIN:
        return LinkedInSequenceStep(
            step_number=data.step_number,
            action_type=LinkedInActionType(data.action_type).value,
            message=data.message,
            delay_hours=data.delay_hours,
        )
    return VideoSequenceStep(
        step_number=data.step_number,
        script=data.script,
        avatar_id=data.avatar_id,
        voice_id=data.voice_id,
        delay_hours=data.delay_hours,
    )


def _append_step(template: CampaignTemplate, channel: Channel, data) -> None:
    variant = getattr(data, "a_b_variant", None)
    _check_step_number(template, channel, data.step_number, variant)
    step = _build_step(channel, data)
    if channel == Channel.EMAIL:
        template.email_steps.append(step)
    elif channel == Channel.LINKEDIN:
        template.linkedin_steps.append(step)
    else:
        template.video_steps.append(step)


def create_template(db: Session, data: TemplateCreate) -> CampaignTemplate:
    """Create a template together with its initial steps."""
    template = CampaignTemplate(
        name=data.name,
        description=data.description,
        type=data.type.value,
        path_type=data.path_type.value,
        settings=data.settings,
    )
    for step in data.email_steps:
        _append_step(template, Channel.EMAIL, step)
    for step in data.linkedin_steps:
        _append_step(template, Channel.LINKEDIN, step)
    for step in data.video_steps:
        _append_step(template, Channel.VIDEO, step)

    db.add(template)
    db.commit()
    logger.info("Created campaign template %s", template.id)
    return get_template(db, template.id)


def update_template(db: Session, template_id: UUID, data: TemplateUpdate) -> CampaignTemplate:
    """Update template metadata. Running instances keep their snapshot."""
    template = _lock_template(db, template_id)
    if data.name is not None:
        template.name = data.name
    if data.description is not None:
        template.description = data.description
    if data.path_type is not None:
        template.path_type = data.path_type.value
    if data.settings is not None:
        template.settings = data.settings
    db.commit()
    return get_template(db, template_id)


def delete_template(db: Session, template_id: UUID) -> CampaignTemplate:
    """
    Soft-delete a template.

    The template row is locked and non-terminal instances are counted in the
    same transaction, so an instance created concurrently either sees the
    template inactive or blocks the delete.
    """
    template = _lock_template(db, template_id)
    blocking = (
        db.query(func.count(CampaignInstance.id))
        .filter(
            CampaignInstance.template_id == template_id,
            CampaignInstance.status.in_([s.value for s in ACTIVE_INSTANCE_STATUSES]),
        )
        .scalar()
    )
    if blocking:
        db.rollback()
        raise ConflictError(
            f"Template {template_id} is used by {blocking} active instance(s)",
            active_instances=blocking,
        )
    template.is_active = False
    db.commit()
    logger.info("Deactivated campaign template %s", template_id)
    return template


# =============================================================================
# Steps
# =============================================================================

def add_step(
    db: Session,
    template_id: UUID,
    data: EmailStepCreate | LinkedInStepCreate | VideoStepCreate,
) -> CampaignTemplate:
    """Add one step to a template."""
    if isinstance(data, EmailStepCreate):
        channel = Channel.EMAIL
    elif isinstance(data, LinkedInStepCreate):
        channel = Channel.LINKEDIN
    else:
        channel = Channel.VIDEO
    _lock_template(db, template_id)
    template = get_template(db, template_id)
    try:
        _append_step(template, channel, data)
    except ConflictError:
        db.rollback()
        raise
    db.commit()
    return get_template(db, template_id)


def _get_step(db: Session, template_id: UUID, channel: Channel, step_id: UUID):
    model = STEP_MODELS[channel]
    step = db.query(model).filter(model.id == step_id, model.template_id == template_id).first()
    if not step:
        raise NotFoundError(f"{channel.value} step {step_id} not found")
    return step


def update_step(
    db: Session,
    template_id: UUID,
    channel: Channel,
    step_id: UUID,
    data: StepUpdate,
) -> CampaignTemplate:
    _lock_template(db, template_id)
    step = _get_step(db, template_id, channel, step_id)
    changes = data.model_dump(exclude_unset=True)
    invalid = set(changes) - STEP_UPDATE_FIELDS[channel]
    if invalid:
        db.rollback()
        raise ValidationError(
            f"Fields not valid for {channel.value} steps: {', '.join(sorted(invalid))}"
        )
    for field, value in changes.items():
        if field == "action_type" and value is not None:
            value = LinkedInActionType(value).value
        setattr(step, field, value)
    if (
        channel == Channel.LINKEDIN
        and step.action_type == LinkedInActionType.MESSAGE.value
        and not (step.message or "").strip()
    ):
        db.rollback()
        raise ValidationError("message steps need a message")
    db.commit()
    return get_template(db, template_id)


def delete_step(db: Session, template_id: UUID, channel: Channel, step_id: UUID) -> CampaignTemplate:
    _lock_template(db, template_id)
    step = _get_step(db, template_id, channel, step_id)
    db.delete(step)
    db.commit()
    return get_template(db, template_id)


# =============================================================================
# Sequence snapshot
# =============================================================================

def build_sequence_snapshot(template: CampaignTemplate) -> list[dict]:
    """
    Freeze the template's active steps as plain JSON, ordered by step_number.

    Email steps carry their A/B variants in ``variants``.
    """
    steps: dict[int, dict] = {}
    for step in template.email_steps:
        if not step.is_active:
            continue
        entry = steps.setdefault(
            step.step_number,
            {
                "step_number": step.step_number,
                "channel": Channel.EMAIL.value,
                "delay_hours": step.delay_hours,
                "variants": [],
            },
        )
        entry["variants"].append(
            {"variant": step.a_b_variant, "subject": step.subject, "body": step.body}
        )
    for step in template.linkedin_steps:
        if step.is_active:
            steps[step.step_number] = {
                "step_number": step.step_number,
                "channel": Channel.LINKEDIN.value,
                "delay_hours": step.delay_hours,
                "action_type": step.action_type,
                "message": step.message,
            }
    for step in template.video_steps:
        if step.is_active:
            steps[step.step_number] = {
                "step_number": step.step_number,
                "channel": Channel.VIDEO.value,
                "delay_hours": step.delay_hours,
                "script": step.script,
                "avatar_id": step.avatar_id,
                "voice_id": step.voice_id,
            }
    snapshot = [steps[n] for n in sorted(steps)]
    for entry in snapshot:
        if "variants" in entry:
            entry["variants"].sort(key=lambda v: v["variant"])
    return snapshot


# =============================================================================
# Instances
# =============================================================================

def create_instance(db: Session, data: InstanceCreate) -> CampaignInstance:
    """
    Create a draft instance from a template.

    The template is locked while its steps are snapshotted, so a concurrent
    delete_template cannot deactivate it halfway through.
    """
    template = _lock_template(db, data.template_id)
    if not template.is_active:
        db.rollback()
        raise ConflictError(f"Template {data.template_id} is inactive")
    snapshot = build_sequence_snapshot(template)
    if not snapshot:
        db.rollback()
        raise ValidationError(f"Template {data.template_id} has no active steps")

    instance = CampaignInstance(
        template_id=template.id,
        name=data.name,
        status=InstanceStatus.DRAFT.value,
        provider_config=data.provider_config,
        sequence_snapshot=snapshot,
    )
    db.add(instance)
    db.commit()
    db.refresh(instance)
    logger.info("Created campaign instance %s from template %s", instance.id, template.id)
    return instance


def list_instances(
    db: Session,
    status: InstanceStatus | None = None,
    template_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CampaignInstance], int]:
    query = db.query(CampaignInstance)
    if status:
        query = query.filter(CampaignInstance.status == status.value)
    if template_id:
        query = query.filter(CampaignInstance.template_id == template_id)
    total = query.count()
    instances = query.order_by(CampaignInstance.created_at.desc()).offset(offset).limit(limit).all()
    return instances, total


def get_instance(db: Session, instance_id: UUID) -> CampaignInstance:
    instance = db.get(CampaignInstance, instance_id)
    if not instance:
        raise NotFoundError(f"Instance {instance_id} not found")
    return instance


def lock_instance(db: Session, instance_id: UUID) -> CampaignInstance:
    instance = (
        db.query(CampaignInstance)
        .filter(CampaignInstance.id == instance_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not instance:
        raise NotFoundError(f"Instance {instance_id} not found")
    return instance


def update_status(db: Session, instance_id: UUID, new_status: InstanceStatus | str) -> CampaignInstance:
    """
    Move an instance through its state machine.

    Illegal transitions raise ConflictError and leave the row untouched.
    Activation schedules step jobs for every enrollment that is due.
    """
    from campaign_engine.services import sequence_service

    try:
        target = InstanceStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown instance status: {new_status}") from None

    instance = lock_instance(db, instance_id)
    current = InstanceStatus(instance.status)
    if target not in INSTANCE_TRANSITIONS[current]:
        db.rollback()
        raise ConflictError(
            f"Cannot change instance from {current.value} to {target.value}",
            current=current.value,
            requested=target.value,
        )

    now = utc_now()
    instance.status = target.value
    if target == InstanceStatus.ACTIVE:
        if instance.started_at is None:
            instance.started_at = now
        instance.paused_at = None
    elif target == InstanceStatus.PAUSED:
        instance.paused_at = now
    elif target == InstanceStatus.COMPLETED:
        instance.completed_at = now

    scheduled = 0
    # autoflush is off; the scheduling query must see the new status
    db.flush()
    if target == InstanceStatus.ACTIVE:
        scheduled = sequence_service.schedule_enrollments(db, instance.id, due_only=False)
    db.commit()
    db.refresh(instance)
    logger.info(
        "Instance %s moved %s -> %s (%s step jobs scheduled)",
        instance.id,
        current.value,
        target.value,
        scheduled,
    )
    return instance


def mark_instance_failed(db: Session, instance_id: UUID, reason: str) -> CampaignInstance:
    """Internal escape hatch: any non-terminal instance can fail."""
    instance = lock_instance(db, instance_id)
    if InstanceStatus(instance.status) in TERMINAL_INSTANCE_STATUSES:
        db.rollback()
        raise ConflictError(f"Instance {instance_id} is already {instance.status}")
    instance.status = InstanceStatus.FAILED.value
    instance.completed_at = utc_now()
    db.commit()
    db.refresh(instance)
    logger.error("Instance %s marked failed: %s", instance_id, reason)
    return instance
