"""SQLAlchemy ORM models for campaign templates, instances, enrollments and events."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from campaign_engine.db.base import Base
from campaign_engine.db.enums import EnrollmentStatus, InstanceStatus, PathType
from campaign_engine.db.types import JSONType
from campaign_engine.utils import utc_now


# =============================================================================
# Templates and sequence steps
# =============================================================================


class CampaignTemplate(Base):
    """
    Reusable campaign definition.

    Owns its sequence steps. Instances reference it by id only and are never
    deleted with it; templates are soft-deleted via ``is_active``.
    """

    __tablename__ = "campaign_templates"
    __table_args__ = (Index("idx_campaign_templates_active", "is_active", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # TemplateType
    path_type: Mapped[str] = mapped_column(
        String(20),
        default=PathType.STRUCTURED.value,
        server_default=text(f"'{PathType.STRUCTURED.value}'"),
        nullable=False,
    )
    settings: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )

    email_steps: Mapped[list["EmailSequenceStep"]] = relationship(
        cascade="all, delete-orphan",
        order_by="EmailSequenceStep.step_number",
    )
    linkedin_steps: Mapped[list["LinkedInSequenceStep"]] = relationship(
        cascade="all, delete-orphan",
        order_by="LinkedInSequenceStep.step_number",
    )
    video_steps: Mapped[list["VideoSequenceStep"]] = relationship(
        cascade="all, delete-orphan",
        order_by="VideoSequenceStep.step_number",
    )


class EmailSequenceStep(Base):
    """Email step of a template. A/B variants share a step number."""

    __tablename__ = "email_sequence_steps"
    __table_args__ = (
        UniqueConstraint(
            "template_id", "step_number", "a_b_variant", name="uq_email_step_variant"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    delay_hours: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    a_b_variant: Mapped[str] = mapped_column(
        String(10), default="A", server_default=text("'A'"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class LinkedInSequenceStep(Base):
    """LinkedIn action step of a template."""

    __tablename__ = "linkedin_sequence_steps"
    __table_args__ = (
        UniqueConstraint("template_id", "step_number", name="uq_linkedin_step"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)  # LinkedInActionType
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delay_hours: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class VideoSequenceStep(Base):
    """Personalized video generation step of a template."""

    __tablename__ = "video_sequence_steps"
    __table_args__ = (
        UniqueConstraint("template_id", "step_number", name="uq_video_step"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=False)
    avatar_id: Mapped[str] = mapped_column(String(255), nullable=False)
    voice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    delay_hours: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


# =============================================================================
# Instances, enrollments, events
# =============================================================================


class CampaignInstance(Base):
    """
    A running copy of a template.

    ``sequence_snapshot`` freezes the template's active steps at creation so
    later template edits never change a running campaign. Status changes go
    through campaign_service.update_status only.
    """

    __tablename__ = "campaign_instances"
    __table_args__ = (
        Index("idx_campaign_instances_template", "template_id", "status"),
        Index("idx_campaign_instances_status", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_templates.id", onupdate="CASCADE", ondelete="RESTRICT"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=InstanceStatus.DRAFT.value,
        server_default=text(f"'{InstanceStatus.DRAFT.value}'"),
        nullable=False,
    )
    provider_config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    sequence_snapshot: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Aggregate counters (incremented in SQL, never read-modify-write)
    total_enrolled: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_sent: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_delivered: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_opened: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_clicked: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_replied: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_bounced: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    total_unsubscribed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)

    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )


class CampaignEnrollment(Base):
    """One contact's progress through one instance's sequence."""

    __tablename__ = "campaign_enrollments"
    __table_args__ = (
        UniqueConstraint("instance_id", "contact_id", name="uq_enrollment_instance_contact"),
        Index("idx_enrollments_due", "status", "next_action_at"),
        Index("idx_enrollments_provider_message", "provider_message_id"),
        Index("idx_enrollments_provider_action", "provider_action_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_id: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    contact_linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=EnrollmentStatus.ACTIVE.value,
        server_default=text(f"'{EnrollmentStatus.ACTIVE.value}'"),
        nullable=False,
    )
    current_step: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    next_action_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Last outbound ids, used to correlate webhooks that carry no enrollment hint
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_action_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    extra: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    enrolled_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    unsubscribed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class CampaignEvent(Base):
    """
    Canonical delivery/engagement event.

    ``provider_event_id`` is unique when present; that constraint is what makes
    webhook ingestion idempotent.
    """

    __tablename__ = "campaign_events"
    __table_args__ = (
        Index("uq_campaign_events_provider_event", "provider_event_id", unique=True),
        Index("idx_campaign_events_instance_type", "instance_id", "event_type"),
        Index("idx_campaign_events_enrollment", "enrollment_id", "occurred_at"),
        Index("idx_campaign_events_provider_message", "provider_message_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # EventType
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    step_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    raw_payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
