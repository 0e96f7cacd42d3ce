"""Campaign schemas for request/response validation."""
from datetime import datetime
from uuid import UUID
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from campaign_engine.db.enums import (
    InstanceStatus,
    LinkedInActionType,
    PathType,
    TemplateType,
)


# =============================================================================
# Sequence steps
# =============================================================================

class EmailStepCreate(BaseModel):
    """Email step (A/B variants share a step_number)."""
    step_number: int = Field(..., ge=1, le=100)
    subject: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)
    delay_hours: int = Field(default=0, ge=0, le=24 * 365)
    a_b_variant: str = Field(default="A", pattern="^[A-Z]$")


class LinkedInStepCreate(BaseModel):
    """LinkedIn action step."""
    step_number: int = Field(..., ge=1, le=100)
    action_type: LinkedInActionType
    message: str | None = Field(None, max_length=8000)
    delay_hours: int = Field(default=0, ge=0, le=24 * 365)

    @model_validator(mode="after")
    def message_required_for_messages(self):
        if self.action_type == LinkedInActionType.MESSAGE and not (self.message or "").strip():
            raise ValueError("message steps need a message")
        return self


class VideoStepCreate(BaseModel):
    """Personalized video step."""
    step_number: int = Field(..., ge=1, le=100)
    script: str = Field(..., min_length=1, max_length=5000)
    avatar_id: str = Field(..., min_length=1, max_length=255)
    voice_id: str = Field(..., min_length=1, max_length=255)
    delay_hours: int = Field(default=0, ge=0, le=24 * 365)


class StepUpdate(BaseModel):
    """Partial step update; fields that do not apply to the step's channel are rejected."""
    subject: str | None = Field(None, min_length=1, max_length=500)
    body: str | None = Field(None, min_length=1)
    message: str | None = Field(None, max_length=8000)
    action_type: LinkedInActionType | None = None
    script: str | None = Field(None, min_length=1, max_length=5000)
    avatar_id: str | None = Field(None, min_length=1, max_length=255)
    voice_id: str | None = Field(None, min_length=1, max_length=255)
    delay_hours: int | None = Field(None, ge=0, le=24 * 365)
    is_active: bool | None = None


class EmailStepRead(BaseModel):
    id: UUID
    step_number: int
    subject: str
    body: str
    delay_hours: int
    a_b_variant: str
    is_active: bool

    model_config = {"from_attributes": True}


class LinkedInStepRead(BaseModel):
    id: UUID
    step_number: int
    action_type: str
    message: str | None
    delay_hours: int
    is_active: bool

    model_config = {"from_attributes": True}


class VideoStepRead(BaseModel):
    id: UUID
    step_number: int
    script: str
    avatar_id: str
    voice_id: str
    delay_hours: int
    is_active: bool

    model_config = {"from_attributes": True}


# =============================================================================
# Templates
# =============================================================================

class TemplateCreate(BaseModel):
    """Create a campaign template with its initial steps."""
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    type: TemplateType
    path_type: PathType = PathType.STRUCTURED
    settings: dict[str, Any] = Field(default_factory=dict)
    email_steps: list[EmailStepCreate] = Field(default_factory=list)
    linkedin_steps: list[LinkedInStepCreate] = Field(default_factory=list)
    video_steps: list[VideoStepCreate] = Field(default_factory=list)


class TemplateUpdate(BaseModel):
    """Update template metadata (steps have their own endpoints)."""
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    path_type: PathType | None = None
    settings: dict[str, Any] | None = None


class TemplateRead(BaseModel):
    id: UUID
    name: str
    description: str | None
    type: str
    path_type: str
    settings: dict
    is_active: bool
    created_at: datetime
    updated_at: datetime
    email_steps: list[EmailStepRead] = []
    linkedin_steps: list[LinkedInStepRead] = []
    video_steps: list[VideoStepRead] = []

    model_config = {"from_attributes": True}


class TemplateListItem(BaseModel):
    id: UUID
    name: str
    type: str
    path_type: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Instances
# =============================================================================

class InstanceCreate(BaseModel):
    """Create an instance from a template."""
    template_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    provider_config: dict[str, Any] = Field(default_factory=dict)


class InstanceStatusUpdate(BaseModel):
    status: InstanceStatus


class InstanceRead(BaseModel):
    id: UUID
    template_id: UUID
    name: str
    status: str
    provider_config: dict
    sequence_snapshot: list
    total_enrolled: int
    total_sent: int
    total_delivered: int
    total_opened: int
    total_clicked: int
    total_replied: int
    total_bounced: int
    total_unsubscribed: int
    started_at: datetime | None
    paused_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InstanceListItem(BaseModel):
    id: UUID
    template_id: UUID
    name: str
    status: str
    total_enrolled: int
    total_sent: int
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Enrollments and events
# =============================================================================

class EnrollmentContact(BaseModel):
    """A contact handed over by the upstream selector."""
    contact_id: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(None, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    linkedin_url: str | None = Field(None, max_length=500)
    variables: dict[str, Any] = Field(default_factory=dict)


class BulkEnrollRequest(BaseModel):
    """Enroll contacts; either full contacts or bare contact ids."""
    contacts: list[EnrollmentContact] = Field(default_factory=list, max_length=5000)
    contact_ids: list[str] = Field(default_factory=list, max_length=5000)

    @field_validator("contact_ids")
    @classmethod
    def strip_ids(cls, value: list[str]) -> list[str]:
        return [v.strip() for v in value if v and v.strip()]

    @model_validator(mode="after")
    def require_contacts(self):
        if not self.contacts and not self.contact_ids:
            raise ValueError("contacts or contact_ids is required")
        return self

    def all_contacts(self) -> list[EnrollmentContact]:
        return list(self.contacts) + [EnrollmentContact(contact_id=c) for c in self.contact_ids]


class BulkEnrollResponse(BaseModel):
    enrolled: int
    skipped: int
    enrollment_ids: list[UUID]


class EnrollmentRead(BaseModel):
    id: UUID
    instance_id: UUID
    contact_id: str
    contact_email: str | None
    contact_linkedin_url: str | None
    status: str
    current_step: int
    next_action_at: datetime | None
    provider_message_id: str | None
    provider_action_id: str | None
    metadata: dict = Field(validation_alias="extra")
    enrolled_at: datetime
    completed_at: datetime | None
    unsubscribed_at: datetime | None

    model_config = {"from_attributes": True, "populate_by_name": True}


class EventRead(BaseModel):
    id: UUID
    enrollment_id: UUID
    instance_id: UUID
    event_type: str
    channel: str
    provider: str
    provider_event_id: str | None
    provider_message_id: str | None
    step_number: int | None
    occurred_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookIngestResponse(BaseModel):
    received: int
    created: int
    duplicates: int
    queued: int
    ignored: int
    errors: list[dict] = []
