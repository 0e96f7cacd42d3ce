"""Pydantic schemas for API request/response models."""

from campaign_engine.schemas.campaign import (
    BulkEnrollRequest,
    BulkEnrollResponse,
    EmailStepCreate,
    EnrollmentContact,
    EnrollmentRead,
    EventRead,
    InstanceCreate,
    InstanceListItem,
    InstanceRead,
    InstanceStatusUpdate,
    LinkedInStepCreate,
    StepUpdate,
    TemplateCreate,
    TemplateListItem,
    TemplateRead,
    TemplateUpdate,
    VideoStepCreate,
    WebhookIngestResponse,
)
from campaign_engine.schemas.job import JobCreate, JobListItem, JobRead

__all__ = [
    "BulkEnrollRequest",
    "BulkEnrollResponse",
    "EmailStepCreate",
    "EnrollmentContact",
    "EnrollmentRead",
    "EventRead",
    "InstanceCreate",
    "InstanceListItem",
    "InstanceRead",
    "InstanceStatusUpdate",
    "LinkedInStepCreate",
    "StepUpdate",
    "TemplateCreate",
    "TemplateListItem",
    "TemplateRead",
    "TemplateUpdate",
    "VideoStepCreate",
    "WebhookIngestResponse",
    "JobCreate",
    "JobListItem",
    "JobRead",
]
