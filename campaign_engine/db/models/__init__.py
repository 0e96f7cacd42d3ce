"""SQLAlchemy ORM models."""

from campaign_engine.db.models.campaigns import (
    CampaignEnrollment,
    CampaignEvent,
    CampaignInstance,
    CampaignTemplate,
    EmailSequenceStep,
    LinkedInSequenceStep,
    VideoSequenceStep,
)
from campaign_engine.db.models.jobs import Job
from campaign_engine.db.models.rate_limits import LinkedInDailyUsage, RateLimitBucket

__all__ = [
    "CampaignEnrollment",
    "CampaignEvent",
    "CampaignInstance",
    "CampaignTemplate",
    "EmailSequenceStep",
    "LinkedInSequenceStep",
    "VideoSequenceStep",
    "Job",
    "LinkedInDailyUsage",
    "RateLimitBucket",
]
