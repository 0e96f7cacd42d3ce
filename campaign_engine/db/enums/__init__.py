"""Enum definitions for application constants."""

from campaign_engine.db.enums.campaigns import (
    ACTIVE_INSTANCE_STATUSES,
    INSTANCE_TRANSITIONS,
    TERMINAL_INSTANCE_STATUSES,
    EnrollmentStatus,
    InstanceStatus,
    LinkedInActionType,
    PathType,
    TemplateType,
)
from campaign_engine.db.enums.events import Channel, EventType
from campaign_engine.db.enums.jobs import (
    DEFAULT_JOB_STATUS,
    TERMINAL_JOB_STATUSES,
    JobStatus,
    JobType,
)

__all__ = [
    "ACTIVE_INSTANCE_STATUSES",
    "INSTANCE_TRANSITIONS",
    "TERMINAL_INSTANCE_STATUSES",
    "EnrollmentStatus",
    "InstanceStatus",
    "LinkedInActionType",
    "PathType",
    "TemplateType",
    "Channel",
    "EventType",
    "DEFAULT_JOB_STATUS",
    "TERMINAL_JOB_STATUSES",
    "JobStatus",
    "JobType",
]
