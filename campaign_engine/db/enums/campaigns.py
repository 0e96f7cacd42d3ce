"""Campaign-related enums."""

from enum import Enum


class TemplateType(str, Enum):
    """Channel mix of a campaign template."""

    EMAIL = "email"
    LINKEDIN = "linkedin"
    MULTI_CHANNEL = "multi_channel"


class PathType(str, Enum):
    """How enrollments move through the sequence."""

    STRUCTURED = "structured"
    DYNAMIC_AI = "dynamic_ai"


class InstanceStatus(str, Enum):
    """Status of a campaign instance."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class EnrollmentStatus(str, Enum):
    """Status of a contact's enrollment in an instance."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"


class LinkedInActionType(str, Enum):
    """Actions a LinkedIn sequence step can perform."""

    PROFILE_VISIT = "profile_visit"
    CONNECTION_REQUEST = "connection_request"
    MESSAGE = "message"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.DRAFT: frozenset({InstanceStatus.ACTIVE}),
    InstanceStatus.ACTIVE: frozenset({InstanceStatus.PAUSED, InstanceStatus.COMPLETED}),
    InstanceStatus.PAUSED: frozenset({InstanceStatus.ACTIVE, InstanceStatus.COMPLETED}),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
}

TERMINAL_INSTANCE_STATUSES = frozenset({InstanceStatus.COMPLETED, InstanceStatus.FAILED})

# Instances that still block template deletion
ACTIVE_INSTANCE_STATUSES = frozenset(
    {InstanceStatus.DRAFT, InstanceStatus.ACTIVE, InstanceStatus.PAUSED}
)
