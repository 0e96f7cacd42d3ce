"""Channel and canonical event taxonomy."""

from enum import Enum


class Channel(str, Enum):
    """Outreach channel (one provider capability per channel)."""

    EMAIL = "email"
    LINKEDIN = "linkedin"
    VIDEO = "video"


class EventType(str, Enum):
    """Canonical, provider-independent event types."""

    # Email
    EMAIL_SENT = "email.sent"
    EMAIL_DELIVERED = "email.delivered"
    EMAIL_OPENED = "email.opened"
    EMAIL_CLICKED = "email.clicked"
    EMAIL_REPLIED = "email.replied"
    EMAIL_BOUNCED = "email.bounced"
    EMAIL_UNSUBSCRIBED = "email.unsubscribed"
    EMAIL_SPAM_REPORTED = "email.spam_reported"

    # LinkedIn
    LINKEDIN_PROFILE_VISITED = "linkedin.profile_visited"
    LINKEDIN_CONNECTION_SENT = "linkedin.connection_sent"
    LINKEDIN_CONNECTION_ACCEPTED = "linkedin.connection_accepted"
    LINKEDIN_CONNECTION_REJECTED = "linkedin.connection_rejected"
    LINKEDIN_MESSAGE_SENT = "linkedin.message_sent"
    LINKEDIN_MESSAGE_READ = "linkedin.message_read"
    LINKEDIN_MESSAGE_REPLIED = "linkedin.message_replied"

    # Video
    VIDEO_GENERATED = "video.generated"
    VIDEO_GENERATION_FAILED = "video.generation_failed"
    VIDEO_VIEWED = "video.viewed"
    VIDEO_COMPLETED = "video.completed"

    @property
    def channel(self) -> Channel:
        return Channel(self.value.split(".", 1)[0])
