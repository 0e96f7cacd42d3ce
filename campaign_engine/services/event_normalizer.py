"""
Event normalizer - maps vendor webhook vocabularies onto the canonical taxonomy.

Deduplication is not done here: the unique provider_event_id on
campaign_events makes a repeated normalize + insert a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from campaign_engine.core.errors import ValidationError
from campaign_engine.db.enums import Channel, EventType
from campaign_engine.services.providers.base import RawProviderEvent
from campaign_engine.utils import parse_event_timestamp, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Vendor vocabularies
# =============================================================================

VENDOR_EVENT_MAP: dict[tuple[str, Channel], dict[str, EventType]] = {
    ("postmark", Channel.EMAIL): {
        "Delivery": EventType.EMAIL_DELIVERED,
        "Bounce": EventType.EMAIL_BOUNCED,
        "Open": EventType.EMAIL_OPENED,
        "Click": EventType.EMAIL_CLICKED,
        "SpamComplaint": EventType.EMAIL_SPAM_REPORTED,
        "SubscriptionChange": EventType.EMAIL_UNSUBSCRIBED,
    },
    ("lemlist", Channel.EMAIL): {
        "emailsSent": EventType.EMAIL_SENT,
        "emailsOpened": EventType.EMAIL_OPENED,
        "emailsClicked": EventType.EMAIL_CLICKED,
        "emailsReplied": EventType.EMAIL_REPLIED,
        "emailsBounced": EventType.EMAIL_BOUNCED,
        "emailsUnsubscribed": EventType.EMAIL_UNSUBSCRIBED,
    },
    ("lemlist", Channel.LINKEDIN): {
        "linkedinVisitDone": EventType.LINKEDIN_PROFILE_VISITED,
        "linkedinInviteDone": EventType.LINKEDIN_CONNECTION_SENT,
        "linkedinInviteAccepted": EventType.LINKEDIN_CONNECTION_ACCEPTED,
        "linkedinSent": EventType.LINKEDIN_MESSAGE_SENT,
        "linkedinOpened": EventType.LINKEDIN_MESSAGE_READ,
        "linkedinReplied": EventType.LINKEDIN_MESSAGE_REPLIED,
    },
    ("phantombuster", Channel.LINKEDIN): {
        "profile_visit.finished": EventType.LINKEDIN_PROFILE_VISITED,
        "connection_request.finished": EventType.LINKEDIN_CONNECTION_SENT,
        "message.finished": EventType.LINKEDIN_MESSAGE_SENT,
        "connection_accepted": EventType.LINKEDIN_CONNECTION_ACCEPTED,
        "connection_rejected": EventType.LINKEDIN_CONNECTION_REJECTED,
        "message_read": EventType.LINKEDIN_MESSAGE_READ,
        "message_replied": EventType.LINKEDIN_MESSAGE_REPLIED,
    },
    ("heygen", Channel.VIDEO): {
        "avatar_video.success": EventType.VIDEO_GENERATED,
        "video.completed": EventType.VIDEO_GENERATED,
        "avatar_video.fail": EventType.VIDEO_GENERATION_FAILED,
        "video.failed": EventType.VIDEO_GENERATION_FAILED,
        "video.viewed": EventType.VIDEO_VIEWED,
        "video.watch_completed": EventType.VIDEO_COMPLETED,
    },
}

COUNTER_INCREMENTS: dict[EventType, dict[str, int]] = {
    EventType.EMAIL_SENT: {"total_sent": 1},
    EventType.LINKEDIN_MESSAGE_SENT: {"total_sent": 1},
    EventType.EMAIL_DELIVERED: {"total_delivered": 1},
    EventType.EMAIL_OPENED: {"total_opened": 1},
    EventType.EMAIL_CLICKED: {"total_clicked": 1},
    EventType.EMAIL_REPLIED: {"total_replied": 1},
    EventType.LINKEDIN_MESSAGE_REPLIED: {"total_replied": 1},
    EventType.EMAIL_BOUNCED: {"total_bounced": 1},
    EventType.EMAIL_UNSUBSCRIBED: {"total_unsubscribed": 1},
    EventType.EMAIL_SPAM_REPORTED: {"total_unsubscribed": 1},
}


@dataclass
class NormalizedEvent:
    """Canonical event, ready to be correlated and stored."""

    event_type: EventType
    channel: Channel
    provider: str
    provider_event_id: str
    occurred_at: datetime
    provider_message_id: str | None = None
    enrollment_id: str | None = None
    step_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form (job payloads for orphaned events)."""
        return {
            "event_type": self.event_type.value,
            "channel": self.channel.value,
            "provider": self.provider,
            "provider_event_id": self.provider_event_id,
            "occurred_at": self.occurred_at.isoformat(),
            "provider_message_id": self.provider_message_id,
            "enrollment_id": self.enrollment_id,
            "step_number": self.step_number,
            "metadata": self.metadata,
            "raw_payload": self.raw_payload,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "NormalizedEvent":
        try:
            return cls(
                event_type=EventType(data["event_type"]),
                channel=Channel(data["channel"]),
                provider=data["provider"],
                provider_event_id=data["provider_event_id"],
                occurred_at=parse_event_timestamp(data.get("occurred_at")) or utc_now(),
                provider_message_id=data.get("provider_message_id"),
                enrollment_id=data.get("enrollment_id"),
                step_number=data.get("step_number"),
                metadata=data.get("metadata") or {},
                raw_payload=data.get("raw_payload") or {},
            )
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"Invalid normalized event payload: {exc}") from exc


# =============================================================================
# Normalization
# =============================================================================


def resolve_event_type(vendor_type: str, provider_name: str, channel: Channel) -> EventType:
    """Map a vendor event name to the canonical type for ``channel``."""
    vocabulary = VENDOR_EVENT_MAP.get((provider_name, channel), {})
    event_type = vocabulary.get(vendor_type)
    if event_type is None:
        # Canonical names pass through (internally recorded sends)
        try:
            event_type = EventType(vendor_type)
        except ValueError:
            raise ValidationError(
                f"Unknown {provider_name} {channel.value} event type: {vendor_type}"
            ) from None
    if event_type.channel != channel:
        raise ValidationError(
            f"Event type {event_type.value} does not belong to channel {channel.value}"
        )
    return event_type


def normalize(raw_event: RawProviderEvent, provider_name: str, channel: Channel | str) -> NormalizedEvent:
    """Convert a parsed vendor event into a NormalizedEvent."""
    try:
        channel = Channel(channel)
    except ValueError:
        raise ValidationError(f"Unknown channel: {channel}") from None
    if not raw_event.type:
        raise ValidationError("Event is missing its type")
    if not raw_event.provider_event_id:
        raise ValidationError("Event is missing provider_event_id")

    occurred_at = utc_now()
    if raw_event.occurred_at not in (None, ""):
        occurred_at = parse_event_timestamp(raw_event.occurred_at)
        if occurred_at is None:
            raise ValidationError(f"Unparseable event timestamp: {raw_event.occurred_at!r}")

    return NormalizedEvent(
        event_type=resolve_event_type(raw_event.type, provider_name, channel),
        channel=channel,
        provider=provider_name,
        provider_event_id=str(raw_event.provider_event_id),
        occurred_at=occurred_at,
        provider_message_id=(
            str(raw_event.provider_message_id) if raw_event.provider_message_id else None
        ),
        enrollment_id=str(raw_event.enrollment_id) if raw_event.enrollment_id else None,
        step_number=raw_event.step_number,
        metadata={k: v for k, v in (raw_event.metadata or {}).items() if v is not None},
        raw_payload=raw_event.payload or {},
    )


def normalize_batch(
    raw_events: list[RawProviderEvent], provider_name: str, channel: Channel | str
) -> tuple[list[NormalizedEvent], list[dict[str, Any]]]:
    """Normalize many events; failures are reported per index instead of aborting."""
    events: list[NormalizedEvent] = []
    errors: list[dict[str, Any]] = []
    for index, raw_event in enumerate(raw_events):
        try:
            events.append(normalize(raw_event, provider_name, channel))
        except ValidationError as exc:
            logger.warning("Skipping %s event %s: %s", provider_name, index, exc.message)
            errors.append({"index": index, "error": exc.message})
    return events, errors


def get_counter_increments(event_type: EventType | str) -> dict[str, int]:
    """Instance counters bumped by one event of ``event_type``."""
    try:
        event_type = EventType(event_type)
    except ValueError:
        return {}
    return dict(COUNTER_INCREMENTS.get(event_type, {}))
