"""Analytics service for campaign performance.

Every figure is a grouped SQL aggregate; event history is never loaded into
memory.
"""
import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import case as sql_case, func
from sqlalchemy.orm import Session

from campaign_engine.db.enums import EventType
from campaign_engine.db.models import CampaignEnrollment, CampaignEvent
from campaign_engine.services import campaign_service
from campaign_engine.utils import utc_now


# ============================================================================
# Funnel
# ============================================================================

FUNNEL_STAGES = ["enrolled", "sent", "delivered", "opened", "clicked", "replied"]

# Event types that put an enrollment at a funnel stage
STAGE_EVENTS: dict[str, list[EventType]] = {
    "sent": [
        EventType.EMAIL_SENT,
        EventType.LINKEDIN_CONNECTION_SENT,
        EventType.LINKEDIN_MESSAGE_SENT,
    ],
    "delivered": [EventType.EMAIL_DELIVERED],
    "opened": [EventType.EMAIL_OPENED, EventType.LINKEDIN_MESSAGE_READ, EventType.VIDEO_VIEWED],
    "clicked": [EventType.EMAIL_CLICKED],
    "replied": [EventType.EMAIL_REPLIED, EventType.LINKEDIN_MESSAGE_REPLIED],
}

COUNTER_FIELDS = [
    "total_enrolled",
    "total_sent",
    "total_delivered",
    "total_opened",
    "total_clicked",
    "total_replied",
    "total_bounced",
    "total_unsubscribed",
]


def _rate(numerator: int, denominator: int) -> float:
    """Percentage with one decimal; 0.0 when nothing was sent."""
    if not denominator:
        return 0.0
    return round(numerator * 100.0 / denominator, 1)


def _stage_expression():
    whens = [
        (CampaignEvent.event_type.in_([t.value for t in types]), stage)
        for stage, types in STAGE_EVENTS.items()
    ]
    return sql_case(*whens, else_=None)


def get_funnel(db: Session, instance_id: uuid.UUID) -> dict[str, int]:
    """Distinct enrollments that reached each stage."""
    staged = (
        db.query(
            _stage_expression().label("stage"),
            CampaignEvent.enrollment_id.label("enrollment_id"),
        )
        .filter(CampaignEvent.instance_id == instance_id)
        .subquery()
    )
    rows = (
        db.query(staged.c.stage, func.count(func.distinct(staged.c.enrollment_id)))
        .group_by(staged.c.stage)
        .all()
    )
    funnel = {name: 0 for name in FUNNEL_STAGES}
    for name, count in rows:
        if name:
            funnel[name] = count
    funnel["enrolled"] = (
        db.query(func.count(CampaignEnrollment.id))
        .filter(CampaignEnrollment.instance_id == instance_id)
        .scalar()
        or 0
    )
    return funnel


# ============================================================================
# Breakdowns
# ============================================================================

def get_enrollment_status_counts(db: Session, instance_id: uuid.UUID) -> dict[str, int]:
    rows = (
        db.query(CampaignEnrollment.status, func.count(CampaignEnrollment.id))
        .filter(CampaignEnrollment.instance_id == instance_id)
        .group_by(CampaignEnrollment.status)
        .all()
    )
    return {status: count for status, count in rows}


def get_channel_breakdown(db: Session, instance_id: uuid.UUID) -> dict[str, dict[str, int]]:
    rows = (
        db.query(CampaignEvent.channel, CampaignEvent.event_type, func.count(CampaignEvent.id))
        .filter(CampaignEvent.instance_id == instance_id)
        .group_by(CampaignEvent.channel, CampaignEvent.event_type)
        .all()
    )
    breakdown: dict[str, dict[str, int]] = {}
    for channel, event_type, count in rows:
        breakdown.setdefault(channel, {})[event_type] = count
    return breakdown


def get_step_breakdown(db: Session, instance_id: uuid.UUID) -> list[dict[str, Any]]:
    """Event counts per sequence step (events without a step are left out)."""
    rows = (
        db.query(CampaignEvent.step_number, CampaignEvent.event_type, func.count(CampaignEvent.id))
        .filter(
            CampaignEvent.instance_id == instance_id,
            CampaignEvent.step_number.is_not(None),
        )
        .group_by(CampaignEvent.step_number, CampaignEvent.event_type)
        .order_by(CampaignEvent.step_number)
        .all()
    )
    steps: dict[int, dict[str, int]] = {}
    for step_number, event_type, count in rows:
        steps.setdefault(step_number, {})[event_type] = count
    return [{"step_number": n, "events": events} for n, events in sorted(steps.items())]


def get_daily_series(
    db: Session,
    instance_id: uuid.UUID,
    days: int = 30,
) -> list[dict[str, Any]]:
    """Per-day event counts for the last ``days`` days."""
    day = func.date(CampaignEvent.occurred_at)
    start = utc_now().date() - timedelta(days=days)
    rows = (
        db.query(day.label("day"), CampaignEvent.event_type, func.count(CampaignEvent.id))
        .filter(
            CampaignEvent.instance_id == instance_id,
            func.date(CampaignEvent.occurred_at) >= start,
        )
        .group_by(day, CampaignEvent.event_type)
        .order_by(day)
        .all()
    )
    series: dict[str, dict[str, int]] = {}
    for period, event_type, count in rows:
        # PostgreSQL returns a date, SQLite a string
        key = period.isoformat() if hasattr(period, "isoformat") else str(period)
        series.setdefault(key, {})[event_type] = count
    return [{"date": key, "events": events} for key, events in sorted(series.items())]


# ============================================================================
# Performance summary
# ============================================================================

def get_performance(db: Session, instance_id: uuid.UUID) -> dict[str, Any]:
    """Counters, funnel, rates and breakdowns for one instance."""
    instance = campaign_service.get_instance(db, instance_id)
    funnel = get_funnel(db, instance_id)
    sent = funnel["sent"]
    counters = {name: getattr(instance, name) for name in COUNTER_FIELDS}

    return {
        "instance_id": str(instance.id),
        "status": instance.status,
        "counters": counters,
        "funnel": funnel,
        "rates": {
            "delivery_rate": _rate(funnel["delivered"], sent),
            "open_rate": _rate(funnel["opened"], sent),
            "click_rate": _rate(funnel["clicked"], sent),
            "reply_rate": _rate(funnel["replied"], sent),
            "bounce_rate": _rate(counters["total_bounced"], counters["total_sent"]),
            "unsubscribe_rate": _rate(counters["total_unsubscribed"], counters["total_enrolled"]),
        },
        "enrollment_status": get_enrollment_status_counts(db, instance_id),
        "by_channel": get_channel_breakdown(db, instance_id),
        "by_step": get_step_breakdown(db, instance_id),
        "daily": get_daily_series(db, instance_id),
    }
