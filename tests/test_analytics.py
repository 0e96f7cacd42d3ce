"""Tests for campaign performance analytics."""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from campaign_engine.db.enums import EventType
from campaign_engine.schemas.campaign import EnrollmentContact
from campaign_engine.services import analytics_service, enrollment_service, event_service
from campaign_engine.services.event_normalizer import NormalizedEvent
from campaign_engine.utils import utc_now


def _record(db, enrollment, event_type: EventType, event_id: str, step_number: int = 1):
    event_service.ingest_event(
        db,
        NormalizedEvent(
            event_type=event_type,
            channel=event_type.channel,
            provider="lemlist",
            provider_event_id=event_id,
            occurred_at=utc_now(),
            enrollment_id=str(enrollment.id),
            step_number=step_number,
        ),
    )


@pytest.fixture
def engaged_instance(db, active_instance):
    """Three enrollments, all sent to, two opened (one twice), one replied."""
    created, _ = enrollment_service.bulk_enroll(
        db,
        active_instance.id,
        [EnrollmentContact(contact_id=c, email=f"{c}@example.com") for c in ("c1", "c2", "c3")],
    )
    e1, e2, e3 = created
    for index, enrollment in enumerate(created):
        _record(db, enrollment, EventType.EMAIL_SENT, f"sent-{index}")
    _record(db, e1, EventType.EMAIL_OPENED, "open-1")
    _record(db, e1, EventType.EMAIL_OPENED, "open-1b")
    _record(db, e2, EventType.EMAIL_OPENED, "open-2")
    _record(db, e1, EventType.EMAIL_REPLIED, "reply-1")
    _record(db, e3, EventType.LINKEDIN_PROFILE_VISITED, "visit-3", step_number=2)
    db.commit()
    return active_instance


def test_funnel_counts_distinct_enrollments(db, engaged_instance):
    funnel = analytics_service.get_funnel(db, engaged_instance.id)

    assert funnel == {
        "enrolled": 3,
        "sent": 3,
        "delivered": 0,
        "opened": 2,
        "clicked": 0,
        "replied": 1,
    }


def test_performance_rates(db, engaged_instance):
    performance = analytics_service.get_performance(db, engaged_instance.id)

    assert performance["rates"]["open_rate"] == 66.7
    assert performance["rates"]["reply_rate"] == 33.3
    assert performance["rates"]["click_rate"] == 0.0
    assert performance["rates"]["bounce_rate"] == 0.0
    assert performance["counters"]["total_sent"] == 3
    assert performance["counters"]["total_opened"] == 3
    assert performance["enrollment_status"] == {"active": 2, "completed": 1}


def test_breakdowns(db, engaged_instance):
    by_channel = analytics_service.get_channel_breakdown(db, engaged_instance.id)
    by_step = analytics_service.get_step_breakdown(db, engaged_instance.id)
    daily = analytics_service.get_daily_series(db, engaged_instance.id)

    assert by_channel["email"] == {"email.sent": 3, "email.opened": 3, "email.replied": 1}
    assert by_channel["linkedin"] == {"linkedin.profile_visited": 1}
    assert [s["step_number"] for s in by_step] == [1, 2]
    assert by_step[1]["events"] == {"linkedin.profile_visited": 1}
    assert len(daily) == 1
    assert daily[0]["events"]["email.sent"] == 3


def test_daily_series_window_follows_utc_clock(db, engaged_instance, monkeypatch):
    later = utc_now() + timedelta(days=3)
    monkeypatch.setattr(analytics_service, "utc_now", lambda: later)

    assert analytics_service.get_daily_series(db, engaged_instance.id, days=1) == []
    assert len(analytics_service.get_daily_series(db, engaged_instance.id, days=5)) == 1


def test_rates_are_zero_without_sends(db, active_instance):
    performance = analytics_service.get_performance(db, active_instance.id)

    assert performance["funnel"]["sent"] == 0
    assert all(rate == 0.0 for rate in performance["rates"].values())


@pytest.mark.asyncio
async def test_performance_endpoint(client: AsyncClient, engaged_instance):
    response = await client.get(f"/instances/{engaged_instance.id}/performance")

    assert response.status_code == 200
    data = response.json()
    assert data["instance_id"] == str(engaged_instance.id)
    assert data["rates"]["open_rate"] == 66.7

    response = await client.get(
        f"/instances/{engaged_instance.id}/events", params={"event_type": "email.opened"}
    )
    assert response.status_code == 200
    assert len(response.json()) == 3
