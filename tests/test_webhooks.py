"""Tests for provider webhook ingestion and event correlation."""

import base64
import json

import pytest
from httpx import AsyncClient

from campaign_engine.db.enums import EnrollmentStatus, JobStatus, JobType
from campaign_engine.db.models import CampaignEnrollment, CampaignEvent, CampaignInstance, Job
from campaign_engine.jobs.handlers.events import process_orphaned_event
from campaign_engine.schemas.campaign import EnrollmentContact
from campaign_engine.services import enrollment_service, event_service
from campaign_engine.services.event_service import UncorrelatedEventError
from campaign_engine.services.providers.signatures import compute_hmac_sha256


def _lemlist_headers(body: bytes, secret: str = "lemlist-test-secret") -> dict:
    return {
        "Content-Type": "application/json",
        "X-Lemlist-Signature": compute_hmac_sha256(secret, body),
    }


def _postmark_headers() -> dict:
    token = base64.b64encode(b"hooks:postmark-test-secret").decode()
    return {"Content-Type": "application/json", "Authorization": f"Basic {token}"}


@pytest.fixture
def enrollment(db, draft_instance) -> CampaignEnrollment:
    created, _ = enrollment_service.bulk_enroll(
        db,
        draft_instance.id,
        [EnrollmentContact(contact_id="c1", email="ada@example.com")],
    )
    enrollment = created[0]
    enrollment.provider_message_id = "pm-1"
    db.commit()
    return enrollment


def _lemlist_open(enrollment_id=None, activity_id="act_1", lead_id="lea_1") -> dict:
    payload = {
        "type": "emailsOpened",
        "_id": activity_id,
        "leadId": lead_id,
        "createdAt": "2026-10-01T10:00:00Z",
        "sequenceStep": 0,
    }
    if enrollment_id:
        payload["enrollmentId"] = str(enrollment_id)
    return payload


@pytest.mark.asyncio
async def test_duplicate_delivery_is_recorded_once(client: AsyncClient, db, enrollment):
    body = json.dumps(_lemlist_open(enrollment.id)).encode()

    first = await client.post("/webhooks/email/lemlist", content=body, headers=_lemlist_headers(body))
    second = await client.post("/webhooks/email/lemlist", content=body, headers=_lemlist_headers(body))

    assert first.status_code == 200
    assert first.json()["created"] == 1
    assert second.status_code == 200
    assert second.json()["created"] == 0
    assert second.json()["duplicates"] == 1

    events = db.query(CampaignEvent).all()
    assert len(events) == 1
    assert events[0].event_type == "email.opened"
    assert events[0].step_number == 1
    instance = db.get(CampaignInstance, enrollment.instance_id, populate_existing=True)
    assert instance.total_opened == 1


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(client: AsyncClient, db, enrollment):
    body = json.dumps(_lemlist_open(enrollment.id)).encode()

    response = await client.post(
        "/webhooks/email/lemlist",
        content=body,
        headers=_lemlist_headers(body, secret="wrong-secret"),
    )

    assert response.status_code == 401
    assert response.json()["error"] == "WebhookSignatureInvalid"
    assert db.query(CampaignEvent).count() == 0


@pytest.mark.asyncio
async def test_unknown_provider_is_a_bad_request(client: AsyncClient):
    response = await client.post("/webhooks/email/sendgrid", content=b"{}", headers={"Content-Type": "application/json"})
    assert response.status_code == 400

    response = await client.post("/webhooks/fax/lemlist", content=b"{}")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_postmark_bounce_correlates_by_message_id(client: AsyncClient, db, enrollment):
    body = json.dumps(
        {
            "RecordType": "Bounce",
            "ID": 42,
            "MessageID": "pm-1",
            "Type": "HardBounce",
            "BouncedAt": "2026-10-01T10:00:00Z",
        }
    ).encode()

    response = await client.post("/webhooks/email/postmark", content=body, headers=_postmark_headers())

    assert response.status_code == 200
    assert response.json()["created"] == 1
    db.expire_all()
    assert db.get(CampaignEnrollment, enrollment.id).status == EnrollmentStatus.BOUNCED.value
    assert db.get(CampaignInstance, enrollment.instance_id).total_bounced == 1


@pytest.mark.asyncio
async def test_batch_reports_bad_items_and_keeps_good_ones(client: AsyncClient, db, enrollment):
    body = json.dumps(
        [
            _lemlist_open(enrollment.id, activity_id="act_1"),
            {"type": "emailsTeleported", "_id": "act_2", "leadId": "lea_1"},
            {"type": "emailsOpened"},
        ]
    ).encode()

    response = await client.post("/webhooks/email/lemlist", content=body, headers=_lemlist_headers(body))

    assert response.status_code == 200
    data = response.json()
    assert data["received"] == 3
    assert data["created"] == 1
    assert sorted(e["index"] for e in data["errors"]) == [1, 2]


@pytest.mark.asyncio
async def test_invalid_json_is_rejected_after_signature(client: AsyncClient):
    body = b"not json"
    response = await client.post("/webhooks/email/lemlist", content=body, headers=_lemlist_headers(body))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_uncorrelated_event_is_queued_then_resolved(client: AsyncClient, db, enrollment):
    body = json.dumps(_lemlist_open(activity_id="act_7", lead_id="lea_7")).encode()

    response = await client.post("/webhooks/email/lemlist", content=body, headers=_lemlist_headers(body))

    assert response.status_code == 200
    assert response.json()["queued"] == 1
    job = db.query(Job).filter(Job.job_type == JobType.ORPHANED_EVENT.value).one()
    assert job.status == JobStatus.PENDING.value
    assert job.max_attempts == 6

    # Still unknown: the handler raises so the worker retries
    with pytest.raises(UncorrelatedEventError):
        await process_orphaned_event(db, job)
    db.rollback()

    enrollment = db.get(CampaignEnrollment, enrollment.id)
    enrollment.provider_message_id = "lea_7"
    db.commit()

    result = await process_orphaned_event(db, db.get(Job, job.id))

    assert result == {"status": event_service.INGEST_CREATED}
    event = db.query(CampaignEvent).one()
    assert event.enrollment_id == enrollment.id
    assert event.provider_event_id == "act_7"


def test_reply_completes_and_bounce_overrides_completion(db, enrollment):
    from campaign_engine.db.enums import EventType
    from campaign_engine.services.event_normalizer import NormalizedEvent
    from campaign_engine.utils import utc_now

    def event(event_type, event_id):
        return NormalizedEvent(
            event_type=event_type,
            channel=event_type.channel,
            provider="postmark",
            provider_event_id=event_id,
            occurred_at=utc_now(),
            enrollment_id=str(enrollment.id),
        )

    assert event_service.ingest_event(db, event(EventType.EMAIL_REPLIED, "r1")).status == "created"
    assert enrollment.status == EnrollmentStatus.COMPLETED.value

    event_service.ingest_event(db, event(EventType.EMAIL_OPENED, "o1"))
    assert enrollment.status == EnrollmentStatus.COMPLETED.value

    event_service.ingest_event(db, event(EventType.EMAIL_BOUNCED, "b1"))
    assert enrollment.status == EnrollmentStatus.BOUNCED.value
    db.commit()

    instance = db.get(CampaignInstance, enrollment.instance_id)
    assert instance.total_replied == 1
    assert instance.total_opened == 1
    assert instance.total_bounced == 1


def test_list_events_filters(db, enrollment):
    from campaign_engine.db.enums import EventType
    from campaign_engine.services.event_normalizer import NormalizedEvent
    from campaign_engine.utils import utc_now

    for event_type, event_id in ((EventType.EMAIL_DELIVERED, "d1"), (EventType.EMAIL_OPENED, "o1")):
        event_service.ingest_event(
            db,
            NormalizedEvent(
                event_type=event_type,
                channel=event_type.channel,
                provider="postmark",
                provider_event_id=event_id,
                occurred_at=utc_now(),
                provider_message_id="pm-1",
            ),
        )
    db.commit()

    events = event_service.list_events(db, enrollment.instance_id)
    opened = event_service.list_events(db, enrollment.instance_id, event_type=EventType.EMAIL_OPENED)

    assert len(events) == 2
    assert [e.provider_event_id for e in opened] == ["o1"]


@pytest.mark.asyncio
async def test_vendor_opt_out_after_api_unsubscribe_counts_once(client: AsyncClient, db, enrollment):
    enrollment_service.unsubscribe(db, enrollment.id)
    body = json.dumps(
        {
            "RecordType": "SubscriptionChange",
            "MessageID": "pm-1",
            "SuppressSending": True,
            "ChangedAt": "2026-10-02T09:00:00Z",
        }
    ).encode()

    response = await client.post("/webhooks/email/postmark", content=body, headers=_postmark_headers())

    assert response.status_code == 200
    assert response.json()["created"] == 1
    db.expire_all()
    instance = db.get(CampaignInstance, enrollment.instance_id)
    assert instance.total_enrolled == 1
    assert instance.total_unsubscribed == 1


@pytest.mark.asyncio
async def test_repeat_bounces_are_stored_but_counted_once(client: AsyncClient, db, enrollment):
    for bounce_id in (42, 43):
        body = json.dumps(
            {
                "RecordType": "Bounce",
                "ID": bounce_id,
                "MessageID": "pm-1",
                "Type": "HardBounce",
                "BouncedAt": "2026-10-01T10:00:00Z",
            }
        ).encode()
        response = await client.post("/webhooks/email/postmark", content=body, headers=_postmark_headers())
        assert response.json()["created"] == 1

    db.expire_all()
    assert db.query(CampaignEvent).filter(CampaignEvent.event_type == "email.bounced").count() == 2
    assert db.get(CampaignInstance, enrollment.instance_id).total_bounced == 1
