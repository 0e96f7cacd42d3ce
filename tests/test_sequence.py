"""Tests for sequence scheduling and step execution."""

from datetime import timedelta

import pytest

from campaign_engine.core.errors import ProviderError, ValidationError
from campaign_engine.db.enums import Channel, EnrollmentStatus, InstanceStatus, JobType
from campaign_engine.db.models import CampaignEnrollment, CampaignEvent, CampaignInstance, Job
from campaign_engine.jobs.handlers.campaigns import process_dispatch_sweep
from campaign_engine.schemas.campaign import EnrollmentContact
from campaign_engine.services import campaign_service, enrollment_service, job_service, sequence_service
from campaign_engine.services.providers import ProviderCapabilities, SendResult
from campaign_engine.utils import ensure_utc, utc_now


class FakeProvider:
    def __init__(self, name: str, channel: Channel, *, reports_send_events: bool, success: bool = True):
        self.name = name
        self.channel = channel
        self.reports_send_events = reports_send_events
        self.success = success
        self.sent = []

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(channel=self.channel, reports_send_events=self.reports_send_events)

    async def send(self, params) -> SendResult:
        self.sent.append(params)
        if not self.success:
            return SendResult(provider=self.name, success=False, error="mailbox disabled")
        return SendResult(provider=self.name, success=True, message_id=f"{self.name}-msg-{len(self.sent)}")


class FakeRegistry:
    def __init__(self, *, email_name: str = "postmark", success: bool = True):
        self.providers = {
            Channel.EMAIL: FakeProvider(
                email_name, Channel.EMAIL, reports_send_events=email_name != "postmark", success=success
            ),
            Channel.LINKEDIN: FakeProvider("phantombuster", Channel.LINKEDIN, reports_send_events=True),
        }
        self.requested = []

    def get(self, channel, name=None):
        self.requested.append((Channel(channel), name))
        return self.providers[Channel(channel)]


@pytest.fixture
def enrollment(db, active_instance) -> CampaignEnrollment:
    created, _ = enrollment_service.bulk_enroll(
        db,
        active_instance.id,
        [
            EnrollmentContact(
                contact_id="c1",
                email="ada@example.com",
                linkedin_url="https://www.linkedin.com/in/ada",
                variables={"first_name": "Ada"},
            )
        ],
    )
    return created[0]


def _step_job(db, enrollment, step_number: int) -> Job:
    key = sequence_service.step_job_key(enrollment.id, step_number)
    return db.query(Job).filter(Job.idempotency_key == key).one()


# =============================================================================
# Snapshot helpers
# =============================================================================

def test_next_step_after_walks_the_snapshot(email_template):
    snapshot = campaign_service.build_sequence_snapshot(email_template)

    assert sequence_service.next_step_after(snapshot, 0)["step_number"] == 1
    assert sequence_service.next_step_after(snapshot, 1)["step_number"] == 2
    assert sequence_service.next_step_after(snapshot, 3) is None
    assert sequence_service.find_step(snapshot, 2)["channel"] == "linkedin"
    assert sequence_service.find_step(snapshot, 9) is None


def test_variant_choice_is_stable_per_enrollment(email_template):
    step = campaign_service.build_sequence_snapshot(email_template)[0]

    first = sequence_service.pick_variant(step, "enrollment-1")
    assert all(sequence_service.pick_variant(step, "enrollment-1") == first for _ in range(5))
    assert first["variant"] in {"A", "B"}

    with pytest.raises(ValidationError):
        sequence_service.pick_variant({"step_number": 1, "variants": []}, "enrollment-1")


# =============================================================================
# Execution
# =============================================================================

@pytest.mark.asyncio
async def test_email_step_advances_and_schedules_next(db, enrollment):
    registry = FakeRegistry()
    job = _step_job(db, enrollment, 1)

    result = await sequence_service.execute_step(db, job, registry)

    assert result["step_number"] == 1
    assert result["next_step"] == 2
    assert result["message_id"] == "postmark-msg-1"

    db.expire_all()
    enrollment = db.get(CampaignEnrollment, enrollment.id)
    assert enrollment.current_step == 1
    assert enrollment.provider_message_id == "postmark-msg-1"
    assert enrollment.extra["ab_variants"]["1"] in {"A", "B"}

    message = registry.providers[Channel.EMAIL].sent[0]
    assert message.to_email == "ada@example.com"
    assert message.variables["first_name"] == "Ada"
    assert message.provider_campaign_id == "cam_123"
    assert message.metadata["variant"] == enrollment.extra["ab_variants"]["1"]

    next_job = _step_job(db, enrollment, 2)
    assert next_job.payload["step_number"] == 2
    delay = ensure_utc(next_job.scheduled_at) - utc_now()
    assert timedelta(hours=23) < delay <= timedelta(hours=24)


@pytest.mark.asyncio
async def test_engine_records_sent_event_for_postmark_only(db, enrollment):
    job = _step_job(db, enrollment, 1)

    await sequence_service.execute_step(db, job, FakeRegistry(email_name="postmark"))

    event = db.query(CampaignEvent).one()
    assert event.event_type == "email.sent"
    assert event.step_number == 1
    assert event.provider_message_id == "postmark-msg-1"
    instance = db.get(CampaignInstance, enrollment.instance_id, populate_existing=True)
    assert instance.total_sent == 1


@pytest.mark.asyncio
async def test_vendor_reported_sends_are_not_duplicated(db, enrollment):
    job = _step_job(db, enrollment, 1)

    await sequence_service.execute_step(db, job, FakeRegistry(email_name="lemlist"))

    assert db.query(CampaignEvent).count() == 0
    assert db.get(CampaignEnrollment, enrollment.id, populate_existing=True).current_step == 1


@pytest.mark.asyncio
async def test_last_step_completes_enrollment(db, enrollment):
    registry = FakeRegistry()

    for step_number in (1, 2, 3):
        job = _step_job(db, enrollment, step_number)
        await sequence_service.execute_step(db, job, registry)

    db.expire_all()
    enrollment = db.get(CampaignEnrollment, enrollment.id)
    assert enrollment.status == EnrollmentStatus.COMPLETED.value
    assert enrollment.current_step == 3
    assert enrollment.completed_at is not None
    assert enrollment.next_action_at is None
    assert enrollment.provider_action_id == "phantombuster-msg-1"

    action = registry.providers[Channel.LINKEDIN].sent[0]
    assert action.profile_url == "https://www.linkedin.com/in/ada"
    assert db.query(Job).filter(Job.job_type == JobType.CAMPAIGN_STEP.value).count() == 3


@pytest.mark.asyncio
async def test_repeated_step_is_skipped(db, enrollment):
    registry = FakeRegistry()
    job = _step_job(db, enrollment, 1)

    await sequence_service.execute_step(db, job, registry)
    result = await sequence_service.execute_step(db, db.get(Job, job.id), registry)

    assert result == {"skipped": "step 1 already sent"}
    assert len(registry.providers[Channel.EMAIL].sent) == 1


@pytest.mark.asyncio
async def test_paused_instance_defers_the_step(db, enrollment):
    campaign_service.update_status(db, enrollment.instance_id, InstanceStatus.PAUSED)
    job = _step_job(db, enrollment, 1)

    with pytest.raises(job_service.JobDeferred) as exc_info:
        await sequence_service.execute_step(db, job, FakeRegistry())

    assert exc_info.value.reason == "instance paused"
    assert ensure_utc(exc_info.value.run_at) > utc_now()


@pytest.mark.asyncio
async def test_unsubscribed_enrollment_is_skipped(db, enrollment):
    enrollment_service.unsubscribe(db, enrollment.id)
    registry = FakeRegistry()
    job = _step_job(db, enrollment, 1)

    result = await sequence_service.execute_step(db, job, registry)

    assert result == {"skipped": "enrollment unsubscribed"}
    assert registry.providers[Channel.EMAIL].sent == []


@pytest.mark.asyncio
async def test_rejected_send_raises_provider_error(db, enrollment):
    job = _step_job(db, enrollment, 1)

    with pytest.raises(ProviderError):
        await sequence_service.execute_step(db, job, FakeRegistry(success=False))

    db.rollback()
    assert db.get(CampaignEnrollment, enrollment.id).current_step == 0


@pytest.mark.asyncio
async def test_cancel_request_stops_before_send(db, enrollment):
    job = _step_job(db, enrollment, 1)
    job_service.cancel(db, job.id)
    registry = FakeRegistry()

    with pytest.raises(job_service.JobCancelled):
        await sequence_service.execute_step(db, db.get(Job, job.id), registry)

    assert registry.providers[Channel.EMAIL].sent == []


@pytest.mark.asyncio
async def test_instance_provider_override_is_used(db, enrollment):
    instance = db.get(CampaignInstance, enrollment.instance_id)
    instance.provider_config = {**instance.provider_config, "email_provider": "postmark"}
    db.commit()
    registry = FakeRegistry()

    await sequence_service.execute_step(db, _step_job(db, enrollment, 1), registry)

    assert registry.requested == [(Channel.EMAIL, "postmark")]


@pytest.mark.asyncio
async def test_missing_contact_address_is_a_validation_error(db, active_instance):
    created, _ = enrollment_service.bulk_enroll(
        db, active_instance.id, [EnrollmentContact(contact_id="c9")]
    )

    with pytest.raises(ValidationError):
        await sequence_service.execute_step(db, _step_job(db, created[0], 1), FakeRegistry())


# =============================================================================
# Dispatch sweep
# =============================================================================

@pytest.mark.asyncio
async def test_dispatch_sweep_schedules_due_enrollments_once(db, draft_instance):
    created, _ = enrollment_service.bulk_enroll(
        db, draft_instance.id, [EnrollmentContact(contact_id="c1", email="c1@example.com")]
    )
    # Activate without going through update_status so no jobs exist yet
    instance = db.get(CampaignInstance, draft_instance.id)
    instance.status = InstanceStatus.ACTIVE.value
    enrollment = db.get(CampaignEnrollment, created[0].id)
    enrollment.next_action_at = utc_now() - timedelta(minutes=5)
    db.commit()

    sweep = job_service.enqueue(db, JobType.DISPATCH_SWEEP, {})
    first = await process_dispatch_sweep(db, sweep)
    second = await process_dispatch_sweep(db, sweep)

    assert first == {"scheduled": 1}
    assert second == {"scheduled": 1}
    jobs = db.query(Job).filter(Job.job_type == JobType.CAMPAIGN_STEP.value).all()
    assert len(jobs) == 1
    assert jobs[0].idempotency_key == sequence_service.step_job_key(enrollment.id, 1)


@pytest.mark.asyncio
async def test_dispatch_sweep_ignores_future_and_paused_work(db, active_instance):
    created, _ = enrollment_service.bulk_enroll(
        db, active_instance.id, [EnrollmentContact(contact_id="c1", email="c1@example.com")]
    )
    enrollment = db.get(CampaignEnrollment, created[0].id)
    enrollment.next_action_at = utc_now() + timedelta(hours=2)
    db.commit()

    scheduled = sequence_service.schedule_enrollments(db, due_only=True)
    assert scheduled == 0

    enrollment.next_action_at = utc_now() - timedelta(minutes=1)
    db.commit()
    campaign_service.update_status(db, active_instance.id, InstanceStatus.PAUSED)
    assert sequence_service.schedule_enrollments(db, due_only=True) == 0
    db.rollback()
