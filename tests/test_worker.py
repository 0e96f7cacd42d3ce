"""Tests for the worker: outcome mapping, batching and the dispatch sweep."""

from datetime import timedelta

import pytest

from campaign_engine import worker
from campaign_engine.core.errors import RateLimitExceeded, ValidationError
from campaign_engine.db.enums import Channel, JobStatus, JobType
from campaign_engine.db.models import CampaignEnrollment, Job
from campaign_engine.jobs import registry as job_registry
from campaign_engine.schemas.campaign import EnrollmentContact
from campaign_engine.services import enrollment_service, job_service, sequence_service
from campaign_engine.services.providers import ProviderCapabilities, SendResult
from campaign_engine.services.providers import registry as registry_module
from campaign_engine.utils import ensure_utc, utc_now


def _install(monkeypatch, job_type: str, handler) -> None:
    monkeypatch.setitem(job_registry.JOB_HANDLERS, job_type, handler)


def _claimed(db, job_type: str, **kwargs) -> Job:
    job_service.enqueue(db, job_type, {"n": 1}, **kwargs)
    job = job_service.claim_next(db, "worker-test", job_types=[job_type])
    assert job is not None
    return job


@pytest.mark.asyncio
async def test_successful_handler_completes_job(db, monkeypatch):
    async def handler(db, job):
        return {"echo": job.payload["n"]}

    _install(monkeypatch, "test_ok", handler)
    job = _claimed(db, "test_ok")

    status = await worker.run_job(db, job, "worker-test")

    assert status == JobStatus.COMPLETED.value
    job = db.get(Job, job.id)
    assert job.result == {"echo": 1}
    assert job.claimed_by is None


@pytest.mark.asyncio
async def test_unexpected_error_is_retried_then_dead_lettered(db, monkeypatch):
    async def handler(db, job):
        raise RuntimeError("vendor exploded")

    _install(monkeypatch, "test_boom", handler)
    job = _claimed(db, "test_boom", max_attempts=2)

    status = await worker.run_job(db, job, "worker-test")

    assert status == JobStatus.PENDING.value
    job = db.get(Job, job.id)
    assert job.attempts == 1
    assert job.last_error == "RuntimeError: vendor exploded"
    assert ensure_utc(job.scheduled_at) > utc_now()

    job = job_service.claim_next(db, "worker-test", now=utc_now() + timedelta(hours=1))
    status = await worker.run_job(db, job, "worker-test")

    assert status == JobStatus.DEAD_LETTER.value
    assert [j.id for j in job_service.list_dead_letter_jobs(db)] == [job.id]


@pytest.mark.asyncio
async def test_validation_error_fails_without_retry(db, monkeypatch):
    async def handler(db, job):
        raise ValidationError("payload missing enrollment_id")

    _install(monkeypatch, "test_invalid", handler)
    job = _claimed(db, "test_invalid")

    status = await worker.run_job(db, job, "worker-test")

    assert status == JobStatus.FAILED.value
    assert db.get(Job, job.id).last_error == "payload missing enrollment_id"


@pytest.mark.asyncio
async def test_unknown_job_type_fails(db):
    job = _claimed(db, "mystery")

    status = await worker.run_job(db, job, "worker-test")

    assert status == JobStatus.FAILED.value
    assert "Unknown job type" in db.get(Job, job.id).last_error


@pytest.mark.asyncio
async def test_deferral_and_rate_limit_keep_attempts(db, monkeypatch):
    run_at = utc_now() + timedelta(minutes=10)

    async def deferring(db, job):
        raise job_service.JobDeferred(run_at, "instance paused")

    async def limited(db, job):
        raise RateLimitExceeded("lemlist", retry_after=30)

    _install(monkeypatch, "test_defer", deferring)
    _install(monkeypatch, "test_limited", limited)

    deferred = _claimed(db, "test_defer")
    assert await worker.run_job(db, deferred, "worker-test") == JobStatus.PENDING.value
    deferred = db.get(Job, deferred.id)
    assert deferred.attempts == 0
    assert deferred.last_error == "instance paused"

    limited_job = _claimed(db, "test_limited")
    assert await worker.run_job(db, limited_job, "worker-test") == JobStatus.PENDING.value
    limited_job = db.get(Job, limited_job.id)
    assert limited_job.attempts == 0
    wait = ensure_utc(limited_job.scheduled_at) - utc_now()
    assert timedelta(seconds=25) < wait <= timedelta(seconds=30)


@pytest.mark.asyncio
async def test_cancelled_handler_marks_job_cancelled(db, monkeypatch):
    async def handler(db, job):
        raise job_service.JobCancelled()

    _install(monkeypatch, "test_cancel", handler)
    job = _claimed(db, "test_cancel")

    assert await worker.run_job(db, job, "worker-test") == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_process_available_jobs_respects_limit(db, monkeypatch):
    seen = []

    async def handler(db, job):
        seen.append(job.payload["n"])
        return None

    _install(monkeypatch, "test_batch", handler)
    for n in range(3):
        job_service.enqueue(db, "test_batch", {"n": n})

    assert await worker.process_available_jobs(db, "worker-test", limit=2) == 2
    assert await worker.process_available_jobs(db, "worker-test", limit=2) == 1
    assert await worker.process_available_jobs(db, "worker-test", limit=2) == 0
    assert sorted(seen) == [0, 1, 2]


def test_dispatch_sweep_is_enqueued_once_per_window(db):
    first = worker.enqueue_dispatch_sweep(db, now=1_000_000.0)
    again = worker.enqueue_dispatch_sweep(db, now=1_000_001.0)
    later = worker.enqueue_dispatch_sweep(db, now=1_000_000.0 + 600)

    assert first.id == again.id
    assert later.id != first.id
    assert db.query(Job).filter(Job.job_type == JobType.DISPATCH_SWEEP.value).count() == 2


class _Provider:
    name = "postmark"

    async def send(self, params):
        return SendResult(provider=self.name, success=True, message_id="pm-42")

    def get_capabilities(self):
        return ProviderCapabilities(channel=Channel.EMAIL, reports_send_events=False)


class _Registry:
    def get(self, channel, name=None):
        return _Provider()


@pytest.mark.asyncio
async def test_campaign_step_runs_through_worker(db, active_instance, monkeypatch):
    monkeypatch.setattr(registry_module, "_registry", _Registry())
    created, _ = enrollment_service.bulk_enroll(
        db, active_instance.id, [EnrollmentContact(contact_id="c1", email="c1@example.com")]
    )

    processed = await worker.process_available_jobs(db, "worker-test", limit=5)

    assert processed == 1
    step_job = (
        db.query(Job)
        .filter(Job.idempotency_key == sequence_service.step_job_key(created[0].id, 1))
        .one()
    )
    assert step_job.status == JobStatus.COMPLETED.value
    assert step_job.result["message_id"] == "pm-42"
    assert db.get(CampaignEnrollment, created[0].id, populate_existing=True).current_step == 1
