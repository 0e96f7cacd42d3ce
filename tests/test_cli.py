"""Tests for the operator CLI."""

from uuid import UUID

from click.testing import CliRunner

from campaign_engine.cli import cli
from campaign_engine.db.enums import JobStatus
from campaign_engine.db.models import Job
from campaign_engine.services import job_service


def _dead_letter(db) -> UUID:
    job = job_service.enqueue(db, "report_export", {}, max_attempts=1)
    job_service.claim_next(db, "worker-test")
    job_service.fail(db, job.id, "smtp down")
    job_id = job.id
    # The CLI opens its own session
    db.commit()
    return job_id


def test_list_and_replay_dead_letter(db):
    job_uuid = _dead_letter(db)
    job_id = str(job_uuid)
    runner = CliRunner()

    result = runner.invoke(cli, ["list-dead-letter"])
    assert result.exit_code == 0
    assert job_id in result.output
    assert "smtp down" in result.output

    result = runner.invoke(cli, ["replay-job", job_id])
    assert result.exit_code == 0
    assert "requeued" in result.output

    db.expire_all()
    assert db.get(Job, job_uuid).status == JobStatus.PENDING.value


def test_replay_rejects_bad_ids():
    runner = CliRunner()

    result = runner.invoke(cli, ["replay-job", "not-a-uuid"])
    assert result.exit_code == 1
    assert "Invalid job id" in result.output

    result = runner.invoke(cli, ["replay-job", "00000000-0000-0000-0000-000000000000"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_cleanup_jobs_reports_count():
    result = CliRunner().invoke(cli, ["cleanup-jobs", "--days", "30"])

    assert result.exit_code == 0
    assert "Deleted 0 old jobs" in result.output


def test_validate_providers_lists_missing_settings():
    result = CliRunner().invoke(cli, ["validate-providers"])

    # The test environment carries no provider credentials
    assert result.exit_code == 1
    assert "email: lemlist missing" in result.output
