"""CLI tools for operating the campaign engine."""

import asyncio
import logging
import sys
from uuid import UUID

import click

from campaign_engine.core.errors import CampaignEngineError
from campaign_engine.db.session import SessionLocal


@click.group()
def cli():
    """Campaign engine CLI tools."""
    pass


@cli.command()
@click.option("--worker-id", default=None, help="Worker identity recorded on claimed jobs")
def run_worker(worker_id: str | None):
    """
    Run the job worker in the foreground.

    Example:
        campaign-engine run-worker --worker-id worker-1
    """
    from campaign_engine.worker import worker_loop

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(worker_loop(worker_id))
    except KeyboardInterrupt:
        click.echo("Worker stopped")


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Max jobs to list")
def list_dead_letter(limit: int):
    """List dead-lettered and permanently failed jobs."""
    from campaign_engine.services import job_service

    db = SessionLocal()
    try:
        jobs = job_service.list_dead_letter_jobs(db, limit=limit)
        if not jobs:
            click.echo("✓ No dead-lettered jobs")
            return
        for job in jobs:
            error = (job.last_error or "").splitlines()[0][:120] if job.last_error else ""
            click.echo(f"{job.id}  {job.job_type:<16} {job.status:<12} attempts={job.attempts}  {error}")
    finally:
        db.close()


@cli.command()
@click.argument("job_id")
def replay_job(job_id: str):
    """
    Put a dead-lettered or failed job back in the queue.

    Example:
        campaign-engine replay-job 6f1c0c5e-...
    """
    from campaign_engine.services import job_service

    db = SessionLocal()
    try:
        job = job_service.replay_job(db, UUID(job_id))
        click.echo(f"✓ Job {job.id} requeued ({job.job_type})")
    except ValueError:
        click.echo(f"❌ Invalid job id: {job_id}")
        sys.exit(1)
    except CampaignEngineError as e:
        db.rollback()
        click.echo(f"❌ Error: {e.message}")
        sys.exit(1)
    finally:
        db.close()


@cli.command()
@click.option("--days", default=None, type=int, help="Days to keep (default: JOB_RETENTION_DAYS)")
def cleanup_jobs(days: int | None):
    """Delete old completed and cancelled jobs. Dead letters are kept."""
    from campaign_engine.services import job_service

    db = SessionLocal()
    try:
        deleted = job_service.cleanup_jobs(db, days_to_keep=days)
        click.echo(f"✓ Deleted {deleted} old jobs")
    finally:
        db.close()


@cli.command()
@click.option(
    "--days", default=None, type=int, help="Days to keep (default: LINKEDIN_USAGE_RETENTION_DAYS)"
)
def cleanup_linkedin_usage(days: int | None):
    """Delete old LinkedIn daily usage rows."""
    from campaign_engine.core.config import settings
    from campaign_engine.services.linkedin_limits import LinkedInDailyLimits

    deleted = LinkedInDailyLimits(SessionLocal, settings).cleanup(days)
    click.echo(f"✓ Deleted {deleted} LinkedIn usage rows")


@cli.command()
def validate_providers():
    """Check that every selected provider has its required settings."""
    from campaign_engine.services.providers import ProviderRegistry

    registry = ProviderRegistry()
    errors = registry.validate_all()
    for channel, entry in registry.describe().items():
        if channel in errors:
            click.echo(f"❌ {channel}: {entry['selected']} missing {', '.join(errors[channel])}")
        else:
            click.echo(f"✓ {channel}: {entry['selected']}")
    if errors:
        sys.exit(1)


if __name__ == "__main__":
    cli()
