"""Structured logging helpers."""

from typing import Any


def build_log_context(
    *,
    job_id: str | None = None,
    job_type: str | None = None,
    instance_id: str | None = None,
    enrollment_id: str | None = None,
    provider: str | None = None,
    channel: str | None = None,
    worker_id: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict for ``extra=`` (contact data never included)."""
    context: dict[str, Any] = {}
    if job_id:
        context["job_id"] = str(job_id)
    if job_type:
        context["job_type"] = job_type
    if instance_id:
        context["instance_id"] = str(instance_id)
    if enrollment_id:
        context["enrollment_id"] = str(enrollment_id)
    if provider:
        context["provider"] = provider
    if channel:
        context["channel"] = channel
    if worker_id:
        context["worker_id"] = worker_id
    return context
