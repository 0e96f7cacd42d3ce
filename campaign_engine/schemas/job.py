"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class JobCreate(BaseModel):
    """Enqueue a job (payload is opaque to the engine)."""
    job_type: str = Field(..., min_length=1, max_length=50)
    payload: dict = Field(default_factory=dict)
    priority: int = Field(default=0, ge=-100, le=100)
    run_at: datetime | None = None
    max_attempts: int | None = Field(None, ge=1, le=25)
    idempotency_key: str | None = Field(None, max_length=255)


class JobRead(BaseModel):
    """Job response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    payload: dict
    priority: int
    status: str
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    claimed_by: str | None
    claimed_at: datetime | None
    cancel_requested: bool
    result: dict | None
    last_error: str | None
    idempotency_key: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListItem(BaseModel):
    """Job list item (minimal)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    status: str
    priority: int
    scheduled_at: datetime
    attempts: int
    last_error: str | None
    created_at: datetime
    completed_at: datetime | None
