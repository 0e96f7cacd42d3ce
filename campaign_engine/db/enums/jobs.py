"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    CAMPAIGN_STEP = "campaign_step"  # Send one sequence step for one enrollment
    DISPATCH_SWEEP = "dispatch_sweep"  # Enqueue step jobs for due enrollments
    ORPHANED_EVENT = "orphaned_event"  # Retry correlation of an unmatched webhook event


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"  # Non-retryable failure
    DEAD_LETTER = "dead_letter"  # Retry budget exhausted
    CANCELLED = "cancelled"


DEFAULT_JOB_STATUS = JobStatus.PENDING

TERMINAL_JOB_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.DEAD_LETTER,
        JobStatus.CANCELLED,
    }
)
