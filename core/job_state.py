"""Crawl job lifecycle transitions."""

from typing import Dict, FrozenSet, Optional

from core.types import JobStatus
from utils.error_handling import InvalidTransitionError

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.PAUSED,
            JobStatus.CANCELED,
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
        }
    ),
    JobStatus.PAUSED: frozenset({JobStatus.QUEUED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}

RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELED})
UNDELETABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})
LEASED_STATUSES = frozenset({JobStatus.RUNNING})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(
    current: JobStatus,
    target: JobStatus,
    job_id: Optional[int] = None,
    action: str = "",
) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(job_id, current.value, target.value, action)
